from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, EmailStr, Field


class _Body(BaseModel):
    class Config:
        populate_by_name = True


class LoginRequest(_Body):
    email: EmailStr
    password: str = Field(min_length=1)
    remember: bool = False
    two_factor_trust_token: Optional[str] = Field(default=None, alias="twoFactorTrustToken")
    turnstile_token: Optional[str] = Field(default=None, alias="turnstileToken")


class RegisterRequest(_Body):
    email: EmailStr
    username: str = Field(min_length=3, max_length=30)
    password: str = Field(min_length=8, max_length=128)
    invite_code: Optional[str] = Field(default=None, alias="inviteCode")
    verification_code: Optional[str] = Field(default=None, alias="verificationCode")


class EmailCodeRequest(_Body):
    email: EmailStr


class PasswordResetConfirmRequest(_Body):
    email: EmailStr
    verification_code: str = Field(min_length=1, alias="verificationCode")
    new_password: str = Field(min_length=8, max_length=128, alias="newPassword")
    confirm_password: Optional[str] = Field(default=None, alias="confirmPassword")


class VerifyTwoFactorRequest(_Body):
    challenge_id: str = Field(min_length=1)
    code: str = Field(min_length=1)
    remember_device: bool = Field(default=False, alias="rememberDevice")
    device_name: Optional[str] = Field(default=None, alias="deviceName")


class GoogleLoginRequest(_Body):
    id_token: str = Field(min_length=1, alias="idToken")
    remember: bool = False
    two_factor_trust_token: Optional[str] = Field(default=None, alias="twoFactorTrustToken")


class GithubLoginRequest(_Body):
    code: str = Field(min_length=1)
    redirect_uri: Optional[str] = Field(default=None, alias="redirectUri")
    remember: bool = False
    two_factor_trust_token: Optional[str] = Field(default=None, alias="twoFactorTrustToken")


class OAuthCompleteRequest(_Body):
    pending_token: str = Field(min_length=1, alias="pendingToken")
    invite_code: Optional[str] = Field(default=None, alias="inviteCode")


class PasskeyLoginOptionsRequest(_Body):
    email: EmailStr
    remember: bool = False


class PasskeyCredentialRequest(_Body):
    credential: Dict[str, Any]
    device_name: Optional[str] = Field(default=None, alias="deviceName")


class TwoFactorCodeRequest(_Body):
    code: str = Field(min_length=1)


class TwoFactorDisableRequest(_Body):
    password: str = Field(min_length=1)
    code: str = Field(min_length=1)


class PasskeyOut(BaseModel):
    id: int
    credential_id: str
    device_name: Optional[str] = None
    rp_id: Optional[str] = None
    sign_count: int
    backup_eligible: bool
    created_at: datetime
    last_used_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TrustedDeviceOut(BaseModel):
    id: int
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None

    class Config:
        from_attributes = True
