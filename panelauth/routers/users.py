import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from panelauth.auth import two_factor
from panelauth.auth.challenge_store import ChallengeStore, get_challenge_store
from panelauth.auth.models import User
from panelauth.auth.passkeys import (
    delete_passkey,
    expected_rp,
    list_passkeys,
    registration_options,
    verify_registration,
)
from panelauth.auth.schemas import (
    PasskeyCredentialRequest,
    PasskeyOut,
    TrustedDeviceOut,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
)
from panelauth.auth.sessions import get_current_user, user_projection
from panelauth.auth.trusted_devices import list_trusted_devices, revoke_trusted_device
from panelauth.core.responses import ok
from panelauth.database.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/user", tags=["user"])


@router.get("/profile")
async def profile(current_user: User = Depends(get_current_user)):
    return ok(user_projection(current_user))


# ---------- 2FA enrollment ----------
@router.post("/two-factor/setup")
async def two_factor_setup(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ok(two_factor.begin_setup(db, current_user))


@router.post("/two-factor/enable")
async def two_factor_enable(
    body: TwoFactorCodeRequest, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    codes = two_factor.confirm_setup(db, current_user, body.code)
    return ok({"backup_codes": codes}, "Two-factor authentication enabled")


@router.post("/two-factor/backup-codes")
async def two_factor_backup_codes(
    body: TwoFactorCodeRequest, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return ok({"backup_codes": two_factor.regenerate_backup_codes(db, current_user, body.code)})


@router.post("/two-factor/disable")
async def two_factor_disable(
    body: TwoFactorDisableRequest, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    two_factor.disable(db, current_user, body.password, body.code)
    return ok(None, "Two-factor authentication disabled")


@router.get("/two-factor/trusted-devices")
async def trusted_devices(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    devices = list_trusted_devices(db, current_user.id)
    return ok([TrustedDeviceOut.model_validate(d) for d in devices])


@router.delete("/two-factor/trusted-devices/{device_id}")
async def delete_trusted_device(
    device_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    if not revoke_trusted_device(db, current_user.id, device_id):
        raise HTTPException(status_code=404, detail="Trusted device not found")
    return ok(None, "Trusted device removed")


# ---------- passkeys ----------
@router.post("/passkey/register/options")
async def passkey_register_options(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
):
    rp_id, origin = expected_rp(request)
    return ok(registration_options(db, store, current_user, rp_id, origin))


@router.post("/passkey/register/verify")
async def passkey_register_verify(
    body: PasskeyCredentialRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
):
    passkey = verify_registration(db, store, current_user, body.credential, body.device_name)
    return ok(PasskeyOut.model_validate(passkey), "Passkey registered")


@router.get("/passkeys")
async def passkeys(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ok([PasskeyOut.model_validate(p) for p in list_passkeys(db, current_user.id)])


@router.delete("/passkeys/{passkey_id}")
async def remove_passkey(
    passkey_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    if not delete_passkey(db, current_user.id, passkey_id):
        raise HTTPException(status_code=404, detail="Passkey not found")
    return ok(None, "Passkey removed")
