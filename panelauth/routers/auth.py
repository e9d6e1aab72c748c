import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from panelauth.auth import orchestrator
from panelauth.auth.challenge_store import ChallengeStore, get_challenge_store
from panelauth.auth.login_log import ClientContext, client_context
from panelauth.auth.models import User
from panelauth.auth.passkeys import authentication_options
from panelauth.auth.schemas import (
    EmailCodeRequest,
    GithubLoginRequest,
    GoogleLoginRequest,
    LoginRequest,
    OAuthCompleteRequest,
    PasskeyCredentialRequest,
    PasskeyLoginOptionsRequest,
    PasswordResetConfirmRequest,
    RegisterRequest,
    VerifyTwoFactorRequest,
)
from panelauth.auth.sessions import get_current_user, get_token_from_request, user_projection
from panelauth.core.responses import ok
from panelauth.database.database import get_db
from panelauth.services.mailer import get_mailer

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


# ---------- password ----------
@router.post("/login")
async def login(
    body: LoginRequest,
    ctx: ClientContext = Depends(client_context),
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
):
    result = await orchestrator.login_with_password(
        db,
        store,
        body.email,
        body.password,
        body.remember,
        ctx,
        trust_token=body.two_factor_trust_token,
        turnstile_token=body.turnstile_token,
    )
    return ok(result, "Verification required" if result.get("need_2fa") else "Login successful")


@router.post("/register")
async def register(
    body: RegisterRequest,
    ctx: ClientContext = Depends(client_context),
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
    mailer=Depends(get_mailer),
):
    result = orchestrator.register(
        db, store, body.email, body.username, body.password, ctx, body.invite_code, body.verification_code, mailer
    )
    return ok(result, "Registration successful")


@router.post("/send-email-code")
async def send_email_code(
    body: EmailCodeRequest,
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
    mailer=Depends(get_mailer),
):
    result = await orchestrator.send_register_code(db, store, body.email, mailer)
    return ok(result, "Verification code sent")


@router.post("/password-reset/request")
async def password_reset_request(
    body: EmailCodeRequest,
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
    mailer=Depends(get_mailer),
):
    result = await orchestrator.request_password_reset(db, store, body.email, mailer)
    return ok(result, "Verification code sent")


@router.post("/password-reset/confirm")
async def password_reset_confirm(
    body: PasswordResetConfirmRequest,
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
    mailer=Depends(get_mailer),
):
    orchestrator.reset_password(
        db, store, body.email, body.verification_code, body.new_password, body.confirm_password, mailer
    )
    return ok(None, "Password has been reset")


# ---------- second factor ----------
@router.post("/verify-2fa")
async def verify_2fa(
    body: VerifyTwoFactorRequest,
    ctx: ClientContext = Depends(client_context),
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
):
    result = orchestrator.verify_two_factor(
        db, store, body.challenge_id, body.code, ctx, body.remember_device, body.device_name
    )
    return ok(result, "Login successful")


# ---------- passkeys ----------
@router.post("/passkey/login/options")
async def passkey_login_options(
    body: PasskeyLoginOptionsRequest,
    request: Request,
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
):
    return ok(authentication_options(db, store, body.email, body.remember, request))


@router.post("/passkey/login/verify")
async def passkey_login_verify(
    body: PasskeyCredentialRequest,
    ctx: ClientContext = Depends(client_context),
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
):
    return ok(orchestrator.login_with_passkey(db, store, body.credential, ctx), "Login successful")


# ---------- OAuth ----------
@router.post("/google")
async def google_login(
    body: GoogleLoginRequest,
    ctx: ClientContext = Depends(client_context),
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
):
    try:
        result = await orchestrator.login_with_google(
            db, store, body.id_token, body.remember, ctx, body.two_factor_trust_token
        )
    except HTTPException:
        raise
    except Exception:
        logger.exception("Google login failed")
        raise HTTPException(status_code=500, detail="Authentication failed")
    return ok(result)


@router.post("/github")
async def github_login(
    body: GithubLoginRequest,
    ctx: ClientContext = Depends(client_context),
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
):
    try:
        result = await orchestrator.login_with_github(
            db, store, body.code, body.remember, ctx, body.redirect_uri, body.two_factor_trust_token
        )
    except HTTPException:
        raise
    except Exception:
        logger.exception("GitHub login failed")
        raise HTTPException(status_code=500, detail="Authentication failed")
    return ok(result)


@router.post("/oauth/complete")
async def oauth_complete(
    body: OAuthCompleteRequest,
    ctx: ClientContext = Depends(client_context),
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
    mailer=Depends(get_mailer),
):
    result = await orchestrator.complete_oauth_registration(
        db, store, body.pending_token, ctx, body.invite_code, mailer
    )
    return ok(result, "Login successful")


# ---------- session ----------
@router.post("/logout")
async def logout(request: Request, store: ChallengeStore = Depends(get_challenge_store)):
    orchestrator.logout(store, get_token_from_request(request))
    return ok(None, "Logged out")


@router.get("/session")
async def session(current_user: User = Depends(get_current_user)):
    # Built from the row so 2FA or status changes show up without a new login
    return ok(user_projection(current_user))
