"""Login state machine shared by password, OAuth and passkey sign-in.

Every path ends in ``finalize_login`` so sessions look the same whichever
factor produced them. The only pause between requests is the MFA challenge.
"""
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from panelauth.auth import email_codes, login_log
from panelauth.auth.accounts import create_account, find_user_by_email, username_exists
from panelauth.auth.challenge_store import ChallengeStore
from panelauth.auth.crypto import hash_password, password_needs_rehash, random_string, verify_password
from panelauth.auth.login_log import ClientContext, record_login
from panelauth.auth.mfa_utils import sign_token, unsign_token
from panelauth.auth.models import User
from panelauth.auth.oauth import (
    OAuthIdentity,
    bind_oauth_identity,
    exchange_github_code,
    get_github_identity,
    match_oauth_account,
    resolve_username,
    sanitize_username,
    verify_google_id_token,
)
from panelauth.auth.passkeys import PasskeyVerificationError, verify_authentication
from panelauth.auth.sessions import issue_session, revoke_session
from panelauth.auth.trusted_devices import issue_trusted_device, revoke_trusted_devices, validate_trusted_device
from panelauth.auth.two_factor import is_two_factor_active, verify_second_factor
from panelauth.core import config
from panelauth.database.database import utcnow
from panelauth.services.referral import resolve_inviter
from panelauth.services.turnstile import verify_turnstile

logger = logging.getLogger(__name__)

METHOD_PASSWORD = "password"
METHOD_PASSKEY = "passkey"
METHOD_REGISTER = "register"
OAUTH_METHODS = {"google": "google_oauth", "github": "github_oauth"}


def _mfa_key(challenge_id: str) -> str:
    return f"twofa_challenge_{challenge_id}"


def _pending_key(token: str) -> str:
    return f"oauth_pending_{token}"


def should_require_two_factor(db: Session, user: User, trust_token: str | None) -> bool:
    if not is_two_factor_active(user):
        return False
    return not validate_trusted_device(db, user.id, trust_token)


def create_mfa_challenge(
    store: ChallengeStore, user: User, remember: bool, method: str, ctx: ClientContext, meta: Optional[Dict[str, Any]] = None
) -> str:
    challenge_id = random_string(48)
    store.set(
        _mfa_key(challenge_id),
        {
            "userId": user.id,
            "remember": bool(remember),
            "loginMethod": method,
            "clientIP": ctx.ip,
            "userAgent": ctx.user_agent,
            "issuedAt": utcnow().isoformat(),
            "meta": meta or {},
        },
        config.MFA_CHALLENGE_TTL,
    )
    return sign_token(challenge_id)


def _ensure_account_usable(db: Session, user: User, method: str, ctx: ClientContext) -> None:
    if user.status != 1:
        record_login(db, user.id, ctx, False, method, login_log.REASON_ACCOUNT_DISABLED)
        raise HTTPException(status_code=403, detail="Account disabled")
    if user.expire_time and user.expire_time < utcnow():
        record_login(db, user.id, ctx, False, method, login_log.REASON_ACCOUNT_EXPIRED)
        raise HTTPException(status_code=403, detail="Account expired")


def finalize_login(
    db: Session,
    store: ChallengeStore,
    user: User,
    remember: bool,
    method: str,
    ctx: ClientContext,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    token, projection = issue_session(store, user, remember)
    user.last_login_time = utcnow()
    user.last_login_ip = ctx.ip or None
    db.add(user); db.commit()
    record_login(db, user.id, ctx, True, method)
    return {"token": token, "user": projection, "remember": bool(remember), **(extra or {})}


def continue_login(
    db: Session,
    store: ChallengeStore,
    user: User,
    remember: bool,
    method: str,
    ctx: ClientContext,
    trust_token: str | None = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Steps after a primary factor succeeded: account checks, bypass, challenge or session."""
    _ensure_account_usable(db, user, method, ctx)
    if should_require_two_factor(db, user, trust_token):
        challenge_id = create_mfa_challenge(store, user, remember, method, ctx, meta)
        return {"need_2fa": True, "challenge_id": challenge_id, "two_factor_enabled": True}
    return finalize_login(db, store, user, remember, method, ctx, meta)


async def login_with_password(
    db: Session,
    store: ChallengeStore,
    email: str,
    password: str,
    remember: bool,
    ctx: ClientContext,
    trust_token: str | None = None,
    turnstile_token: str | None = None,
) -> Dict[str, Any]:
    if config.TURNSTILE_SECRET_KEY:
        if not turnstile_token:
            raise HTTPException(status_code=400, detail="Human verification is required")
        if not await verify_turnstile(turnstile_token, ctx.ip):
            raise HTTPException(status_code=400, detail="Human verification failed")

    user = find_user_by_email(db, email)
    if not user:
        record_login(db, None, ctx, False, METHOD_PASSWORD, login_log.REASON_ACCOUNT_NOT_FOUND)
        raise HTTPException(status_code=401, detail="Account not found")
    if not verify_password(password, user.password_hash):
        record_login(db, user.id, ctx, False, METHOD_PASSWORD, login_log.REASON_PASSWORD_INCORRECT)
        raise HTTPException(status_code=401, detail="Password incorrect")
    if password_needs_rehash(user.password_hash):
        user.password_hash = hash_password(password)
        db.add(user); db.commit(); db.refresh(user)

    return continue_login(db, store, user, remember, METHOD_PASSWORD, ctx, trust_token)


def verify_two_factor(
    db: Session,
    store: ChallengeStore,
    challenge_id: str | None,
    code: str | None,
    ctx: ClientContext,
    remember_device: bool = False,
    device_name: str | None = None,
) -> Dict[str, Any]:
    if not challenge_id or not code:
        raise HTTPException(status_code=400, detail="Challenge id and code are required")
    raw = unsign_token(challenge_id, max_age=config.MFA_CHALLENGE_TTL)
    # Single use: a wrong code also burns the challenge
    challenge = store.take(_mfa_key(raw)) if raw else None
    if not challenge:
        raise HTTPException(status_code=400, detail="Verification expired or not found, please log in again")

    user = db.query(User).filter(User.id == challenge.get("userId")).first()
    if not user or not is_two_factor_active(user):
        raise HTTPException(status_code=400, detail="Two-factor authentication is not enabled")

    method = challenge.get("loginMethod") or METHOD_PASSWORD
    if not verify_second_factor(db, user, code):
        record_login(db, user.id, ctx, False, method, login_log.REASON_TWO_FACTOR_FAILED)
        raise HTTPException(status_code=401, detail="Invalid verification code")

    extra = dict(challenge.get("meta") or {})
    if remember_device:
        trust_token, expires_at = issue_trusted_device(db, user.id, ctx.user_agent, device_name)
        extra["trust_token"] = trust_token
        extra["trust_token_expires_at"] = expires_at.isoformat()
    return finalize_login(db, store, user, bool(challenge.get("remember")), method, ctx, extra)


def login_with_passkey(db: Session, store: ChallengeStore, credential: Dict[str, Any], ctx: ClientContext) -> Dict[str, Any]:
    try:
        user, remember = verify_authentication(db, store, credential)
    except PasskeyVerificationError as exc:
        if exc.user_id is not None:
            record_login(db, exc.user_id, ctx, False, METHOD_PASSKEY, exc.detail)
        raise
    _ensure_account_usable(db, user, METHOD_PASSKEY, ctx)
    # User verification is required for passkey sign-in, so no TOTP step follows
    return finalize_login(db, store, user, remember, METHOD_PASSKEY, ctx)


def _start_pending_registration(store: ChallengeStore, identity: OAuthIdentity, remember: bool, ctx: ClientContext) -> str:
    raw = random_string(48)
    store.set(
        _pending_key(raw),
        {
            "provider": identity.provider,
            "email": identity.email,
            "providerId": identity.provider_id,
            "usernameCandidates": [c for c in identity.username_candidates if c],
            "fallbackSeed": identity.fallback_seed,
            "avatar": identity.avatar,
            "remember": bool(remember),
            "clientIP": ctx.ip,
            "userAgent": ctx.user_agent,
        },
        config.PENDING_OAUTH_TTL,
    )
    return sign_token(raw)


def _oauth_login(
    db: Session, store: ChallengeStore, identity: OAuthIdentity, remember: bool, trust_token: str | None, ctx: ClientContext
) -> Dict[str, Any]:
    user = match_oauth_account(db, identity.provider, identity.provider_id, identity.email)
    if not user:
        username = resolve_username(
            identity.username_candidates, identity.fallback_seed, lambda name: username_exists(db, name)
        )
        token = _start_pending_registration(store, identity, remember, ctx)
        return {
            "need_terms_agreement": True,
            "pending_terms_token": token,
            "provider": identity.provider,
            "profile": {"email": identity.email, "username": username, "avatar": identity.avatar},
        }

    bind_oauth_identity(db, user, identity.provider, identity.provider_id)
    return continue_login(
        db, store, user, remember, OAUTH_METHODS[identity.provider], ctx, trust_token, {"provider": identity.provider}
    )


async def login_with_google(
    db: Session, store: ChallengeStore, id_token: str, remember: bool, ctx: ClientContext, trust_token: str | None = None
) -> Dict[str, Any]:
    if not id_token:
        raise HTTPException(status_code=400, detail="Missing Google credential")
    identity = await verify_google_id_token(id_token)
    return _oauth_login(db, store, identity, remember, trust_token, ctx)


async def login_with_github(
    db: Session,
    store: ChallengeStore,
    code: str,
    remember: bool,
    ctx: ClientContext,
    redirect_uri: str | None = None,
    trust_token: str | None = None,
) -> Dict[str, Any]:
    if not code:
        raise HTTPException(status_code=400, detail="Missing GitHub authorization code")
    access_token = await exchange_github_code(code, redirect_uri)
    identity = await get_github_identity(access_token)
    return _oauth_login(db, store, identity, remember, trust_token, ctx)


async def _send_welcome_email(mailer: Optional[Callable[..., None]], user: User, password: str, provider: str) -> bool:
    if mailer is None:
        return False
    subject = f"Welcome to {config.SITE_NAME}"
    text = (
        f"Your account was created with {provider} sign-in.\n"
        f"Username: {user.username}\n"
        f"Password: {password}\n"
        "You can change this password after logging in."
    )
    html = "<br>".join(text.splitlines())
    try:
        await run_in_threadpool(mailer, user.email, subject, html, text)
    except Exception:
        logger.exception("Welcome email to user %s failed", user.id)
        return False
    return True


async def complete_oauth_registration(
    db: Session,
    store: ChallengeStore,
    pending_token: str | None,
    ctx: ClientContext,
    invite_code: str | None = None,
    mailer: Optional[Callable[..., None]] = None,
) -> Dict[str, Any]:
    if not pending_token:
        raise HTTPException(status_code=400, detail="Missing registration token")
    raw = unsign_token(pending_token, max_age=config.PENDING_OAUTH_TTL)
    pending = store.take(_pending_key(raw)) if raw else None
    if not pending:
        raise HTTPException(status_code=410, detail="Registration session expired, please sign in again")

    provider = pending["provider"]
    user = match_oauth_account(db, provider, pending["providerId"], pending["email"])
    meta: Dict[str, Any] = {"isNewUser": False, "provider": provider, "passwordEmailSent": False}
    if not user:
        if config.REGISTER_MODE == "0":
            raise HTTPException(status_code=403, detail="Registration is closed")
        inviter = resolve_inviter(db, invite_code, required=config.REGISTER_MODE == "2")
        username = resolve_username(
            pending.get("usernameCandidates") or [], pending.get("fallbackSeed"), lambda name: username_exists(db, name)
        )
        temp_password = random_string(32)
        user = create_account(db, pending["email"], username, temp_password, inviter)
        sent = await _send_welcome_email(mailer, user, temp_password, provider)
        meta.update(isNewUser=True, passwordEmailSent=sent)
        if not sent:
            meta["tempPassword"] = temp_password

    bind_oauth_identity(db, user, provider, pending["providerId"])
    # Trust tokens never reach the store, so an account with 2FA is challenged here
    return continue_login(
        db, store, user, bool(pending.get("remember")), OAUTH_METHODS[provider], ctx, None, meta
    )


def register(
    db: Session,
    store: ChallengeStore,
    email: str,
    username: str,
    password: str,
    ctx: ClientContext,
    invite_code: str | None = None,
    verification_code: str | None = None,
    mailer: Optional[Callable[..., None]] = None,
) -> Dict[str, Any]:
    if config.REGISTER_MODE == "0":
        raise HTTPException(status_code=403, detail="Registration is closed")
    name = sanitize_username(username)
    if len(name) < 3 or name != username.strip().lower():
        raise HTTPException(status_code=400, detail="Username must be 3-30 letters, digits or underscores")
    if find_user_by_email(db, email):
        raise HTTPException(status_code=409, detail="Email is already registered")
    if username_exists(db, name):
        raise HTTPException(status_code=409, detail="Username is already taken")
    if email_codes.verification_enabled(mailer):
        email_codes.consume_code(store, email, email_codes.PURPOSE_REGISTER, verification_code)
    inviter = resolve_inviter(db, invite_code, required=config.REGISTER_MODE == "2")
    user = create_account(db, email, name, password, inviter)
    return finalize_login(db, store, user, False, METHOD_REGISTER, ctx)


async def send_register_code(
    db: Session, store: ChallengeStore, email: str, mailer: Optional[Callable[..., None]]
) -> Dict[str, Any]:
    if config.REGISTER_MODE == "0":
        raise HTTPException(status_code=403, detail="Registration is closed")
    if not email_codes.verification_enabled(mailer):
        raise HTTPException(status_code=403, detail="Email verification is not enabled")
    if find_user_by_email(db, email):
        raise HTTPException(status_code=409, detail="Email is already registered")
    return await email_codes.send_code(store, mailer, email, email_codes.PURPOSE_REGISTER)


async def request_password_reset(
    db: Session, store: ChallengeStore, email: str, mailer: Optional[Callable[..., None]]
) -> Dict[str, Any]:
    if mailer is None:
        raise HTTPException(status_code=403, detail="Password reset is not available")
    if not find_user_by_email(db, email):
        raise HTTPException(status_code=400, detail="No account is registered with this email")
    return await email_codes.send_code(store, mailer, email, email_codes.PURPOSE_PASSWORD_RESET)


def reset_password(
    db: Session,
    store: ChallengeStore,
    email: str,
    verification_code: str,
    new_password: str,
    confirm_password: str | None,
    mailer: Optional[Callable[..., None]],
) -> None:
    """Set a new password from a mailed code and forget every trusted device."""
    if confirm_password is not None and confirm_password != new_password:
        raise HTTPException(status_code=400, detail="Passwords do not match")
    if mailer is None:
        raise HTTPException(status_code=403, detail="Password reset is not available")
    user = find_user_by_email(db, email)
    if not user:
        raise HTTPException(status_code=404, detail="Account not found")
    email_codes.consume_code(store, user.email, email_codes.PURPOSE_PASSWORD_RESET, verification_code)

    user.password_hash = hash_password(new_password)
    db.add(user); db.commit()
    revoke_trusted_devices(db, user.id)
    logger.info("Password reset for user %s", user.id)


def logout(store: ChallengeStore, token: str | None) -> None:
    revoke_session(store, token)
