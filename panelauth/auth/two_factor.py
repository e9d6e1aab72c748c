"""TOTP and backup-code factor bound to the users table.

The three 2FA columns are never written directly; every transition goes
through ``write_two_factor_state`` so a row is always exactly one of
Unconfigured, PendingConfirmation or Active.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Tuple, Union

from fastapi import HTTPException
from sqlalchemy.orm import Session

from panelauth.auth.crypto import secret_cipher, verify_password
from panelauth.auth.mfa_utils import (
    create_totp_secret,
    generate_backup_codes,
    hash_code,
    normalize_backup_code,
    qr_png_base64,
    totp_uri,
    verify_totp,
)
from panelauth.auth.models import User
from panelauth.auth.trusted_devices import revoke_trusted_devices
from panelauth.database.database import utcnow

logger = logging.getLogger(__name__)

MIN_BACKUP_CODE_LENGTH = 6


@dataclass(frozen=True)
class Unconfigured:
    pass


@dataclass(frozen=True)
class PendingConfirmation:
    secret: str


@dataclass(frozen=True)
class Active:
    secret: str
    backup_hashes: Tuple[str, ...] = field(default_factory=tuple)


TwoFactorState = Union[Unconfigured, PendingConfirmation, Active]


def _load_hashes(raw: str | None) -> list:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("Unreadable backup code list; treating as empty")
        return []
    return [h for h in data if isinstance(h, str)] if isinstance(data, list) else []


def is_two_factor_active(user: User) -> bool:
    return bool(user.two_factor_enabled and user.two_factor_secret)


def two_factor_state(user: User) -> TwoFactorState:
    if is_two_factor_active(user):
        return Active(
            secret=secret_cipher.decrypt(user.two_factor_secret),
            backup_hashes=tuple(_load_hashes(user.two_factor_backup_codes)),
        )
    if user.two_factor_temp_secret:
        return PendingConfirmation(secret=secret_cipher.decrypt(user.two_factor_temp_secret))
    return Unconfigured()


def write_two_factor_state(user: User, state: TwoFactorState) -> None:
    """Write ``state`` onto the row, clearing every column the state does not own."""
    if isinstance(state, Active):
        user.two_factor_enabled = True
        user.two_factor_secret = secret_cipher.encrypt(state.secret)
        user.two_factor_temp_secret = None
        user.two_factor_backup_codes = json.dumps(list(state.backup_hashes))
        user.two_factor_confirmed_at = user.two_factor_confirmed_at or utcnow()
    elif isinstance(state, PendingConfirmation):
        user.two_factor_enabled = False
        user.two_factor_secret = None
        user.two_factor_temp_secret = secret_cipher.encrypt(state.secret)
        user.two_factor_backup_codes = None
        user.two_factor_confirmed_at = None
    else:
        user.two_factor_enabled = False
        user.two_factor_secret = None
        user.two_factor_temp_secret = None
        user.two_factor_backup_codes = None
        user.two_factor_confirmed_at = None


def consume_backup_code(db: Session, user: User, code: str | None) -> bool:
    normalized = normalize_backup_code(code)
    if len(normalized) < MIN_BACKUP_CODE_LENGTH:
        return False
    stored = user.two_factor_backup_codes
    hashes = _load_hashes(stored)
    digest = hash_code(normalized)
    if digest not in hashes:
        return False
    hashes.remove(digest)
    # Only succeeds if nobody changed the list since we read it
    updated = (
        db.query(User)
        .filter(User.id == user.id, User.two_factor_backup_codes == stored)
        .update({User.two_factor_backup_codes: json.dumps(hashes)}, synchronize_session=False)
    )
    db.commit()
    db.refresh(user)
    return updated == 1


def verify_second_factor(db: Session, user: User, code: str | None) -> bool:
    """TOTP first, then a single-use backup code. Wrong codes return False."""
    state = two_factor_state(user)
    if not isinstance(state, Active):
        return False
    if verify_totp(state.secret, code):
        return True
    return consume_backup_code(db, user, code)


def begin_setup(db: Session, user: User) -> dict:
    if is_two_factor_active(user):
        raise HTTPException(status_code=400, detail="Two-factor authentication is already enabled")
    secret = create_totp_secret()
    write_two_factor_state(user, PendingConfirmation(secret=secret))
    db.add(user); db.commit(); db.refresh(user)

    uri = totp_uri(secret, user.email)
    return {
        "secret": secret,
        "otp_auth_url": uri,
        "provisioning_uri": uri,
        "qr_code": f"data:image/png;base64,{qr_png_base64(uri)}",
    }


def confirm_setup(db: Session, user: User, code: str | None) -> list:
    state = two_factor_state(user)
    if not isinstance(state, PendingConfirmation):
        raise HTTPException(status_code=400, detail="Start two-factor setup first")
    if not verify_totp(state.secret, code):
        raise HTTPException(status_code=400, detail="Incorrect code")

    codes, hashes = generate_backup_codes()
    write_two_factor_state(user, Active(secret=state.secret, backup_hashes=tuple(hashes)))
    db.add(user); db.commit(); db.refresh(user)
    revoke_trusted_devices(db, user.id)
    logger.info("Two-factor authentication enabled for user %s", user.id)
    return codes


def regenerate_backup_codes(db: Session, user: User, code: str | None) -> list:
    state = two_factor_state(user)
    if not isinstance(state, Active):
        raise HTTPException(status_code=400, detail="Two-factor authentication is not enabled")
    if not verify_totp(state.secret, code):
        raise HTTPException(status_code=400, detail="Incorrect code")

    codes, hashes = generate_backup_codes()
    write_two_factor_state(user, Active(secret=state.secret, backup_hashes=tuple(hashes)))
    db.add(user); db.commit(); db.refresh(user)
    return codes


def disable(db: Session, user: User, password: str | None, code: str | None) -> None:
    if not is_two_factor_active(user):
        raise HTTPException(status_code=400, detail="Two-factor authentication is not enabled")
    if not password or not code:
        raise HTTPException(status_code=400, detail="Password and verification code are required")
    if not verify_password(password, user.password_hash):
        raise HTTPException(status_code=401, detail="Password incorrect")
    if not verify_second_factor(db, user, code):
        raise HTTPException(status_code=401, detail="Invalid verification code")

    write_two_factor_state(user, Unconfigured())
    db.add(user); db.commit(); db.refresh(user)
    revoke_trusted_devices(db, user.id)
    logger.info("Two-factor authentication disabled for user %s", user.id)
