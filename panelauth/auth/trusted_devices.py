import logging
from datetime import datetime

from sqlalchemy.orm import Session

from panelauth.auth.crypto import random_string, sha256_hex
from panelauth.auth.models import TrustedDevice
from panelauth.core.config import TRUSTED_DEVICE_TTL
from panelauth.database.database import utcnow

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_NAME = "Trusted device"


def issue_trusted_device(db: Session, user_id: int, user_agent: str | None, label: str | None) -> tuple[str, datetime]:
    """Create a bypass token; only its hash is stored, the raw token is returned once."""
    token = random_string(64)
    now = utcnow()
    expires_at = now + TRUSTED_DEVICE_TTL
    device = TrustedDevice(
        user_id=user_id,
        token_hash=sha256_hex(token),
        device_name=((label or "").strip() or DEFAULT_DEVICE_NAME)[:64],
        user_agent=(user_agent or "")[:512] or None,
        expires_at=expires_at,
        last_used_at=now,
    )
    db.add(device); db.commit()
    return token, expires_at


def validate_trusted_device(db: Session, user_id: int, token: str | None) -> bool:
    if not token:
        return False
    now = utcnow()
    device = (
        db.query(TrustedDevice)
        .filter(
            TrustedDevice.user_id == user_id,
            TrustedDevice.token_hash == sha256_hex(token),
            TrustedDevice.disabled.is_(False),
            TrustedDevice.expires_at > now,
        )
        .first()
    )
    if not device:
        return False
    device.last_used_at = now
    db.add(device); db.commit()
    return True


def revoke_trusted_devices(db: Session, user_id: int) -> int:
    count = (
        db.query(TrustedDevice)
        .filter(TrustedDevice.user_id == user_id, TrustedDevice.disabled.is_(False))
        .update({TrustedDevice.disabled: True}, synchronize_session=False)
    )
    db.commit()
    if count:
        logger.info("Revoked %d trusted devices for user %s", count, user_id)
    return count


def revoke_trusted_device(db: Session, user_id: int, device_id: int) -> bool:
    count = (
        db.query(TrustedDevice)
        .filter(TrustedDevice.id == device_id, TrustedDevice.user_id == user_id, TrustedDevice.disabled.is_(False))
        .update({TrustedDevice.disabled: True}, synchronize_session=False)
    )
    db.commit()
    return count == 1


def list_trusted_devices(db: Session, user_id: int):
    return (
        db.query(TrustedDevice)
        .filter(
            TrustedDevice.user_id == user_id,
            TrustedDevice.disabled.is_(False),
            TrustedDevice.expires_at > utcnow(),
        )
        .order_by(TrustedDevice.created_at.desc())
        .all()
    )
