import base64
import hashlib
import io
import secrets

import pyotp
import qrcode
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner

from panelauth.core.config import APP_SECRET, ISSUER_NAME

BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
TOTP_DIGITS = 6
TOTP_PERIOD = 30

_signer = TimestampSigner(APP_SECRET)


def create_totp_secret() -> str:
    return pyotp.random_base32(length=32)


def totp_uri(secret: str, account: str) -> str:
    return pyotp.totp.TOTP(secret).provisioning_uri(name=account, issuer_name=ISSUER_NAME)


def qr_png_base64(uri: str) -> str:
    buf = io.BytesIO()
    qrcode.make(uri).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode()


def normalize_totp_code(code: str | None) -> str:
    return "".join((code or "").split())


def verify_totp(secret: str, code: str | None, for_time=None, valid_window: int = 1) -> bool:
    """Accept codes from the previous, current and next 30 second step."""
    normalized = normalize_totp_code(code)
    if len(normalized) != TOTP_DIGITS or not normalized.isdigit():
        return False
    totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_PERIOD)
    return totp.verify(normalized, for_time=for_time, valid_window=valid_window)


def sign_token(raw: str) -> str:
    return _signer.sign(raw.encode()).decode()


def unsign_token(value: str | None, max_age: int) -> str | None:
    if not value:
        return None
    try:
        return _signer.unsign(value, max_age=max_age).decode()
    except (BadSignature, SignatureExpired):
        return None


def hash_code(s: str) -> str:
    return hashlib.sha256(s.encode()).hexdigest()


def normalize_backup_code(code: str | None) -> str:
    return "".join((code or "").split()).upper()


def generate_backup_codes(n=8, length=10):
    codes = ["".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(length)) for _ in range(n)]
    return codes, [hash_code(c) for c in codes]
