import base64
import hashlib
import hmac
import re
import secrets
import string

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from cryptography.fernet import Fernet, InvalidToken

from panelauth.core.config import TWO_FACTOR_SECRET_KEY

ALPHANUMERIC = string.ascii_letters + string.digits

_password_hasher = PasswordHasher()
_LEGACY_SHA256 = re.compile(r"^[0-9a-f]{64}$")


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def random_string(length: int, alphabet: str = ALPHANUMERIC) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def hash_password(plain: str) -> str:
    return _password_hasher.hash(plain)


def _is_legacy_hash(stored: str) -> bool:
    return bool(_LEGACY_SHA256.match(stored))


def verify_password(plain: str, stored: str | None) -> bool:
    """Check ``plain`` against an argon2 hash or a legacy unsalted sha256 digest."""
    if not plain or not stored:
        return False
    if _is_legacy_hash(stored):
        return hmac.compare_digest(sha256_hex(plain), stored)
    try:
        return _password_hasher.verify(stored, plain)
    except (VerificationError, InvalidHashError):
        return False


def password_needs_rehash(stored: str) -> bool:
    if _is_legacy_hash(stored):
        return True
    try:
        return _password_hasher.check_needs_rehash(stored)
    except InvalidHashError:
        return True


class SecretCipher:
    """Symmetric encryption for TOTP secrets stored in the users table."""

    def __init__(self, key_material: str):
        if not key_material:
            raise ValueError("Secret cipher requires non-empty key material")
        digest = hashlib.sha256(key_material.encode()).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise ValueError("Invalid secret ciphertext") from exc


secret_cipher = SecretCipher(TWO_FACTOR_SECRET_KEY)
