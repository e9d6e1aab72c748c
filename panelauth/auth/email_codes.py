"""Six-digit codes mailed for registration and password reset.

A code lives in the challenge store under its purpose and email. A new request
replaces the previous code. A correct code is taken exactly once. Wrong guesses
count against the code until it is discarded.
"""
import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from fastapi import HTTPException
from starlette.concurrency import run_in_threadpool

from panelauth.auth.challenge_store import ChallengeStore
from panelauth.auth.crypto import sha256_hex
from panelauth.core import config
from panelauth.database.database import utcnow

logger = logging.getLogger(__name__)

PURPOSE_REGISTER = "register"
PURPOSE_PASSWORD_RESET = "password_reset"

_TITLES = {
    PURPOSE_REGISTER: "Your registration code",
    PURPOSE_PASSWORD_RESET: "Your password reset code",
}


def _code_key(purpose: str, email: str) -> str:
    return f"email_code_{purpose}_{email}"


def _cooldown_key(purpose: str, email: str) -> str:
    return f"email_code_cooldown_{purpose}_{email}"


def _hash(email: str, code: str) -> str:
    return sha256_hex(f"{email}:{code}")


def verification_enabled(mailer: Optional[Callable[..., None]]) -> bool:
    return config.REGISTER_EMAIL_VERIFICATION == "1" and mailer is not None


async def send_code(
    store: ChallengeStore, mailer: Optional[Callable[..., None]], email: str, purpose: str
) -> Dict[str, Any]:
    if mailer is None:
        raise HTTPException(status_code=403, detail="Email delivery is not configured")
    email = email.strip().lower()
    if store.get(_cooldown_key(purpose, email)):
        raise HTTPException(
            status_code=429,
            detail=f"Codes can be requested every {config.EMAIL_CODE_COOLDOWN} seconds, please wait",
        )

    code = f"{secrets.randbelow(10 ** 6):06d}"
    ttl = config.EMAIL_CODE_EXPIRE_MINUTES * 60
    key = _code_key(purpose, email)
    store.set(
        key,
        {
            "codeHash": _hash(email, code),
            "attempts": 0,
            "expiresAt": (utcnow() + timedelta(seconds=ttl)).isoformat(),
        },
        ttl,
    )

    title = _TITLES[purpose]
    subject = f"{config.SITE_NAME}: {title.lower()}"
    text = (
        f"{title}: {code}\n"
        f"It expires in {config.EMAIL_CODE_EXPIRE_MINUTES} minutes.\n"
        "If you did not request it, ignore this email."
    )
    html = "<br>".join(text.splitlines())
    try:
        await run_in_threadpool(mailer, email, subject, html, text)
    except Exception:
        store.delete(key)
        logger.exception("Sending %s code failed", purpose)
        raise HTTPException(status_code=500, detail="Failed to send the verification code, try again later")

    if config.EMAIL_CODE_COOLDOWN > 0:
        store.set(_cooldown_key(purpose, email), {"sentAt": utcnow().isoformat()}, config.EMAIL_CODE_COOLDOWN)
    logger.info("Sent %s code", purpose)
    return {"cooldown": config.EMAIL_CODE_COOLDOWN, "expire_minutes": config.EMAIL_CODE_EXPIRE_MINUTES}


def consume_code(store: ChallengeStore, email: str, purpose: str, code: str | None) -> None:
    """Raise unless ``code`` is the live code for ``email``; a match is single use."""
    code = (code or "").strip()
    if not code:
        raise HTTPException(status_code=400, detail="Verification code is required")
    if len(code) != 6 or not code.isdigit():
        raise HTTPException(status_code=400, detail="Verification code must be 6 digits")

    email = email.strip().lower()
    key = _code_key(purpose, email)
    record = store.take(key)
    if not record:
        raise HTTPException(status_code=400, detail="Verification code expired or not found, request a new one")
    if hmac.compare_digest(record["codeHash"], _hash(email, code)):
        return

    attempts = int(record.get("attempts") or 0) + 1
    if attempts >= config.EMAIL_CODE_ATTEMPT_LIMIT:
        logger.warning("Too many wrong %s codes; code discarded", purpose)
        raise HTTPException(status_code=429, detail="Too many incorrect attempts, request a new code")
    remaining = int((datetime.fromisoformat(record["expiresAt"]) - utcnow()).total_seconds())
    if remaining > 0:
        store.set(key, {**record, "attempts": attempts}, remaining)
    raise HTTPException(status_code=400, detail="Incorrect verification code")
