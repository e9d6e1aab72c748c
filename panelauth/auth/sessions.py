import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from panelauth.auth.challenge_store import ChallengeStore, get_challenge_store
from panelauth.auth.crypto import sha256_hex
from panelauth.auth.models import User
from panelauth.auth.two_factor import is_two_factor_active
from panelauth.core.config import JWT_ALG, JWT_SECRET, SESSION_TTL, SESSION_TTL_REMEMBER
from panelauth.database.database import get_db, utcnow

__all__ = [
    "issue_session",
    "validate_session",
    "revoke_session",
    "user_projection",
    "get_token_from_request",
    "get_current_session",
    "get_current_user",
]


def _session_key(token: str) -> str:
    return f"session_{sha256_hex(token)}"


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if value else None


def user_projection(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "is_admin": bool(user.is_admin),
        "status": user.status,
        "expire_time": _isoformat(user.expire_time),
        "two_factor_enabled": is_two_factor_active(user),
        "oauth_provider": user.oauth_provider,
        "invite_code": user.invite_code,
    }


def issue_session(store: ChallengeStore, user: User, remember: bool) -> tuple[str, Dict[str, Any]]:
    ttl: timedelta = SESSION_TTL_REMEMBER if remember else SESSION_TTL
    now = utcnow()
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "is_admin": bool(user.is_admin),
        "iat": now,
        "exp": now + ttl,
        "jti": secrets.token_hex(8),
    }
    token = jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)
    projection = user_projection(user)
    store.set(_session_key(token), projection, int(ttl.total_seconds()))
    return token, projection


def validate_session(store: ChallengeStore, token: str | None) -> Optional[Dict[str, Any]]:
    """A session is live only if the signature holds and the server-side mirror exists."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.PyJWTError:
        return None
    mirror = store.get(_session_key(token))
    if not mirror or str(mirror.get("id")) != payload.get("sub"):
        return None
    return mirror


def revoke_session(store: ChallengeStore, token: str | None) -> None:
    if token:
        store.delete(_session_key(token))


def get_token_from_request(request: Request) -> Optional[str]:
    raw = request.headers.get("authorization") or request.cookies.get("access_token")
    if not raw:
        return None
    parts = raw.split(" ", 1)
    return parts[1].strip() if len(parts) == 2 and parts[0].lower() == "bearer" else raw.strip()


async def get_current_session(
    request: Request, store: ChallengeStore = Depends(get_challenge_store)
) -> Dict[str, Any]:
    token = get_token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    session = validate_session(store, token)
    if not session:
        raise HTTPException(status_code=401, detail="Session expired, please log in again")
    return session


async def get_current_user(
    session: Dict[str, Any] = Depends(get_current_session), db: Session = Depends(get_db)
) -> User:
    user = db.query(User).filter(User.id == session["id"]).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if user.status != 1:
        raise HTTPException(status_code=403, detail="Account disabled")
    return user
