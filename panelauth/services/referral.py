from fastapi import HTTPException
from sqlalchemy import or_
from sqlalchemy.orm import Session

from panelauth.auth.crypto import random_string
from panelauth.auth.models import User

INVITE_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_invite_code(db: Session, length: int = 8) -> str:
    while True:
        code = random_string(length, INVITE_CODE_ALPHABET)
        if not db.query(User.id).filter(User.invite_code == code).first():
            return code


def _has_capacity():
    # invite_limit 0 means unlimited
    return or_(User.invite_limit == 0, User.invite_used < User.invite_limit)


def resolve_inviter(db: Session, invite_code: str | None, required: bool = False) -> User | None:
    code = (invite_code or "").strip().upper()
    if not code:
        if required:
            raise HTTPException(status_code=400, detail="An invite code is required to register")
        return None
    inviter = db.query(User).filter(User.invite_code == code).first()
    if not inviter:
        raise HTTPException(status_code=400, detail="Invalid invite code")
    if inviter.invite_limit and inviter.invite_used >= inviter.invite_limit:
        raise HTTPException(status_code=400, detail="This invite code has reached its usage limit")
    return inviter


def record_invite_usage(db: Session, inviter_id: int) -> None:
    """Guarded increment; the caller commits it together with the new account."""
    updated = (
        db.query(User)
        .filter(User.id == inviter_id, _has_capacity())
        .update({User.invite_used: User.invite_used + 1}, synchronize_session=False)
    )
    if updated != 1:
        raise HTTPException(status_code=400, detail="This invite code has reached its usage limit")
