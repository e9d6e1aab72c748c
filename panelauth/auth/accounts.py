import logging
import uuid

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from panelauth.auth.crypto import hash_password, random_string
from panelauth.auth.models import User
from panelauth.services.referral import generate_invite_code, record_invite_usage

logger = logging.getLogger(__name__)


def find_user_by_email(db: Session, email: str | None) -> User | None:
    email = (email or "").strip().lower()
    if not email:
        return None
    return db.query(User).filter(User.email == email).first()


def username_exists(db: Session, username: str) -> bool:
    return db.query(User.id).filter(User.username == username).first() is not None


def create_account(db: Session, email: str, username: str, password: str, inviter: User | None = None) -> User:
    """Materialize a credential record with fresh panel secrets.

    The invite increment and the insert share one commit.
    """
    user = User(
        email=email.strip().lower(),
        username=username,
        password_hash=hash_password(password),
        uuid=str(uuid.uuid4()),
        passwd=random_string(16),
        token=random_string(32),
        invite_code=generate_invite_code(db),
        invited_by=inviter.id if inviter is not None else None,
    )
    try:
        if inviter is not None:
            record_invite_usage(db, inviter.id)
        db.add(user); db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning("Account creation for %s lost a uniqueness race", user.email)
        raise HTTPException(status_code=409, detail="Email or username is already registered")
    except HTTPException:
        db.rollback()
        raise
    db.refresh(user)
    logger.info("Created account %s", user.id)
    return user
