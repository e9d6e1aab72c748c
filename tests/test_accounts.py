import pytest
from fastapi import HTTPException

from panelauth.auth.accounts import create_account
from panelauth.auth.models import User
from tests.support import PASSWORD


def test_account_gets_panel_secrets(db):
    user = create_account(db, " New@Example.com ", "newbie", PASSWORD)
    assert user.email == "new@example.com"
    assert len(user.passwd) == 16 and len(user.token) == 32
    assert len(user.invite_code) == 8
    assert user.password_hash.startswith("$argon2")


def test_failed_insert_does_not_spend_an_invite(db, make_user):
    inviter = make_user("inviter@example.com", invite_limit=2)
    make_user("taken@example.com")
    with pytest.raises(HTTPException) as exc:
        create_account(db, "taken@example.com", "someone", PASSWORD, inviter)
    assert exc.value.status_code == 409
    db.expire_all()
    assert db.get(User, inviter.id).invite_used == 0
    assert db.query(User).filter(User.username == "someone").first() is None


def test_exhausted_invite_creates_nothing(db, make_user):
    inviter = make_user("inviter@example.com", invite_limit=1)
    first = create_account(db, "a@example.com", "aaa", PASSWORD, inviter)
    assert first.invited_by == inviter.id
    with pytest.raises(HTTPException) as exc:
        create_account(db, "b@example.com", "bbb", PASSWORD, inviter)
    assert exc.value.status_code == 400
    db.expire_all()
    assert db.get(User, inviter.id).invite_used == 1
    assert db.query(User).filter(User.email == "b@example.com").first() is None
