from datetime import timedelta

import jwt

from panelauth.auth.challenge_store import MemoryChallengeStore
from panelauth.auth.sessions import issue_session, revoke_session, validate_session
from panelauth.core.config import JWT_ALG, JWT_SECRET
from panelauth.database.database import utcnow


def test_issue_and_validate(make_user):
    store = MemoryChallengeStore()
    user = make_user(is_admin=True)
    token, projection = issue_session(store, user, remember=False)

    payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    assert payload["sub"] == str(user.id)
    assert payload["email"] == "alice@example.com"
    assert payload["is_admin"] is True
    assert timedelta(days=1, hours=23) < timedelta(seconds=payload["exp"] - payload["iat"]) <= timedelta(days=2)

    assert validate_session(store, token) == projection
    assert projection["username"] == "alice"
    assert "password_hash" not in projection


def test_remember_extends_lifetime(make_user):
    token, _ = issue_session(MemoryChallengeStore(), make_user(), remember=True)
    payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    assert payload["exp"] - payload["iat"] == 7 * 24 * 3600


def test_revoked_session_is_dead_although_signature_is_valid(make_user):
    store = MemoryChallengeStore()
    token, _ = issue_session(store, make_user(), remember=False)
    revoke_session(store, token)
    jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    assert validate_session(store, token) is None


def test_forged_or_expired_tokens_are_rejected(make_user):
    store = MemoryChallengeStore()
    user = make_user()
    token, _ = issue_session(store, user, remember=False)
    assert validate_session(store, token + "x") is None
    assert validate_session(store, None) is None

    forged = jwt.encode({"sub": str(user.id), "exp": utcnow() + timedelta(hours=1)}, "other-secret", algorithm=JWT_ALG)
    assert validate_session(store, forged) is None

    expired = jwt.encode({"sub": str(user.id), "exp": utcnow() - timedelta(seconds=5)}, JWT_SECRET, algorithm=JWT_ALG)
    assert validate_session(store, expired) is None


def test_each_login_gets_its_own_mirror(make_user):
    store = MemoryChallengeStore()
    user = make_user()
    first, _ = issue_session(store, user, remember=False)
    second, _ = issue_session(store, user, remember=False)
    assert first != second
    revoke_session(store, first)
    assert validate_session(store, second) is not None
