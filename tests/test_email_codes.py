import re

import pytest
from fastapi import HTTPException

from panelauth.auth import email_codes
from panelauth.auth.models import TrustedDevice, User
from panelauth.auth.trusted_devices import issue_trusted_device
from panelauth.core import config
from panelauth.main import app
from panelauth.services.mailer import get_mailer

NEW_PASSWORD = "brand new secret"


def _code(outbox):
    return re.search(r"\b(\d{6})\b", outbox[-1]["text"]).group(1)


def _wrong(code):
    return "000000" if code != "000000" else "111111"


@pytest.fixture
def verification_on(monkeypatch):
    monkeypatch.setattr(config, "REGISTER_EMAIL_VERIFICATION", "1")
    monkeypatch.setattr(config, "REGISTER_MODE", "1")


def test_code_is_mailed_once_per_cooldown(client, outbox, verification_on):
    resp = client.post("/api/auth/send-email-code", json={"email": "New@Example.com"})
    assert resp.status_code == 200, resp.text
    assert resp.json()["data"] == {"cooldown": 60, "expire_minutes": 10}
    assert outbox[0]["to"] == "new@example.com"
    assert "expires in 10 minutes" in outbox[0]["text"]

    again = client.post("/api/auth/send-email-code", json={"email": "new@example.com"})
    assert again.status_code == 429
    assert len(outbox) == 1


def test_code_request_rules(client, make_user, monkeypatch, verification_on):
    make_user()
    assert client.post("/api/auth/send-email-code", json={"email": "alice@example.com"}).status_code == 409
    monkeypatch.setattr(config, "REGISTER_EMAIL_VERIFICATION", "0")
    assert client.post("/api/auth/send-email-code", json={"email": "bob@example.com"}).status_code == 403


def test_failed_delivery_leaves_no_code(client, store, verification_on):
    def broken_mailer(*args, **kwargs):
        raise ConnectionRefusedError("smtp down")

    app.dependency_overrides[get_mailer] = lambda: broken_mailer
    resp = client.post("/api/auth/send-email-code", json={"email": "new@example.com"})
    assert resp.status_code == 500
    assert store.get("email_code_register_new@example.com") is None
    # No cooldown either, so the user can retry straight away
    assert store.get("email_code_cooldown_register_new@example.com") is None


def test_register_requires_the_mailed_code(client, db, outbox, verification_on):
    body = {"email": "new@example.com", "username": "newbie", "password": "long enough"}
    missing = client.post("/api/auth/register", json=body)
    assert missing.status_code == 400
    assert missing.json()["message"] == "Verification code is required"

    client.post("/api/auth/send-email-code", json={"email": "new@example.com"})
    code = _code(outbox)
    assert client.post("/api/auth/register", json={**body, "verificationCode": _wrong(code)}).status_code == 400
    assert client.post("/api/auth/register", json={**body, "verificationCode": "12ab"}).status_code == 400

    resp = client.post("/api/auth/register", json={**body, "verificationCode": code})
    assert resp.status_code == 200, resp.text
    assert db.query(User).filter(User.email == "new@example.com").count() == 1


def test_register_skips_code_without_mailer(client, verification_on):
    app.dependency_overrides[get_mailer] = lambda: None
    body = {"email": "new@example.com", "username": "newbie", "password": "long enough"}
    assert client.post("/api/auth/register", json=body).status_code == 200


def test_code_is_discarded_after_too_many_misses(client, store, make_user, outbox):
    make_user()
    client.post("/api/auth/password-reset/request", json={"email": "alice@example.com"})
    code = _code(outbox)
    body = {"email": "alice@example.com", "newPassword": NEW_PASSWORD}

    for _ in range(config.EMAIL_CODE_ATTEMPT_LIMIT - 1):
        resp = client.post("/api/auth/password-reset/confirm", json={**body, "verificationCode": _wrong(code)})
        assert resp.status_code == 400
    last = client.post("/api/auth/password-reset/confirm", json={**body, "verificationCode": _wrong(code)})
    assert last.status_code == 429
    assert client.post("/api/auth/password-reset/confirm", json={**body, "verificationCode": code}).status_code == 400


def test_consume_code_is_single_use(store):
    email = "alice@example.com"
    store.set(
        "email_code_password_reset_alice@example.com",
        {"codeHash": email_codes._hash(email, "424242"), "attempts": 0, "expiresAt": "2999-01-01T00:00:00"},
        600,
    )
    email_codes.consume_code(store, " Alice@Example.com ", email_codes.PURPOSE_PASSWORD_RESET, "424242")
    with pytest.raises(HTTPException) as exc:
        email_codes.consume_code(store, email, email_codes.PURPOSE_PASSWORD_RESET, "424242")
    assert exc.value.status_code == 400


def test_password_reset(client, db, make_user, login, outbox):
    user = make_user()
    issue_trusted_device(db, user.id, "pytest-agent", "Laptop")

    assert client.post("/api/auth/password-reset/request", json={"email": "ghost@example.com"}).status_code == 400
    resp = client.post("/api/auth/password-reset/request", json={"email": "alice@example.com"})
    assert resp.status_code == 200, resp.text
    code = _code(outbox)

    body = {"email": "alice@example.com", "verificationCode": code, "newPassword": NEW_PASSWORD}
    mismatch = client.post("/api/auth/password-reset/confirm", json={**body, "confirmPassword": "something else"})
    assert mismatch.status_code == 400

    done = client.post("/api/auth/password-reset/confirm", json={**body, "confirmPassword": NEW_PASSWORD})
    assert done.status_code == 200, done.text
    assert client.post("/api/auth/password-reset/confirm", json=body).status_code == 400

    assert login().status_code == 401
    assert login(password=NEW_PASSWORD).status_code == 200
    db.expire_all()
    assert db.get(User, user.id).password_hash.startswith("$argon2")
    [device] = db.query(TrustedDevice).all()
    assert device.disabled


def test_password_reset_needs_mail(client, make_user):
    make_user()
    app.dependency_overrides[get_mailer] = lambda: None
    assert client.post("/api/auth/password-reset/request", json={"email": "alice@example.com"}).status_code == 403
