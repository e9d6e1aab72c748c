import pyotp
import pytest

from tests.support import PASSWORD


@pytest.fixture
def headers(make_user, auth_headers):
    make_user()
    return auth_headers()


def _post(client, path, headers, **body):
    return client.post(f"/api/user/two-factor/{path}", headers=headers, json=body or None)


def test_setup_returns_secret_and_qr(client, headers):
    resp = _post(client, "setup", headers)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert len(data["secret"]) == 32
    assert data["otp_auth_url"].startswith("otpauth://totp/")
    assert data["provisioning_uri"] == data["otp_auth_url"]
    assert data["qr_code"].startswith("data:image/png;base64,")


def test_enrollment_lifecycle(client, headers):
    profile = client.get("/api/user/profile", headers=headers).json()["data"]
    assert profile["two_factor_enabled"] is False

    assert _post(client, "enable", headers, code="123456").status_code == 400

    secret = _post(client, "setup", headers).json()["data"]["secret"]
    assert _post(client, "enable", headers, code="abcdef").status_code == 400
    # A pending secret does not switch 2FA on
    assert client.get("/api/user/profile", headers=headers).json()["data"]["two_factor_enabled"] is False

    enabled = _post(client, "enable", headers, code=pyotp.TOTP(secret).now())
    assert enabled.status_code == 200
    codes = enabled.json()["data"]["backup_codes"]
    assert len(codes) == 8
    assert client.get("/api/user/profile", headers=headers).json()["data"]["two_factor_enabled"] is True

    assert _post(client, "setup", headers).status_code == 400

    assert _post(client, "backup-codes", headers, code=codes[0]).status_code == 400
    fresh = _post(client, "backup-codes", headers, code=pyotp.TOTP(secret).now()).json()["data"]["backup_codes"]
    assert set(fresh).isdisjoint(codes)

    assert _post(client, "disable", headers, password="wrong", code=fresh[0]).status_code == 401
    assert _post(client, "disable", headers, password=PASSWORD, code=codes[0]).status_code == 401
    assert _post(client, "disable", headers, password=PASSWORD, code=fresh[0]).status_code == 200
    assert client.get("/api/user/profile", headers=headers).json()["data"]["two_factor_enabled"] is False


def test_missing_code_is_a_validation_error(client, headers):
    resp = _post(client, "enable", headers)
    assert resp.status_code == 400
    assert resp.json()["code"] == 400


def test_trusted_device_can_be_removed(client, db, headers):
    from panelauth.auth.models import User
    from panelauth.auth.trusted_devices import issue_trusted_device

    user = db.query(User).one()
    issue_trusted_device(db, user.id, "pytest-agent", "Desk")
    [device] = client.get("/api/user/two-factor/trusted-devices", headers=headers).json()["data"]
    assert device["device_name"] == "Desk"

    path = f"/api/user/two-factor/trusted-devices/{device['id']}"
    assert client.delete(path, headers=headers).status_code == 200
    assert client.delete(path, headers=headers).status_code == 404
    assert client.get("/api/user/two-factor/trusted-devices", headers=headers).json()["data"] == []


def test_session_reflects_two_factor_changes(client, headers):
    assert client.get("/api/auth/session", headers=headers).json()["data"]["two_factor_enabled"] is False
    secret = _post(client, "setup", headers).json()["data"]["secret"]
    codes = _post(client, "enable", headers, code=pyotp.TOTP(secret).now()).json()["data"]["backup_codes"]
    assert client.get("/api/auth/session", headers=headers).json()["data"]["two_factor_enabled"] is True

    _post(client, "disable", headers, password=PASSWORD, code=codes[0])
    assert client.get("/api/auth/session", headers=headers).json()["data"]["two_factor_enabled"] is False
