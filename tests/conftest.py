import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from panelauth.auth.accounts import create_account
from panelauth.auth.challenge_store import DatabaseChallengeStore, get_challenge_store
from panelauth.auth.login_log import ClientContext
from panelauth.core import config
from panelauth.database.database import Base, get_db
from panelauth.main import app
from panelauth.services.mailer import get_mailer

from tests.support import PASSWORD


@pytest.fixture(autouse=True)
def no_register_email_code(monkeypatch):
    monkeypatch.setattr(config, "REGISTER_EMAIL_VERIFICATION", "0")


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(session_factory):
    return DatabaseChallengeStore(session_factory)


@pytest.fixture
def ctx():
    return ClientContext(ip="203.0.113.7", user_agent="pytest-agent")


@pytest.fixture
def outbox():
    return []


@pytest.fixture
def client(session_factory, store, outbox):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def fake_mailer(to, subject, html, text=None):
        outbox.append({"to": to, "subject": subject, "text": text})

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_challenge_store] = lambda: store
    app.dependency_overrides[get_mailer] = lambda: fake_mailer
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(email="alice@example.com", username=None, password=PASSWORD, **fields):
        user = create_account(db, email, username or email.split("@")[0], password)
        for key, value in fields.items():
            setattr(user, key, value)
        db.add(user); db.commit(); db.refresh(user)
        return user

    return _make


@pytest.fixture
def login(client):
    def _login(email="alice@example.com", password=PASSWORD, **extra):
        return client.post("/api/auth/login", json={"email": email, "password": password, **extra})

    return _login


@pytest.fixture
def auth_headers(login):
    def _headers(email="alice@example.com", password=PASSWORD):
        resp = login(email, password)
        assert resp.status_code == 200, resp.text
        return {"Authorization": f"Bearer {resp.json()['data']['token']}"}

    return _headers
