# tests/conftest.py
"""
Fixtures shared by the test suite: an in-memory SQLite database per test,
fake Gemini / WhatsApp clients, and a TestClient with every outbound
dependency overridden.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret"
for _var in ("GEMINI_API_KEY", "WHATSAPP_TOKEN", "WHATSAPP_PHONE_NUMBER_ID", "VERIFY_TOKEN", "FB_APP_SECRET"):
    os.environ.pop(_var, None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ragmaster import main, models
from ragmaster.chat import ChatRelay
from ragmaster.database import Base, get_db
from ragmaster.gemini import ClientCell
from ragmaster.webhook import WebhookRelay

from fakes import FakeGemini, FakeWhatsApp, bearer, no_sleep


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_gemini():
    return FakeGemini()


@pytest.fixture
def fake_whatsapp():
    return FakeWhatsApp()


@pytest.fixture
def gemini_cell(fake_gemini):
    cell = ClientCell(factory=lambda key: fake_gemini)
    cell.reload("test-key")
    return cell


@pytest.fixture
def relay(session_factory, gemini_cell, fake_whatsapp):
    return WebhookRelay(
        session_factory,
        gemini_cell,
        whatsapp_factory=lambda token, phone_id: fake_whatsapp,
        chat_relay=ChatRelay(sleep=no_sleep),
    )


@pytest.fixture
def api_cell(monkeypatch, fake_gemini):
    """The process-wide cell used by the routes, empty until a key is saved."""
    cell = ClientCell(factory=lambda key: fake_gemini)
    monkeypatch.setattr(main, "client_cell", cell)
    return cell


@pytest.fixture
def client(session_factory, fake_gemini, fake_whatsapp, relay, api_cell):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    main.app.dependency_overrides.update({
        get_db:                    _get_db,
        main.get_gemini:           lambda: fake_gemini,
        main.get_optional_gemini:  lambda: fake_gemini,
        main.get_chat_relay:       lambda: ChatRelay(sleep=no_sleep),
        main.get_webhook_relay:    lambda: relay,
        main.get_whatsapp_factory: lambda: (lambda token, phone_id: fake_whatsapp),
    })
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def add_profile(db):
    def _add(user_id, role, email=None):
        db.add(models.Profile(id=user_id, email=email or f"{user_id}@example.org", role=role, status="active"))
        db.commit()
        return bearer(user_id, email)
    return _add


@pytest.fixture
def admin_headers(add_profile):
    return add_profile("admin-1", "admin")


@pytest.fixture
def user_headers(add_profile):
    return add_profile("user-1", "user")


@pytest.fixture
def viewer_headers():
    # no profile row: the default role applies
    return bearer("viewer-1")
