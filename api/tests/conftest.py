import os
from io import BytesIO
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("ADMIN_ACCESS_TOKEN", "admin-test-token")
os.environ.setdefault("APP_URL", "http://testserver")

from esign.main import app  # noqa: E402
from esign import config  # noqa: E402
from esign import db as db_module  # noqa: E402
from esign.db import get_session  # noqa: E402
from esign import storage as storage_module  # noqa: E402
from esign import notifications as notifications_module  # noqa: E402


def make_pdf(pages: int = 1, text: str = "Purchase agreement") -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    for i in range(pages):
        c.setFont("Helvetica", 14)
        c.drawString(72, 720, f"{text} - page {i + 1}")
        c.showPage()
    c.save()
    return buf.getvalue()


@pytest.fixture
def sample_pdf() -> bytes:
    return make_pdf()


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    return engine


@pytest.fixture
def setup_db(test_engine):
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def session(test_engine, setup_db):
    with Session(test_engine) as s:
        yield s


@pytest.fixture(autouse=True)
def fast_notices(monkeypatch):
    monkeypatch.setattr(config, "NOTIFY_SEND_INTERVAL_MS", 0)
    monkeypatch.setattr(config, "NOTIFY_ASYNC", False)


@pytest.fixture
def mock_storage(monkeypatch) -> Dict[str, bytes]:
    store: Dict[str, bytes] = {}

    def fake_put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
        store[key] = bytes(data)
        return key

    def fake_get_bytes(key: str) -> bytes:
        if key not in store:
            raise KeyError(f"NoSuchKey: {key}")
        return store[key]

    monkeypatch.setattr(storage_module, "put_bytes", fake_put_bytes)
    monkeypatch.setattr(storage_module, "get_bytes", fake_get_bytes)
    return store


@pytest.fixture
def sent_emails(monkeypatch):
    messages = []

    def fake_send_email(to, subject, text_body, html_body=None, attachments=None, sender_name=None, reply_to=None):
        messages.append(
            {
                "to": to,
                "subject": subject,
                "text": text_body,
                "html": html_body,
                "attachments": attachments or [],
                "reply_to": reply_to,
            }
        )

    from esign.routers import envelopes  # noqa: E402

    monkeypatch.setattr(notifications_module, "send_email", fake_send_email)
    monkeypatch.setattr(envelopes, "send_email", fake_send_email)
    return messages


@pytest.fixture
def client(test_engine, setup_db, mock_storage, sent_emails):
    db_module.engine = test_engine

    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
