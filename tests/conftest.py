import os
import threading
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RECEIPT_CONSUMER_ENABLED", "false")

import crm_core.models  # noqa: F401
from crm_core.core.deps import get_session_factory
from crm_core.db.base import Base
from crm_core.main import app
from crm_core.services import customer_service, segment_service
from crm_core.services.messaging_provider import (
    RECEIPT_DELIVERED,
    DeliveryReceipt,
    MessageSendRequest,
    MessageSendResult,
    ReceiptInbox,
    default_receipt_inbox,
)


class RecordingProvider:
    """Messaging provider double that records every request it is handed."""

    name = "recording"

    def __init__(
        self,
        *,
        inbox: ReceiptInbox | None = None,
        fail_for: set[str] | None = None,
        reject_for: set[str] | None = None,
        on_send=None,
    ):
        self.inbox = inbox
        self.fail_for = fail_for or set()
        self.reject_for = reject_for or set()
        self.on_send = on_send
        self.requests: list[MessageSendRequest] = []
        self._lock = threading.Lock()

    def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        with self._lock:
            self.requests.append(request)
            sequence = len(self.requests)
        if self.on_send is not None:
            self.on_send(request)
        if request.customer_id in self.fail_for:
            raise RuntimeError("Vendor unavailable")
        now = datetime.now(timezone.utc)
        if request.customer_id in self.reject_for:
            return MessageSendResult(provider=self.name, reference=f"ref-{sequence}", status="failed", accepted_at=now)
        if self.inbox is not None:
            self.inbox.publish(DeliveryReceipt(tracking_ref=request.tracking_ref, outcome=RECEIPT_DELIVERED, timestamp=now))
        return MessageSendResult(provider=self.name, reference=f"ref-{sequence}", status="accepted", accepted_at=now)

    def sent_to(self) -> list[str]:
        return [request.customer_id for request in self.requests]


@pytest.fixture()
def session_local():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def db(session_local):
    session = session_local()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def inbox():
    return ReceiptInbox()


@pytest.fixture()
def make_customer(db):
    counter = {"value": 0}

    def _make(name: str | None = None, *, total_spend: float = 0, total_purchases: int = 0, **fields):
        counter["value"] += 1
        index = counter["value"]
        return customer_service.create_customer(
            db,
            name=name or f"Customer {index}",
            email=fields.pop("email", f"customer{index}@example.com"),
            phone=fields.pop("phone", f"+1555000{index:04d}"),
            total_spend=total_spend,
            total_purchases=total_purchases,
            **fields,
        )

    return _make


@pytest.fixture()
def make_segment(db):
    def _make(conditions=None, *, name: str = "Everyone"):
        return segment_service.create_segment(db, name=name, conditions=conditions or [])

    return _make


@pytest.fixture()
def test_context(session_local):
    app.dependency_overrides[get_session_factory] = lambda: session_local
    default_receipt_inbox.drain()

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    default_receipt_inbox.drain()
