# Pytest configuration for the messaging backend.
# Forces a local SQLite DB, disables Redis, sets a cron secret, and swaps the email provider for
# an in-memory fake so no test touches the network.
import os
import threading
from datetime import date, time
from decimal import Decimal
from typing import Iterator, List, Optional

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("MESSAGE_TIMEZONE", "UTC")
os.environ.setdefault("MESSAGE_CURRENCY_PREFIX", "RM")

import sys
# Ensure the repo root is on sys.path so 'app' resolves when running pytest from anywhere
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from app.main import app  # noqa: E402
from app.db import Base, SessionLocal, engine  # noqa: E402
from app import email_transport, models  # noqa: E402
from app.errors import TransportFailure  # noqa: E402
from app.triggers import wait_for_pending  # noqa: E402


class FakeTransport:
    """
    Stand-in for app.email_transport.send_email.

    Records every accepted email; `fail_with` makes each call raise TransportFailure with that
    message instead. Safe to call from the dispatch worker threads.
    """

    def __init__(self) -> None:
        self.sent: List[dict] = []
        self.calls = 0
        self.fail_with: Optional[str] = None
        self._lock = threading.Lock()

    def __call__(self, to: str, subject: str, html: str, from_address: Optional[str] = None) -> str:
        with self._lock:
            self.calls += 1
            if self.fail_with is not None:
                raise TransportFailure(self.fail_with)
            message_id = f"fake-{len(self.sent) + 1}"
            self.sent.append({"id": message_id, "to": to, "subject": subject, "html": html})
            return message_id


@pytest.fixture(scope="session", autouse=True)
def _bootstrap_db() -> Iterator[None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_db() -> Iterator[None]:
    """
    Function-level isolation: recreate the schema before each test and drain any background
    status-hook work before the next test drops tables underneath it.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    assert wait_for_pending(timeout=30)


@pytest.fixture(autouse=True)
def transport(monkeypatch) -> FakeTransport:
    """Every dispatch in a test goes through this fake unless a test passes its own."""
    fake = FakeTransport()
    monkeypatch.setattr(email_transport, "send_email", fake)
    return fake


@pytest.fixture()
def client() -> Iterator[TestClient]:
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def db() -> Iterator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def org(db) -> models.Organization:
    obj = models.Organization(name="Langkawi Stays")
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@pytest.fixture()
def make_property(db, org):
    def _make(name: str = "Sunset Villa", organization_id: Optional[str] = None) -> models.Property:
        obj = models.Property(
            organization_id=organization_id or org.id,
            name=name,
            check_in_time=time(15, 0),
            check_out_time=time(11, 0),
        )
        db.add(obj)
        db.commit()
        db.refresh(obj)
        return obj

    return _make


@pytest.fixture()
def make_booking(db, org):
    def _make(
        prop: models.Property,
        guest_email: Optional[str] = "guest@example.com",
        check_in: date = date(2025, 12, 15),
        check_out: date = date(2025, 12, 18),
        status: str = "pending",
        price: Decimal = Decimal("750.00"),
        guests: int = 2,
    ) -> models.Booking:
        obj = models.Booking(
            organization_id=prop.organization_id,
            property_id=prop.id,
            guest_name="John Doe",
            phone="+60123456789",
            guest_email=guest_email,
            check_in=check_in,
            check_out=check_out,
            guests=guests,
            price=price,
            status=status,
        )
        db.add(obj)
        db.commit()
        db.refresh(obj)
        return obj

    return _make


@pytest.fixture()
def make_template(db, org):
    def _make(
        title: str = "Booking Confirmation",
        body: str = "Hi {{guest_name}}, see you at {{property_name}} for {{num_nights}} nights.",
        organization_id: Optional[str] = None,
    ) -> models.MessageTemplate:
        obj = models.MessageTemplate(
            organization_id=organization_id or org.id,
            title=title,
            recipient="guest",
            template=body,
        )
        db.add(obj)
        db.commit()
        db.refresh(obj)
        return obj

    return _make


@pytest.fixture()
def make_trigger(db, org):
    def _make(
        template: models.MessageTemplate,
        trigger_type: str = "event",
        event_type: Optional[str] = "booking_confirmed",
        offset_value: Optional[int] = None,
        offset_unit: Optional[str] = None,
        reference: Optional[str] = None,
        send_time: Optional[time] = None,
        properties: Optional[list] = None,
        is_active: bool = True,
    ) -> models.MessageTrigger:
        obj = models.MessageTrigger(
            organization_id=template.organization_id,
            name=f"{trigger_type} trigger",
            template_id=template.id,
            trigger_type=trigger_type,
            event_type=event_type if trigger_type == "event" else None,
            time_offset_value=offset_value,
            time_offset_unit=offset_unit,
            time_reference=reference,
            send_time=send_time,
            is_active=is_active,
        )
        for prop in properties or []:
            obj.property_assignments.append(models.TriggerPropertyAssignment(property_id=prop.id))
        db.add(obj)
        db.commit()
        db.refresh(obj)
        return obj

    return _make
