"""Shared fixtures: in-memory database, cache and gateway stand-ins, clock."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ["ENVIRONMENT"] = "testing"

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fiscalpush.common import models as common_models  # noqa: F401
from fiscalpush.common.config import settings
from fiscalpush.common.db import Base
from fiscalpush.services.notification import models as notification_models  # noqa: F401
from fiscalpush.services.notification.gateway import PushGateway
from fiscalpush.services.receipts.models import VfdReceipt


@pytest.fixture
def session_factory():
    """Fresh in-memory SQLite database per test, with working savepoints."""

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


class Clock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


class FakeCache:
    """Dict-backed stand-in for the Redis calls the token store makes."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    def get(self, key):
        return self.values.get(key)

    def setex(self, key, ttl, value):
        self.values[key] = value

    def delete(self, key):
        self.values.pop(key, None)


@pytest.fixture
def cache():
    return FakeCache()


class FakePushGateway(PushGateway):
    """Records sent messages; per-token exceptions simulate gateway answers."""

    def __init__(self, outcomes=None, verify_error=None, send_error=None) -> None:
        self.outcomes = dict(outcomes or {})
        self.verify_error = verify_error
        self.send_error = send_error
        self.sent: list[dict] = []
        self.closed = False

    def verify_credentials(self) -> None:
        if self.verify_error is not None:
            raise self.verify_error

    def send(self, message: dict) -> str:
        self.sent.append(message)
        if self.send_error is not None:
            raise self.send_error
        outcome = self.outcomes.get(message["token"])
        if isinstance(outcome, Exception):
            raise outcome
        return f"projects/test/messages/{len(self.sent)}"

    def close(self) -> None:
        self.closed = True


class GatewayFactory:
    """Hands out prepared gateways in order; raises once they run out."""

    def __init__(self, *clients) -> None:
        self.clients = list(clients)
        self.built: list[FakePushGateway] = []

    def __call__(self) -> FakePushGateway:
        if not self.clients:
            raise RuntimeError("credentials file unreadable")
        client = self.clients.pop(0)
        self.built.append(client)
        return client


def make_token(label: str, length: int = 152) -> str:
    """Well-formed token of realistic length, distinguishable by `label`."""

    return (label + "_" + "x" * length)[:length]


@pytest.fixture
def test_config():
    """Settings copy with receipts in sandbox and SMS enabled."""

    return settings.model_copy(
        update={
            "vfd_sandbox": True,
            "vfd_base_url": "",
            "vfd_api_key": "",
            "vfd_tin": "",
            "vfd_archive_enabled": False,
            "vfd_archive_delay_seconds": 60,
            "vfd_receipt_sms_enabled": True,
        }
    )


@pytest.fixture
def live_config(test_config):
    return test_config.model_copy(
        update={
            "vfd_sandbox": False,
            "vfd_base_url": "https://vfd.example.test",
            "vfd_api_key": "live-key",
            "vfd_tin": "100200300",
        }
    )


def make_receipt(session_factory, **overrides) -> VfdReceipt:
    values = {
        "receipt_number": "VFD-1700000000-1234",
        "receipt_type": "delivery",
        "model_type": "order",
        "model_id": "42",
        "amount": 150000,
        "payment_method": "cash",
        "customer_name": "Asha",
        "customer_phone": "0712345678",
        "status": "generated",
        "receipt_url": "https://vfd-sandbox.mojatax.com/receipts/VFD-1700000000-1234",
        "provider_response": {"success": True, "receiptNumber": "VFD-1700000000-1234"},
    }
    values.update(overrides)
    with session_factory() as db:
        receipt = VfdReceipt(**values)
        db.add(receipt)
        db.commit()
    return receipt
