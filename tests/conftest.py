"""Pytest configuration and fixtures."""

import os
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

# Set test environment variables before importing settings
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("GATEWAY_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test")
os.environ.setdefault("SWEEP_CONCURRENCY", "1")
os.environ.setdefault("BILLING_TIMEZONE", "UTC")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

import models.models  # noqa: E402,F401
from core.get_db import Base  # noqa: E402
from services.billing_service import BillingService  # noqa: E402
from services.notification_service import NotificationSender  # noqa: E402


class RecordingNotifier(NotificationSender):
    """Notification sender that records calls instead of delivering them."""

    def __init__(self, succeed: bool = True):
        super().__init__(sms_client=MagicMock())
        self.succeed = succeed
        self.calls = []

    async def send(self, kind, agreement, record=None, **context):
        self.calls.append(
            {
                "kind": kind,
                "reference": agreement.reference,
                "period_key": getattr(record, "period_key", None),
                "context": context,
            }
        )
        if self.succeed:
            self.sent += 1
        else:
            self.failures += 1
        return self.succeed

    def kinds(self):
        return [call["kind"] for call in self.calls]


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def billing(db, notifier, session_factory):
    return BillingService(db, notifier=notifier, session_factory=session_factory)


@pytest.fixture
def agreement_data():
    return {
        "customer_name": "Ada Okafor",
        "customer_email": "ada@example.com",
        "customer_phone": "+2348031234567",
        "period_amount": Decimal("1000"),
        "start_date": date(2024, 1, 15),
    }


@pytest.fixture
def march_20():
    return utc(2024, 3, 20, 9, 0)
