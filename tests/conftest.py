"""
Pytest configuration and fixtures.
"""
from decimal import Decimal
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from payper.config import Settings
from payper.core.ledger import SqlTransactionLedger
from payper.core.models import (
    Confirmation,
    ConfirmationOutcome,
    TransactionDraft,
    TransactionKind,
)
from payper.core.orchestrator import PaymentOrchestrator
from payper.core.receipts import SqlReceiptStore
from payper.core.reconciliation import ReconciliationRecorder
from payper.core.recovery import InMemorySubmissionStore, RecoveryPolicy
from payper.database.connection import init_db

CLIENT_SECRET = "pi_test_123_secret_abc"


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "integration: tests against the in-memory database")


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="redis://localhost:6379/1",
        app_name="payper-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """In-memory SQLite database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> SqlTransactionLedger:
    return SqlTransactionLedger(session_factory)


@pytest.fixture
def receipt_store(session_factory: async_sessionmaker[AsyncSession]) -> SqlReceiptStore:
    return SqlReceiptStore(session_factory)


@pytest.fixture
def gateway() -> AsyncMock:
    """Payment intent gateway that always hands out the same client secret."""
    mock = AsyncMock()
    mock.request_intent.return_value = CLIENT_SECRET
    return mock


@pytest.fixture
def confirmer() -> AsyncMock:
    """Card confirmer that succeeds unless told otherwise."""
    mock = AsyncMock()
    mock.confirm.return_value = Confirmation(
        outcome=ConfirmationOutcome.SUCCEEDED, processor_reference="pi_test_123"
    )
    return mock


@pytest.fixture
def recovery() -> RecoveryPolicy:
    return RecoveryPolicy(store=InMemorySubmissionStore(), max_attempts=3)


@pytest.fixture
def reconciliation() -> ReconciliationRecorder:
    return ReconciliationRecorder()


@pytest.fixture
def orchestrator(
    ledger: SqlTransactionLedger,
    gateway: AsyncMock,
    confirmer: AsyncMock,
    recovery: RecoveryPolicy,
    reconciliation: ReconciliationRecorder,
) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        ledger=ledger,
        gateway=gateway,
        confirmer=confirmer,
        recovery=recovery,
        reconciliation=reconciliation,
    )


@pytest.fixture
def merchant_draft() -> TransactionDraft:
    """Sample merchant payment."""
    return TransactionDraft(
        sender_id="user_123",
        counterparty_label="Takealot",
        amount=Decimal("50.00"),
        currency="ZAR",
        kind=TransactionKind.MERCHANT,
        note="Payment to Takealot",
    )


@pytest.fixture
def transfer_draft() -> TransactionDraft:
    """Sample peer-to-peer transfer."""
    return TransactionDraft(
        sender_id="user_123",
        counterparty_label="thandi@example.com",
        amount=Decimal("120.50"),
        currency="ZAR",
        kind=TransactionKind.PEER_TO_PEER,
        note="Dinner",
    )
