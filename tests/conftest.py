"""
Pytest configuration and fixtures
"""
import pytest
import os
import sys
import tempfile
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Add src to path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Set test environment variables before importing
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = f"sqlite:///{Path(tempfile.gettempdir()) / 'billing_engine_test.db'}"
os.environ["CRON_SECRET"] = "test-cron-secret-for-unit-tests-only-32-chars"
os.environ["GATEWAY_PROVIDER"] = "manual"
os.environ["GATEWAY_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["TENANT_TIMEOUT_SECONDS"] = "0"  # Run tenants inline
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce log noise in tests

# Import after setting env vars
from billing_engine.app import app
from billing_engine.config import config
from billing_engine.db.engine import get_db, init_db
from billing_engine.db.models.billing_account import BillingAccount, BillingStatus
from billing_engine.db.models.usage import UsageAggregation
from billing_engine.services.account_service import BillingAccountService
from billing_engine.services.ledger_reader import UsageTotal
from billing_engine.services.payment_gateway import ManualGateway
from billing_engine.services.wallet_service import WalletService

CRON_SECRET = os.environ["CRON_SECRET"]
WEBHOOK_SECRET = os.environ["GATEWAY_WEBHOOK_SECRET"]

# Cycle boundary used across tests: January 2026 has just closed
JAN_START = datetime(2026, 1, 1)
NOW = datetime(2026, 2, 1, 0, 5)


@pytest.fixture(scope="function")
def test_engine(tmp_path):
    """
    Create a file-backed SQLite engine per test
    
    A file (not :memory:) lets separate sessions behave like separate processes.
    """
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False}
    )
    init_db(bind=test_engine)
    
    yield test_engine
    
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Create a database session for each test"""
    session = session_factory()
    
    # Override get_db dependency
    def override_get_db():
        try:
            yield session
        finally:
            pass
    
    app.dependency_overrides[get_db] = override_get_db
    
    yield session
    
    session.close()
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def client(db_session):
    """Create test client"""
    return TestClient(app)


@pytest.fixture(scope="function")
def gateway():
    """Manual gateway signing with the test webhook secret"""
    return ManualGateway(WEBHOOK_SECRET)


@pytest.fixture(scope="function")
def make_account(db_session):
    """
    Factory for billing accounts with a wallet
    
    Accounts start in the January 2026 cycle, which has ended at NOW.
    """
    counter = {"n": 0}
    
    def _make(status=BillingStatus.ACTIVE.value, wallet_balance="0.00", grace_period_end=None,
              tenant_id=None, billing_email="owner@example.com", **fields):
        counter["n"] += 1
        account = BillingAccountService(db_session).setup_personal_billing(
            tenant_id or f"user-{counter['n']}",
            billing_email=billing_email,
            now=JAN_START
        )
        account.status = status
        account.grace_period_end = grace_period_end
        for name, value in fields.items():
            setattr(account, name, value)
        if Decimal(wallet_balance) > 0:
            account.wallet.balance = Decimal(wallet_balance)
        db_session.commit()
        db_session.refresh(account)
        return account
    
    return _make


@pytest.fixture(scope="function")
def ledger():
    """Ledger stub returning 100 GB of traffic for any tenant"""
    from unittest.mock import Mock
    
    reader = Mock()
    reader.query_usage.return_value = [
        UsageTotal(category="traffic", total_units=Decimal(100) * Decimal(1024 ** 3)),
    ]
    return reader


@pytest.fixture(scope="function")
def record_usage(db_session):
    """Write a usage aggregation row (simulates the external usage pipeline)"""
    def _record(account, resource_type, units, period_start=JAN_START, period_end=None):
        row = UsageAggregation(
            tenant_type=account.tenant_type,
            tenant_id=account.tenant_id,
            resource_type=resource_type,
            total_units=Decimal(units),
            period_start=period_start,
            period_end=period_end or datetime(2026, 1, 31, 23, 59, 59),
        )
        db_session.add(row)
        db_session.commit()
        return row
    
    return _record


@pytest.fixture(scope="function")
def cron_headers():
    return {"Authorization": f"Bearer {CRON_SECRET}"}
