"""
Pytest configuration and shared fixtures for FlowPay tests.
"""

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

# Set test environment before importing app
os.environ["FLASK_ENV"] = "testing"
os.environ["FLASK_SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["LEDGER_BACKEND"] = "memory"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["APP_URL"] = "http://localhost:5000"
os.environ.pop("RESEND_API_KEY", None)
os.environ.pop("REDIS_HOST", None)
os.environ.pop("REDIS_URL", None)

# Import app after setting environment
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sqlalchemy.orm import sessionmaker

from flowpay.audit_logger import AuditLogger
from flowpay.database import build_engine
from flowpay.ledger import InMemoryLedger
from flowpay.models import Base
from flowpay.notifier import NotificationResult, Notifier
from flowpay.service import TransferService, TransferSettings
from flowpay.store import TransferStore

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
SENDER_ID = "user_alice"
SENDER_ADDRESS = "0xf8d6e0586b0a20c7"
RECIPIENT_ADDRESS = "0x01cf0e2f2f715450"
CRON_SECRET = "test-cron-secret"


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier(Notifier):
    """Notifier double that remembers every payload it was handed."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def _record(self, kind, data):
        self.sent.append((kind, data))
        if self.fail:
            return NotificationResult(success=False, error="smtp down")
        return NotificationResult(success=True, message_id=f"msg_{len(self.sent)}")

    def send_claim_notice(self, data):
        return self._record("claim_notice", data)

    def send_claim_confirmation(self, data):
        return self._record("claim_confirmation", data)

    def send_expiry_reminder(self, data):
        return self._record("expiry_reminder", data)

    def of_kind(self, kind):
        return [data for sent_kind, data in self.sent if sent_kind == kind]


@pytest.fixture
def clock():
    """Clock pinned to a fixed instant."""
    return FixedClock(NOW)


@pytest.fixture
def engine():
    """Private in-memory SQLite database per test."""
    db_engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def store(engine):
    return TransferStore(sessionmaker(bind=engine, expire_on_commit=False))


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def mock_audit_logger():
    """Audit logger whose underlying logger records calls."""
    return AuditLogger(logger=MagicMock())


@pytest.fixture
def service(store, ledger, notifier, clock, mock_audit_logger):
    """Transfer service wired to in-memory collaborators."""
    return TransferService(
        store=store,
        ledger=ledger,
        notifier=notifier,
        settings=TransferSettings(app_url="http://localhost:5000"),
        clock=clock,
        audit=mock_audit_logger,
    )


@pytest.fixture
def make_transfer(service):
    """Create a transfer and return it, failing the test if creation fails."""

    def _make(amount="10", token="FLOW", **kwargs):
        kwargs.setdefault("sender_id", SENDER_ID)
        kwargs.setdefault("sender_address", SENDER_ADDRESS)
        result = service.create_transfer(amount=amount, token=token, **kwargs)
        assert result.success, result.error
        return result.transfer

    return _make


@pytest.fixture
def app(service):
    """Create and configure a test Flask application instance."""
    from flowpay.config import get_config
    from flowpay.factory import create_app

    cfg = get_config()
    cfg["RATE_LIMIT_ENABLED"] = False
    flask_app = create_app(cfg, service=service)
    flask_app.config.update({"TESTING": True})

    with flask_app.app_context():
        yield flask_app


@pytest.fixture
def client(app):
    """Create a test client for the Flask application."""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application."""
    return app.test_cli_runner()


@pytest.fixture
def sender_headers():
    return {"X-Sender-Id": SENDER_ID, "X-Sender-Address": SENDER_ADDRESS}


@pytest.fixture
def cron_headers():
    return {"Authorization": f"Bearer {CRON_SECRET}"}


# Pytest configuration hooks
def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "slow: tests that take a long time to run")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers automatically."""
    for item in items:
        # Add 'unit' marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add 'integration' marker to tests in integration/ directory
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
