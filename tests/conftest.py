"""
Pytest configuration and shared fixtures for lnbridge tests.
"""

import os
import sys
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from coincurve import PrivateKey

# Set test environment before importing the package
os.environ["FLASK_ENV"] = "testing"
os.environ["FLASK_SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["LNURL_BASE_URL"] = "http://localhost:5000"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["FORCE_HTTPS"] = "false"
for _name in (
    "LIGHTNING_AUTH_URL",
    "JWT_ISSUER",
    "JWT_AUDIENCE",
    "LND_REST_URL",
    "LND_MACAROON",
    "LND_MACAROON_HEX",
    "REDIS_URL",
    "REDIS_DSN",
    "NOTIFY_WEBHOOK_URL",
    "LIGHTNING_BONUS_SATS",
    "MIN_WITHDRAWAL_SATS",
):
    os.environ.pop(_name, None)

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from lnbridge.config import get_config  # noqa: E402
from lnbridge.database import close_database, init_database, session_scope  # noqa: E402
from lnbridge.factory import create_app, shutdown_app  # noqa: E402
from lnbridge.models import User  # noqa: E402
from lnbridge.node_gateway import NodeGateway  # noqa: E402
from lnbridge.services import EXTENSION_KEY  # noqa: E402
from lnbridge.tokens import issue_session_token  # noqa: E402


class FakeClock:
    """Settable naive-UTC clock shared by every engine under test."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class Wallet:
    """A Lightning wallet's linking key, signing challenges like real wallets do."""

    def __init__(self):
        self.key = PrivateKey()
        self.pubkey = self.key.public_key.format(compressed=True).hex()

    def sign(self, k1: str) -> str:
        # coincurve hashes with sha256 by default, i.e. the signature covers sha256(k1)
        return self.key.sign(bytes.fromhex(k1)).hex()

    def callback_params(self, k1: str) -> dict:
        return {"tag": "login", "k1": k1, "sig": self.sign(k1), "key": self.pubkey}


@pytest.fixture
def app_config():
    """Configuration mapping for the app and engines under test."""
    cfg = get_config()
    cfg.update(
        {
            "DATABASE_URL": "sqlite://",
            "RATE_LIMIT_ENABLED": False,
            "FORCE_HTTPS": False,
            "LIGHTNING_BONUS_SATS": 1,
            "MIN_WITHDRAWAL_SATS": 100,
            "WITHDRAWAL_EXPIRY_HOURS": 24,
            "LOGIN_CHALLENGE_TTL_SECONDS": 300,
        }
    )
    return cfg


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def node():
    """Mock Lightning node with enough liquidity and a payment that succeeds."""
    mock_node = MagicMock(spec=NodeGateway)

    mock_node.is_configured.return_value = True
    mock_node.get_channel_balance.return_value = {"availableSats": 1_000_000, "pendingSats": 0}
    mock_node.decode_invoice.return_value = {
        "destination": "03" + "b" * 64,
        "paymentHash": "c" * 64,
        "amountSats": 0,
        "expiry": 3600,
        "timestamp": 1700000000,
        "description": "",
    }
    mock_node.pay_invoice.return_value = {"success": True, "paymentHash": "c" * 64, "preimage": "d" * 64}
    mock_node.verify_connection.return_value = {"connected": True, "nodeAlias": "test-node"}

    return mock_node


@pytest.fixture
def database():
    """Bare in-memory database for engine tests that do not need Flask."""
    init_database("sqlite://", create_tables=True)
    yield
    close_database()


@pytest.fixture
def app(app_config, clock, node):
    """Create and configure a test Flask application instance."""
    flask_app = create_app(app_config, clock=clock, node=node)
    flask_app.config["TESTING"] = True

    with flask_app.app_context():
        yield flask_app

    shutdown_app(flask_app)


@pytest.fixture
def client(app):
    """Create a test client for the Flask application."""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application."""
    return app.test_cli_runner()


@pytest.fixture
def services(app):
    return app.extensions[EXTENSION_KEY]


@pytest.fixture
def wallet():
    return Wallet()


@pytest.fixture
def other_wallet():
    return Wallet()


@pytest.fixture
def make_user():
    """Insert a user directly and return its id."""

    def _make_user(name="alice", role="USER", balance=0, pubkey=None, email=None, is_active=True):
        with session_scope() as session:
            user = User(
                name=name,
                email=email,
                role=role,
                auth_provider="LIGHTNING" if pubkey else "EMAIL",
                lightning_pubkey=pubkey,
                balance_sats=balance,
                is_active=is_active,
            )
            session.add(user)
            session.flush()
            return user.id

    return _make_user


@pytest.fixture
def auth_headers(app_config):
    """Build bearer headers for a user id (and role)."""

    def _auth_headers(user_id, role="USER"):
        token = issue_session_token(user_id, role, app_config)
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    return _auth_headers


@pytest.fixture
def admin_headers(make_user, auth_headers):
    admin_id = make_user(name="admin", role="ADMIN", email="admin@example.com")
    return auth_headers(admin_id, role="ADMIN")


# Pytest configuration hooks
def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "unit: fast tests of a single module")
    config.addinivalue_line("markers", "integration: tests that drive the HTTP surface")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers automatically."""
    for item in items:
        # Add 'unit' marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add 'integration' marker to tests in integration/ directory
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
