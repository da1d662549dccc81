"""
Pytest fixtures for the inventory sync test suite.

Provides:
- A fresh in-memory SQLite database per test (StaticPool, so every session
  of the test shares it)
- A DeterministicClock, actors and wired services
- Marketplace credentials with sync enabled for both providers
- ``captured_logs`` for asserting on structured log records

No network access: marketplace HTTP is faked with httpx.MockTransport or
with in-process fake clients.
"""

import json
import logging
from io import StringIO
from uuid import uuid4

import pytest
from sqlalchemy.orm import sessionmaker

from inventory_kernel.db.engine import build_engine, create_tables
from inventory_kernel.domain.clock import DeterministicClock
from inventory_kernel.domain.dtos import Actor
from inventory_kernel.domain.policies import OutboxPolicy
from inventory_kernel.domain.values import Provider, Role
from inventory_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from inventory_kernel.services.inventory_service import InventoryService
from inventory_kernel.services.marketplace_settings_service import MarketplaceSettingsService
from inventory_kernel.services.outbox_service import OutboxService
from inventory_kernel.services.undo_service import UndoService

BRICKLINK_SECRET = {
    "consumer_key": "ck",
    "consumer_secret": "cs",
    "token": "tok",
    "token_secret": "ts",
}
BRICKOWL_SECRET = {"api_key": "owl-key"}

SECRETS = {Provider.BRICKLINK: BRICKLINK_SECRET, Provider.BRICKOWL: BRICKOWL_SECRET}


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture inventory_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, inventory):
            inventory.add_inventory_item(...)
            logs = captured_logs()
            assert any(r["message"] == "inventory_item_added" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("inventory_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """A session for service-level tests. Never committed."""
    s = session_factory()
    yield s
    s.rollback()
    s.close()


# =============================================================================
# Time, actors, policies
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def account_id():
    return uuid4()


@pytest.fixture
def owner(account_id):
    return Actor(actor_id=uuid4(), business_account_id=account_id, role=Role.OWNER)


@pytest.fixture
def member(account_id):
    return Actor(actor_id=uuid4(), business_account_id=account_id, role=Role.MEMBER)


@pytest.fixture
def outbox_policy():
    """Production schedule without jitter, so delays are exact."""
    return OutboxPolicy(jitter_ms=0)


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def enable_providers(account_id, owner):
    """Store credentials and switch sync on, through the given session."""

    def _enable(session, providers=tuple(Provider)):
        settings = MarketplaceSettingsService(session)
        for provider in providers:
            settings.store_credentials(
                account_id, provider, SECRETS[provider], created_by_id=owner.actor_id
            )
            settings.set_sync_enabled(account_id, provider, True)

    return _enable


@pytest.fixture
def both_providers(session, enable_providers):
    enable_providers(session)


@pytest.fixture
def inventory(session, clock, outbox_policy):
    return InventoryService(session, clock, outbox_policy=outbox_policy)


@pytest.fixture
def undo(inventory):
    return UndoService(inventory)


@pytest.fixture
def outbox(session, clock, outbox_policy):
    return OutboxService(session, clock, outbox_policy)


@pytest.fixture
def add_item(inventory, owner):
    """Factory adding an item with sensible defaults."""

    def _add(actor=None, **overrides):
        fields = {
            "name": "Brick 2 x 4",
            "part_number": "3001",
            "color_id": "5",
            "location": "A1",
            "quantity_available": 10,
        }
        fields.update(overrides)
        return inventory.add_inventory_item(actor or owner, **fields)

    return _add
