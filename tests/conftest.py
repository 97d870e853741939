"""
Pytest fixtures and configuration for ServiceNow Ticket Sync tests.

This module provides shared fixtures for:
- Test database setup/teardown with async support
- Mock ServiceNow client and change broadcaster
- Sample upstream records built with Faker
- Test authentication headers
"""

import os

# Settings are read at import time; configure before importing ticketsync
os.environ.setdefault("SERVICENOW_INSTANCE_URL", "https://test.service-now.com")
os.environ.setdefault("SERVICENOW_USERNAME", "sync_user")
os.environ.setdefault("SERVICENOW_PASSWORD", "sync_password")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DASHBOARD_PASSWORD", "test_password")

import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock, MagicMock
from faker import Faker

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from ticketsync.database import Base, build_session_factory
from ticketsync.models import TicketRecord, SyncJobRecord  # noqa: F401
from ticketsync.services.broadcaster import LoggingBroadcaster
from ticketsync.services.servicenow import ServiceNowClient
from ticketsync.services.store import TicketStore
from ticketsync.timeutils import format_servicenow_datetime, utcnow

# Initialize Faker for generating test data
fake = Faker()


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create test database engine backed by a temporary SQLite file.

    Each test gets a fresh database; a file (not :memory:) lets every
    session see the same data.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(test_engine)


@pytest.fixture
def store(session_factory) -> TicketStore:
    return TicketStore(session_factory)


# Mock ServiceNow client fixtures
@pytest.fixture
def mock_servicenow() -> MagicMock:
    """
    Create mock ServiceNow client for testing.

    Record lookups return nothing by default; SLA and notes are empty.
    """
    mock_client = MagicMock(spec=ServiceNowClient)

    mock_client.fetch_by_id = AsyncMock(return_value=None)
    mock_client.fetch_by_filter = AsyncMock(return_value=[])
    mock_client.fetch_sla = AsyncMock(return_value=[])
    mock_client.fetch_notes = AsyncMock(return_value=[])
    mock_client.close = AsyncMock()

    return mock_client


@pytest.fixture
def mock_broadcaster() -> MagicMock:
    broadcaster = MagicMock(spec=LoggingBroadcaster)
    broadcaster.publish = AsyncMock(return_value=None)
    broadcaster.close = AsyncMock()
    return broadcaster


# Sample data fixtures
def make_record(
    sys_id: Optional[str] = None,
    number: Optional[str] = None,
    state: str = "2",
    priority: str = "3",
    updated_at: Optional[datetime] = None,
    **extra
) -> dict:
    """
    Build a Table API record the way ServiceNow returns it with
    ``sysparm_display_value=all``.
    """
    updated_at = updated_at or utcnow() - timedelta(minutes=30)
    created_at = updated_at - timedelta(days=1)
    sys_id = sys_id or fake.hexify(text="^" * 32)
    number = number or f"INC{fake.random_int(min=1000000, max=9999999)}"

    record = {
        "sys_id": {"value": sys_id, "display_value": sys_id},
        "number": {"value": number, "display_value": number},
        "state": {"value": state, "display_value": "In Progress"},
        "priority": {"value": priority, "display_value": f"{priority} - Moderate"},
        "short_description": {
            "value": fake.sentence(),
            "display_value": None,
        },
        "assignment_group": {
            "value": fake.hexify(text="^" * 32),
            "display_value": "Service Desk",
        },
        "sys_created_on": {
            "value": format_servicenow_datetime(created_at),
            "display_value": created_at.strftime("%d/%m/%Y %H:%M:%S"),
        },
        "sys_updated_on": {
            "value": format_servicenow_datetime(updated_at),
            "display_value": updated_at.strftime("%d/%m/%Y %H:%M:%S"),
        },
        "caller_id": {"value": fake.hexify(text="^" * 32), "display_value": fake.name()},
        "category": {"value": "network", "display_value": "Network"},
    }
    record["short_description"]["display_value"] = record["short_description"]["value"]
    record.update(extra)
    return record


@pytest.fixture
def record_factory():
    """Factory fixture for upstream records (see make_record)."""
    return make_record


@pytest.fixture
def sample_record() -> dict:
    return make_record(sys_id="46d44a5dc0a8010e0000b1d7a2c1f9e1", number="INC0010001")


@pytest.fixture
def sample_sla() -> list:
    return [
        {
            "sys_id": {"value": "a1b2c3", "display_value": "a1b2c3"},
            "sla": {"value": "sla1", "display_value": "Priority 3 resolution (5 day)"},
            "stage": {"value": "in_progress", "display_value": "In progress"},
            "has_breached": {"value": "false", "display_value": "false"},
        }
    ]


@pytest.fixture
def sample_notes() -> list:
    return [
        {
            "sys_id": "n1",
            "value": "Restarted the VPN concentrator",
            "sys_created_on": "2024-01-15 10:30:00",
            "sys_created_by": "jsmith",
            "work_notes": True,
        }
    ]


# Authentication fixtures
@pytest.fixture
def auth_header() -> dict:
    """Test authentication header for API tests."""
    return {"X-Dashboard-Password": "test_password"}


@pytest.fixture
def invalid_auth_header() -> dict:
    """Invalid authentication header for testing auth failures."""
    return {"X-Dashboard-Password": "wrong_password"}
