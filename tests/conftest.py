"""Pytest configuration and fixtures for CareRoster tests.

Provides an in-memory database session and small builders for the records
most tests need.
"""

from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from careroster.config import reset_config
from careroster.db.models import AuthorizationModel, Base, ScheduleEventModel
from careroster.ledger.service import AuthorizationLedger
from careroster.scheduling.events import OccurrenceService

WEDNESDAY = date(2025, 1, 8)  # a Wednesday


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    reset_config()
    yield
    reset_config()


@pytest_asyncio.fixture()
async def db_engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(db_engine) -> AsyncSession:
    """Create in-memory database for testing."""
    SessionLocal = sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def patient_id() -> UUID:
    return uuid4()


@pytest.fixture
def staff_id() -> UUID:
    return uuid4()


@pytest.fixture
def make_authorization(db_session):
    """Factory: create an authorization for a patient."""

    async def _make(
        patient_id: UUID,
        max_units: int = 10,
        start_date: date = date(2025, 1, 1),
        end_date: date | None = date(2025, 12, 31),
    ) -> AuthorizationModel:
        return await AuthorizationLedger(db_session).create_authorization(
            patient_id=patient_id,
            authorization_no=f"AUTH-{uuid4().hex[:8]}",
            max_units=Decimal(max_units),
            start_date=start_date,
            end_date=end_date,
            event_code="T1019",
        )

    return _make


@pytest.fixture
def make_occurrence(db_session):
    """Factory: create a planned ad-hoc occurrence (Wednesday 09:00-11:00, 2 units)."""

    async def _make(
        patient_id: UUID,
        authorization_id: UUID | None,
        staff_id: UUID | None = None,
        on: date = WEDNESDAY,
        start: time = time(9, 0),
        end: time = time(11, 0),
        planned_units: int = 2,
    ) -> ScheduleEventModel:
        return await OccurrenceService(db_session).create_event(
            patient_id=patient_id,
            start_at=datetime.combine(on, start),
            end_at=datetime.combine(on, end),
            authorization_id=authorization_id,
            staff_id=staff_id,
            planned_units=planned_units,
        )

    return _make
