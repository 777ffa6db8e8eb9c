"""Fixtures for API route tests.

The app runs against a private in-memory database. The engine is created
lazily inside the test client's event loop so every request shares it.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from careroster.db.connection import get_db
from careroster.db.models import Base
from careroster.web.app import app


@pytest.fixture
def client():
    """Create test client with the database dependency overridden."""
    state = {}

    async def override_get_db():
        if "factory" not in state:
            engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            state["engine"] = engine
            state["factory"] = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        session = state["factory"]()
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
        if "engine" in state:
            test_client.portal.call(state["engine"].dispose)
    app.dependency_overrides.clear()
