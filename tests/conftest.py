"""Shared test fixtures for the marketplace escrow test suite.

Provides:
    - A file-backed SQLite database per test (aiosqlite), so independent
      sessions such as the admin failure audit see committed data
    - Actors for the three roles that drive an order
    - Funded and submitted orders (builders live in factories.py)
    - Async test support via pytest-asyncio
    - structlog configured as in production, so every log call is exercised
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from factories import create_funded_order, make_upload
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from marketplace_escrow.config import Settings
from marketplace_escrow.domain.collaborators import Actor
from marketplace_escrow.domain.enums import ActorRole
from marketplace_escrow.infrastructure.database.orm_models import Base
from marketplace_escrow.logging_config import setup_logging
from marketplace_escrow.services.order_service import OrderService

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from marketplace_escrow.infrastructure.database.orm_models import Order


# ---------------------------------------------------------------------------
# Settings + database
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session", autouse=True)
def structured_logging() -> None:
    """Log through the same structlog pipeline the service runs with."""
    setup_logging(log_level="DEBUG", json_logs=True)


@pytest.fixture
def settings() -> Settings:
    """Test settings: no background jobs, no automatic repair."""
    return Settings(
        app_env="test",
        database_url="sqlite+aiosqlite://",
        auto_release_enabled=False,
        reconciliation_enabled=False,
        reconciliation_auto_repair=False,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """A fresh database with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as db_session:
        yield db_session


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def buyer() -> Actor:
    return Actor(id="buyer-1", role=ActorRole.BUYER)


@pytest.fixture
def seller() -> Actor:
    return Actor(id="seller-1", role=ActorRole.SELLER)


@pytest.fixture
def admin() -> Actor:
    return Actor(id="admin-1", role=ActorRole.ADMIN)


@pytest.fixture
def stranger() -> Actor:
    return Actor(id="someone-else", role=ActorRole.BUYER)


@pytest_asyncio.fixture
async def funded_order(session, settings, buyer, seller) -> Order:
    """A flat 50,000 order sitting in FUNDED."""
    return await create_funded_order(session, settings, buyer, seller)


@pytest_asyncio.fixture
async def submitted_order(session, settings, funded_order, seller) -> Order:
    """The funded order after the seller delivered."""
    order = await OrderService(session, settings).submit_work(
        funded_order.id, seller, [make_upload()]
    )
    await session.commit()
    return order
