"""HTTP-level fixtures: the FastAPI app wired to the per-test database.

The lifespan is not run, so no Redis or scheduler is started; requests
without an Idempotency-Key are unguarded.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest_asyncio
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.api.deps import get_admin_gateway, get_app_settings, get_db_session
from marketplace_escrow.main import create_app
from marketplace_escrow.services.admin_gateway import AdminGateway

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@pytest_asyncio.fixture
async def client(session_factory, settings) -> AsyncGenerator[AsyncClient, None]:
    app = create_app()

    async def _session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def _gateway(session: AsyncSession = Depends(get_db_session)) -> AdminGateway:
        return AdminGateway(session, settings, audit_session_factory=session_factory)

    app.dependency_overrides[get_db_session] = _session
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_admin_gateway] = _gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
