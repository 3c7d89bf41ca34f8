"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
services, the calling actor and idempotency reservations.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.collaborators import Actor
from marketplace_escrow.domain.enums import ActorRole
from marketplace_escrow.domain.exceptions import AuthorizationError, DuplicateOperationError
from marketplace_escrow.infrastructure.database.engine import get_async_session
from marketplace_escrow.infrastructure.redis_client import (
    claim_idempotency,
    is_redis_ready,
    release_idempotency,
)
from marketplace_escrow.logging_config import bind_actor, get_logger
from marketplace_escrow.services import (
    AdminGateway,
    DisputeService,
    MilestoneService,
    OrderService,
    RefundService,
)

logger = get_logger(__name__)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Actor:
    """Resolve the caller from the identity headers set by the upstream gateway.

    The ``system`` role is reserved for in-process jobs and is never
    accepted from the wire.
    """
    if not x_actor_id or not x_actor_role:
        raise AuthorizationError("Missing X-Actor-Id / X-Actor-Role headers")
    try:
        role = ActorRole(x_actor_role.lower())
    except ValueError as err:
        raise AuthorizationError(
            f"Unknown actor role: {x_actor_role}", actor_id=x_actor_id, role=x_actor_role
        ) from err
    if role == ActorRole.SYSTEM:
        raise AuthorizationError(
            "The system role cannot be asserted by a client",
            actor_id=x_actor_id,
            role=role.value,
        )
    bind_actor(x_actor_id, role.value)
    return Actor(id=x_actor_id, role=role)


async def idempotency_guard(
    idempotency_key: str | None = Header(default=None),
) -> AsyncGenerator[str | None, None]:
    """Reserve the request's Idempotency-Key for its TTL.

    A failed request releases the key so the client can retry it.
    Requests without a key, or while Redis is down, run unguarded.
    """
    if not idempotency_key:
        yield None
        return
    if not is_redis_ready():
        logger.warning("idempotency.redis_unavailable", key=idempotency_key)
        yield idempotency_key
        return

    if not await claim_idempotency(idempotency_key):
        raise DuplicateOperationError(idempotency_key)
    try:
        yield idempotency_key
    except Exception:
        await release_idempotency(idempotency_key)
        raise


def get_order_service(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> OrderService:
    return OrderService(session, settings)


def get_milestone_service(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> MilestoneService:
    return MilestoneService(session, settings)


def get_dispute_service(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> DisputeService:
    return DisputeService(session, settings)


def get_refund_service(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> RefundService:
    return RefundService(session, settings)


def get_admin_gateway(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> AdminGateway:
    return AdminGateway(session, settings)
