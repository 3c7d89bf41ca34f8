"""Shared plumbing for the order-level services.

Every service that moves an order between phases goes through
``OrderWorkflow._transition``: load, check the caller's expected version,
validate the event with the state machine, write the new phase, flush (the
ORM version counter rejects a concurrent writer here) and append exactly one
order event. Nothing else assigns ``Order.phase``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.enums import ActorRole, OrderPhase
from marketplace_escrow.domain.exceptions import (
    AlreadyRefundedError,
    AuthorizationError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    StaleVersionError,
)
from marketplace_escrow.domain.projection import is_refunded
from marketplace_escrow.domain.state_machine import validate_transition
from marketplace_escrow.infrastructure.database.repositories import (
    EventRepository,
    OrderRepository,
)
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.collaborators import Actor
    from marketplace_escrow.domain.enums import EventType
    from marketplace_escrow.infrastructure.database.orm_models import Order

logger = get_logger(__name__)

# Events that move money back to the buyer.
REFUND_EVENTS = frozenset({"refund", "resolve_refund"})


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class OrderWorkflow:
    """Base class for services that read and transition orders."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._order_repo = OrderRepository(session)
        self._event_repo = EventRepository(session)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def _get_order_or_raise(
        self,
        order_id: uuid.UUID,
        expected_version: int | None = None,
    ) -> Order:
        order = await self._order_repo.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(str(order_id))
        if expected_version is not None and order.version != expected_version:
            raise StaleVersionError(
                order_id=str(order.id),
                expected_version=expected_version,
                actual_version=order.version,
                current_state=order.phase,
            )
        return order

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    @staticmethod
    def _require_buyer(order: Order, actor: Actor) -> None:
        if actor.role != ActorRole.BUYER or actor.id != order.buyer_id:
            raise AuthorizationError(
                "Only the buyer of this order may perform this action",
                actor_id=actor.id,
                role=actor.role.value,
            )

    @staticmethod
    def _require_seller(order: Order, actor: Actor) -> None:
        if actor.role != ActorRole.SELLER or actor.id != order.seller_id:
            raise AuthorizationError(
                "Only the seller of this order may perform this action",
                actor_id=actor.id,
                role=actor.role.value,
            )

    @staticmethod
    def _require_party(order: Order, actor: Actor) -> None:
        is_buyer = actor.role == ActorRole.BUYER and actor.id == order.buyer_id
        is_seller = actor.role == ActorRole.SELLER and actor.id == order.seller_id
        if not (is_buyer or is_seller):
            raise AuthorizationError(
                "Only the buyer or seller of this order may perform this action",
                actor_id=actor.id,
                role=actor.role.value,
            )

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if actor.role != ActorRole.ADMIN:
            raise AuthorizationError(
                "Admin role required", actor_id=actor.id, role=actor.role.value
            )

    @staticmethod
    def _require_privileged(actor: Actor) -> None:
        if not actor.is_privileged:
            raise AuthorizationError(
                "Only the platform or an admin may perform this action",
                actor_id=actor.id,
                role=actor.role.value,
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @staticmethod
    def _guard(order: Order, event_name: str, **event_kwargs: object) -> OrderPhase:
        """Validate an order event and return the phase it leads to.

        Raises:
            AlreadyRefundedError: a refund event against a refunded order.
            InvalidStateTransitionError: any other illegal event.
        """
        if event_name in REFUND_EVENTS and is_refunded(order.phase):
            raise AlreadyRefundedError(str(order.id), order.phase)
        try:
            new_phase = validate_transition(order.phase, event_name, **event_kwargs)
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(order.phase, event_name) from err
        return OrderPhase(new_phase)

    async def _transition(
        self,
        order: Order,
        event_name: str,
        event_type: EventType,
        actor: Actor,
        metadata: dict | None = None,
        **event_kwargs: object,
    ) -> Order:
        """Fire one event: guard, write the phase, flush, append the trail entry.

        Field changes the caller made on ``order`` before this call land in
        the same UPDATE as the phase change.
        """
        old_phase = OrderPhase(order.phase)
        new_phase = self._guard(order, event_name, **event_kwargs)

        order.phase = new_phase.value
        order.updated_at = utcnow()
        await self._order_repo.save(order)

        await self._event_repo.record(
            order_id=order.id,
            event_type=event_type,
            old_phase=old_phase,
            new_phase=new_phase,
            actor=actor.id,
            metadata=metadata,
        )
        logger.info(
            "order.transitioned",
            order_id=str(order.id),
            event_name=event_name,
            old_phase=old_phase.value,
            new_phase=new_phase.value,
            actor=actor.id,
            version=order.version,
        )
        return order

    async def _record_in_phase(
        self,
        order: Order,
        event_type: EventType,
        actor: Actor,
        metadata: dict | None = None,
    ) -> Order:
        """Persist a change that leaves the phase alone, still bumping the version."""
        order.updated_at = utcnow()
        await self._order_repo.save(order)
        await self._event_repo.record(
            order_id=order.id,
            event_type=event_type,
            old_phase=order.phase,
            new_phase=order.phase,
            actor=actor.id,
            metadata=metadata,
        )
        return order
