"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm.exc import StaleDataError

from marketplace_escrow.domain.enums import OrderPhase, RefundStatus
from marketplace_escrow.domain.exceptions import StaleVersionError
from marketplace_escrow.domain.projection import (
    DISPUTE_PHASES,
    REFUNDED_PHASES,
)
from marketplace_escrow.infrastructure.database.orm_models import (
    AuditLogEntry,
    DisputeEvidence,
    Order,
    OrderEvent,
    Refund,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.enums import EventType


def _phase_values(phases: Iterable[OrderPhase]) -> list[str]:
    return [OrderPhase(p).value for p in phases]


class OrderRepository:
    """Data access for orders. Orders are never deleted."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, order: Order) -> Order:
        """Insert a new order."""
        self._session.add(order)
        await self._session.flush()
        return order

    async def get_by_id(self, order_id: uuid.UUID) -> Order | None:
        """Fetch an order by its UUID."""
        result = await self._session.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def get_by_payment_reference(self, payment_reference: str) -> Order | None:
        result = await self._session.execute(
            select(Order).where(Order.payment_reference == payment_reference)
        )
        return result.scalar_one_or_none()

    async def save(self, order: Order) -> Order:
        """Flush pending changes, translating a lost version race into a conflict.

        The version counter is checked in the UPDATE's WHERE clause; zero
        matched rows means another writer committed first.
        """
        expected = order.version
        try:
            await self._session.flush()
        except StaleDataError as exc:
            raise StaleVersionError(
                order_id=str(order.id),
                expected_version=expected,
                actual_version=None,
            ) from exc
        return order

    async def refresh(self, order: Order) -> Order:
        await self._session.refresh(order)
        return order

    async def list_by_phases(
        self,
        phases: Iterable[OrderPhase],
        oldest_first: bool = False,
        limit: int | None = None,
    ) -> list[Order]:
        """Fetch orders in any of the given phases."""
        order_col = Order.created_at.asc() if oldest_first else Order.created_at.desc()
        stmt = select(Order).where(Order.phase.in_(_phase_values(phases))).order_by(order_col)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_open_disputes(self) -> list[Order]:
        """Pending and under-review disputes, oldest dispute first."""
        result = await self._session.execute(
            select(Order)
            .where(Order.phase.in_(_phase_values(DISPUTE_PHASES)))
            .order_by(Order.dispute_opened_at.asc())
        )
        return list(result.scalars().all())

    async def list_due_for_auto_release(self, now: datetime, limit: int) -> list[uuid.UUID]:
        """Ids of orders whose auto-release date has passed.

        Flat orders qualify once delivered or approved. Milestone orders stay
        FUNDED while their milestones run, so they qualify from FUNDED.
        """
        flat = and_(
            Order.has_milestones.is_(False),
            Order.phase.in_([OrderPhase.WORK_SUBMITTED.value, OrderPhase.APPROVED.value]),
        )
        milestone_based = and_(
            Order.has_milestones.is_(True),
            Order.phase == OrderPhase.FUNDED.value,
        )
        result = await self._session.execute(
            select(Order.id)
            .where(
                or_(flat, milestone_based),
                Order.auto_release_date.is_not(None),
                Order.auto_release_date <= now,
            )
            .order_by(Order.auto_release_date.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_by_phases(self, phases: Iterable[OrderPhase] | None = None) -> int:
        stmt = select(func.count(Order.id))
        if phases is not None:
            stmt = stmt.where(Order.phase.in_(_phase_values(phases)))
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def count_ever_disputed(self) -> int:
        """Orders that had a dispute opened at some point, resolved or not."""
        result = await self._session.execute(
            select(func.count(Order.id)).where(Order.dispute_opened_at.is_not(None))
        )
        return int(result.scalar_one())

    async def list_refunded(self) -> list[Order]:
        return await self.list_by_phases(REFUNDED_PHASES)


class RefundRepository:
    """Data access for the refund ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, refund: Refund) -> Refund:
        self._session.add(refund)
        await self._session.flush()
        return refund

    async def get_by_id(self, refund_id: uuid.UUID) -> Refund | None:
        result = await self._session.execute(select(Refund).where(Refund.id == refund_id))
        return result.scalar_one_or_none()

    async def get_by_order(self, order_id: uuid.UUID) -> list[Refund]:
        result = await self._session.execute(
            select(Refund)
            .where(Refund.order_id == order_id)
            .order_by(Refund.requested_at.asc())
        )
        return list(result.scalars().all())

    async def get_pending_for_order(self, order_id: uuid.UUID) -> Refund | None:
        result = await self._session.execute(
            select(Refund)
            .where(
                Refund.order_id == order_id,
                Refund.status == RefundStatus.PENDING.value,
            )
            .order_by(Refund.requested_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_recent(self, status: RefundStatus | None = None, limit: int = 100) -> list[Refund]:
        """Refunds newest first, optionally filtered by status."""
        stmt = select(Refund).order_by(Refund.requested_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(Refund.status == RefundStatus(status).value)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_completed(self) -> list[Refund]:
        result = await self._session.execute(
            select(Refund).where(Refund.status == RefundStatus.COMPLETED.value)
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        result = await self._session.execute(
            select(Refund.status, func.count(Refund.id)).group_by(Refund.status)
        )
        return {status: int(count) for status, count in result.all()}

    async def completed_totals(self) -> tuple[int, int]:
        """(number of completed refunds, total amount refunded)."""
        result = await self._session.execute(
            select(func.count(Refund.id), func.coalesce(func.sum(Refund.amount), 0)).where(
                Refund.status == RefundStatus.COMPLETED.value
            )
        )
        count, total = result.one()
        return int(count), int(total)

    async def totals_by_reason(self) -> dict[str, dict[str, int]]:
        result = await self._session.execute(
            select(Refund.reason, func.count(Refund.id), func.sum(Refund.amount))
            .group_by(Refund.reason)
            .order_by(func.count(Refund.id).desc())
        )
        return {
            reason: {"count": int(count), "total_amount": int(total or 0)}
            for reason, count, total in result.all()
        }


class EvidenceRepository:
    """Append-only access to dispute evidence."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, evidence: DisputeEvidence) -> DisputeEvidence:
        """Insert one evidence row. This is the ONLY write operation allowed."""
        self._session.add(evidence)
        await self._session.flush()
        return evidence

    async def count_for_order(self, order_id: uuid.UUID) -> int:
        result = await self._session.execute(
            select(func.count(DisputeEvidence.id)).where(DisputeEvidence.order_id == order_id)
        )
        return int(result.scalar_one())

    async def get_by_order(self, order_id: uuid.UUID) -> list[DisputeEvidence]:
        result = await self._session.execute(
            select(DisputeEvidence)
            .where(DisputeEvidence.order_id == order_id)
            .order_by(DisputeEvidence.created_at.asc())
        )
        return list(result.scalars().all())


class AuditLogRepository:
    """Data access for the append-only audit log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, entry: AuditLogEntry) -> AuditLogEntry:
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def list_recent(
        self,
        target_id: str | None = None,
        actor_id: str | None = None,
        action: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        """Most recent entries first, optionally narrowed."""
        stmt = select(AuditLogEntry).order_by(AuditLogEntry.created_at.desc()).limit(limit)
        if target_id is not None:
            stmt = stmt.where(AuditLogEntry.target_id == target_id)
        if actor_id is not None:
            stmt = stmt.where(AuditLogEntry.actor_id == actor_id)
        if action is not None:
            stmt = stmt.where(AuditLogEntry.action == action)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class EventRepository:
    """Data access for the append-only order event trail."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        order_id: uuid.UUID,
        event_type: EventType,
        old_phase: OrderPhase | str | None,
        new_phase: OrderPhase | str,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> OrderEvent:
        """Append a new event. This is the ONLY write operation allowed."""
        evt = OrderEvent(
            order_id=order_id,
            event_type=event_type.value,
            old_phase=OrderPhase(old_phase).value if old_phase else None,
            new_phase=OrderPhase(new_phase).value,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_order(self, order_id: uuid.UUID) -> list[OrderEvent]:
        """Fetch all events for an order in chronological order."""
        result = await self._session.execute(
            select(OrderEvent)
            .where(OrderEvent.order_id == order_id)
            .order_by(OrderEvent.created_at.asc())
        )
        return list(result.scalars().all())
