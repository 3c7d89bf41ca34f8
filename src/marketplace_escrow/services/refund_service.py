"""Refund Service — the refund ledger and its link to order state.

A Refund row is the auditable history of a refund (requested, rejected,
re-requested, completed). The order only carries the settled outcome
(phase + ``refund_amount``). Whenever a refund completes, the Refund row and
the order are written in the same transaction and the pair is re-read and
checked before the caller commits.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from marketplace_escrow.domain.enums import (
    EventType,
    RefundAction,
    RefundPriority,
    RefundStatus,
)
from marketplace_escrow.domain.exceptions import (
    AlreadyRefundedError,
    ConflictError,
    IntegrityFailure,
    RefundNotFoundError,
    ValidationError,
)
from marketplace_escrow.domain.projection import is_refundable, is_refunded
from marketplace_escrow.infrastructure.database.orm_models import Refund
from marketplace_escrow.infrastructure.database.repositories import RefundRepository
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.base import OrderWorkflow, as_utc, utcnow

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.collaborators import Actor
    from marketplace_escrow.infrastructure.database.orm_models import Order

logger = get_logger(__name__)

DIRECT_REFUND_METHOD = "original_payment"


def refundable_amount(order: Order) -> int:
    """What can still go back to the buyer: price minus milestones already paid out."""
    return order.price - order.paid_milestone_total


def check_refund_amount(order: Order, amount: int) -> None:
    ceiling = refundable_amount(order)
    if amount <= 0 or amount > ceiling:
        raise ValidationError(
            f"Refund amount must be between 1 and {ceiling}",
            details={"amount": amount, "refundable_amount": ceiling, "price": order.price},
        )


async def verify_refund_pair(session: AsyncSession, order: Order, refund: Refund) -> None:
    """Re-read an order and its completed refund and make sure they agree.

    Raises:
        IntegrityFailure: the two records disagree about whether money moved.
    """
    await session.flush()
    await session.refresh(order)
    await session.refresh(refund)

    problems = []
    if refund.status != RefundStatus.COMPLETED:
        problems.append(f"refund status is {refund.status}")
    if not is_refunded(order.phase):
        problems.append(f"order phase is {order.phase}")
    if order.refund_amount != refund.amount:
        problems.append(f"order refund_amount {order.refund_amount} != refund {refund.amount}")
    if order.released_at is not None:
        problems.append("order also carries a release timestamp")

    if problems:
        logger.critical(
            "refund.integrity_failure",
            order_id=str(order.id),
            refund_id=str(refund.id),
            problems=problems,
        )
        raise IntegrityFailure(
            "Order and refund records disagree: " + "; ".join(problems),
            order_id=str(order.id),
            refund_id=str(refund.id),
        )


class RefundService(OrderWorkflow):
    """Refund requests, admin processing and direct refunds."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        super().__init__(session, settings)
        self._refund_repo = RefundRepository(session)

    # ------------------------------------------------------------------
    # Buyer requests
    # ------------------------------------------------------------------

    async def request_refund(
        self,
        order_id: uuid.UUID,
        buyer: Actor,
        amount: int,
        reason: str,
        description: str | None = None,
        priority: RefundPriority | str = RefundPriority.MEDIUM,
    ) -> Refund:
        """Open a pending refund request. The order itself is untouched until processed."""
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required")

        order = await self._get_order_or_raise(order_id)
        self._require_buyer(order, buyer)
        self._require_refundable(order)
        check_refund_amount(order, amount)

        if await self._refund_repo.get_pending_for_order(order.id) is not None:
            raise ConflictError(
                "A refund request for this order is already pending",
                current_state=order.phase,
                code="REFUND_ALREADY_PENDING",
            )

        refund = await self._refund_repo.create(
            Refund(
                order_id=order.id,
                buyer_id=order.buyer_id,
                seller_id=order.seller_id,
                amount=amount,
                reason=reason.strip(),
                description=description,
                priority=RefundPriority(priority).value,
                status=RefundStatus.PENDING.value,
                refund_method=DIRECT_REFUND_METHOD,
                requested_at=utcnow(),
            )
        )
        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.REFUND_REQUESTED,
            old_phase=order.phase,
            new_phase=order.phase,
            actor=buyer.id,
            metadata={"refund_id": str(refund.id), "amount": amount, "reason": reason},
        )
        logger.info("refund.requested", order_id=str(order.id), refund_id=str(refund.id), amount=amount)
        return refund

    # ------------------------------------------------------------------
    # Admin processing
    # ------------------------------------------------------------------

    async def process_refund(
        self,
        refund_id: uuid.UUID,
        admin: Actor,
        action: RefundAction | str,
        notes: str | None = None,
    ) -> Refund:
        """Approve or reject a pending refund request.

        Approval completes the Refund and moves the order to REFUNDED in one
        transaction. Rejection leaves the order untouched.
        """
        self._require_admin(admin)
        try:
            action = RefundAction(action)
        except ValueError as err:
            raise ValidationError(
                f"Invalid refund action: {action}",
                details={"allowed": [a.value for a in RefundAction]},
            ) from err

        refund = await self._get_refund_or_raise(refund_id)
        if refund.status != RefundStatus.PENDING:
            raise ConflictError(
                f"Refund is already {refund.status}",
                current_state=refund.status,
                code="REFUND_NOT_PENDING",
                details={"refund_id": str(refund.id)},
            )
        order = await self._get_order_or_raise(refund.order_id)

        if action == RefundAction.REJECT:
            refund.status = RefundStatus.REJECTED.value
            refund.processed_at = utcnow()
            refund.processed_by = admin.id
            refund.admin_notes = notes
            await self._session.flush()
            logger.info("refund.rejected", refund_id=str(refund.id), order_id=str(order.id))
            return refund

        self._guard(order, "refund")
        check_refund_amount(order, refund.amount)

        refund.status = RefundStatus.COMPLETED.value
        refund.processed_at = utcnow()
        refund.processed_by = admin.id
        refund.admin_notes = notes
        await self._apply_refund(order, refund, admin, "refund", EventType.ORDER_REFUNDED)
        return refund

    async def refund_order(
        self,
        order_id: uuid.UUID,
        admin: Actor,
        reason: str,
        amount: int | None = None,
        expected_version: int | None = None,
    ) -> Refund:
        """Direct admin refund. Synthesizes a completed Refund record."""
        self._require_admin(admin)
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required")

        order = await self._get_order_or_raise(order_id, expected_version)
        self._guard(order, "refund")
        amount = refundable_amount(order) if amount is None else amount
        check_refund_amount(order, amount)

        now = utcnow()
        refund = await self._settle_ledger(order, admin, amount, reason.strip(), notes=None, now=now)
        await self._apply_refund(order, refund, admin, "refund", EventType.ORDER_REFUNDED)
        return refund

    async def complete_for_dispute(
        self,
        order: Order,
        admin: Actor,
        amount: int,
        resolution: str,
    ) -> Refund:
        """Refund leg of a dispute resolution: DISPUTE_UNDER_REVIEW -> DISPUTE_REFUNDED.

        Completes an existing pending request for the order if there is one,
        otherwise creates the completed record.
        """
        self._guard(order, "resolve_refund")
        check_refund_amount(order, amount)
        refund = await self._settle_ledger(
            order, admin, amount, "Dispute resolution", notes=resolution, now=utcnow()
        )
        await self._apply_refund(
            order,
            refund,
            admin,
            "resolve_refund",
            EventType.DISPUTE_RESOLVED_REFUND,
            extra_metadata={"resolution": resolution},
        )
        return refund

    async def reapply_completed(self, refund: Refund, actor: Actor) -> Order:
        """Bring an order in line with a refund that completed without it."""
        order = await self._get_order_or_raise(refund.order_id)
        self._guard(order, "refund")
        check_refund_amount(order, refund.amount)
        await self._apply_refund(
            order,
            refund,
            actor,
            "refund",
            EventType.ORDER_REFUNDED,
            extra_metadata={"reconciled": True},
        )
        return order

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_refund(self, refund_id: uuid.UUID) -> Refund:
        return await self._get_refund_or_raise(refund_id)

    async def get_order_refunds(self, order_id: uuid.UUID) -> list[Refund]:
        await self._get_order_or_raise(order_id)
        return await self._refund_repo.get_by_order(order_id)

    async def get_refundable_amount(self, order_id: uuid.UUID) -> int:
        order = await self._get_order_or_raise(order_id)
        if not is_refundable(order.phase):
            return 0
        return refundable_amount(order)

    async def list_refunds(
        self,
        status: RefundStatus | str | None = None,
        limit: int = 100,
    ) -> list[Refund]:
        return await self._refund_repo.list_recent(
            status=RefundStatus(status) if status else None, limit=limit
        )

    async def refund_statistics(self) -> dict:
        """Ledger totals for admin reporting."""
        by_status = await self._refund_repo.count_by_status()
        completed_count, total_amount = await self._refund_repo.completed_totals()
        total_orders = await self._order_repo.count_by_phases()

        processing_days = []
        for refund in await self._refund_repo.list_completed():
            processed_at = as_utc(refund.processed_at)
            requested_at = as_utc(refund.requested_at)
            if processed_at and requested_at:
                processing_days.append((processed_at - requested_at).total_seconds() / 86400)

        return {
            "total_refunds": sum(by_status.values()),
            "pending_refunds": by_status.get(RefundStatus.PENDING.value, 0),
            "processing_refunds": by_status.get(RefundStatus.PROCESSING.value, 0),
            "completed_refunds": completed_count,
            "rejected_refunds": by_status.get(RefundStatus.REJECTED.value, 0),
            "total_refund_amount": total_amount,
            "average_refund_amount": (
                round(total_amount / completed_count, 2) if completed_count else 0
            ),
            "refund_rate": (
                round(completed_count / total_orders * 100, 1) if total_orders else 0
            ),
            "average_processing_days": (
                round(sum(processing_days) / len(processing_days), 1) if processing_days else 0
            ),
            "refunds_by_reason": await self._refund_repo.totals_by_reason(),
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_refund_or_raise(self, refund_id: uuid.UUID) -> Refund:
        refund = await self._refund_repo.get_by_id(refund_id)
        if refund is None:
            raise RefundNotFoundError(str(refund_id))
        return refund

    @staticmethod
    def _require_refundable(order: Order) -> None:
        if is_refunded(order.phase):
            raise AlreadyRefundedError(str(order.id), order.phase)
        if not is_refundable(order.phase):
            raise ConflictError(
                "Order is not in a refundable state",
                current_state=order.phase,
            )

    async def _settle_ledger(
        self,
        order: Order,
        admin: Actor,
        amount: int,
        reason: str,
        notes: str | None,
        now: datetime,
    ) -> Refund:
        """Complete the pending request for this order, or write a completed one."""
        refund = await self._refund_repo.get_pending_for_order(order.id)
        if refund is None:
            refund = await self._refund_repo.create(
                Refund(
                    order_id=order.id,
                    buyer_id=order.buyer_id,
                    seller_id=order.seller_id,
                    amount=amount,
                    reason=reason,
                    status=RefundStatus.PENDING.value,
                    priority=RefundPriority.HIGH.value,
                    refund_method=DIRECT_REFUND_METHOD,
                    requested_at=now,
                )
            )
        refund.amount = amount
        refund.status = RefundStatus.COMPLETED.value
        refund.processed_at = now
        refund.processed_by = admin.id
        refund.admin_notes = notes
        return refund

    async def _apply_refund(
        self,
        order: Order,
        refund: Refund,
        admin: Actor,
        event_name: str,
        event_type: EventType,
        extra_metadata: dict | None = None,
    ) -> None:
        order.refund_amount = refund.amount
        order.refunded_at = refund.processed_at
        order.cancellation_reason = refund.reason
        await self._transition(
            order,
            event_name,
            event_type,
            admin,
            metadata={
                "refund_id": str(refund.id),
                "amount": refund.amount,
                **(extra_metadata or {}),
            },
        )
        await verify_refund_pair(self._session, order, refund)
        logger.info(
            "order.refunded",
            order_id=str(order.id),
            refund_id=str(refund.id),
            amount=refund.amount,
            via=event_name,
        )
