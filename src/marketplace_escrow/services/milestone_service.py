"""Milestone Service — per-milestone delivery and payment inside an order.

Each milestone runs its own small state machine. Paying a milestone is the
only step here that moves money, so it is the one guarded against the
order's escrow phase and against overpaying the order price. Once every
milestone is paid the order settles (FUNDED -> RELEASED).
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.domain.collaborators import Actor
from marketplace_escrow.domain.enums import EventType, MilestoneStatus, OrderPhase
from marketplace_escrow.domain.exceptions import (
    ConflictError,
    InvalidStateTransitionError,
    MilestoneNotFoundError,
    MilestoneOverflowError,
    ValidationError,
)
from marketplace_escrow.domain.projection import FROZEN_PHASES
from marketplace_escrow.domain.state_machine import validate_milestone_transition
from marketplace_escrow.infrastructure.database.orm_models import Milestone, RevisionRequest
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.base import OrderWorkflow, as_utc, utcnow
from marketplace_escrow.services.order_service import (
    deliverable_from_upload,
    grant_full_access,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from marketplace_escrow.domain.collaborators import DeliverableUpload, MilestoneTemplate
    from marketplace_escrow.infrastructure.database.orm_models import Order

logger = get_logger(__name__)


class MilestoneService(OrderWorkflow):
    """Milestone plans, submissions, approvals and payments."""

    async def create_milestones(
        self,
        order_id: uuid.UUID,
        buyer: Actor,
        plan: Sequence[MilestoneTemplate],
        expected_version: int | None = None,
    ) -> Order:
        """Buyer splits a flat order into milestones. Allowed once, while still FUNDED."""
        if not plan:
            raise ValidationError("At least one milestone is required")
        if any(item.amount <= 0 for item in plan):
            raise ValidationError("Every milestone amount must be positive")

        order = await self._get_order_or_raise(order_id, expected_version)
        self._require_buyer(order, buyer)
        if order.milestones:
            raise ConflictError("Milestones already exist for this order", current_state=order.phase)
        if order.phase != OrderPhase.FUNDED:
            raise ConflictError(
                "Milestones can only be planned before any work is submitted",
                current_state=order.phase,
            )
        total = sum(item.amount for item in plan)
        if total != order.price:
            raise ValidationError(
                f"Milestone amounts ({total}) must equal order total ({order.price})",
                details={"milestone_total": total, "price": order.price},
            )

        now = utcnow()
        accumulated = 0
        for position, item in enumerate(plan):
            accumulated += max(item.delivery_days, 0)
            order.milestones.append(
                Milestone(
                    position=position,
                    title=item.title,
                    description=item.description or None,
                    amount=item.amount,
                    due_date=now + timedelta(days=accumulated),
                    status=MilestoneStatus.PENDING.value,
                    deliverables=[],
                )
            )
        order.has_milestones = True

        # Extend, never shorten, the auto-release window.
        latest_due = max(m.due_date for m in order.milestones)
        extended = latest_due + timedelta(days=self._settings.milestone_hold_days)
        current = as_utc(order.auto_release_date)
        order.auto_release_date = max(extended, current) if current else extended
        order.client_review_deadline = order.auto_release_date
        order.expected_delivery_date = latest_due

        await self._record_in_phase(
            order,
            EventType.MILESTONES_CREATED,
            buyer,
            metadata={"count": len(plan), "total": total},
        )
        logger.info("milestones.created", order_id=str(order.id), count=len(plan))
        return order

    async def submit_milestone(
        self,
        order_id: uuid.UUID,
        index: int,
        seller: Actor,
        uploads: Sequence[DeliverableUpload],
        description: str | None = None,
        expected_version: int | None = None,
    ) -> Order:
        """Seller delivers one milestone (pending or in_progress -> submitted)."""
        if not uploads:
            raise ValidationError("At least one deliverable is required")
        order = await self._get_order_or_raise(order_id, expected_version)
        self._require_seller(order, seller)
        self._require_open(order)
        milestone = self._get_milestone(order, index)

        self._advance(order, milestone, "submit")
        revision_number = (
            max((d.revision_number for d in milestone.deliverables), default=0) + 1
        )
        for upload in uploads:
            order.deliverables.append(
                deliverable_from_upload(upload, seller.id, revision_number, milestone=milestone)
            )
        for request in order.revision_requests:
            if request.milestone_position == index:
                request.addressed = True
        milestone.submitted_at = utcnow()

        await self._record_in_phase(
            order,
            EventType.MILESTONE_SUBMITTED,
            seller,
            metadata={"milestone": index, "files": len(uploads), "description": description},
        )
        return order

    async def request_milestone_revision(
        self,
        order_id: uuid.UUID,
        index: int,
        buyer: Actor,
        reason: str,
        details: str | None = None,
        expected_version: int | None = None,
    ) -> Order:
        """Buyer sends a submitted milestone back (submitted -> in_progress)."""
        if not reason or not reason.strip():
            raise ValidationError("A revision reason is required")
        order = await self._get_order_or_raise(order_id, expected_version)
        self._require_buyer(order, buyer)
        self._require_open(order)
        milestone = self._get_milestone(order, index)

        self._advance(order, milestone, "request_revision")
        order.revision_requests.append(
            RevisionRequest(
                milestone_position=index,
                requested_by=buyer.id,
                reason=reason.strip(),
                details=details,
                addressed=False,
                created_at=utcnow(),
            )
        )
        order.revision_count += 1

        await self._record_in_phase(
            order,
            EventType.MILESTONE_REVISION_REQUESTED,
            buyer,
            metadata={"milestone": index, "reason": reason},
        )
        return order

    async def approve_milestone(
        self,
        order_id: uuid.UUID,
        index: int,
        buyer: Actor,
        feedback: str | None = None,
        expected_version: int | None = None,
    ) -> Order:
        """Buyer accepts a milestone; its final files unlock."""
        order = await self._get_order_or_raise(order_id, expected_version)
        self._require_buyer(order, buyer)
        self._require_open(order)
        milestone = self._get_milestone(order, index)

        self._advance(order, milestone, "approve")
        milestone.approved_at = utcnow()
        milestone.buyer_feedback = feedback
        grant_full_access(milestone.deliverables)

        await self._record_in_phase(
            order,
            EventType.MILESTONE_APPROVED,
            buyer,
            metadata={"milestone": index, "feedback": feedback},
        )
        return order

    async def pay_milestone(
        self,
        order_id: uuid.UUID,
        index: int,
        actor: Actor,
        expected_version: int | None = None,
    ) -> Order:
        """Release one approved milestone's amount to the seller.

        The buyer, the platform or an admin may trigger payment. The paid
        total may never exceed the order price; an overflow is rejected with
        no state change.
        """
        order = await self._get_order_or_raise(order_id, expected_version)
        if not actor.is_privileged:
            self._require_buyer(order, actor)
        self._require_open(order)
        milestone = self._get_milestone(order, index)

        paid_total = order.paid_milestone_total
        if paid_total + milestone.amount > order.price:
            logger.warning(
                "milestone.overflow_rejected",
                order_id=str(order.id),
                milestone=index,
                paid_total=paid_total,
                amount=milestone.amount,
                price=order.price,
            )
            raise MilestoneOverflowError(str(order.id), paid_total, milestone.amount, order.price)

        self._advance(order, milestone, "pay")
        milestone.paid_at = utcnow()

        await self._record_in_phase(
            order,
            EventType.MILESTONE_PAID,
            actor,
            metadata={
                "milestone": index,
                "amount": milestone.amount,
                "paid_total": paid_total + milestone.amount,
            },
        )
        logger.info(
            "milestone.paid",
            order_id=str(order.id),
            milestone=index,
            amount=milestone.amount,
        )

        if all(m.status == MilestoneStatus.PAID for m in order.milestones):
            await self._settle(order, actor)
        return order

    async def auto_release(self, order_id: uuid.UUID) -> Order | None:
        """Approve and pay every delivered milestone once the hold has lapsed.

        Runs for the platform after the latest due date plus the milestone
        hold. Milestones the seller never delivered stay unpaid, so the order
        only settles when all of them were delivered. Returns None when there
        was nothing to pay.
        """
        order = await self._get_order_or_raise(order_id)
        self._require_open(order)
        system = Actor.system()

        delivered = [
            m
            for m in sorted(order.milestones, key=lambda m: m.position)
            if m.status in (MilestoneStatus.SUBMITTED, MilestoneStatus.APPROVED)
        ]
        if not delivered:
            return None

        for milestone in delivered:
            if milestone.status == MilestoneStatus.SUBMITTED:
                self._advance(order, milestone, "approve")
                milestone.approved_at = utcnow()
                grant_full_access(milestone.deliverables)
                await self._record_in_phase(
                    order,
                    EventType.MILESTONE_APPROVED,
                    system,
                    metadata={"milestone": milestone.position, "auto": True},
                )
            await self.pay_milestone(order.id, milestone.position, system)

        logger.info(
            "milestone.auto_released",
            order_id=str(order.id),
            milestones=[m.position for m in delivered],
            settled=order.phase == OrderPhase.RELEASED,
        )
        return order

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _settle(self, order: Order, actor: Actor) -> None:
        self._guard(order, "settle_milestones", refund_amount=order.refund_amount)
        now = utcnow()
        order.released_at = now
        order.completed_at = now
        await self._transition(
            order,
            "settle_milestones",
            EventType.FUNDS_RELEASED,
            actor,
            metadata={"amount": order.paid_milestone_total, "milestones": len(order.milestones)},
            refund_amount=order.refund_amount,
        )

    @staticmethod
    def _get_milestone(order: Order, index: int) -> Milestone:
        for milestone in order.milestones:
            if milestone.position == index:
                return milestone
        raise MilestoneNotFoundError(str(order.id), index)

    @staticmethod
    def _require_open(order: Order) -> None:
        """Milestone work stops once the order is disputed, refunded or settled."""
        if order.phase in FROZEN_PHASES:
            raise ConflictError(
                "Milestones cannot change while the order is disputed or closed",
                current_state=order.phase,
            )
        if not order.has_milestones:
            raise ValidationError("This order has no milestones")

    @staticmethod
    def _advance(order: Order, milestone: Milestone, event_name: str) -> None:
        try:
            milestone.status = validate_milestone_transition(milestone.status, event_name)
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(
                f"milestone {milestone.position}: {milestone.status}", event_name
            ) from err
