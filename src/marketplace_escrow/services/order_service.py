"""Order Service — core business logic for the order / escrow lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Repositories (data access)
    - Order event trail

Both REST routes and MCP tools call into this service, and so does the
auto-release sweep, so the manual and automatic paths share one set of
guards.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from marketplace_escrow.domain.collaborators import Actor, AllowAllRiskGate
from marketplace_escrow.domain.enums import (
    DeliverableAccess,
    EventType,
    MilestoneStatus,
    OrderPhase,
    ProtectionLevel,
)
from marketplace_escrow.domain.exceptions import (
    ConflictError,
    RiskGateRejectedError,
    ValidationError,
)
from marketplace_escrow.domain.projection import (
    is_disputable,
    is_refundable,
    is_terminal,
    project,
)
from marketplace_escrow.domain.state_machine import allowed_order_events
from marketplace_escrow.infrastructure.database.orm_models import (
    Deliverable,
    Milestone,
    Order,
    RevisionRequest,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.base import OrderWorkflow, as_utc, utcnow
from marketplace_escrow.services.refund_service import refundable_amount

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence
    from datetime import datetime

    from marketplace_escrow.domain.collaborators import (
        DeliverableUpload,
        GigSnapshot,
        RiskGate,
    )
    from marketplace_escrow.infrastructure.database.orm_models import OrderEvent

logger = get_logger(__name__)

# Working phases an admin may force an order into, and the event that does it.
OVERRIDE_EVENTS = {
    OrderPhase.FUNDED: "admin_reset",
    OrderPhase.WORK_SUBMITTED: "admin_mark_submitted",
    OrderPhase.APPROVED: "admin_mark_approved",
}


def deliverable_from_upload(
    upload: DeliverableUpload,
    uploaded_by: str,
    revision_number: int,
    milestone: Milestone | None = None,
) -> Deliverable:
    """Build a preview-only deliverable row from an uploaded preview/final pair.

    The caller appends the result to ``order.deliverables``.
    """
    return Deliverable(
        milestone=milestone,
        revision_number=revision_number,
        original_name=upload.original_name,
        description=upload.description or None,
        preview={
            "url": upload.preview.url,
            "size": upload.preview.size,
            "type": upload.preview.type,
        },
        final={
            "url": upload.final.url,
            "size": upload.final.size,
            "type": upload.final.type,
        },
        access_level=DeliverableAccess.PREVIEW_ONLY.value,
        uploaded_by=uploaded_by,
        uploaded_at=utcnow(),
    )


def grant_full_access(deliverables: Sequence[Deliverable]) -> None:
    for deliverable in deliverables:
        deliverable.access_level = DeliverableAccess.FULL_ACCESS.value


class OrderService(OrderWorkflow):
    """Manages the order lifecycle from funding to release."""

    # ------------------------------------------------------------------
    # Order Creation (called once external funding succeeded)
    # ------------------------------------------------------------------

    async def create_order(
        self,
        gig: GigSnapshot,
        buyer_id: str,
        seller_id: str,
        price: int,
        payment_reference: str,
        risk_gate: RiskGate | None = None,
    ) -> Order:
        """Record a funded order in FUNDED phase.

        Idempotent on ``payment_reference``: a repeated funding callback
        returns the order created by the first one.
        """
        existing = await self._order_repo.get_by_payment_reference(payment_reference)
        if existing is not None:
            logger.info(
                "order.create_replayed",
                order_id=str(existing.id),
                payment_reference=payment_reference,
            )
            return existing

        self._validate_new_order(gig, buyer_id, seller_id, price)

        gate = risk_gate or AllowAllRiskGate()
        assessment = await gate.assess(buyer_id, seller_id, gig.gig_id, price)
        if not assessment.allowed:
            logger.warning(
                "order.risk_rejected",
                buyer_id=buyer_id,
                gig_id=gig.gig_id,
                reason=assessment.reason,
                score=assessment.score,
            )
            raise RiskGateRejectedError(buyer_id, assessment.reason)

        now = utcnow()
        order = Order(
            gig_id=gig.gig_id,
            gig_title=gig.title,
            gig_cover_image=gig.cover_image,
            buyer_id=buyer_id,
            seller_id=seller_id,
            price=price,
            payment_reference=payment_reference,
            phase=OrderPhase.FUNDED.value,
            protection_level=self._protection_level(price).value,
            refund_amount=0,
            revision_count=0,
            has_milestones=False,
            created_at=now,
            milestones=[],
            deliverables=[],
            revision_requests=[],
        )

        if gig.milestones:
            self._plan_milestones(order, gig, now)
        else:
            self._plan_flat_delivery(order, gig, now)

        order = await self._order_repo.create(order)
        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.ORDER_FUNDED,
            old_phase=None,
            new_phase=OrderPhase.FUNDED,
            actor=buyer_id,
            metadata={
                "payment_reference": payment_reference,
                "price": price,
                "milestones": len(order.milestones),
            },
        )

        logger.info(
            "order.created",
            order_id=str(order.id),
            price=price,
            has_milestones=order.has_milestones,
            auto_release_date=str(order.auto_release_date),
        )
        return order

    # ------------------------------------------------------------------
    # Delivery (non-milestone orders)
    # ------------------------------------------------------------------

    async def submit_work(
        self,
        order_id: uuid.UUID,
        seller: Actor,
        uploads: Sequence[DeliverableUpload],
        description: str | None = None,
        expected_version: int | None = None,
    ) -> Order:
        """Seller delivers work: FUNDED -> WORK_SUBMITTED (or a revision resubmission)."""
        if not uploads:
            raise ValidationError("At least one deliverable is required")

        order = await self._get_order_or_raise(order_id, expected_version)
        self._require_seller(order, seller)
        self._reject_milestone_order(order, "submit work for a specific milestone")
        self._guard(order, "submit_work")

        outstanding = [r for r in order.revision_requests if not r.addressed]
        if order.phase == OrderPhase.WORK_SUBMITTED and not outstanding:
            raise ConflictError(
                "Work already submitted and awaiting the buyer's review",
                current_state=order.phase,
            )
        for request in outstanding:
            request.addressed = True

        revision_number = max((d.revision_number for d in order.deliverables), default=0) + 1
        for upload in uploads:
            order.deliverables.append(deliverable_from_upload(upload, seller.id, revision_number))

        # Never shorten a deadline the buyer already has.
        now = utcnow()
        proposed = now + timedelta(days=self._settings.review_window_days)
        current = as_utc(order.client_review_deadline)
        deadline = current if current is not None and current > proposed else proposed
        order.client_review_deadline = deadline
        order.auto_release_date = deadline
        order.submitted_at = now

        await self._transition(
            order,
            "submit_work",
            EventType.WORK_SUBMITTED,
            seller,
            metadata={
                "revision_number": revision_number,
                "files": len(uploads),
                "description": description,
            },
        )
        return order

    async def request_revision(
        self,
        order_id: uuid.UUID,
        buyer: Actor,
        reason: str,
        details: str | None = None,
        expected_version: int | None = None,
    ) -> Order:
        """Buyer asks for changes; the order stays WORK_SUBMITTED with a bumped counter."""
        if not reason or not reason.strip():
            raise ValidationError("A revision reason is required")

        order = await self._get_order_or_raise(order_id, expected_version)
        self._require_buyer(order, buyer)
        self._reject_milestone_order(order, "request a revision on a specific milestone")
        self._guard(order, "request_revision")

        order.revision_requests.append(
            RevisionRequest(
                requested_by=buyer.id,
                reason=reason.strip(),
                details=details,
                addressed=False,
                created_at=utcnow(),
            )
        )
        order.revision_count += 1

        await self._transition(
            order,
            "request_revision",
            EventType.REVISION_REQUESTED,
            buyer,
            metadata={"reason": reason, "revision_count": order.revision_count},
        )
        return order

    async def approve_work(
        self,
        order_id: uuid.UUID,
        buyer: Actor,
        feedback: str | None = None,
        expected_version: int | None = None,
    ) -> Order:
        """Buyer accepts the delivery; final files unlock and release is scheduled."""
        order = await self._get_order_or_raise(order_id, expected_version)
        self._require_buyer(order, buyer)
        self._reject_milestone_order(order, "approve a specific milestone")
        return await self._approve(order, buyer, feedback)

    async def system_approve(self, order_id: uuid.UUID) -> Order:
        """Approval on the buyer's behalf once the review window has lapsed."""
        order = await self._get_order_or_raise(order_id)
        self._reject_milestone_order(order, "approve a specific milestone")
        return await self._approve(order, Actor.system(), None, auto=True)

    async def release_funds(
        self,
        order_id: uuid.UUID,
        actor: Actor,
        expected_version: int | None = None,
        auto: bool = False,
    ) -> Order:
        """APPROVED -> RELEASED. Only the platform or an admin may trigger this."""
        self._require_privileged(actor)
        order = await self._get_order_or_raise(order_id, expected_version)
        # Milestone orders pay out per milestone and settle on the last payment.
        self._reject_milestone_order(order, "pay the remaining milestones")
        self._guard(order, "release", refund_amount=order.refund_amount)

        amount = refundable_amount(order)
        now = utcnow()
        order.released_at = now
        order.completed_at = now
        await self._transition(
            order,
            "release",
            EventType.AUTO_RELEASED if auto else EventType.FUNDS_RELEASED,
            actor,
            metadata={"amount": amount},
            refund_amount=order.refund_amount,
        )
        logger.info("order.released", order_id=str(order.id), amount=amount, auto=auto)
        return order

    # ------------------------------------------------------------------
    # Admin override (reached through the admin gateway)
    # ------------------------------------------------------------------

    async def force_phase(
        self,
        order_id: uuid.UUID,
        admin: Actor,
        target: OrderPhase | str,
        reason: str,
        expected_version: int | None = None,
    ) -> Order:
        """Move a non-terminal, non-disputed order between its working phases."""
        self._require_admin(admin)
        try:
            event_name = OVERRIDE_EVENTS[OrderPhase(target)]
        except (KeyError, ValueError) as err:
            raise ValidationError(
                f"Status override cannot target {target}; use the refund, "
                "release or dispute operations instead",
                details={"target": str(target), "allowed": sorted(OVERRIDE_EVENTS)},
            ) from err
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for a status override")

        order = await self._get_order_or_raise(order_id, expected_version)
        self._reject_milestone_order(order, "move the individual milestones")
        self._guard(order, event_name)
        if event_name == "admin_mark_approved":
            order.approved_at = utcnow()

        await self._transition(
            order,
            event_name,
            EventType.STATUS_OVERRIDDEN,
            admin,
            metadata={"target": str(target), "reason": reason},
        )
        return order

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_order(self, order_id: uuid.UUID) -> Order:
        return await self._get_order_or_raise(order_id)

    async def get_summary(self, order_id: uuid.UUID) -> dict:
        """Order summary for dashboards and UI gating."""
        order = await self._get_order_or_raise(order_id)
        return self.summarize(order)

    @staticmethod
    def summarize(order: Order) -> dict:
        view = project(order.phase)
        return {
            "order_id": str(order.id),
            "price": order.price,
            "phase": order.phase,
            "status": view.status.value,
            "escrow_status": view.escrow_status.value,
            "dispute_status": view.dispute_status.value,
            "refund_amount": order.refund_amount,
            "paid_milestone_total": order.paid_milestone_total,
            "version": order.version,
            "allowed_events": allowed_order_events(order.phase),
            "is_refundable": is_refundable(order.phase),
            "is_disputable": is_disputable(order.phase),
            "is_terminal": is_terminal(order.phase),
            "auto_release_date": order.auto_release_date,
        }

    async def get_events(self, order_id: uuid.UUID) -> list[OrderEvent]:
        await self._get_order_or_raise(order_id)
        return await self._event_repo.get_by_order(order_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _approve(
        self,
        order: Order,
        actor: Actor,
        feedback: str | None,
        auto: bool = False,
    ) -> Order:
        self._guard(order, "approve")
        now = utcnow()
        order.approved_at = now
        order.buyer_feedback = feedback
        order.auto_release_date = now + timedelta(hours=self._settings.release_hold_hours)
        grant_full_access(order.deliverables)
        await self._transition(
            order,
            "approve",
            EventType.WORK_APPROVED,
            actor,
            metadata={"feedback": feedback, "auto": auto},
        )
        return order

    @staticmethod
    def _reject_milestone_order(order: Order, hint: str) -> None:
        if order.has_milestones:
            raise ValidationError(
                f"This order uses milestones. Please {hint} instead.",
                details={"order_id": str(order.id)},
            )

    @staticmethod
    def _validate_new_order(gig: GigSnapshot, buyer_id: str, seller_id: str, price: int) -> None:
        if price <= 0:
            raise ValidationError("Order price must be positive", details={"price": price})
        if buyer_id == seller_id:
            raise ValidationError("A seller cannot order their own gig")
        if gig.milestones:
            if any(m.amount <= 0 for m in gig.milestones):
                raise ValidationError("Every milestone amount must be positive")
            total = sum(m.amount for m in gig.milestones)
            if total != price:
                raise ValidationError(
                    f"Milestone amounts ({total}) must equal order total ({price})",
                    details={"milestone_total": total, "price": price},
                )

    def _protection_level(self, price: int) -> ProtectionLevel:
        if price >= self._settings.enhanced_protection_threshold:
            return ProtectionLevel.ENHANCED
        return ProtectionLevel.STANDARD

    def _plan_milestones(self, order: Order, gig: GigSnapshot, paid_at: datetime) -> None:
        """Due dates accumulate each milestone's delivery days from the payment time."""
        accumulated = 0
        for position, template in enumerate(gig.milestones):
            accumulated += max(template.delivery_days, 0)
            order.milestones.append(
                Milestone(
                    position=position,
                    title=template.title,
                    description=template.description or None,
                    amount=template.amount,
                    due_date=paid_at + timedelta(days=accumulated),
                    status=MilestoneStatus.PENDING.value,
                    deliverables=[],
                )
            )
        order.has_milestones = True
        latest_due = max(m.due_date for m in order.milestones)
        order.expected_delivery_date = latest_due
        order.auto_release_date = latest_due + timedelta(days=self._settings.milestone_hold_days)
        order.client_review_deadline = order.auto_release_date

    def _plan_flat_delivery(self, order: Order, gig: GigSnapshot, paid_at: datetime) -> None:
        if gig.delivery_days:
            order.expected_delivery_date = paid_at + timedelta(days=gig.delivery_days)
            base = order.expected_delivery_date
        else:
            base = paid_at + timedelta(days=self._settings.auto_release_days_for(order.price))
        order.auto_release_date = base + timedelta(days=self._settings.review_window_days)
        order.client_review_deadline = order.auto_release_date
