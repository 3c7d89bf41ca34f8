"""Dispute Service — opening, evidencing, reviewing and resolving disputes.

A dispute freezes normal progression of an order. It ends in exactly one of
two outcomes, both terminal: full release to the seller, or a refund to the
buyer that is written to the refund ledger in the same transaction.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from marketplace_escrow.domain.enums import (
    ActorRole,
    EventType,
    EvidenceKind,
    OrderPhase,
    PartyRole,
)
from marketplace_escrow.domain.exceptions import ConflictError, ValidationError
from marketplace_escrow.domain.projection import (
    DISPUTE_PHASES,
    is_disputable,
    is_terminal,
)
from marketplace_escrow.infrastructure.database.orm_models import DisputeEvidence
from marketplace_escrow.infrastructure.database.repositories import EvidenceRepository
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.base import OrderWorkflow, as_utc, utcnow
from marketplace_escrow.services.order_service import grant_full_access
from marketplace_escrow.services.refund_service import (
    RefundService,
    check_refund_amount,
    refundable_amount,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.collaborators import Actor, AttachmentRef
    from marketplace_escrow.infrastructure.database.orm_models import Order, Refund

logger = get_logger(__name__)


class DisputeService(OrderWorkflow):
    """Dispute workflow for buyers, sellers and admins."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        super().__init__(session, settings)
        self._evidence_repo = EvidenceRepository(session)
        self._refunds = RefundService(session, self._settings)

    # ------------------------------------------------------------------
    # Parties
    # ------------------------------------------------------------------

    async def open_dispute(
        self,
        order_id: uuid.UUID,
        actor: Actor,
        reason: str,
        details: str | None = None,
        expected_version: int | None = None,
    ) -> Order:
        """Either party contests the order: FUNDED/WORK_SUBMITTED/APPROVED -> DISPUTE_PENDING."""
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required")

        order = await self._get_order_or_raise(order_id, expected_version)
        self._require_party(order, actor)
        if not is_disputable(order.phase):
            raise ConflictError(
                "Disputes can only be opened on orders in progress",
                current_state=order.phase,
            )

        order.dispute_reason = reason.strip()
        order.dispute_details = details
        order.dispute_opened_by = actor.id
        order.dispute_opened_at = utcnow()

        await self._transition(
            order,
            "open_dispute",
            EventType.DISPUTE_OPENED,
            actor,
            metadata={"reason": reason, "opened_by_role": actor.role.value},
        )
        logger.info("dispute.opened", order_id=str(order.id), by=actor.id, reason=reason)
        return order

    async def add_evidence(
        self,
        order_id: uuid.UUID,
        actor: Actor,
        kind: EvidenceKind | str,
        description: str,
        attachments: Sequence[AttachmentRef] = (),
    ) -> DisputeEvidence:
        """Append one piece of evidence. Allowed until the dispute is resolved."""
        if not description or not description.strip():
            raise ValidationError("Evidence needs a description")
        try:
            kind = EvidenceKind(kind)
        except ValueError as err:
            raise ValidationError(
                f"Unknown evidence kind: {kind}",
                details={"allowed": [k.value for k in EvidenceKind]},
            ) from err

        order = await self._get_order_or_raise(order_id)
        self._require_party(order, actor)
        if order.phase not in DISPUTE_PHASES:
            raise ConflictError(
                "Evidence can only be added while a dispute is open",
                current_state=order.phase,
            )

        count = await self._evidence_repo.count_for_order(order.id)
        if count >= self._settings.max_dispute_evidence:
            raise ValidationError(
                "Evidence limit reached for this dispute",
                details={"limit": self._settings.max_dispute_evidence, "count": count},
            )

        party_role = PartyRole.CLIENT if actor.role == ActorRole.BUYER else PartyRole.FREELANCER
        evidence = await self._evidence_repo.append(
            DisputeEvidence(
                order_id=order.id,
                submitted_by=actor.id,
                party_role=party_role.value,
                kind=kind.value,
                description=description.strip(),
                attachments=[
                    {"url": a.url, "size": a.size, "type": a.type} for a in attachments
                ],
                created_at=utcnow(),
            )
        )
        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.DISPUTE_EVIDENCE_ADDED,
            old_phase=order.phase,
            new_phase=order.phase,
            actor=actor.id,
            metadata={"evidence_id": str(evidence.id), "kind": kind.value},
        )
        logger.info(
            "dispute.evidence_added",
            order_id=str(order.id),
            party_role=party_role.value,
            count=count + 1,
        )
        return evidence

    async def get_evidence(self, order_id: uuid.UUID) -> list[DisputeEvidence]:
        await self._get_order_or_raise(order_id)
        return await self._evidence_repo.get_by_order(order_id)

    # ------------------------------------------------------------------
    # Admin review and resolution
    # ------------------------------------------------------------------

    async def start_review(
        self,
        order_id: uuid.UUID,
        admin: Actor,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> Order:
        """DISPUTE_PENDING -> DISPUTE_UNDER_REVIEW, recording the reviewer."""
        self._require_admin(admin)
        order = await self._get_order_or_raise(order_id, expected_version)
        self._guard(order, "start_review")

        order.dispute_reviewer_id = admin.id
        order.dispute_review_started_at = utcnow()
        order.dispute_review_notes = notes

        await self._transition(
            order,
            "start_review",
            EventType.DISPUTE_REVIEW_STARTED,
            admin,
            metadata={"notes": notes},
        )
        return order

    async def resolve_with_refund(
        self,
        order_id: uuid.UUID,
        admin: Actor,
        resolution: str,
        amount: int | None = None,
        expected_version: int | None = None,
    ) -> tuple[Order, Refund]:
        """DISPUTE_UNDER_REVIEW -> DISPUTE_REFUNDED with a completed Refund record.

        ``amount`` defaults to everything still held in escrow.
        """
        self._require_admin(admin)
        if not resolution or not resolution.strip():
            raise ValidationError("A resolution is required")

        order = await self._get_order_or_raise(order_id, expected_version)
        self._guard(order, "resolve_refund")
        amount = refundable_amount(order) if amount is None else amount
        check_refund_amount(order, amount)

        self._mark_resolved(order, admin, resolution)
        refund = await self._refunds.complete_for_dispute(order, admin, amount, resolution.strip())
        logger.info(
            "dispute.resolved",
            order_id=str(order.id),
            outcome="refund",
            amount=amount,
            resolver=admin.id,
        )
        return order, refund

    async def resolve_for_freelancer(
        self,
        order_id: uuid.UUID,
        admin: Actor,
        resolution: str,
        expected_version: int | None = None,
    ) -> Order:
        """DISPUTE_UNDER_REVIEW -> DISPUTE_RELEASED. No refund record is written."""
        self._require_admin(admin)
        if not resolution or not resolution.strip():
            raise ValidationError("A resolution is required")

        order = await self._get_order_or_raise(order_id, expected_version)
        self._guard(order, "resolve_release")

        self._mark_resolved(order, admin, resolution)
        now = utcnow()
        order.released_at = now
        order.completed_at = now
        grant_full_access(order.deliverables)

        await self._transition(
            order,
            "resolve_release",
            EventType.DISPUTE_RESOLVED_FREELANCER,
            admin,
            metadata={"resolution": resolution, "amount": refundable_amount(order)},
        )
        logger.info("dispute.resolved", order_id=str(order.id), outcome="release", resolver=admin.id)
        return order

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def list_open_disputes(self) -> list[dict]:
        """Pending and under-review disputes, oldest first, with their age in days."""
        now = utcnow()
        disputes = []
        for order in await self._order_repo.list_open_disputes():
            opened_at = as_utc(order.dispute_opened_at)
            disputes.append({
                "order": order,
                "days_since_opened": (now - opened_at).days if opened_at else 0,
                "evidence_count": await self._evidence_repo.count_for_order(order.id),
            })
        return disputes

    async def dispute_statistics(self) -> dict:
        total_orders = await self._order_repo.count_by_phases()
        total = await self._order_repo.count_ever_disputed()
        pending = await self._order_repo.count_by_phases([OrderPhase.DISPUTE_PENDING])
        under_review = await self._order_repo.count_by_phases([OrderPhase.DISPUTE_UNDER_REVIEW])
        resolved = await self._order_repo.count_by_phases(
            [OrderPhase.DISPUTE_RELEASED, OrderPhase.DISPUTE_REFUNDED]
        )
        refunded = await self._order_repo.count_by_phases([OrderPhase.DISPUTE_REFUNDED])
        return {
            "total": total,
            "open": pending + under_review,
            "pending": pending,
            "under_review": under_review,
            "resolved": resolved,
            "resolved_with_refund": refunded,
            "resolved_for_freelancer": resolved - refunded,
            "dispute_rate": round(total / total_orders * 100, 1) if total_orders else 0,
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _mark_resolved(order: Order, admin: Actor, resolution: str) -> None:
        if is_terminal(order.phase):
            raise ConflictError("Dispute already resolved", current_state=order.phase)
        order.dispute_resolution = resolution.strip()
        order.dispute_resolved_by = admin.id
        order.dispute_resolved_at = utcnow()
