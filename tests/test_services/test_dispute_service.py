"""Tests for DisputeService: opening, evidence, review and both resolutions."""

from __future__ import annotations

import pytest

from marketplace_escrow.domain.collaborators import AttachmentRef
from marketplace_escrow.domain.enums import (
    DeliverableAccess,
    DisputeStatus,
    EvidenceKind,
    OrderPhase,
    OrderStatus,
    PartyRole,
    RefundStatus,
)
from marketplace_escrow.domain.exceptions import (
    AlreadyRefundedError,
    AuthorizationError,
    ConflictError,
    InvalidStateTransitionError,
    ValidationError,
)
from marketplace_escrow.services.dispute_service import DisputeService
from marketplace_escrow.services.order_service import OrderService
from marketplace_escrow.services.refund_service import RefundService

pytestmark = pytest.mark.asyncio


async def open_and_review(session, settings, order_id, opener, admin):
    svc = DisputeService(session, settings)
    await svc.open_dispute(order_id, opener, "Work does not match the brief")
    order = await svc.start_review(order_id, admin, notes="Looking into it")
    await session.commit()
    return order


class TestOpenDispute:
    async def test_either_party_may_open(self, session, settings, submitted_order, seller) -> None:
        order = await DisputeService(session, settings).open_dispute(
            submitted_order.id, seller, "Buyer ghosted", details="No reply for 10 days"
        )
        assert order.phase == OrderPhase.DISPUTE_PENDING
        assert order.status == OrderStatus.DISPUTED
        assert order.dispute_status == DisputeStatus.PENDING
        assert order.dispute_opened_by == seller.id

    async def test_outsider_cannot_open(self, session, settings, funded_order, stranger) -> None:
        with pytest.raises(AuthorizationError):
            await DisputeService(session, settings).open_dispute(funded_order.id, stranger, "Hm")

    async def test_reason_required(self, session, settings, funded_order, buyer) -> None:
        with pytest.raises(ValidationError):
            await DisputeService(session, settings).open_dispute(funded_order.id, buyer, "")

    async def test_cannot_open_twice(self, session, settings, funded_order, buyer) -> None:
        svc = DisputeService(session, settings)
        await svc.open_dispute(funded_order.id, buyer, "Late")
        with pytest.raises(ConflictError):
            await svc.open_dispute(funded_order.id, buyer, "Still late")

    async def test_work_frozen_while_disputed(
        self, session, settings, submitted_order, buyer
    ) -> None:
        await DisputeService(session, settings).open_dispute(submitted_order.id, buyer, "Late")
        with pytest.raises(InvalidStateTransitionError):
            await OrderService(session, settings).approve_work(submitted_order.id, buyer)


class TestEvidence:
    async def test_parties_add_evidence(
        self, session, settings, funded_order, buyer, seller
    ) -> None:
        svc = DisputeService(session, settings)
        await svc.open_dispute(funded_order.id, buyer, "Late")
        first = await svc.add_evidence(
            funded_order.id,
            buyer,
            EvidenceKind.SCREENSHOT,
            "Chat history",
            attachments=[AttachmentRef(url="https://files.test/chat.png", size=10)],
        )
        second = await svc.add_evidence(funded_order.id, seller, "document", "Draft files")
        await session.commit()

        assert first.party_role == PartyRole.CLIENT
        assert first.attachments[0]["url"] == "https://files.test/chat.png"
        assert second.party_role == PartyRole.FREELANCER
        assert len(await svc.get_evidence(funded_order.id)) == 2

    async def test_evidence_needs_open_dispute(
        self, session, settings, funded_order, buyer
    ) -> None:
        with pytest.raises(ConflictError):
            await DisputeService(session, settings).add_evidence(
                funded_order.id, buyer, EvidenceKind.OTHER, "Early evidence"
            )

    async def test_unknown_kind(self, session, settings, funded_order, buyer) -> None:
        svc = DisputeService(session, settings)
        await svc.open_dispute(funded_order.id, buyer, "Late")
        with pytest.raises(ValidationError):
            await svc.add_evidence(funded_order.id, buyer, "hearsay", "Someone told me")

    async def test_evidence_limit(self, session, settings, funded_order, buyer) -> None:
        settings.max_dispute_evidence = 1
        svc = DisputeService(session, settings)
        await svc.open_dispute(funded_order.id, buyer, "Late")
        await svc.add_evidence(funded_order.id, buyer, EvidenceKind.OTHER, "One")
        with pytest.raises(ValidationError):
            await svc.add_evidence(funded_order.id, buyer, EvidenceKind.OTHER, "Two")


class TestResolution:
    async def test_review_records_reviewer(
        self, session, settings, funded_order, buyer, admin
    ) -> None:
        order = await open_and_review(session, settings, funded_order.id, buyer, admin)
        assert order.phase == OrderPhase.DISPUTE_UNDER_REVIEW
        assert order.dispute_status == DisputeStatus.UNDER_REVIEW
        assert order.dispute_reviewer_id == admin.id

    async def test_only_admin_reviews(self, session, settings, funded_order, buyer) -> None:
        svc = DisputeService(session, settings)
        await svc.open_dispute(funded_order.id, buyer, "Late")
        with pytest.raises(AuthorizationError):
            await svc.start_review(funded_order.id, buyer)

    async def test_resolve_with_refund(
        self, session, settings, funded_order, buyer, admin
    ) -> None:
        await open_and_review(session, settings, funded_order.id, buyer, admin)
        order, refund = await DisputeService(session, settings).resolve_with_refund(
            funded_order.id, admin, "Seller never delivered"
        )
        await session.commit()

        assert order.phase == OrderPhase.DISPUTE_REFUNDED
        assert order.status == OrderStatus.CANCELLED
        assert order.dispute_status == DisputeStatus.RESOLVED
        assert order.refund_amount == 50_000
        assert refund.status == RefundStatus.COMPLETED
        assert refund.admin_notes == "Seller never delivered"
        assert order.dispute_resolved_by == admin.id

    async def test_partial_refund(self, session, settings, funded_order, buyer, admin) -> None:
        await open_and_review(session, settings, funded_order.id, buyer, admin)
        order, refund = await DisputeService(session, settings).resolve_with_refund(
            funded_order.id, admin, "Half the work was usable", amount=25_000
        )
        assert refund.amount == 25_000
        assert order.refund_amount == 25_000

    async def test_resolve_for_freelancer(
        self, session, settings, submitted_order, buyer, admin
    ) -> None:
        await open_and_review(session, settings, submitted_order.id, buyer, admin)
        order = await DisputeService(session, settings).resolve_for_freelancer(
            submitted_order.id, admin, "Work matches the brief"
        )
        await session.commit()

        assert order.phase == OrderPhase.DISPUTE_RELEASED
        assert order.status == OrderStatus.COMPLETED
        assert order.refund_amount == 0
        assert order.released_at is not None
        assert all(d.access_level == DeliverableAccess.FULL_ACCESS for d in order.deliverables)
        assert await RefundService(session, settings).get_order_refunds(order.id) == []

    async def test_cannot_resolve_pending_dispute(
        self, session, settings, funded_order, buyer, admin
    ) -> None:
        svc = DisputeService(session, settings)
        await svc.open_dispute(funded_order.id, buyer, "Late")
        with pytest.raises(InvalidStateTransitionError):
            await svc.resolve_for_freelancer(funded_order.id, admin, "Too early")

    async def test_refund_after_resolution_rejected(
        self, session, settings, funded_order, buyer, admin
    ) -> None:
        await open_and_review(session, settings, funded_order.id, buyer, admin)
        svc = DisputeService(session, settings)
        await svc.resolve_with_refund(funded_order.id, admin, "Refund")
        await session.commit()
        with pytest.raises(AlreadyRefundedError):
            await svc.resolve_with_refund(funded_order.id, admin, "Refund again")


class TestReporting:
    async def test_open_disputes_and_statistics(
        self, session, settings, funded_order, buyer
    ) -> None:
        svc = DisputeService(session, settings)
        await svc.open_dispute(funded_order.id, buyer, "Late")
        await session.commit()

        open_disputes = await svc.list_open_disputes()
        assert [d["order"].id for d in open_disputes] == [funded_order.id]
        assert open_disputes[0]["days_since_opened"] == 0
        assert open_disputes[0]["evidence_count"] == 0

        stats = await svc.dispute_statistics()
        assert stats["total"] == 1
        assert stats["open"] == 1
        assert stats["pending"] == 1
        assert stats["resolved"] == 0
        assert stats["dispute_rate"] == 100.0
