"""Tests for RefundService: buyer requests, admin processing and direct refunds."""

from __future__ import annotations

import pytest
from factories import create_funded_order, make_upload, two_milestones

from marketplace_escrow.domain.enums import (
    EscrowStatus,
    EventType,
    OrderPhase,
    OrderStatus,
    RefundAction,
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
from marketplace_escrow.services.milestone_service import MilestoneService
from marketplace_escrow.services.order_service import OrderService
from marketplace_escrow.services.refund_service import RefundService, refundable_amount

pytestmark = pytest.mark.asyncio


class TestRefundRequests:
    async def test_request_leaves_order_untouched(
        self, session, settings, funded_order, buyer
    ) -> None:
        refund = await RefundService(session, settings).request_refund(
            funded_order.id, buyer, 10_000, "Seller unresponsive"
        )
        await session.commit()
        assert refund.status == RefundStatus.PENDING
        assert refund.amount == 10_000
        assert funded_order.phase == OrderPhase.FUNDED
        assert funded_order.refund_amount == 0

    async def test_only_the_buyer_requests(
        self, session, settings, funded_order, stranger
    ) -> None:
        with pytest.raises(AuthorizationError):
            await RefundService(session, settings).request_refund(
                funded_order.id, stranger, 10_000, "Not mine"
            )

    @pytest.mark.parametrize("amount", [0, -5, 50_001])
    async def test_amount_bounds(self, session, settings, funded_order, buyer, amount) -> None:
        with pytest.raises(ValidationError):
            await RefundService(session, settings).request_refund(
                funded_order.id, buyer, amount, "Wrong amount"
            )

    async def test_one_pending_request_at_a_time(
        self, session, settings, funded_order, buyer
    ) -> None:
        svc = RefundService(session, settings)
        await svc.request_refund(funded_order.id, buyer, 10_000, "First")
        with pytest.raises(ConflictError) as exc_info:
            await svc.request_refund(funded_order.id, buyer, 5_000, "Second")
        assert exc_info.value.code == "REFUND_ALREADY_PENDING"

    async def test_no_request_during_dispute(
        self, session, settings, funded_order, buyer
    ) -> None:
        await DisputeService(session, settings).open_dispute(funded_order.id, buyer, "Late")
        with pytest.raises(ConflictError):
            await RefundService(session, settings).request_refund(
                funded_order.id, buyer, 10_000, "Late"
            )


class TestProcessRefund:
    async def test_approval_refunds_order(
        self, session, settings, funded_order, buyer, admin
    ) -> None:
        svc = RefundService(session, settings)
        pending = await svc.request_refund(funded_order.id, buyer, 50_000, "Cancelled project")
        await session.commit()

        refund = await svc.process_refund(pending.id, admin, RefundAction.APPROVE, notes="ok")
        await session.commit()

        order = await OrderService(session, settings).get_order(funded_order.id)
        assert refund.status == RefundStatus.COMPLETED
        assert refund.processed_by == admin.id
        assert order.phase == OrderPhase.REFUNDED
        assert order.status == OrderStatus.CANCELLED
        assert order.escrow_status == EscrowStatus.REFUNDED
        assert order.refund_amount == 50_000

        events = await OrderService(session, settings).get_events(order.id)
        assert [e.event_type for e in events][-2:] == [
            EventType.REFUND_REQUESTED,
            EventType.ORDER_REFUNDED,
        ]

    async def test_rejection_keeps_order(
        self, session, settings, funded_order, buyer, admin
    ) -> None:
        svc = RefundService(session, settings)
        pending = await svc.request_refund(funded_order.id, buyer, 10_000, "Changed my mind")
        refund = await svc.process_refund(pending.id, admin, "reject", notes="Work in progress")
        await session.commit()
        assert refund.status == RefundStatus.REJECTED
        assert funded_order.phase == OrderPhase.FUNDED

    async def test_cannot_process_twice(
        self, session, settings, funded_order, buyer, admin
    ) -> None:
        svc = RefundService(session, settings)
        pending = await svc.request_refund(funded_order.id, buyer, 10_000, "Changed my mind")
        await svc.process_refund(pending.id, admin, RefundAction.REJECT)
        with pytest.raises(ConflictError):
            await svc.process_refund(pending.id, admin, RefundAction.APPROVE)

    async def test_unknown_action(self, session, settings, funded_order, buyer, admin) -> None:
        svc = RefundService(session, settings)
        pending = await svc.request_refund(funded_order.id, buyer, 10_000, "Changed my mind")
        with pytest.raises(ValidationError):
            await svc.process_refund(pending.id, admin, "escalate")

    async def test_buyer_cannot_process(self, session, settings, funded_order, buyer) -> None:
        svc = RefundService(session, settings)
        pending = await svc.request_refund(funded_order.id, buyer, 10_000, "Changed my mind")
        with pytest.raises(AuthorizationError):
            await svc.process_refund(pending.id, buyer, RefundAction.APPROVE)


class TestDirectRefund:
    async def test_defaults_to_full_refundable_amount(
        self, session, settings, submitted_order, admin
    ) -> None:
        refund = await RefundService(session, settings).refund_order(
            submitted_order.id, admin, "Policy violation"
        )
        await session.commit()
        assert refund.amount == 50_000
        assert refund.status == RefundStatus.COMPLETED
        assert submitted_order.phase == OrderPhase.REFUNDED
        assert submitted_order.refunded_at is not None

    async def test_completes_pending_request(
        self, session, settings, funded_order, buyer, admin
    ) -> None:
        svc = RefundService(session, settings)
        pending = await svc.request_refund(funded_order.id, buyer, 10_000, "Late")
        refund = await svc.refund_order(funded_order.id, admin, "Admin decision", amount=20_000)
        await session.commit()
        assert refund.id == pending.id
        assert refund.amount == 20_000
        assert len(await svc.get_order_refunds(funded_order.id)) == 1

    async def test_second_refund_rejected(
        self, session, settings, funded_order, admin
    ) -> None:
        svc = RefundService(session, settings)
        await svc.refund_order(funded_order.id, admin, "First")
        await session.commit()
        version = funded_order.version

        with pytest.raises(AlreadyRefundedError):
            await svc.refund_order(funded_order.id, admin, "Second")
        assert funded_order.version == version
        assert funded_order.refund_amount == 50_000

    async def test_released_order_cannot_be_refunded(
        self, session, settings, submitted_order, buyer, admin
    ) -> None:
        orders = OrderService(session, settings)
        await orders.approve_work(submitted_order.id, buyer)
        await orders.release_funds(submitted_order.id, admin)
        await session.commit()
        with pytest.raises(InvalidStateTransitionError):
            await RefundService(session, settings).refund_order(submitted_order.id, admin, "Late")

    async def test_refund_capped_by_paid_milestones(
        self, session, settings, buyer, seller, admin
    ) -> None:
        order = await create_funded_order(
            session, settings, buyer, seller, milestones=two_milestones()
        )
        milestones = MilestoneService(session, settings)
        await milestones.submit_milestone(order.id, 0, seller, [make_upload()])
        await milestones.approve_milestone(order.id, 0, buyer)
        await milestones.pay_milestone(order.id, 0, buyer)
        await session.commit()

        assert refundable_amount(order) == 30_000
        svc = RefundService(session, settings)
        with pytest.raises(ValidationError):
            await svc.refund_order(order.id, admin, "Too much", amount=40_000)

        refund = await svc.refund_order(order.id, admin, "Remaining escrow")
        await session.commit()
        assert refund.amount == 30_000
        assert order.refund_amount == 30_000


class TestStatistics:
    async def test_refund_statistics(self, session, settings, buyer, seller, admin) -> None:
        svc = RefundService(session, settings)
        first = await create_funded_order(session, settings, buyer, seller, price=10_000)
        second = await create_funded_order(session, settings, buyer, seller, price=30_000)
        await svc.refund_order(first.id, admin, "Late delivery")
        pending = await svc.request_refund(second.id, buyer, 5_000, "Quality")
        await svc.process_refund(pending.id, admin, RefundAction.REJECT)
        await session.commit()

        stats = await svc.refund_statistics()
        assert stats["total_refunds"] == 2
        assert stats["completed_refunds"] == 1
        assert stats["rejected_refunds"] == 1
        assert stats["pending_refunds"] == 0
        assert stats["total_refund_amount"] == 10_000
        assert stats["refund_rate"] == 50.0
        assert stats["refunds_by_reason"]["Late delivery"] == {"count": 1, "total_amount": 10_000}
