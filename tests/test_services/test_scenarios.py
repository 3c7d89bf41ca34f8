"""End-to-end order lifecycles across the services and the admin gateway."""

from __future__ import annotations

from datetime import timedelta

import pytest
from factories import create_funded_order, make_upload, two_milestones

from marketplace_escrow.domain.enums import (
    AuditSeverity,
    EscrowStatus,
    MilestoneStatus,
    OrderPhase,
    OrderStatus,
    RefundStatus,
)
from marketplace_escrow.domain.exceptions import ConflictError, ValidationError
from marketplace_escrow.infrastructure.database.orm_models import Milestone
from marketplace_escrow.infrastructure.database.repositories import AuditLogRepository
from marketplace_escrow.services import (
    AdminGateway,
    AutoReleaseSweep,
    DisputeService,
    MilestoneService,
    OrderService,
    RefundService,
)
from marketplace_escrow.services.base import utcnow

pytestmark = pytest.mark.asyncio


class TestHappyPath:
    async def test_submit_revise_approve_release(
        self, session, session_factory, settings, funded_order, buyer, seller
    ) -> None:
        orders = OrderService(session, settings)
        await orders.submit_work(funded_order.id, seller, [make_upload()])
        await orders.request_revision(funded_order.id, buyer, "Bigger font")
        await orders.submit_work(funded_order.id, seller, [make_upload("v2.png")])
        await orders.approve_work(funded_order.id, buyer)
        await session.commit()

        later = utcnow() + timedelta(days=2)
        await AutoReleaseSweep(session_factory, settings).run(now=later)

        async with session_factory() as fresh:
            order = await OrderService(fresh, settings).get_order(funded_order.id)
        assert order.phase == OrderPhase.RELEASED
        assert order.escrow_status == EscrowStatus.RELEASED
        assert order.refund_amount == 0


class TestDisputeRefund:
    async def test_dispute_resolved_with_full_refund(
        self, session, session_factory, settings, buyer, seller, admin
    ) -> None:
        order = await create_funded_order(session, settings, buyer, seller, price=50_000)
        await OrderService(session, settings).submit_work(order.id, seller, [make_upload()])
        await DisputeService(session, settings).open_dispute(order.id, buyer, "Not as described")
        await session.commit()

        gateway = AdminGateway(session, settings, audit_session_factory=session_factory)
        await gateway.start_dispute_review(admin, order.id)
        await session.commit()
        order, refund = await gateway.resolve_dispute_with_refund(
            admin, order.id, "Refund in full", amount=50_000
        )
        await session.commit()

        assert order.escrow_status == EscrowStatus.REFUNDED
        assert order.status == OrderStatus.CANCELLED
        refunds = await RefundService(session, settings).get_order_refunds(order.id)
        assert [(r.status, r.amount) for r in refunds] == [(RefundStatus.COMPLETED, 50_000)]

        entries = await AuditLogRepository(session).list_recent(target_id=str(order.id))
        high = [e for e in entries if e.severity == AuditSeverity.HIGH]
        assert len(high) == 1
        assert high[0].new_values["escrow_status"] == "refunded"


class TestMilestoneOverflow:
    async def test_synthetic_milestone_cannot_overpay(
        self, session, settings, buyer, seller
    ) -> None:
        order = await create_funded_order(
            session, settings, buyer, seller, milestones=two_milestones()
        )
        milestones = MilestoneService(session, settings)
        await milestones.submit_milestone(order.id, 0, seller, [make_upload()])
        await milestones.approve_milestone(order.id, 0, buyer)
        await milestones.pay_milestone(order.id, 0, buyer)
        order.milestones.append(
            Milestone(
                position=2,
                title="Synthetic",
                amount=40_000,
                status=MilestoneStatus.APPROVED.value,
                deliverables=[],
            )
        )
        await session.commit()
        version = order.version

        with pytest.raises(ValidationError):
            await milestones.pay_milestone(order.id, 2, buyer)

        assert order.version == version
        assert order.paid_milestone_total == 20_000
        assert order.phase == OrderPhase.FUNDED


class TestDoubleRefund:
    async def test_second_refund_conflicts_without_mutation(
        self, session, session_factory, settings, funded_order, admin
    ) -> None:
        order_id = funded_order.id
        gateway = AdminGateway(session, settings, audit_session_factory=session_factory)
        await gateway.refund_order(admin, order_id, "Duplicate charge")
        await session.commit()
        snapshot = funded_order.state_snapshot()

        with pytest.raises(ConflictError, match="already been refunded"):
            await gateway.refund_order(admin, order_id, "Duplicate charge")
        # The rollback expires every object loaded by this session.
        await session.rollback()

        async with session_factory() as fresh:
            order = await OrderService(fresh, settings).get_order(order_id)
            refunds = await RefundService(fresh, settings).get_order_refunds(order.id)
        assert order.state_snapshot() == snapshot
        assert len(refunds) == 1
