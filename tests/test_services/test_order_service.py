"""Tests for OrderService: funding, delivery, approval, release and overrides."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

import pytest
from factories import create_funded_order, make_gig, make_upload, next_payment_reference

from marketplace_escrow.domain.collaborators import RiskAssessment
from marketplace_escrow.domain.enums import (
    DeliverableAccess,
    EscrowStatus,
    EventType,
    OrderPhase,
    OrderStatus,
    ProtectionLevel,
)
from marketplace_escrow.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    RiskGateRejectedError,
    StaleVersionError,
    ValidationError,
)
from marketplace_escrow.services.base import as_utc, utcnow
from marketplace_escrow.services.order_service import OrderService

pytestmark = pytest.mark.asyncio


class DenyingGate:
    async def assess(self, buyer_id, seller_id, gig_id, amount) -> RiskAssessment:  # noqa: ANN001
        return RiskAssessment(allowed=False, reason="velocity limit", score=0.97)


class TestCreateOrder:
    async def test_order_starts_funded(self, session, settings, funded_order) -> None:
        assert funded_order.phase == OrderPhase.FUNDED
        assert funded_order.status == OrderStatus.IN_PROGRESS
        assert funded_order.escrow_status == EscrowStatus.FUNDED
        assert funded_order.version == 1
        assert funded_order.refund_amount == 0
        assert funded_order.protection_level == ProtectionLevel.STANDARD

        events = await OrderService(session, settings).get_events(funded_order.id)
        assert [e.event_type for e in events] == [EventType.ORDER_FUNDED]
        assert events[0].old_phase is None

    async def test_auto_release_after_delivery_and_review_window(
        self, settings, funded_order
    ) -> None:
        expected = as_utc(funded_order.expected_delivery_date) + timedelta(
            days=settings.review_window_days
        )
        assert as_utc(funded_order.auto_release_date) == expected

    async def test_replayed_payment_reference_returns_same_order(
        self, session, settings, buyer, seller
    ) -> None:
        svc = OrderService(session, settings)
        reference = next_payment_reference()
        first = await svc.create_order(make_gig(), buyer.id, seller.id, 10_000, reference)
        second = await svc.create_order(make_gig(), buyer.id, seller.id, 10_000, reference)
        assert first.id == second.id

    async def test_large_orders_get_enhanced_protection(
        self, session, settings, buyer, seller
    ) -> None:
        order = await create_funded_order(session, settings, buyer, seller, price=150_000)
        assert order.protection_level == ProtectionLevel.ENHANCED

    async def test_seller_cannot_buy_own_gig(self, session, settings, seller) -> None:
        with pytest.raises(ValidationError):
            await OrderService(session, settings).create_order(
                make_gig(), seller.id, seller.id, 10_000, next_payment_reference()
            )

    async def test_non_positive_price_rejected(self, session, settings, buyer, seller) -> None:
        with pytest.raises(ValidationError):
            await OrderService(session, settings).create_order(
                make_gig(), buyer.id, seller.id, 0, next_payment_reference()
            )

    async def test_risk_gate_blocks_order(self, session, settings, buyer, seller) -> None:
        with pytest.raises(RiskGateRejectedError):
            await OrderService(session, settings).create_order(
                make_gig(),
                buyer.id,
                seller.id,
                10_000,
                next_payment_reference(),
                risk_gate=DenyingGate(),
            )

    async def test_unknown_order(self, session, settings) -> None:
        with pytest.raises(OrderNotFoundError):
            await OrderService(session, settings).get_order(uuid.uuid4())


class TestDelivery:
    async def test_submit_moves_to_work_submitted(self, submitted_order) -> None:
        assert submitted_order.phase == OrderPhase.WORK_SUBMITTED
        assert submitted_order.version == 2
        assert len(submitted_order.deliverables) == 1
        assert submitted_order.deliverables[0].access_level == DeliverableAccess.PREVIEW_ONLY
        assert submitted_order.deliverables[0].revision_number == 1

    async def test_transition_is_logged(
        self, session, settings, funded_order, seller, caplog
    ) -> None:
        caplog.set_level(logging.INFO, logger="marketplace_escrow")
        await OrderService(session, settings).submit_work(funded_order.id, seller, [make_upload()])

        entries = [
            r.msg
            for r in caplog.records
            if isinstance(r.msg, dict) and r.msg.get("event") == "order.transitioned"
        ]
        assert entries
        assert entries[-1]["event_name"] == "submit_work"
        assert entries[-1]["new_phase"] == "WORK_SUBMITTED"

    async def test_only_the_seller_submits(self, session, settings, funded_order, buyer) -> None:
        with pytest.raises(AuthorizationError):
            await OrderService(session, settings).submit_work(
                funded_order.id, buyer, [make_upload()]
            )

    async def test_submission_needs_files(self, session, settings, funded_order, seller) -> None:
        with pytest.raises(ValidationError):
            await OrderService(session, settings).submit_work(funded_order.id, seller, [])

    async def test_second_submission_without_revision_rejected(
        self, session, settings, submitted_order, seller
    ) -> None:
        with pytest.raises(ConflictError):
            await OrderService(session, settings).submit_work(
                submitted_order.id, seller, [make_upload("v2.png")]
            )

    async def test_revision_cycle(self, session, settings, submitted_order, buyer, seller) -> None:
        svc = OrderService(session, settings)
        order = await svc.request_revision(submitted_order.id, buyer, "Colours are off")
        await session.commit()
        assert order.phase == OrderPhase.WORK_SUBMITTED
        assert order.revision_count == 1
        assert order.version == 3

        order = await svc.submit_work(order.id, seller, [make_upload("v2.png")])
        await session.commit()
        assert order.deliverables[-1].revision_number == 2
        assert all(r.addressed for r in order.revision_requests)

    async def test_revision_needs_reason(self, session, settings, submitted_order, buyer) -> None:
        with pytest.raises(ValidationError):
            await OrderService(session, settings).request_revision(submitted_order.id, buyer, " ")

    async def test_stale_version_rejected(
        self, session, settings, funded_order, seller
    ) -> None:
        with pytest.raises(StaleVersionError) as exc_info:
            await OrderService(session, settings).submit_work(
                funded_order.id, seller, [make_upload()], expected_version=7
            )
        assert exc_info.value.details["actual_version"] == 1

    async def test_concurrent_writer_loses(
        self, session_factory, settings, funded_order, seller
    ) -> None:
        """Two sessions read version 1; only the first write lands."""
        async with session_factory() as first, session_factory() as second:
            # Held so the second session keeps working on its version 1 copy.
            stale = await OrderService(second, settings).get_order(funded_order.id)

            await OrderService(first, settings).submit_work(
                funded_order.id, seller, [make_upload()]
            )
            await first.commit()

            assert stale.version == 1
            with pytest.raises(StaleVersionError):
                await OrderService(second, settings).submit_work(
                    funded_order.id, seller, [make_upload("late.png")]
                )
            await second.rollback()


class TestApprovalAndRelease:
    async def test_approval_unlocks_finals_and_schedules_release(
        self, session, settings, submitted_order, buyer
    ) -> None:
        before = utcnow()
        order = await OrderService(session, settings).approve_work(
            submitted_order.id, buyer, feedback="Great work"
        )
        assert order.phase == OrderPhase.APPROVED
        assert order.buyer_feedback == "Great work"
        assert all(d.access_level == DeliverableAccess.FULL_ACCESS for d in order.deliverables)
        hold = timedelta(hours=settings.release_hold_hours)
        assert before + hold <= as_utc(order.auto_release_date) <= utcnow() + hold

    async def test_cannot_approve_before_submission(
        self, session, settings, funded_order, buyer
    ) -> None:
        with pytest.raises(InvalidStateTransitionError):
            await OrderService(session, settings).approve_work(funded_order.id, buyer)

    async def test_buyer_cannot_release(
        self, session, settings, submitted_order, buyer
    ) -> None:
        svc = OrderService(session, settings)
        await svc.approve_work(submitted_order.id, buyer)
        with pytest.raises(AuthorizationError):
            await svc.release_funds(submitted_order.id, buyer)

    async def test_admin_release(self, session, settings, submitted_order, buyer, admin) -> None:
        svc = OrderService(session, settings)
        await svc.approve_work(submitted_order.id, buyer)
        order = await svc.release_funds(submitted_order.id, admin)
        await session.commit()

        assert order.phase == OrderPhase.RELEASED
        assert order.status == OrderStatus.COMPLETED
        assert order.released_at is not None

        events = await svc.get_events(order.id)
        assert [e.event_type for e in events] == [
            EventType.ORDER_FUNDED,
            EventType.WORK_SUBMITTED,
            EventType.WORK_APPROVED,
            EventType.FUNDS_RELEASED,
        ]

    async def test_release_requires_approval(self, session, settings, submitted_order, admin) -> None:
        with pytest.raises(InvalidStateTransitionError):
            await OrderService(session, settings).release_funds(submitted_order.id, admin)


class TestForcePhase:
    async def test_admin_marks_submitted(self, session, settings, funded_order, admin) -> None:
        order = await OrderService(session, settings).force_phase(
            funded_order.id, admin, OrderPhase.WORK_SUBMITTED, "Seller mailed files"
        )
        assert order.phase == OrderPhase.WORK_SUBMITTED

    async def test_terminal_targets_refused(self, session, settings, funded_order, admin) -> None:
        with pytest.raises(ValidationError):
            await OrderService(session, settings).force_phase(
                funded_order.id, admin, OrderPhase.RELEASED, "shortcut"
            )

    async def test_override_needs_reason(self, session, settings, funded_order, admin) -> None:
        with pytest.raises(ValidationError):
            await OrderService(session, settings).force_phase(
                funded_order.id, admin, OrderPhase.APPROVED, ""
            )

    async def test_override_needs_admin(self, session, settings, funded_order, buyer) -> None:
        with pytest.raises(AuthorizationError):
            await OrderService(session, settings).force_phase(
                funded_order.id, buyer, OrderPhase.APPROVED, "please"
            )


class TestSummary:
    async def test_summary_of_funded_order(self, session, settings, funded_order) -> None:
        summary = await OrderService(session, settings).get_summary(funded_order.id)
        assert summary["phase"] == "FUNDED"
        assert summary["status"] == "in_progress"
        assert summary["escrow_status"] == "funded"
        assert summary["dispute_status"] == "none"
        assert summary["is_refundable"] is True
        assert summary["is_disputable"] is True
        assert summary["is_terminal"] is False
        assert "submit_work" in summary["allowed_events"]
        assert "release" not in summary["allowed_events"]
