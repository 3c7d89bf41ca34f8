"""Tests for the refund reconciliation pass."""

from __future__ import annotations

import pytest

from marketplace_escrow.domain.enums import (
    AuditAction,
    OrderPhase,
    RefundPriority,
    RefundStatus,
)
from marketplace_escrow.infrastructure.database.orm_models import Refund
from marketplace_escrow.infrastructure.database.repositories import AuditLogRepository
from marketplace_escrow.services.base import utcnow
from marketplace_escrow.services.order_service import OrderService
from marketplace_escrow.services.reconciliation import (
    AMOUNT_MISMATCH,
    ORDER_WITHOUT_REFUND,
    REFUND_WITHOUT_ORDER,
    RefundReconciler,
)
from marketplace_escrow.services.refund_service import RefundService

pytestmark = pytest.mark.asyncio


async def orphan_completed_refund(session, order, amount: int = 50_000) -> Refund:
    """A completed refund written without the order ever moving."""
    now = utcnow()
    refund = Refund(
        order_id=order.id,
        buyer_id=order.buyer_id,
        seller_id=order.seller_id,
        amount=amount,
        reason="Crashed mid-refund",
        status=RefundStatus.COMPLETED.value,
        priority=RefundPriority.HIGH.value,
        refund_method="original_payment",
        requested_at=now,
        processed_at=now,
        processed_by="admin-1",
    )
    session.add(refund)
    await session.commit()
    return refund


class TestReconciliation:
    async def test_clean_ledger(
        self, session, session_factory, settings, funded_order, admin
    ) -> None:
        await RefundService(session, settings).refund_order(funded_order.id, admin, "Refund")
        await session.commit()

        report = await RefundReconciler(session_factory, settings).run()
        assert report.is_clean
        assert report.refunds_checked == 1
        assert report.orders_checked == 1

    async def test_completed_refund_without_refunded_order(
        self, session, session_factory, settings, funded_order
    ) -> None:
        refund = await orphan_completed_refund(session, funded_order)

        report = await RefundReconciler(session_factory, settings).run(repair=False)
        assert not report.is_clean
        assert [f.kind for f in report.findings] == [REFUND_WITHOUT_ORDER]
        assert report.findings[0].refund_id == str(refund.id)
        assert report.repaired == []

        async with session_factory() as fresh:
            entries = await AuditLogRepository(fresh).list_recent(
                action=AuditAction.RECONCILIATION_MISMATCH.value
            )
        assert len(entries) == 1
        assert entries[0].severity == "critical"
        assert entries[0].actor_id == "SYSTEM"

    async def test_repair_brings_order_in_line(
        self, session, session_factory, settings, funded_order
    ) -> None:
        await orphan_completed_refund(session, funded_order, amount=20_000)

        report = await RefundReconciler(session_factory, settings).run(repair=True)
        assert len(report.repaired) == 1
        assert report.repair_failures == []

        async with session_factory() as fresh:
            order = await OrderService(fresh, settings).get_order(funded_order.id)
        assert order.phase == OrderPhase.REFUNDED
        assert order.refund_amount == 20_000

        assert (await RefundReconciler(session_factory, settings).run()).is_clean

    async def test_refunded_order_without_refund_record(
        self, session, session_factory, settings, funded_order
    ) -> None:
        funded_order.phase = OrderPhase.REFUNDED.value
        funded_order.refund_amount = 50_000
        await session.commit()

        report = await RefundReconciler(session_factory, settings).run(repair=True)
        assert [f.kind for f in report.findings] == [ORDER_WITHOUT_REFUND]
        assert report.repaired == []

    async def test_amount_mismatch(
        self, session, session_factory, settings, funded_order, admin
    ) -> None:
        refund = await RefundService(session, settings).refund_order(
            funded_order.id, admin, "Refund"
        )
        await session.commit()
        refund.amount = 40_000
        await session.commit()

        report = await RefundReconciler(session_factory, settings).run()
        assert [f.kind for f in report.findings] == [AMOUNT_MISMATCH]
        summary = report.get_summary()
        assert summary["findings"] == 1
        assert summary["repaired"] == 0
