"""Refund / order reconciliation.

Detects orders and refund records that disagree about whether money went
back to the buyer:

    - refund_completed_order_not_refunded: a completed Refund whose order
      is not in a refunded phase
    - order_refunded_without_refund: a refunded order with no completed Refund
    - amount_mismatch: both sides agree a refund happened but not on how much

Every finding is logged at critical level and written to the audit log. With
``repair=True`` the first kind is fixed by re-applying the refund transition,
when the order is still in a refundable phase; everything else is left for
an operator.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.collaborators import Actor
from marketplace_escrow.domain.enums import (
    AuditAction,
    AuditSeverity,
    AuditTargetType,
)
from marketplace_escrow.domain.exceptions import EscrowError
from marketplace_escrow.domain.projection import is_refundable, is_refunded
from marketplace_escrow.infrastructure.database.engine import session_scope
from marketplace_escrow.infrastructure.database.orm_models import AuditLogEntry
from marketplace_escrow.infrastructure.database.repositories import (
    AuditLogRepository,
    OrderRepository,
    RefundRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.base import utcnow
from marketplace_escrow.services.refund_service import RefundService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.config import Settings

logger = get_logger(__name__)

REFUND_WITHOUT_ORDER = "refund_completed_order_not_refunded"
ORDER_WITHOUT_REFUND = "order_refunded_without_refund"
AMOUNT_MISMATCH = "amount_mismatch"


@dataclass
class ReconciliationFinding:
    kind: str
    order_id: str
    refund_id: str | None
    details: dict[str, Any]
    repaired: bool = False


@dataclass
class ReconciliationReport:
    """Result object for one reconciliation run."""

    refunds_checked: int = 0
    orders_checked: int = 0
    findings: list[ReconciliationFinding] = field(default_factory=list)
    repair_failures: list[dict[str, Any]] = field(default_factory=list)
    execution_time_ms: int = 0

    @property
    def is_clean(self) -> bool:
        return not self.findings

    @property
    def repaired(self) -> list[ReconciliationFinding]:
        return [f for f in self.findings if f.repaired]

    def add_finding(
        self,
        kind: str,
        order_id: str,
        refund_id: str | None,
        details: dict[str, Any],
    ) -> ReconciliationFinding:
        finding = ReconciliationFinding(kind, order_id, refund_id, details)
        self.findings.append(finding)
        return finding

    def get_summary(self) -> dict[str, Any]:
        return {
            "refunds_checked": self.refunds_checked,
            "orders_checked": self.orders_checked,
            "findings": len(self.findings),
            "repaired": len(self.repaired),
            "repair_failures": len(self.repair_failures),
            "execution_time_ms": self.execution_time_ms,
        }


class RefundReconciler:
    """Cross-checks the refund ledger against order state."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    async def run(self, repair: bool | None = None) -> ReconciliationReport:
        if repair is None:
            repair = self._settings.reconciliation_auto_repair
        started = time.monotonic()
        report = ReconciliationReport()

        async with session_scope(self._session_factory) as session:
            await self._scan(session, report)
            for finding in report.findings:
                await self._audit(session, finding)

        if repair:
            for finding in report.findings:
                if finding.kind == REFUND_WITHOUT_ORDER:
                    await self._repair(finding, report)

        report.execution_time_ms = int((time.monotonic() - started) * 1000)
        log = logger.critical if report.findings else logger.info
        log("reconciliation.completed", **report.get_summary())
        return report

    async def _scan(self, session: AsyncSession, report: ReconciliationReport) -> None:
        order_repo = OrderRepository(session)
        refund_repo = RefundRepository(session)

        completed = await refund_repo.list_completed()
        report.refunds_checked = len(completed)
        completed_by_order: dict[str, list] = {}
        for refund in completed:
            completed_by_order.setdefault(str(refund.order_id), []).append(refund)
            order = await order_repo.get_by_id(refund.order_id)
            if order is None or not is_refunded(order.phase):
                finding = report.add_finding(
                    REFUND_WITHOUT_ORDER,
                    str(refund.order_id),
                    str(refund.id),
                    {
                        "order_phase": order.phase if order is not None else None,
                        "refund_amount": refund.amount,
                    },
                )
                logger.critical("reconciliation.mismatch", kind=finding.kind, **finding.details)
            elif order.refund_amount != refund.amount:
                finding = report.add_finding(
                    AMOUNT_MISMATCH,
                    str(order.id),
                    str(refund.id),
                    {"order_refund_amount": order.refund_amount, "refund_amount": refund.amount},
                )
                logger.critical("reconciliation.mismatch", kind=finding.kind, **finding.details)

        refunded_orders = await order_repo.list_refunded()
        report.orders_checked = len(refunded_orders)
        for order in refunded_orders:
            if str(order.id) not in completed_by_order:
                finding = report.add_finding(
                    ORDER_WITHOUT_REFUND,
                    str(order.id),
                    None,
                    {"order_phase": order.phase, "order_refund_amount": order.refund_amount},
                )
                logger.critical("reconciliation.mismatch", kind=finding.kind, **finding.details)

    @staticmethod
    async def _audit(session: AsyncSession, finding: ReconciliationFinding) -> None:
        system = Actor.system()
        await AuditLogRepository(session).record(
            AuditLogEntry(
                actor_id=system.id,
                actor_role=system.role.value,
                action=AuditAction.RECONCILIATION_MISMATCH.value,
                target_type=(
                    AuditTargetType.REFUND.value if finding.refund_id else AuditTargetType.ORDER.value
                ),
                target_id=finding.refund_id or finding.order_id,
                details={"kind": finding.kind, "order_id": finding.order_id, **finding.details},
                severity=AuditSeverity.CRITICAL.value,
                success=True,
                created_at=utcnow(),
            )
        )

    async def _repair(self, finding: ReconciliationFinding, report: ReconciliationReport) -> None:
        phase = finding.details.get("order_phase")
        if phase is None or not is_refundable(phase):
            report.repair_failures.append({
                "order_id": finding.order_id,
                "reason": f"order phase {phase} cannot be refunded",
            })
            return
        try:
            async with session_scope(self._session_factory) as session:
                refund = await RefundRepository(session).get_by_id(uuid.UUID(finding.refund_id))
                await RefundService(session, self._settings).reapply_completed(
                    refund, Actor.system()
                )
        except EscrowError as exc:
            logger.error(
                "reconciliation.repair_failed",
                order_id=finding.order_id,
                error_code=exc.code,
                error=exc.message,
            )
            report.repair_failures.append({"order_id": finding.order_id, "reason": exc.code})
            return
        finding.repaired = True
        logger.warning("reconciliation.repaired", order_id=finding.order_id, refund_id=finding.refund_id)
