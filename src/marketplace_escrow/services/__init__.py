"""Application services — use case orchestration."""

from marketplace_escrow.services.admin_gateway import AdminGateway
from marketplace_escrow.services.auto_release import AutoReleaseSweep, SweepResult
from marketplace_escrow.services.dispute_service import DisputeService
from marketplace_escrow.services.milestone_service import MilestoneService
from marketplace_escrow.services.order_service import OrderService
from marketplace_escrow.services.reconciliation import ReconciliationReport, RefundReconciler
from marketplace_escrow.services.refund_service import RefundService

__all__ = [
    "AdminGateway",
    "AutoReleaseSweep",
    "DisputeService",
    "MilestoneService",
    "OrderService",
    "ReconciliationReport",
    "RefundReconciler",
    "RefundService",
    "SweepResult",
]
