"""Admin REST API routes.

Every mutation goes through the AdminGateway, which re-checks the admin
role and writes the audit entry.

Routes:
    POST   /api/v1/admin/orders/{id}/status               — Force a working phase
    POST   /api/v1/admin/orders/{id}/refund               — Direct refund
    POST   /api/v1/admin/orders/{id}/release              — Release escrow to the seller
    GET    /api/v1/admin/refunds                          — Refund ledger
    GET    /api/v1/admin/refunds/stats                    — Refund statistics
    POST   /api/v1/admin/refunds/{id}/process             — Approve / reject a request
    GET    /api/v1/admin/disputes                         — Open disputes
    GET    /api/v1/admin/disputes/stats                   — Dispute statistics
    POST   /api/v1/admin/disputes/{id}/review             — Start review
    POST   /api/v1/admin/disputes/{id}/resolve-refund     — Resolve with a refund
    POST   /api/v1/admin/disputes/{id}/resolve-release    — Resolve with a release
    GET    /api/v1/admin/audit                            — Audit trail
    POST   /api/v1/admin/reconciliation                   — Run the reconciliation pass now
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query

from marketplace_escrow.api.deps import (
    get_actor,
    get_admin_gateway,
    get_app_settings,
    idempotency_guard,
)
from marketplace_escrow.config import Settings
from marketplace_escrow.domain.collaborators import Actor
from marketplace_escrow.domain.enums import RefundStatus
from marketplace_escrow.domain.exceptions import AuthorizationError
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.admin import (
    AdminRefundRequest,
    AdminReleaseRequest,
    AuditEntryResponse,
    DisputeResolutionResponse,
    DisputeStatisticsResponse,
    OpenDisputeResponse,
    ProcessRefundRequest,
    ReconciliationResponse,
    RefundResponse,
    RefundStatisticsResponse,
    ResolveRefundRequest,
    ResolveReleaseRequest,
    StartReviewRequest,
    UpdateOrderStatusRequest,
)
from marketplace_escrow.schemas.orders import OrderResponse
from marketplace_escrow.services import AdminGateway, RefundReconciler

router = APIRouter(
    prefix="/api/v1/admin",
    tags=["Admin"],
    dependencies=[Depends(idempotency_guard)],
)
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@router.post(
    "/orders/{order_id}/status",
    response_model=OrderResponse,
    summary="Force an order between working phases",
)
async def update_order_status(
    order_id: uuid.UUID,
    request: UpdateOrderStatusRequest,
    admin: Actor = Depends(get_actor),
    gateway: AdminGateway = Depends(get_admin_gateway),
) -> OrderResponse:
    order = await gateway.update_order_status(
        admin, order_id, request.target, request.reason, request.expected_version
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/orders/{order_id}/refund",
    response_model=RefundResponse,
    summary="Refund an order directly",
)
async def refund_order(
    order_id: uuid.UUID,
    request: AdminRefundRequest,
    admin: Actor = Depends(get_actor),
    gateway: AdminGateway = Depends(get_admin_gateway),
) -> RefundResponse:
    refund = await gateway.refund_order(
        admin, order_id, request.reason, request.amount, request.expected_version
    )
    return RefundResponse.model_validate(refund)


@router.post(
    "/orders/{order_id}/release",
    response_model=OrderResponse,
    summary="Release escrow to the seller",
)
async def release_funds(
    order_id: uuid.UUID,
    request: AdminReleaseRequest,
    admin: Actor = Depends(get_actor),
    gateway: AdminGateway = Depends(get_admin_gateway),
) -> OrderResponse:
    order = await gateway.release_funds(admin, order_id, request.expected_version)
    return OrderResponse.model_validate(order)


# ---------------------------------------------------------------------------
# Refund ledger
# ---------------------------------------------------------------------------


@router.get("/refunds", response_model=list[RefundResponse], summary="List refunds")
async def list_refunds(
    status: RefundStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    admin: Actor = Depends(get_actor),
    gateway: AdminGateway = Depends(get_admin_gateway),
) -> list[RefundResponse]:
    refunds = await gateway.list_refunds(admin, status, limit)
    return [RefundResponse.model_validate(r) for r in refunds]


@router.get(
    "/refunds/stats",
    response_model=RefundStatisticsResponse,
    summary="Refund statistics",
)
async def refund_statistics(
    admin: Actor = Depends(get_actor),
    gateway: AdminGateway = Depends(get_admin_gateway),
) -> RefundStatisticsResponse:
    return RefundStatisticsResponse(**await gateway.refund_statistics(admin))


@router.post(
    "/refunds/{refund_id}/process",
    response_model=RefundResponse,
    summary="Approve or reject a refund request",
)
async def process_refund(
    refund_id: uuid.UUID,
    request: ProcessRefundRequest,
    admin: Actor = Depends(get_actor),
    gateway: AdminGateway = Depends(get_admin_gateway),
) -> RefundResponse:
    refund = await gateway.process_refund(admin, refund_id, request.action, request.notes)
    return RefundResponse.model_validate(refund)


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


@router.get(
    "/disputes",
    response_model=list[OpenDisputeResponse],
    summary="Open disputes, oldest first",
)
async def list_open_disputes(
    admin: Actor = Depends(get_actor),
    gateway: AdminGateway = Depends(get_admin_gateway),
) -> list[OpenDisputeResponse]:
    return [
        OpenDisputeResponse(
            order=OrderResponse.model_validate(d["order"]),
            days_since_opened=d["days_since_opened"],
            evidence_count=d["evidence_count"],
        )
        for d in await gateway.list_open_disputes(admin)
    ]


@router.get(
    "/disputes/stats",
    response_model=DisputeStatisticsResponse,
    summary="Dispute statistics",
)
async def dispute_statistics(
    admin: Actor = Depends(get_actor),
    gateway: AdminGateway = Depends(get_admin_gateway),
) -> DisputeStatisticsResponse:
    return DisputeStatisticsResponse(**await gateway.dispute_statistics(admin))


@router.post(
    "/disputes/{order_id}/review",
    response_model=OrderResponse,
    summary="Start reviewing a dispute",
)
async def start_dispute_review(
    order_id: uuid.UUID,
    request: StartReviewRequest,
    admin: Actor = Depends(get_actor),
    gateway: AdminGateway = Depends(get_admin_gateway),
) -> OrderResponse:
    order = await gateway.start_dispute_review(
        admin, order_id, request.notes, request.expected_version
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/disputes/{order_id}/resolve-refund",
    response_model=DisputeResolutionResponse,
    summary="Resolve a dispute in the buyer's favour",
)
async def resolve_dispute_with_refund(
    order_id: uuid.UUID,
    request: ResolveRefundRequest,
    admin: Actor = Depends(get_actor),
    gateway: AdminGateway = Depends(get_admin_gateway),
) -> DisputeResolutionResponse:
    """Terminal: DISPUTE_REFUNDED plus a completed Refund in the same transaction."""
    order, refund = await gateway.resolve_dispute_with_refund(
        admin, order_id, request.resolution, request.amount, request.expected_version
    )
    return DisputeResolutionResponse(
        order=OrderResponse.model_validate(order),
        refund=RefundResponse.model_validate(refund),
    )


@router.post(
    "/disputes/{order_id}/resolve-release",
    response_model=DisputeResolutionResponse,
    summary="Resolve a dispute in the seller's favour",
)
async def resolve_dispute_for_freelancer(
    order_id: uuid.UUID,
    request: ResolveReleaseRequest,
    admin: Actor = Depends(get_actor),
    gateway: AdminGateway = Depends(get_admin_gateway),
) -> DisputeResolutionResponse:
    order = await gateway.resolve_dispute_for_freelancer(
        admin, order_id, request.resolution, request.expected_version
    )
    return DisputeResolutionResponse(order=OrderResponse.model_validate(order))


# ---------------------------------------------------------------------------
# Audit + reconciliation
# ---------------------------------------------------------------------------


@router.get("/audit", response_model=list[AuditEntryResponse], summary="Audit trail")
async def list_audit_entries(
    target_id: str | None = Query(default=None),
    actor_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    admin: Actor = Depends(get_actor),
    gateway: AdminGateway = Depends(get_admin_gateway),
) -> list[AuditEntryResponse]:
    entries = await gateway.list_audit_entries(
        admin, target_id=target_id, actor_id=actor_id, action=action, limit=limit
    )
    return [AuditEntryResponse.model_validate(e) for e in entries]


@router.post(
    "/reconciliation",
    response_model=ReconciliationResponse,
    summary="Run the refund reconciliation pass",
)
async def run_reconciliation(
    repair: bool = Query(default=False),
    admin: Actor = Depends(get_actor),
    settings: Settings = Depends(get_app_settings),
) -> ReconciliationResponse:
    if not admin.is_admin:
        raise AuthorizationError("Admin role required", actor_id=admin.id, role=admin.role.value)
    report = await RefundReconciler(settings=settings).run(repair=repair)
    return ReconciliationResponse(**report.get_summary())
