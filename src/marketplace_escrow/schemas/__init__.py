"""Pydantic API schemas."""

from marketplace_escrow.schemas.admin import (
    AdminRefundRequest,
    AdminReleaseRequest,
    AuditEntryResponse,
    DisputeResolutionResponse,
    DisputeStatisticsResponse,
    HealthResponse,
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
from marketplace_escrow.schemas.orders import (
    AddEvidenceRequest,
    ApproveWorkRequest,
    CreateMilestonesRequest,
    CreateOrderRequest,
    EvidenceResponse,
    OpenDisputeRequest,
    OrderEventResponse,
    OrderResponse,
    OrderSummaryResponse,
    RequestRefundRequest,
    RevisionRequestIn,
    SubmitWorkRequest,
    VersionedRequest,
)

__all__ = [
    "AddEvidenceRequest",
    "AdminRefundRequest",
    "AdminReleaseRequest",
    "ApproveWorkRequest",
    "AuditEntryResponse",
    "CreateMilestonesRequest",
    "CreateOrderRequest",
    "DisputeResolutionResponse",
    "DisputeStatisticsResponse",
    "EvidenceResponse",
    "HealthResponse",
    "OpenDisputeRequest",
    "OpenDisputeResponse",
    "OrderEventResponse",
    "OrderResponse",
    "OrderSummaryResponse",
    "ProcessRefundRequest",
    "ReconciliationResponse",
    "RefundResponse",
    "RefundStatisticsResponse",
    "RequestRefundRequest",
    "ResolveRefundRequest",
    "ResolveReleaseRequest",
    "RevisionRequestIn",
    "StartReviewRequest",
    "SubmitWorkRequest",
    "UpdateOrderStatusRequest",
    "VersionedRequest",
]
