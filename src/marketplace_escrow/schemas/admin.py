"""Pydantic schemas for refunds and the admin endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from marketplace_escrow.domain.enums import OrderPhase, RefundAction
from marketplace_escrow.schemas.orders import OrderResponse

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class UpdateOrderStatusRequest(BaseModel):
    target: OrderPhase = Field(
        ...,
        description="FUNDED, WORK_SUBMITTED or APPROVED; terminal and dispute phases are refused",
    )
    reason: str = Field(..., min_length=1, max_length=2000)
    expected_version: int | None = Field(default=None, ge=1)


class AdminRefundRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=200)
    amount: int | None = Field(
        default=None,
        gt=0,
        description="Defaults to everything still held in escrow",
    )
    expected_version: int | None = Field(default=None, ge=1)


class AdminReleaseRequest(BaseModel):
    expected_version: int | None = Field(default=None, ge=1)


class ProcessRefundRequest(BaseModel):
    action: RefundAction
    notes: str | None = Field(default=None, max_length=5000)


class StartReviewRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=5000)
    expected_version: int | None = Field(default=None, ge=1)


class ResolveReleaseRequest(BaseModel):
    resolution: str = Field(..., min_length=1, max_length=5000)
    expected_version: int | None = Field(default=None, ge=1)


class ResolveRefundRequest(ResolveReleaseRequest):
    amount: int | None = Field(
        default=None,
        gt=0,
        description="Defaults to everything still held in escrow",
    )


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    buyer_id: str
    seller_id: str
    amount: int
    reason: str
    description: str | None
    status: str
    priority: str
    refund_method: str
    transaction_id: str | None
    processed_by: str | None
    processed_at: datetime | None
    admin_notes: str | None
    requested_at: datetime


class DisputeResolutionResponse(BaseModel):
    order: OrderResponse
    refund: RefundResponse | None = None


class OpenDisputeResponse(BaseModel):
    order: OrderResponse
    days_since_opened: int
    evidence_count: int


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    actor_id: str
    actor_role: str
    action: str
    target_type: str
    target_id: str
    details: dict | None
    old_values: dict | None
    new_values: dict | None
    severity: str
    success: bool
    error_message: str | None
    created_at: datetime


class RefundStatisticsResponse(BaseModel):
    total_refunds: int
    pending_refunds: int
    processing_refunds: int
    completed_refunds: int
    rejected_refunds: int
    total_refund_amount: int
    average_refund_amount: float
    refund_rate: float
    average_processing_days: float
    refunds_by_reason: dict[str, dict[str, int]]


class DisputeStatisticsResponse(BaseModel):
    total: int
    open: int
    pending: int
    under_review: int
    resolved: int
    resolved_with_refund: int
    resolved_for_freelancer: int
    dispute_rate: float


class ReconciliationResponse(BaseModel):
    refunds_checked: int
    orders_checked: int
    findings: int
    repaired: int
    repair_failures: int
    execution_time_ms: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    scheduler: str = "unknown"
