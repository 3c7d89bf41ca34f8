"""Pydantic schemas for the order, milestone and dispute endpoints.

These schemas define the request/response shapes for the REST API and
MCP tools. They are separate from the ORM models to maintain clean
boundaries between the API and database layers. Money is always an
integer amount in the smallest currency unit.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from marketplace_escrow.domain.collaborators import (
    AttachmentRef,
    DeliverableUpload,
    GigSnapshot,
    MilestoneTemplate,
)
from marketplace_escrow.domain.enums import (
    DeliverableAccess,
    DisputeStatus,
    EscrowStatus,
    EvidenceKind,
    OrderStatus,
    RefundPriority,
)

# ---------------------------------------------------------------------------
# Shared pieces
# ---------------------------------------------------------------------------


class AttachmentIn(BaseModel):
    url: str = Field(..., min_length=1, max_length=500)
    size: int = Field(default=0, ge=0)
    type: str = Field(default="application/octet-stream", max_length=100)

    def to_ref(self) -> AttachmentRef:
        return AttachmentRef(url=self.url, size=self.size, type=self.type)


class DeliverableIn(BaseModel):
    """One delivered file: restricted preview plus the full final version."""

    preview: AttachmentIn
    final: AttachmentIn
    original_name: str = Field(default="", max_length=255)
    description: str = Field(default="", max_length=2000)

    def to_upload(self) -> DeliverableUpload:
        return DeliverableUpload(
            preview=self.preview.to_ref(),
            final=self.final.to_ref(),
            original_name=self.original_name,
            description=self.description,
        )


class MilestoneTemplateIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    amount: int = Field(..., gt=0)
    delivery_days: int = Field(default=0, ge=0, le=365)
    description: str = Field(default="", max_length=2000)

    def to_template(self) -> MilestoneTemplate:
        return MilestoneTemplate(
            title=self.title,
            amount=self.amount,
            delivery_days=self.delivery_days,
            description=self.description,
        )


class VersionedRequest(BaseModel):
    """Mixin for mutations that support optimistic concurrency."""

    expected_version: int | None = Field(
        default=None,
        ge=1,
        description="Order version the caller last read; stale writes are rejected",
    )


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class GigIn(BaseModel):
    gig_id: str = Field(..., min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=200)
    cover_image: str | None = Field(default=None, max_length=500)
    delivery_days: int | None = Field(default=None, ge=1, le=365)
    milestones: list[MilestoneTemplateIn] = Field(default_factory=list)

    def to_snapshot(self) -> GigSnapshot:
        return GigSnapshot(
            gig_id=self.gig_id,
            title=self.title,
            cover_image=self.cover_image,
            delivery_days=self.delivery_days,
            milestones=tuple(m.to_template() for m in self.milestones),
        )


class CreateOrderRequest(BaseModel):
    """Recorded by the payment collaborator once funding succeeded."""

    gig: GigIn
    buyer_id: str = Field(..., min_length=1, max_length=64)
    seller_id: str = Field(..., min_length=1, max_length=64)
    price: int = Field(..., gt=0, description="Amount held in escrow, smallest currency unit")
    payment_reference: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="External payment id; repeated calls with the same reference are replayed",
    )


class SubmitWorkRequest(VersionedRequest):
    deliverables: list[DeliverableIn] = Field(..., min_length=1)
    description: str | None = Field(default=None, max_length=5000)

    def uploads(self) -> list[DeliverableUpload]:
        return [d.to_upload() for d in self.deliverables]


class RevisionRequestIn(VersionedRequest):
    reason: str = Field(..., min_length=1, max_length=2000)
    details: str | None = Field(default=None, max_length=5000)


class ApproveWorkRequest(VersionedRequest):
    feedback: str | None = Field(default=None, max_length=5000)


class CreateMilestonesRequest(VersionedRequest):
    milestones: list[MilestoneTemplateIn] = Field(..., min_length=1)


class OpenDisputeRequest(VersionedRequest):
    reason: str = Field(..., min_length=1, max_length=200)
    details: str | None = Field(default=None, max_length=5000)


class AddEvidenceRequest(BaseModel):
    kind: EvidenceKind = EvidenceKind.OTHER
    description: str = Field(..., min_length=1, max_length=5000)
    attachments: list[AttachmentIn] = Field(default_factory=list, max_length=20)


class RequestRefundRequest(BaseModel):
    amount: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    priority: RefundPriority = RefundPriority.MEDIUM


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class DeliverableResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    milestone_id: uuid.UUID | None
    revision_number: int
    original_name: str
    description: str | None
    preview: dict
    final: dict | None = None
    access_level: str
    uploaded_by: str
    uploaded_at: datetime

    @model_validator(mode="after")
    def _hide_final_until_approved(self) -> DeliverableResponse:
        if self.access_level != DeliverableAccess.FULL_ACCESS:
            self.final = None
        return self


class MilestoneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    position: int
    title: str
    description: str | None
    amount: int
    due_date: datetime | None
    status: str
    buyer_feedback: str | None
    submitted_at: datetime | None
    approved_at: datetime | None
    paid_at: datetime | None


class OrderResponse(BaseModel):
    """Full order view, including the projected status triple."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    gig_id: str
    gig_title: str
    buyer_id: str
    seller_id: str
    price: int
    refund_amount: int
    phase: str
    status: OrderStatus
    escrow_status: EscrowStatus
    dispute_status: DisputeStatus
    version: int
    protection_level: str
    has_milestones: bool
    revision_count: int
    dispute_reason: str | None
    dispute_resolution: str | None
    expected_delivery_date: datetime | None
    client_review_deadline: datetime | None
    auto_release_date: datetime | None
    submitted_at: datetime | None
    approved_at: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None
    created_at: datetime
    updated_at: datetime
    milestones: list[MilestoneResponse] = Field(default_factory=list)
    deliverables: list[DeliverableResponse] = Field(default_factory=list)


class OrderSummaryResponse(BaseModel):
    """Lightweight status check response."""

    order_id: uuid.UUID
    price: int
    phase: str
    status: str
    escrow_status: str
    dispute_status: str
    refund_amount: int
    paid_milestone_total: int
    version: int
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current phase"
    )
    is_refundable: bool
    is_disputable: bool
    is_terminal: bool
    auto_release_date: datetime | None


class OrderEventResponse(BaseModel):
    """Response schema for an order history event."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID
    order_id: uuid.UUID
    event_type: str
    old_phase: str | None
    new_phase: str
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class EvidenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    submitted_by: str
    party_role: str
    kind: str
    description: str
    attachments: list[dict]
    created_at: datetime
