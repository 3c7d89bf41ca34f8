"""SQLAlchemy 2.0 ORM models for the marketplace escrow service.

Eight tables:
    1. orders            — One funded order; the single ``phase`` column is the
                           source of truth for status / escrow / dispute.
    2. milestones        — Ordered payment stages owned by an order.
    3. deliverables      — Preview + final file pairs (order- or milestone-level).
    4. revision_requests — Buyer requests for changes after a submission.
    5. dispute_evidence  — Append-only evidence submitted during a dispute.
    6. refunds           — Refund ledger records.
    7. audit_log         — Append-only record of every privileged action.
    8. order_events      — Append-only trail of every phase change.

Design decisions:
    - UUIDs as primary keys (no sequential leakage of order volume).
    - Integer minor units for money (no floating point rounding errors).
    - ``orders.version`` is a mapper version counter: a concurrent writer that
      read an older row fails at flush instead of overwriting.
    - CHECK constraints keep released XOR refunded at the DB level too.
    - Orders are never deleted; there is no cascade from orders to the ledgers.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from marketplace_escrow.domain.enums import (
    DeliverableAccess,
    DisputeStatus,
    EscrowStatus,
    MilestoneStatus,
    OrderPhase,
    OrderStatus,
    ProtectionLevel,
    RefundPriority,
    RefundStatus,
)
from marketplace_escrow.domain.projection import project

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. orders
# ---------------------------------------------------------------------------
class Order(Base):
    """A funded order held in escrow between a buyer and a seller."""

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Gig snapshot ---
    gig_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gig_title: Mapped[str] = mapped_column(String(200), nullable=False)
    gig_cover_image: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # --- Parties ---
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Money ---
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_reference: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="External payment-intent id; order creation is idempotent on it",
    )
    refund_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # --- State ---
    phase: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=OrderPhase.FUNDED.value,
        comment="Current lifecycle phase (guarded by OrderStateMachine)",
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    protection_level: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProtectionLevel.STANDARD.value
    )
    has_milestones: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    revision_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    buyer_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Dispute ---
    dispute_reason: Mapped[str | None] = mapped_column(String(200), nullable=True)
    dispute_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_opened_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dispute_opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    dispute_reviewer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dispute_review_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    dispute_review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dispute_resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # --- Timing ---
    expected_delivery_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    client_review_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    auto_release_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    # --- Relationships ---
    milestones: Mapped[list[Milestone]] = relationship(
        "Milestone",
        back_populates="order",
        cascade="save-update, merge",
        order_by="Milestone.position.asc()",
        lazy="selectin",
    )
    deliverables: Mapped[list[Deliverable]] = relationship(
        "Deliverable",
        back_populates="order",
        cascade="save-update, merge",
        order_by="Deliverable.uploaded_at.asc()",
        lazy="selectin",
    )
    revision_requests: Mapped[list[RevisionRequest]] = relationship(
        "RevisionRequest",
        back_populates="order",
        cascade="save-update, merge",
        order_by="RevisionRequest.created_at.asc()",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("payment_reference", name="uq_order_payment_reference"),
        CheckConstraint("price > 0", name="ck_order_positive_price"),
        CheckConstraint(
            "refund_amount >= 0 AND refund_amount <= price",
            name="ck_order_refund_bounds",
        ),
        CheckConstraint(
            "NOT (released_at IS NOT NULL AND refund_amount > 0)",
            name="ck_order_released_xor_refunded",
        ),
        CheckConstraint(
            "phase IN ('FUNDED', 'WORK_SUBMITTED', 'APPROVED', 'DISPUTE_PENDING', "
            "'DISPUTE_UNDER_REVIEW', 'RELEASED', 'REFUNDED', 'DISPUTE_RELEASED', "
            "'DISPUTE_REFUNDED')",
            name="ck_order_valid_phase",
        ),
        Index("idx_order_phase", "phase"),
        Index("idx_order_buyer", "buyer_id"),
        Index("idx_order_seller", "seller_id"),
        Index("idx_order_auto_release", "phase", "auto_release_date"),
        Index("idx_order_created_at", "created_at"),
    )

    # --- Read-only projection of ``phase`` ---
    @property
    def status(self) -> OrderStatus:
        return project(self.phase).status

    @property
    def escrow_status(self) -> EscrowStatus:
        return project(self.phase).escrow_status

    @property
    def dispute_status(self) -> DisputeStatus:
        return project(self.phase).dispute_status

    @property
    def paid_milestone_total(self) -> int:
        return sum(m.amount for m in self.milestones if m.status == MilestoneStatus.PAID)

    def state_snapshot(self) -> dict[str, object]:
        """Values recorded as old/new snapshots in the audit log."""
        return {
            "phase": self.phase,
            **project(self.phase).as_dict(),
            "refund_amount": self.refund_amount,
            "version": self.version,
        }

    def __repr__(self) -> str:
        return f"<Order id={self.id} phase={self.phase} price={self.price} v={self.version}>"


# ---------------------------------------------------------------------------
# 2. milestones
# ---------------------------------------------------------------------------
class Milestone(Base):
    """A payment stage inside an order. Paid milestones never return to earlier states."""

    __tablename__ = "milestones"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MilestoneStatus.PENDING.value
    )
    buyer_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    order: Mapped[Order] = relationship("Order", back_populates="milestones")
    deliverables: Mapped[list[Deliverable]] = relationship(
        "Deliverable",
        back_populates="milestone",
        order_by="Deliverable.uploaded_at.asc()",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("order_id", "position", name="uq_milestone_position"),
        CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
        Index("idx_milestone_order", "order_id"),
    )

    def __repr__(self) -> str:
        return f"<Milestone order={self.order_id} #{self.position} status={self.status}>"


# ---------------------------------------------------------------------------
# 3. deliverables
# ---------------------------------------------------------------------------
class Deliverable(Base):
    """A delivered file. The final reference is only exposed with full access."""

    __tablename__ = "deliverables"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("milestones.id"), nullable=True
    )
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    original_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    preview: Mapped[dict] = mapped_column(
        JSONType, nullable=False, comment='{"url", "size", "type"} of the preview copy'
    )
    final: Mapped[dict] = mapped_column(
        JSONType, nullable=False, comment='{"url", "size", "type"} of the full copy'
    )
    access_level: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeliverableAccess.PREVIEW_ONLY.value
    )
    uploaded_by: Mapped[str] = mapped_column(String(64), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    order: Mapped[Order] = relationship("Order", back_populates="deliverables")
    milestone: Mapped[Milestone | None] = relationship(
        "Milestone", back_populates="deliverables"
    )

    __table_args__ = (Index("idx_deliverable_order", "order_id"),)


# ---------------------------------------------------------------------------
# 4. revision_requests
# ---------------------------------------------------------------------------
class RevisionRequest(Base):
    __tablename__ = "revision_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False
    )
    milestone_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    requested_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    addressed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Set once the seller resubmits after this request",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    order: Mapped[Order] = relationship("Order", back_populates="revision_requests")

    __table_args__ = (Index("idx_revision_order", "order_id"),)


# ---------------------------------------------------------------------------
# 5. dispute_evidence (Append-Only)
# ---------------------------------------------------------------------------
class DisputeEvidence(Base):
    """One piece of evidence. Rows are inserted, never updated or deleted."""

    __tablename__ = "dispute_evidence"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False
    )
    submitted_by: Mapped[str] = mapped_column(String(64), nullable=False)
    party_role: Mapped[str] = mapped_column(String(20), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    attachments: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "party_role IN ('client', 'freelancer')", name="ck_evidence_party_role"
        ),
        Index("idx_evidence_order", "order_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# 6. refunds
# ---------------------------------------------------------------------------
class Refund(Base):
    """A refund request or a completed refund against one order."""

    __tablename__ = "refunds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False
    )
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RefundStatus.PENDING.value
    )
    priority: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RefundPriority.MEDIUM.value
    )
    refund_method: Mapped[str] = mapped_column(
        String(40), nullable=False, default="original_payment"
    )
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    processed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    order: Mapped[Order] = relationship("Order", lazy="selectin")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_refund_positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'rejected')",
            name="ck_refund_valid_status",
        ),
        Index("idx_refund_order", "order_id"),
        Index("idx_refund_status", "status", "requested_at"),
    )

    def __repr__(self) -> str:
        return f"<Refund id={self.id} order={self.order_id} {self.amount} {self.status}>"


# ---------------------------------------------------------------------------
# 7. audit_log (Append-Only)
# ---------------------------------------------------------------------------
class AuditLogEntry(Base):
    """Immutable record of a privileged action, successful or rejected.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    target_type: Mapped[str] = mapped_column(String(20), nullable=False)
    target_id: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    old_values: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    new_values: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    severity: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_audit_actor", "actor_id", "created_at"),
        Index("idx_audit_action", "action", "created_at"),
        Index("idx_audit_target", "target_type", "target_id"),
        Index("idx_audit_severity", "severity", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLogEntry {self.action} {self.target_type}:{self.target_id} "
            f"by={self.actor_id} ok={self.success}>"
        )


# ---------------------------------------------------------------------------
# 8. order_events (Append-Only)
# ---------------------------------------------------------------------------
class OrderEvent(Base):
    """Immutable record of one phase change (or in-phase action) of an order."""

    __tablename__ = "order_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_phase: Mapped[str | None] = mapped_column(String(30), nullable=True)
    new_phase: Mapped[str] = mapped_column(String(30), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_event_order", "order_id", "created_at"),
        Index("idx_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<OrderEvent order={self.order_id} type={self.event_type} "
            f"{self.old_phase}->{self.new_phase}>"
        )


event.listen(Order, "before_update", _set_updated_at)
event.listen(Refund, "before_update", _set_updated_at)
