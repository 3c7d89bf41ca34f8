"""Domain enumerations for the marketplace escrow service.

These enums define the canonical states and vocabularies used throughout the
system. They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class OrderPhase(enum.StrEnum):
    """Single internal state of an order.

    The legacy ``status`` / ``escrow_status`` / ``dispute_status`` triple is a
    read-only projection of this value (see domain/projection.py), so an
    order can never hold an inconsistent combination.
    """

    FUNDED = "FUNDED"
    WORK_SUBMITTED = "WORK_SUBMITTED"
    APPROVED = "APPROVED"
    DISPUTE_PENDING = "DISPUTE_PENDING"
    DISPUTE_UNDER_REVIEW = "DISPUTE_UNDER_REVIEW"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    DISPUTE_RELEASED = "DISPUTE_RELEASED"
    DISPUTE_REFUNDED = "DISPUTE_REFUNDED"


class OrderStatus(enum.StrEnum):
    """Coarse order status shown to catalog, search and dashboards."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class EscrowStatus(enum.StrEnum):
    """Fund-custody view of an order."""

    FUNDED = "funded"
    WORK_SUBMITTED = "work_submitted"
    APPROVED = "approved"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class DisputeStatus(enum.StrEnum):
    NONE = "none"
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"


class MilestoneStatus(enum.StrEnum):
    """Lifecycle of a single milestone inside an order."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    PAID = "paid"


class RefundStatus(enum.StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class RefundPriority(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RefundAction(enum.StrEnum):
    """Admin decision on a pending refund request."""

    APPROVE = "approve"
    REJECT = "reject"


class PartyRole(enum.StrEnum):
    """Which side of the order submitted a piece of dispute evidence."""

    CLIENT = "client"
    FREELANCER = "freelancer"


class EvidenceKind(enum.StrEnum):
    SCREENSHOT = "screenshot"
    DOCUMENT = "document"
    COMMUNICATION = "communication"
    VIDEO = "video"
    OTHER = "other"


class ActorRole(enum.StrEnum):
    """Role of whoever is asking for a transition.

    Identity itself is owned by the upstream auth collaborator; this service
    only trusts the role it is handed.
    """

    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"


class DeliverableAccess(enum.StrEnum):
    """Access level of a submitted deliverable.

    The final reference is only served once the work is approved.
    """

    PREVIEW_ONLY = "preview_only"
    FULL_ACCESS = "full_access"
    RESTRICTED = "restricted"


class ProtectionLevel(enum.StrEnum):
    STANDARD = "standard"
    ENHANCED = "enhanced"


class AuditAction(enum.StrEnum):
    """Privileged actions recorded in the audit log."""

    ORDER_UPDATED = "order_updated"
    ORDER_REFUNDED = "order_refunded"
    ORDER_RELEASED = "order_released"
    REFUND_APPROVED = "refund_approved"
    REFUND_REJECTED = "refund_rejected"
    DISPUTE_REVIEW_STARTED = "dispute_review_started"
    DISPUTE_RESOLVED = "dispute_resolved"
    RECONCILIATION_MISMATCH = "reconciliation_mismatch"


class AuditTargetType(enum.StrEnum):
    ORDER = "order"
    REFUND = "refund"
    DISPUTE = "dispute"


class AuditSeverity(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EventType(enum.StrEnum):
    """Types of events recorded in the order_events trail.

    Every phase change of an order produces exactly one event, whoever the
    actor was. Privileged actions additionally land in the audit log.
    """

    # Lifecycle
    ORDER_FUNDED = "ORDER_FUNDED"
    WORK_SUBMITTED = "WORK_SUBMITTED"
    REVISION_REQUESTED = "REVISION_REQUESTED"
    WORK_APPROVED = "WORK_APPROVED"
    FUNDS_RELEASED = "FUNDS_RELEASED"
    AUTO_RELEASED = "AUTO_RELEASED"

    # Milestones
    MILESTONES_CREATED = "MILESTONES_CREATED"
    MILESTONE_SUBMITTED = "MILESTONE_SUBMITTED"
    MILESTONE_REVISION_REQUESTED = "MILESTONE_REVISION_REQUESTED"
    MILESTONE_APPROVED = "MILESTONE_APPROVED"
    MILESTONE_PAID = "MILESTONE_PAID"

    # Disputes
    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_EVIDENCE_ADDED = "DISPUTE_EVIDENCE_ADDED"
    DISPUTE_REVIEW_STARTED = "DISPUTE_REVIEW_STARTED"
    DISPUTE_RESOLVED_FREELANCER = "DISPUTE_RESOLVED_FREELANCER"
    DISPUTE_RESOLVED_REFUND = "DISPUTE_RESOLVED_REFUND"

    # Refunds and overrides
    REFUND_REQUESTED = "REFUND_REQUESTED"
    ORDER_REFUNDED = "ORDER_REFUNDED"
    STATUS_OVERRIDDEN = "STATUS_OVERRIDDEN"
