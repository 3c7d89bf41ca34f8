"""Domain layer — pure business logic with zero framework dependencies."""

from marketplace_escrow.domain.collaborators import (
    Actor,
    AllowAllRiskGate,
    AttachmentRef,
    DeliverableUpload,
    GigSnapshot,
    MilestoneTemplate,
    RiskAssessment,
    RiskGate,
)
from marketplace_escrow.domain.enums import (
    ActorRole,
    DisputeStatus,
    EscrowStatus,
    EventType,
    MilestoneStatus,
    OrderPhase,
    OrderStatus,
    RefundStatus,
)
from marketplace_escrow.domain.exceptions import (
    AlreadyRefundedError,
    AuthorizationError,
    ConflictError,
    EscrowError,
    IntegrityFailure,
    NotFoundError,
    ValidationError,
)
from marketplace_escrow.domain.projection import project
from marketplace_escrow.domain.state_machine import (
    MilestoneStateMachine,
    OrderStateMachine,
    validate_transition,
)

__all__ = [
    "Actor",
    "ActorRole",
    "AllowAllRiskGate",
    "AlreadyRefundedError",
    "AttachmentRef",
    "AuthorizationError",
    "ConflictError",
    "DeliverableUpload",
    "DisputeStatus",
    "EscrowError",
    "EscrowStatus",
    "EventType",
    "GigSnapshot",
    "IntegrityFailure",
    "MilestoneStateMachine",
    "MilestoneStatus",
    "MilestoneTemplate",
    "NotFoundError",
    "OrderPhase",
    "OrderStateMachine",
    "OrderStatus",
    "RefundStatus",
    "RiskAssessment",
    "RiskGate",
    "ValidationError",
    "project",
    "validate_transition",
]
