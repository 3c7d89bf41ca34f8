"""Database infrastructure — engine, ORM models, and repositories."""

from marketplace_escrow.infrastructure.database.engine import (
    close_db,
    get_async_session,
    get_session_factory,
    init_db,
    session_scope,
)
from marketplace_escrow.infrastructure.database.orm_models import (
    AuditLogEntry,
    Base,
    Deliverable,
    DisputeEvidence,
    Milestone,
    Order,
    OrderEvent,
    Refund,
    RevisionRequest,
)
from marketplace_escrow.infrastructure.database.repositories import (
    AuditLogRepository,
    EventRepository,
    EvidenceRepository,
    OrderRepository,
    RefundRepository,
)

__all__ = [
    "AuditLogEntry",
    "AuditLogRepository",
    "Base",
    "Deliverable",
    "DisputeEvidence",
    "EventRepository",
    "EvidenceRepository",
    "Milestone",
    "Order",
    "OrderEvent",
    "OrderRepository",
    "Refund",
    "RefundRepository",
    "RevisionRequest",
    "close_db",
    "get_async_session",
    "get_session_factory",
    "init_db",
    "session_scope",
]
