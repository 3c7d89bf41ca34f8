"""Domain exceptions for the marketplace escrow service.

These exceptions are framework-agnostic and represent business rule
violations. They are caught and translated to HTTP responses by the API
layer's middleware. Each one carries enough context (current phase, version)
for a caller to refresh its view and retry deliberately.
"""

from __future__ import annotations

from typing import Any


class EscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(
        self,
        message: str,
        code: str = "ESCROW_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


# --- Validation ---


class ValidationError(EscrowError):
    """Malformed request. Raised before any state is touched."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR", details=details)


class MilestoneOverflowError(ValidationError):
    """Paying a milestone would push the paid total above the order price."""

    def __init__(self, order_id: str, paid_total: int, amount: int, price: int) -> None:
        super().__init__(
            message=(
                f"Milestone payment of {amount} would bring paid total to "
                f"{paid_total + amount}, above order price {price}"
            ),
            details={
                "order_id": order_id,
                "paid_total": paid_total,
                "amount": amount,
                "price": price,
            },
        )
        self.code = "MILESTONE_OVERFLOW"


# --- Conflicts ---


class ConflictError(EscrowError):
    """The order is no longer in a state that permits the request."""

    def __init__(
        self,
        message: str,
        current_state: str | None = None,
        code: str = "CONFLICT",
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = {"current_state": current_state, **(details or {})}
        super().__init__(message=message, code=code, details=merged)
        self.current_state = current_state


class InvalidStateTransitionError(ConflictError):
    """Raised when the state machine rejects an event.

    Example: RELEASED -> open_dispute (released orders are terminal)
    """

    def __init__(self, current_state: str, attempted_event: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {attempted_event} from {current_state}",
            current_state=current_state,
            code="INVALID_STATE_TRANSITION",
            details={"attempted_event": attempted_event},
        )
        self.attempted_event = attempted_event


class AlreadyRefundedError(ConflictError):
    """Raised on any attempt to refund an order that was already refunded."""

    def __init__(self, order_id: str, current_state: str) -> None:
        super().__init__(
            message=f"Order {order_id} has already been refunded",
            current_state=current_state,
            code="ALREADY_REFUNDED",
            details={"order_id": order_id},
        )


class StaleVersionError(ConflictError):
    """The caller acted on an outdated read of the order."""

    def __init__(
        self,
        order_id: str,
        expected_version: int | None,
        actual_version: int | None,
        current_state: str | None = None,
    ) -> None:
        super().__init__(
            message=(
                f"Order {order_id} changed concurrently "
                f"(expected version {expected_version}, found {actual_version})"
            ),
            current_state=current_state,
            code="STALE_VERSION",
            details={
                "order_id": order_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )


class DuplicateOperationError(ConflictError):
    """Raised when a duplicate idempotency key is detected."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
            details={"idempotency_key": idempotency_key},
        )


# --- Lookups ---


class NotFoundError(EscrowError):
    """Base for unknown identifiers."""

    def __init__(self, message: str, code: str = "NOT_FOUND") -> None:
        super().__init__(message=message, code=code)


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str) -> None:
        super().__init__(message=f"Order not found: {order_id}", code="ORDER_NOT_FOUND")
        self.order_id = order_id


class RefundNotFoundError(NotFoundError):
    def __init__(self, refund_id: str) -> None:
        super().__init__(message=f"Refund not found: {refund_id}", code="REFUND_NOT_FOUND")
        self.refund_id = refund_id


class MilestoneNotFoundError(NotFoundError):
    def __init__(self, order_id: str, index: int) -> None:
        super().__init__(
            message=f"Milestone {index} not found on order {order_id}",
            code="MILESTONE_NOT_FOUND",
        )


# --- Authorization ---


class AuthorizationError(EscrowError):
    """The actor lacks the role or ownership the transition requires."""

    def __init__(self, message: str, actor_id: str | None = None, role: str | None = None) -> None:
        super().__init__(
            message=message,
            code="FORBIDDEN",
            details={"actor_id": actor_id, "role": role},
        )


class RiskGateRejectedError(AuthorizationError):
    """The fraud/risk collaborator refused to admit a new order."""

    def __init__(self, buyer_id: str, reason: str) -> None:
        super().__init__(message=f"Order rejected by risk gate: {reason}", actor_id=buyer_id)
        self.code = "RISK_REJECTED"
        self.details["reason"] = reason


# --- Integrity ---


class IntegrityFailure(EscrowError):
    """An order and its refund record disagree about whether money moved.

    Not locally recoverable. Requires operator reconciliation.
    """

    def __init__(self, message: str, order_id: str, refund_id: str | None = None) -> None:
        super().__init__(
            message=message,
            code="INTEGRITY_FAILURE",
            details={"order_id": order_id, "refund_id": refund_id},
        )
