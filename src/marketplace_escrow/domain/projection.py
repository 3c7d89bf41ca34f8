"""Projection of the internal OrderPhase onto the legacy three-field view.

External consumers (dashboards, search, the UI) still speak in terms of
``status``, ``escrowStatus`` and ``disputeStatus``. Those fields are never
stored; they are derived here from the single phase, so a combination like
``status=completed`` with ``escrowStatus=disputed`` cannot exist.
"""

from __future__ import annotations

from typing import NamedTuple

from marketplace_escrow.domain.enums import (
    DisputeStatus,
    EscrowStatus,
    OrderPhase,
    OrderStatus,
)


class OrderStateView(NamedTuple):
    """The three legacy state axes for one phase."""

    status: OrderStatus
    escrow_status: EscrowStatus
    dispute_status: DisputeStatus

    def as_dict(self) -> dict[str, str]:
        return {
            "status": self.status.value,
            "escrow_status": self.escrow_status.value,
            "dispute_status": self.dispute_status.value,
        }


PHASE_PROJECTION: dict[OrderPhase, OrderStateView] = {
    OrderPhase.FUNDED: OrderStateView(
        OrderStatus.IN_PROGRESS, EscrowStatus.FUNDED, DisputeStatus.NONE
    ),
    OrderPhase.WORK_SUBMITTED: OrderStateView(
        OrderStatus.IN_PROGRESS, EscrowStatus.WORK_SUBMITTED, DisputeStatus.NONE
    ),
    OrderPhase.APPROVED: OrderStateView(
        OrderStatus.IN_PROGRESS, EscrowStatus.APPROVED, DisputeStatus.NONE
    ),
    OrderPhase.DISPUTE_PENDING: OrderStateView(
        OrderStatus.DISPUTED, EscrowStatus.DISPUTED, DisputeStatus.PENDING
    ),
    OrderPhase.DISPUTE_UNDER_REVIEW: OrderStateView(
        OrderStatus.DISPUTED, EscrowStatus.DISPUTED, DisputeStatus.UNDER_REVIEW
    ),
    OrderPhase.RELEASED: OrderStateView(
        OrderStatus.COMPLETED, EscrowStatus.RELEASED, DisputeStatus.NONE
    ),
    OrderPhase.REFUNDED: OrderStateView(
        OrderStatus.CANCELLED, EscrowStatus.REFUNDED, DisputeStatus.NONE
    ),
    OrderPhase.DISPUTE_RELEASED: OrderStateView(
        OrderStatus.COMPLETED, EscrowStatus.RELEASED, DisputeStatus.RESOLVED
    ),
    OrderPhase.DISPUTE_REFUNDED: OrderStateView(
        OrderStatus.CANCELLED, EscrowStatus.REFUNDED, DisputeStatus.RESOLVED
    ),
}

TERMINAL_PHASES = frozenset({
    OrderPhase.RELEASED,
    OrderPhase.REFUNDED,
    OrderPhase.DISPUTE_RELEASED,
    OrderPhase.DISPUTE_REFUNDED,
})

REFUNDED_PHASES = frozenset({OrderPhase.REFUNDED, OrderPhase.DISPUTE_REFUNDED})
RELEASED_PHASES = frozenset({OrderPhase.RELEASED, OrderPhase.DISPUTE_RELEASED})
DISPUTE_PHASES = frozenset({OrderPhase.DISPUTE_PENDING, OrderPhase.DISPUTE_UNDER_REVIEW})

# Phases from which funds may still leave escrow without a dispute.
OPEN_PHASES = frozenset({
    OrderPhase.FUNDED,
    OrderPhase.WORK_SUBMITTED,
    OrderPhase.APPROVED,
})

# Phases in which an escrow-moving action (refund, milestone payment,
# release) is blocked.
FROZEN_PHASES = DISPUTE_PHASES | TERMINAL_PHASES


def project(phase: OrderPhase | str) -> OrderStateView:
    """Return the (status, escrow_status, dispute_status) view of a phase."""
    return PHASE_PROJECTION[OrderPhase(phase)]


def phases_for_escrow_status(escrow_status: EscrowStatus | str) -> list[OrderPhase]:
    """All phases that project onto the given escrow status (for queries)."""
    target = EscrowStatus(escrow_status)
    return [p for p, view in PHASE_PROJECTION.items() if view.escrow_status == target]


def phases_for_status(status: OrderStatus | str) -> list[OrderPhase]:
    target = OrderStatus(status)
    return [p for p, view in PHASE_PROJECTION.items() if view.status == target]


def phases_for_dispute_status(dispute_status: DisputeStatus | str) -> list[OrderPhase]:
    target = DisputeStatus(dispute_status)
    return [p for p, view in PHASE_PROJECTION.items() if view.dispute_status == target]


def is_terminal(phase: OrderPhase | str) -> bool:
    return OrderPhase(phase) in TERMINAL_PHASES


def is_refunded(phase: OrderPhase | str) -> bool:
    return OrderPhase(phase) in REFUNDED_PHASES


def is_refundable(phase: OrderPhase | str) -> bool:
    """True when an admin refund or an approved refund request may apply."""
    return OrderPhase(phase) in OPEN_PHASES


def is_disputable(phase: OrderPhase | str) -> bool:
    """True when either party may open a dispute."""
    return OrderPhase(phase) in OPEN_PHASES
