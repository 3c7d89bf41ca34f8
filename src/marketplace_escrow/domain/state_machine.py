"""Order and Milestone State Machine Guards.

Uses python-statemachine to enforce legal transitions at the domain level.
No matter what the API or a background sweep does, an illegal transition
(e.g., REFUNDED -> release) raises TransitionNotAllowed here before any
ORM field is touched.

The machines are instantiated per-order (or per-milestone) from the stored
value, fired once, and thrown away.

Order transition table:
    FUNDED                -> WORK_SUBMITTED        (submit_work)
    WORK_SUBMITTED        -> WORK_SUBMITTED        (submit_work, after a revision request)
    WORK_SUBMITTED        -> WORK_SUBMITTED        (request_revision)
    WORK_SUBMITTED        -> APPROVED              (approve)
    APPROVED              -> RELEASED              (release, refund_amount must be 0)
    FUNDED                -> RELEASED              (settle_milestones, refund_amount must be 0)
    FUNDED|WORK_SUBMITTED|APPROVED -> DISPUTE_PENDING   (open_dispute)
    DISPUTE_PENDING       -> DISPUTE_UNDER_REVIEW  (start_review)
    DISPUTE_UNDER_REVIEW  -> DISPUTE_RELEASED      (resolve_release)
    DISPUTE_UNDER_REVIEW  -> DISPUTE_REFUNDED      (resolve_refund)
    FUNDED|WORK_SUBMITTED|APPROVED -> REFUNDED          (refund)
    WORK_SUBMITTED|APPROVED -> FUNDED              (admin_reset)
    FUNDED|APPROVED       -> WORK_SUBMITTED        (admin_mark_submitted)
    FUNDED|WORK_SUBMITTED -> APPROVED              (admin_mark_approved)

Milestone transition table:
    PENDING      -> IN_PROGRESS  (start)
    PENDING      -> SUBMITTED    (submit)
    IN_PROGRESS  -> SUBMITTED    (submit)
    SUBMITTED    -> IN_PROGRESS  (request_revision)
    SUBMITTED    -> APPROVED     (approve)
    APPROVED     -> PAID         (pay)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed


class OrderStateMachine(StateMachine):
    """State machine that guards the order / escrow lifecycle.

    Usage:
        sm = OrderStateMachine(current_phase="APPROVED")
        sm.release(refund_amount=0)  # transitions to RELEASED
        sm.phase                     # "RELEASED"
    """

    # --- States ---
    FUNDED = State("FUNDED", initial=True)
    WORK_SUBMITTED = State("WORK_SUBMITTED")
    APPROVED = State("APPROVED")
    DISPUTE_PENDING = State("DISPUTE_PENDING")
    DISPUTE_UNDER_REVIEW = State("DISPUTE_UNDER_REVIEW")
    RELEASED = State("RELEASED", final=True)
    REFUNDED = State("REFUNDED", final=True)
    DISPUTE_RELEASED = State("DISPUTE_RELEASED", final=True)
    DISPUTE_REFUNDED = State("DISPUTE_REFUNDED", final=True)

    # --- Events / Transitions ---

    # Delivery
    submit_work = FUNDED.to(WORK_SUBMITTED) | WORK_SUBMITTED.to(WORK_SUBMITTED)
    request_revision = WORK_SUBMITTED.to(WORK_SUBMITTED)
    approve = WORK_SUBMITTED.to(APPROVED)

    # Settlement
    release = APPROVED.to(RELEASED, cond="nothing_refunded")
    settle_milestones = FUNDED.to(RELEASED, cond="nothing_refunded")
    refund = (
        FUNDED.to(REFUNDED)
        | WORK_SUBMITTED.to(REFUNDED)
        | APPROVED.to(REFUNDED)
    )

    # Disputes
    open_dispute = (
        FUNDED.to(DISPUTE_PENDING)
        | WORK_SUBMITTED.to(DISPUTE_PENDING)
        | APPROVED.to(DISPUTE_PENDING)
    )
    start_review = DISPUTE_PENDING.to(DISPUTE_UNDER_REVIEW)
    resolve_release = DISPUTE_UNDER_REVIEW.to(DISPUTE_RELEASED)
    resolve_refund = DISPUTE_UNDER_REVIEW.to(DISPUTE_REFUNDED)

    # Admin overrides (never out of a dispute or a terminal phase)
    admin_reset = WORK_SUBMITTED.to(FUNDED) | APPROVED.to(FUNDED)
    admin_mark_submitted = FUNDED.to(WORK_SUBMITTED) | APPROVED.to(WORK_SUBMITTED)
    admin_mark_approved = FUNDED.to(APPROVED) | WORK_SUBMITTED.to(APPROVED)

    def __init__(self, current_phase: str = "FUNDED") -> None:
        """Initialize the state machine at a given phase.

        Args:
            current_phase: The current OrderPhase value (e.g., "APPROVED").
        """
        valid_values = {s.value for s in self.states}
        if current_phase not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown phase '{current_phase}'. Valid phases: {valid}")
        super().__init__(start_value=current_phase)

    def nothing_refunded(self, refund_amount: int = 0) -> bool:
        """Release guard: funds that were (partly) refunded can never be released."""
        return refund_amount == 0

    @property
    def phase(self) -> str:
        """Return the current state value as a string (matches OrderPhase)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return the event names that can fire from the current phase."""
        return [event.id for event in self.allowed_events]


class MilestoneStateMachine(StateMachine):
    """State machine for a single milestone inside an order."""

    PENDING = State("pending", value="pending", initial=True)
    IN_PROGRESS = State("in_progress", value="in_progress")
    SUBMITTED = State("submitted", value="submitted")
    APPROVED = State("approved", value="approved")
    PAID = State("paid", value="paid", final=True)

    start = PENDING.to(IN_PROGRESS)
    submit = PENDING.to(SUBMITTED) | IN_PROGRESS.to(SUBMITTED)
    request_revision = SUBMITTED.to(IN_PROGRESS)
    approve = SUBMITTED.to(APPROVED)
    pay = APPROVED.to(PAID)

    def __init__(self, current_status: str = "pending") -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown milestone status '{current_status}'. Valid: {valid}")
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        return [event.id for event in self.allowed_events]


ORDER_EVENTS = frozenset({
    "submit_work",
    "request_revision",
    "approve",
    "release",
    "settle_milestones",
    "refund",
    "open_dispute",
    "start_review",
    "resolve_release",
    "resolve_refund",
    "admin_reset",
    "admin_mark_submitted",
    "admin_mark_approved",
})

MILESTONE_EVENTS = frozenset({"start", "submit", "request_revision", "approve", "pay"})


def validate_transition(current_phase: str, event_name: str, **event_kwargs: object) -> str:
    """Validate an order transition and return the new phase.

    Creates a temporary state machine, fires the named event, and returns the
    resulting phase string.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the phase or event name is unknown.
    """
    sm = OrderStateMachine(current_phase=current_phase)
    return _fire(sm, ORDER_EVENTS, event_name, **event_kwargs).phase


def validate_milestone_transition(current_status: str, event_name: str) -> str:
    """Milestone counterpart of validate_transition."""
    sm = MilestoneStateMachine(current_status=current_status)
    return _fire(sm, MILESTONE_EVENTS, event_name).status


def allowed_order_events(current_phase: str) -> list[str]:
    return OrderStateMachine(current_phase=current_phase).get_allowed_events()


def _fire(sm, known_events: frozenset[str], event_name: str, **event_kwargs: object):  # noqa: ANN001, ANN202
    if event_name not in known_events:
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {sm.current_state.value}: {sm.get_allowed_events()}"
        )
    getattr(sm, event_name)(**event_kwargs)
    return sm


__all__ = [
    "MILESTONE_EVENTS",
    "ORDER_EVENTS",
    "MilestoneStateMachine",
    "OrderStateMachine",
    "TransitionNotAllowed",
    "allowed_order_events",
    "validate_milestone_transition",
    "validate_transition",
]
