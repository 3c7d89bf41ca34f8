"""Tests for the OrderStateMachine and MilestoneStateMachine domain guards.

These tests verify that:
    1. The delivery, settlement and dispute paths are allowed.
    2. Terminal phases accept no further events.
    3. Release is blocked once anything was refunded.
    4. Admin overrides never reach into disputes or terminal phases.
    5. The convenience functions behave like the machines.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.domain.state_machine import (
    MilestoneStateMachine,
    OrderStateMachine,
    allowed_order_events,
    validate_milestone_transition,
    validate_transition,
)

TERMINAL = ["RELEASED", "REFUNDED", "DISPUTE_RELEASED", "DISPUTE_REFUNDED"]


class TestHappyPath:
    """FUNDED -> WORK_SUBMITTED -> APPROVED -> RELEASED."""

    def test_full_lifecycle(self) -> None:
        sm = OrderStateMachine("FUNDED")
        assert sm.phase == "FUNDED"

        sm.submit_work()
        assert sm.phase == "WORK_SUBMITTED"

        sm.request_revision()
        assert sm.phase == "WORK_SUBMITTED"

        sm.submit_work()
        assert sm.phase == "WORK_SUBMITTED"

        sm.approve()
        assert sm.phase == "APPROVED"

        sm.release(refund_amount=0)
        assert sm.phase == "RELEASED"

    def test_milestone_settlement(self) -> None:
        sm = OrderStateMachine("FUNDED")
        sm.settle_milestones(refund_amount=0)
        assert sm.phase == "RELEASED"


class TestReleaseGuard:
    def test_release_blocked_after_partial_refund(self) -> None:
        sm = OrderStateMachine("APPROVED")
        with pytest.raises(TransitionNotAllowed):
            sm.release(refund_amount=100)

    def test_release_requires_approval(self) -> None:
        for phase in ("FUNDED", "WORK_SUBMITTED", "DISPUTE_PENDING"):
            with pytest.raises(TransitionNotAllowed):
                OrderStateMachine(phase).release()


class TestRefundPath:
    @pytest.mark.parametrize("phase", ["FUNDED", "WORK_SUBMITTED", "APPROVED"])
    def test_refund_from_open_phases(self, phase: str) -> None:
        assert validate_transition(phase, "refund") == "REFUNDED"

    @pytest.mark.parametrize("phase", ["DISPUTE_PENDING", "DISPUTE_UNDER_REVIEW"])
    def test_refund_blocked_while_disputed(self, phase: str) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition(phase, "refund")


class TestDisputePath:
    def test_dispute_resolved_with_refund(self) -> None:
        sm = OrderStateMachine("WORK_SUBMITTED")
        sm.open_dispute()
        assert sm.phase == "DISPUTE_PENDING"
        sm.start_review()
        assert sm.phase == "DISPUTE_UNDER_REVIEW"
        sm.resolve_refund()
        assert sm.phase == "DISPUTE_REFUNDED"

    def test_dispute_resolved_for_seller(self) -> None:
        sm = OrderStateMachine("DISPUTE_UNDER_REVIEW")
        sm.resolve_release()
        assert sm.phase == "DISPUTE_RELEASED"

    def test_cannot_resolve_before_review(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition("DISPUTE_PENDING", "resolve_refund")

    def test_cannot_dispute_twice(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition("DISPUTE_PENDING", "open_dispute")

    def test_work_frozen_while_disputed(self) -> None:
        for event in ("submit_work", "approve", "request_revision"):
            with pytest.raises(TransitionNotAllowed):
                validate_transition("DISPUTE_PENDING", event)


class TestTerminalPhases:
    @pytest.mark.parametrize("phase", TERMINAL)
    def test_no_events_from_terminal(self, phase: str) -> None:
        assert allowed_order_events(phase) == []

    @pytest.mark.parametrize("phase", TERMINAL)
    def test_refund_rejected_from_terminal(self, phase: str) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition(phase, "refund")


class TestAdminOverrides:
    def test_reset_to_funded(self) -> None:
        assert validate_transition("APPROVED", "admin_reset") == "FUNDED"

    def test_mark_approved(self) -> None:
        assert validate_transition("FUNDED", "admin_mark_approved") == "APPROVED"

    @pytest.mark.parametrize("phase", ["DISPUTE_PENDING", "DISPUTE_UNDER_REVIEW", *TERMINAL])
    def test_overrides_blocked(self, phase: str) -> None:
        for event in ("admin_reset", "admin_mark_submitted", "admin_mark_approved"):
            with pytest.raises(TransitionNotAllowed):
                validate_transition(phase, event)


class TestConvenienceFunctions:
    def test_unknown_event_raises_value_error(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            validate_transition("FUNDED", "teleport")

    def test_unknown_phase_raises_value_error(self) -> None:
        with pytest.raises(ValueError, match="Unknown phase"):
            OrderStateMachine("CANCELLED")

    def test_allowed_events_from_funded(self) -> None:
        assert set(allowed_order_events("FUNDED")) == {
            "submit_work",
            "settle_milestones",
            "refund",
            "open_dispute",
            "admin_mark_submitted",
            "admin_mark_approved",
        }

    def test_allowed_events_under_review(self) -> None:
        assert set(allowed_order_events("DISPUTE_UNDER_REVIEW")) == {
            "resolve_release",
            "resolve_refund",
        }


class TestMilestoneMachine:
    def test_full_milestone_lifecycle(self) -> None:
        sm = MilestoneStateMachine("pending")
        sm.start()
        sm.submit()
        assert sm.status == "submitted"
        sm.request_revision()
        assert sm.status == "in_progress"
        sm.submit()
        sm.approve()
        sm.pay()
        assert sm.status == "paid"

    def test_submit_straight_from_pending(self) -> None:
        assert validate_milestone_transition("pending", "submit") == "submitted"

    def test_cannot_pay_unapproved(self) -> None:
        for status in ("pending", "in_progress", "submitted"):
            with pytest.raises(TransitionNotAllowed):
                validate_milestone_transition(status, "pay")

    def test_paid_is_final(self) -> None:
        for event in ("submit", "approve", "pay", "request_revision"):
            with pytest.raises(TransitionNotAllowed):
                validate_milestone_transition("paid", event)
