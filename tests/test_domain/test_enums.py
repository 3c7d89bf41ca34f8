"""Tests for domain enums — ensure values are stable and complete."""

from __future__ import annotations

from marketplace_escrow.domain.enums import (
    ActorRole,
    DeliverableAccess,
    DisputeStatus,
    EscrowStatus,
    EventType,
    MilestoneStatus,
    OrderPhase,
    OrderStatus,
    RefundStatus,
)


class TestOrderPhase:
    def test_all_phases_exist(self) -> None:
        expected = {
            "FUNDED",
            "WORK_SUBMITTED",
            "APPROVED",
            "DISPUTE_PENDING",
            "DISPUTE_UNDER_REVIEW",
            "RELEASED",
            "REFUNDED",
            "DISPUTE_RELEASED",
            "DISPUTE_REFUNDED",
        }
        assert {p.value for p in OrderPhase} == expected

    def test_phase_is_string(self) -> None:
        assert OrderPhase.FUNDED == "FUNDED"
        assert isinstance(OrderPhase.FUNDED, str)


class TestLegacyAxes:
    """The three projected axes keep the values external consumers read."""

    def test_status_values(self) -> None:
        assert {s.value for s in OrderStatus} == {
            "pending",
            "in_progress",
            "completed",
            "cancelled",
            "disputed",
        }

    def test_escrow_status_values(self) -> None:
        assert {s.value for s in EscrowStatus} == {
            "funded",
            "work_submitted",
            "approved",
            "released",
            "disputed",
            "refunded",
        }

    def test_dispute_status_values(self) -> None:
        assert {s.value for s in DisputeStatus} == {"none", "pending", "under_review", "resolved"}


class TestSupportingEnums:
    def test_milestone_status(self) -> None:
        assert [s.value for s in MilestoneStatus] == [
            "pending",
            "in_progress",
            "submitted",
            "approved",
            "paid",
        ]

    def test_refund_status(self) -> None:
        assert {s.value for s in RefundStatus} == {"pending", "processing", "completed", "rejected"}

    def test_actor_roles(self) -> None:
        assert ActorRole("admin") is ActorRole.ADMIN
        assert ActorRole.SYSTEM.value == "system"

    def test_deliverable_access(self) -> None:
        assert DeliverableAccess.PREVIEW_ONLY.value == "preview_only"
        assert DeliverableAccess.FULL_ACCESS.value == "full_access"

    def test_event_types_are_unique(self) -> None:
        values = [e.value for e in EventType]
        assert len(values) == len(set(values))
