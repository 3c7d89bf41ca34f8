#!/usr/bin/env python3
"""Marketplace Escrow — End-to-End Simulation.

Simulates three scenarios with BuyerBot, SellerBot and AdminBot:

    Scenario 1: Happy Path
        - Order funded at 25,000, seller delivers
        - Buyer asks for one revision, seller re-delivers, buyer approves
        - The auto-release sweep releases escrow once the hold has passed

    Scenario 2: Dispute Refund
        - Order funded at 50,000, seller delivers
        - Buyer disputes and both parties add evidence
        - Admin reviews and resolves with a full refund
        -> escrow refunded, order cancelled, one completed Refund, one high audit entry

    Scenario 3: Milestones + Double Refund
        - Order with two milestones (20,000 + 30,000)
        - First milestone delivered, approved and paid
        - Admin refunds the remainder, then tries again
        -> second attempt rejected as already refunded, order unchanged

Usage:
    # Option A: Against the configured PostgreSQL database:
    uv run python simulation.py

    # Option B: Without Docker (throwaway SQLite file):
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --sqlite --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
import uuid
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from marketplace_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from marketplace_escrow.domain.collaborators import (  # noqa: E402
    Actor,
    AttachmentRef,
    DeliverableUpload,
    GigSnapshot,
    MilestoneTemplate,
)
from marketplace_escrow.domain.enums import ActorRole, EvidenceKind  # noqa: E402
from marketplace_escrow.domain.exceptions import ConflictError  # noqa: E402
from marketplace_escrow.services import (  # noqa: E402
    AdminGateway,
    AutoReleaseSweep,
    DisputeService,
    MilestoneService,
    OrderService,
)
from marketplace_escrow.services.base import utcnow  # noqa: E402

# Module-level state
_sqlite_engine = None
_session_factory = None
_tmpdir: tempfile.TemporaryDirectory | None = None


async def init_database(use_sqlite: bool = False) -> None:
    """Initialize database engine and create tables."""
    global _sqlite_engine, _session_factory, _tmpdir

    if use_sqlite:
        from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

        from marketplace_escrow.infrastructure.database.orm_models import Base

        # A file rather than :memory: so the failure-audit session sees the same tables.
        _tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(_tmpdir.name) / "simulation.db"
        _sqlite_engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", echo=False)
        _session_factory = async_sessionmaker(
            bind=_sqlite_engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        async with _sqlite_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.sqlite_initialized", path=str(db_path))
    else:
        from marketplace_escrow.infrastructure.database.engine import (
            get_session_factory,
            init_db,
        )

        await init_db()
        _session_factory = get_session_factory()


def get_session() -> Any:
    """Get a fresh database session."""
    return _session_factory()


async def shutdown_database() -> None:
    """Close database connections."""
    global _sqlite_engine, _session_factory, _tmpdir

    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
        _tmpdir.cleanup()
        _tmpdir = None
    else:
        from marketplace_escrow.infrastructure.database.engine import close_db

        await close_db()
    _session_factory = None


def _upload(name: str) -> DeliverableUpload:
    return DeliverableUpload(
        preview=AttachmentRef(url=f"https://files.example/preview/{name}", size=1024, type="image/png"),
        final=AttachmentRef(url=f"https://files.example/final/{name}", size=4096, type="image/png"),
        original_name=name,
    )


# ---------------------------------------------------------------------------
# Bots
# ---------------------------------------------------------------------------
@dataclass
class BuyerBot:
    """Simulated buyer: funds orders, reviews work, disputes."""

    id: str = "buyer-1"

    @property
    def actor(self) -> Actor:
        return Actor(id=self.id, role=ActorRole.BUYER)

    async def place_order(
        self,
        session: Any,
        seller_id: str,
        price: int,
        milestones: tuple[MilestoneTemplate, ...] = (),
    ) -> uuid.UUID:
        """Record a funded order, as the payment collaborator would."""
        gig = GigSnapshot(
            gig_id=f"gig-{uuid.uuid4().hex[:8]}",
            title="Logo design",
            delivery_days=5,
            milestones=milestones,
        )
        order = await OrderService(session).create_order(
            gig,
            buyer_id=self.id,
            seller_id=seller_id,
            price=price,
            payment_reference=f"pay_{uuid.uuid4().hex}",
        )
        await session.commit()
        logger.info("🔵 BUYER: Order funded", order_id=str(order.id), price=price)
        return order.id

    async def request_revision(self, session: Any, order_id: uuid.UUID, reason: str) -> None:
        await OrderService(session).request_revision(order_id, self.actor, reason)
        await session.commit()
        logger.info("🔵 BUYER: Revision requested", order_id=str(order_id))

    async def approve(self, session: Any, order_id: uuid.UUID) -> None:
        await OrderService(session).approve_work(order_id, self.actor, feedback="Great work")
        await session.commit()
        logger.info("🔵 BUYER: Work approved", order_id=str(order_id))

    async def dispute(self, session: Any, order_id: uuid.UUID, reason: str) -> None:
        disputes = DisputeService(session)
        await disputes.open_dispute(order_id, self.actor, reason)
        await disputes.add_evidence(
            order_id,
            self.actor,
            EvidenceKind.SCREENSHOT,
            "Delivered file does not match the brief",
            [AttachmentRef(url="https://files.example/evidence/brief.png")],
        )
        await session.commit()
        logger.info("🔵 BUYER: Dispute opened", order_id=str(order_id))

    async def approve_and_pay_milestone(self, session: Any, order_id: uuid.UUID, index: int) -> None:
        milestones = MilestoneService(session)
        await milestones.approve_milestone(order_id, index, self.actor)
        await milestones.pay_milestone(order_id, index, self.actor)
        await session.commit()
        logger.info("🔵 BUYER: Milestone paid", order_id=str(order_id), index=index)


@dataclass
class SellerBot:
    """Simulated seller: delivers work and answers disputes."""

    id: str = "seller-1"

    @property
    def actor(self) -> Actor:
        return Actor(id=self.id, role=ActorRole.SELLER)

    async def deliver(self, session: Any, order_id: uuid.UUID, name: str) -> None:
        await OrderService(session).submit_work(order_id, self.actor, [_upload(name)])
        await session.commit()
        logger.info("🟢 SELLER: Work delivered", order_id=str(order_id), file=name)

    async def deliver_milestone(self, session: Any, order_id: uuid.UUID, index: int) -> None:
        await MilestoneService(session).submit_milestone(
            order_id, index, self.actor, [_upload(f"milestone-{index}.png")]
        )
        await session.commit()
        logger.info("🟢 SELLER: Milestone delivered", order_id=str(order_id), index=index)

    async def answer_dispute(self, session: Any, order_id: uuid.UUID) -> None:
        await DisputeService(session).add_evidence(
            order_id,
            self.actor,
            EvidenceKind.COMMUNICATION,
            "Buyer approved the draft in chat",
        )
        await session.commit()
        logger.info("🟢 SELLER: Evidence added", order_id=str(order_id))


@dataclass
class AdminBot:
    """Simulated support admin working through the audited gateway."""

    id: str = "admin-1"

    @property
    def actor(self) -> Actor:
        return Actor(id=self.id, role=ActorRole.ADMIN)

    def gateway(self, session: Any) -> AdminGateway:
        return AdminGateway(session, audit_session_factory=_session_factory)

    async def resolve_with_refund(self, session: Any, order_id: uuid.UUID) -> None:
        gateway = self.gateway(session)
        await gateway.start_dispute_review(self.actor, order_id, notes="Reviewing evidence")
        await session.commit()
        _, refund = await gateway.resolve_dispute_with_refund(
            self.actor, order_id, "Delivery did not match the brief"
        )
        await session.commit()
        logger.info("🟣 ADMIN: Dispute refunded", order_id=str(order_id), amount=refund.amount)

    async def refund(self, session: Any, order_id: uuid.UUID, reason: str) -> None:
        refund = await self.gateway(session).refund_order(self.actor, order_id, reason)
        await session.commit()
        logger.info("🟣 ADMIN: Order refunded", order_id=str(order_id), amount=refund.amount)


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


async def print_summary(session: Any, order_id: uuid.UUID) -> dict:
    summary = await OrderService(session).get_summary(order_id)
    print(f"  Phase: {summary['phase']} (v{summary['version']})")
    print(
        f"  Status: {summary['status']} | Escrow: {summary['escrow_status']}"
        f" | Dispute: {summary['dispute_status']}"
    )
    print(f"  Refunded: {summary['refund_amount']} | Milestones paid: {summary['paid_milestone_total']}")
    return summary


async def print_order_trail(session: Any, order_id: uuid.UUID) -> None:
    """Print the transition trail for an order."""
    events = await OrderService(session).get_events(order_id)
    print("\n  📜 Order Trail:")
    for i, evt in enumerate(events, 1):
        old = evt.old_phase or "—"
        print(f"    {i}. [{evt.event_type}] {old} → {evt.new_phase} (by {evt.actor})")
    print()


async def print_audit_trail(session: Any, order_id: uuid.UUID) -> None:
    entries = await AdminGateway(session).list_audit_entries(
        AdminBot().actor, target_id=str(order_id)
    )
    print("  🛡️  Admin Audit:")
    for entry in reversed(entries):
        outcome = "ok" if entry.success else f"rejected: {entry.error_message}"
        print(f"    - {entry.action} [{entry.severity}] by {entry.actor_id} ({outcome})")
    print()


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path() -> None:
    banner("SCENARIO 1: Happy Path (revision, approval, auto-release)")
    buyer, seller = BuyerBot(), SellerBot()

    async with get_session() as session:
        order_id = await buyer.place_order(session, seller.id, price=25_000)

        section("Delivery and revision")
        await seller.deliver(session, order_id, "logo-v1.png")
        await buyer.request_revision(session, order_id, "Please use the brand colours")
        await seller.deliver(session, order_id, "logo-v2.png")
        await buyer.approve(session, order_id)
        await print_summary(session, order_id)

    section("Auto-release sweep (clock advanced past the release hold)")
    result = await AutoReleaseSweep(_session_factory).run(now=utcnow() + timedelta(days=2))
    print(f"  Sweep: {result.as_dict()}")

    async with get_session() as session:
        summary = await print_summary(session, order_id)
        await print_order_trail(session, order_id)
    assert summary["escrow_status"] == "released"


# ===========================================================================
# Scenario 2: Dispute Refund
# ===========================================================================
async def scenario_2_dispute_refund() -> None:
    banner("SCENARIO 2: Dispute resolved with a full refund")
    buyer, seller, admin = BuyerBot(), SellerBot(), AdminBot()

    async with get_session() as session:
        order_id = await buyer.place_order(session, seller.id, price=50_000)
        await seller.deliver(session, order_id, "logo-final.png")

        section("Dispute")
        await buyer.dispute(session, order_id, "Not as described")
        await seller.answer_dispute(session, order_id)
        await print_summary(session, order_id)

        section("Admin resolution")
        await admin.resolve_with_refund(session, order_id)
        summary = await print_summary(session, order_id)
        await print_order_trail(session, order_id)
        await print_audit_trail(session, order_id)

    assert summary["escrow_status"] == "refunded"
    assert summary["status"] == "cancelled"
    assert summary["refund_amount"] == 50_000


# ===========================================================================
# Scenario 3: Milestones + Double Refund
# ===========================================================================
async def scenario_3_milestones_double_refund() -> None:
    banner("SCENARIO 3: Milestones, then a refund attempted twice")
    buyer, seller, admin = BuyerBot(), SellerBot(), AdminBot()
    plan = (
        MilestoneTemplate(title="Concepts", amount=20_000, delivery_days=3),
        MilestoneTemplate(title="Final artwork", amount=30_000, delivery_days=4),
    )

    async with get_session() as session:
        order_id = await buyer.place_order(session, seller.id, price=50_000, milestones=plan)

        section("First milestone")
        await seller.deliver_milestone(session, order_id, 0)
        await buyer.approve_and_pay_milestone(session, order_id, 0)
        await print_summary(session, order_id)

        section("Refund of the remaining escrow")
        await admin.refund(session, order_id, "Seller unresponsive")
        before = await print_summary(session, order_id)

        section("Second refund attempt")
        try:
            await admin.refund(session, order_id, "Duplicate click")
        except ConflictError as exc:
            await session.rollback()
            print(f"  ❌ Rejected: {exc.code} ({exc.message})")
        after = await print_summary(session, order_id)
        await print_audit_trail(session, order_id)

    assert before["version"] == after["version"]
    assert after["refund_amount"] == 30_000


async def run_all(use_sqlite: bool = False) -> None:
    """Run all scenarios sequentially."""
    await init_database(use_sqlite=use_sqlite)

    try:
        print("\n" + "🚀" * 35)
        print("  MARKETPLACE ESCROW — SIMULATION")
        db_type = "SQLite (temporary file)" if use_sqlite else "PostgreSQL"
        print(f"  Database: {db_type}")
        print("🚀" * 35 + "\n")

        await scenario_1_happy_path()
        await scenario_2_dispute_refund()
        await scenario_3_milestones_double_refund()

        print("\n" + "=" * 70)
        print("  ✅ ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")

    finally:
        await shutdown_database()


async def run_scenario(num: int, use_sqlite: bool = False) -> None:
    """Run a specific scenario."""
    await init_database(use_sqlite=use_sqlite)

    scenarios = {
        1: scenario_1_happy_path,
        2: scenario_2_dispute_refund,
        3: scenario_3_milestones_double_refund,
    }

    try:
        if num not in scenarios:
            print(f"Unknown scenario {num}. Available: 1, 2, 3")
            return
        await scenarios[num]()
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Marketplace Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1, 2, or 3). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use a throwaway SQLite file instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()

    if args.scenario == 0:
        asyncio.run(run_all(use_sqlite=args.sqlite))
    else:
        asyncio.run(run_scenario(args.scenario, use_sqlite=args.sqlite))
