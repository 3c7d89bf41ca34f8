"""Auto-release sweep.

Orders carry an ``auto_release_date``. This sweep promotes orders whose
date has passed: a WORK_SUBMITTED order is approved on the buyer's behalf
(their review window lapsed), then released. For a milestone order every
delivered milestone is approved and paid; the order settles once all of
them are paid. Every step goes through the order and milestone services,
the same guarded path as the manual flow, so a disputed or refunded order
is never touched.

Each order is handled in its own transaction. Transient database errors
and lost version races are retried with exponential backoff; a conflict
that survives the retries is logged and the order is skipped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy.exc import OperationalError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.collaborators import Actor
from marketplace_escrow.domain.enums import OrderPhase
from marketplace_escrow.domain.exceptions import (
    ConflictError,
    EscrowError,
    StaleVersionError,
)
from marketplace_escrow.infrastructure.database.engine import session_scope
from marketplace_escrow.infrastructure.database.repositories import OrderRepository
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.base import as_utc, utcnow
from marketplace_escrow.services.milestone_service import MilestoneService
from marketplace_escrow.services.order_service import OrderService

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.config import Settings

logger = get_logger(__name__)

NOTHING_DELIVERED = "NOTHING_DELIVERED"


@dataclass
class SweepResult:
    """Outcome of one sweep run."""

    examined: int = 0
    released: list[str] = field(default_factory=list)
    auto_approved: list[str] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "examined": self.examined,
            "released": len(self.released),
            "auto_approved": len(self.auto_approved),
            "skipped": len(self.skipped),
        }


class AutoReleaseSweep:
    """Releases escrow for orders whose auto-release date has passed."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    async def run(self, now: datetime | None = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult()

        async with session_scope(self._session_factory) as session:
            due = await OrderRepository(session).list_due_for_auto_release(
                now, self._settings.auto_release_batch_size
            )
        result.examined = len(due)

        for order_id in due:
            try:
                outcome = await self._release_one(order_id, now)
            except ConflictError as exc:
                logger.warning(
                    "auto_release.skipped",
                    order_id=str(order_id),
                    error_code=exc.code,
                    current_state=exc.current_state,
                )
                result.skipped.append({"order_id": str(order_id), "reason": exc.code})
                continue
            except EscrowError as exc:
                logger.error(
                    "auto_release.failed",
                    order_id=str(order_id),
                    error_code=exc.code,
                    error=exc.message,
                )
                result.skipped.append({"order_id": str(order_id), "reason": exc.code})
                continue

            if outcome is None:
                result.skipped.append({"order_id": str(order_id), "reason": "NOT_DUE"})
                continue
            if outcome == NOTHING_DELIVERED:
                result.skipped.append({"order_id": str(order_id), "reason": outcome})
                continue
            if outcome == "approved_and_released":
                result.auto_approved.append(str(order_id))
            result.released.append(str(order_id))

        logger.info("auto_release.completed", **result.as_dict())
        return result

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((OperationalError, StaleVersionError)),
        reraise=True,
    )
    async def _release_one(self, order_id: uuid.UUID, now: datetime) -> str | None:
        """Approve-if-needed and release a single order in its own transaction.

        Returns None when a fresh read shows the order is no longer due, and
        NOTHING_DELIVERED for a milestone order with no delivered milestone.
        """
        async with session_scope(self._session_factory) as session:
            service = OrderService(session, self._settings)
            order = await service.get_order(order_id)
            due_at = as_utc(order.auto_release_date)
            if due_at is None or due_at > now:
                return None

            if order.has_milestones:
                paid = await MilestoneService(session, self._settings).auto_release(order_id)
                if paid is None:
                    return NOTHING_DELIVERED
                outcome = "milestones_paid"
                logger.info("auto_release.released", order_id=str(order_id), outcome=outcome)
                return outcome

            outcome = "released"
            if order.phase == OrderPhase.WORK_SUBMITTED:
                await service.system_approve(order_id)
                outcome = "approved_and_released"
            await service.release_funds(order_id, Actor.system(), auto=True)

        logger.info("auto_release.released", order_id=str(order_id), outcome=outcome)
        return outcome
