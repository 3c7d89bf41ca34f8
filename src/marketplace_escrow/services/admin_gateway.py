"""Admin Action Gateway — the only door for privileged order mutations.

Every method:
    1. checks the caller holds the admin role,
    2. delegates to the owning service, which re-validates every guard,
    3. writes exactly one audit entry with before/after snapshots of the
       order state, inside the same transaction as the mutation.

A rejected attempt is still audited (``success=False``) through a separate
session, so the record survives the rollback of the failed request.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from marketplace_escrow.domain.enums import (
    AuditAction,
    AuditSeverity,
    AuditTargetType,
    RefundAction,
)
from marketplace_escrow.domain.exceptions import (
    AuthorizationError,
    EscrowError,
    IntegrityFailure,
)
from marketplace_escrow.infrastructure.database.engine import (
    get_session_factory,
    session_scope,
)
from marketplace_escrow.infrastructure.database.orm_models import AuditLogEntry
from marketplace_escrow.infrastructure.database.repositories import (
    AuditLogRepository,
    OrderRepository,
    RefundRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.dispute_service import DisputeService
from marketplace_escrow.services.order_service import OrderService
from marketplace_escrow.services.refund_service import RefundService

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.collaborators import Actor
    from marketplace_escrow.domain.enums import OrderPhase, RefundStatus
    from marketplace_escrow.infrastructure.database.orm_models import Order, Refund

logger = get_logger(__name__)


class AdminGateway:
    """Privilege-checked, audited façade over the order services."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        audit_session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._session = session
        self._orders = OrderService(session, settings)
        self._refunds = RefundService(session, settings)
        self._disputes = DisputeService(session, settings)
        self._order_repo = OrderRepository(session)
        self._refund_repo = RefundRepository(session)
        self._audit_repo = AuditLogRepository(session)
        self._audit_session_factory = audit_session_factory

    # ------------------------------------------------------------------
    # Order operations
    # ------------------------------------------------------------------

    async def update_order_status(
        self,
        admin: Actor,
        order_id: uuid.UUID,
        target: OrderPhase | str,
        reason: str,
        expected_version: int | None = None,
    ) -> Order:
        """Force an order between its working phases (never out of a dispute or terminal phase)."""
        return await self._audited(
            admin,
            action=AuditAction.ORDER_UPDATED,
            target_type=AuditTargetType.ORDER,
            target_id=str(order_id),
            order_id=order_id,
            severity=AuditSeverity.HIGH,
            details={"target": str(target), "reason": reason},
            operation=lambda: self._orders.force_phase(
                order_id, admin, target, reason, expected_version
            ),
        )

    async def refund_order(
        self,
        admin: Actor,
        order_id: uuid.UUID,
        reason: str,
        amount: int | None = None,
        expected_version: int | None = None,
    ) -> Refund:
        return await self._audited(
            admin,
            action=AuditAction.ORDER_REFUNDED,
            target_type=AuditTargetType.ORDER,
            target_id=str(order_id),
            order_id=order_id,
            severity=AuditSeverity.HIGH,
            details={"reason": reason, "amount": amount},
            operation=lambda: self._refunds.refund_order(
                order_id, admin, reason, amount, expected_version
            ),
        )

    async def release_funds(
        self,
        admin: Actor,
        order_id: uuid.UUID,
        expected_version: int | None = None,
    ) -> Order:
        return await self._audited(
            admin,
            action=AuditAction.ORDER_RELEASED,
            target_type=AuditTargetType.ORDER,
            target_id=str(order_id),
            order_id=order_id,
            severity=AuditSeverity.MEDIUM,
            details=None,
            operation=lambda: self._orders.release_funds(order_id, admin, expected_version),
        )

    # ------------------------------------------------------------------
    # Refund ledger
    # ------------------------------------------------------------------

    async def process_refund(
        self,
        admin: Actor,
        refund_id: uuid.UUID,
        action: RefundAction | str,
        notes: str | None = None,
    ) -> Refund:
        rejecting = str(action) == RefundAction.REJECT.value
        refund = await self._refund_repo.get_by_id(refund_id)
        return await self._audited(
            admin,
            action=AuditAction.REFUND_REJECTED if rejecting else AuditAction.REFUND_APPROVED,
            target_type=AuditTargetType.REFUND,
            target_id=str(refund_id),
            order_id=refund.order_id if refund is not None else None,
            severity=AuditSeverity.MEDIUM if rejecting else AuditSeverity.HIGH,
            details={
                "action": str(action),
                "notes": notes,
                "amount": refund.amount if refund is not None else None,
            },
            operation=lambda: self._refunds.process_refund(refund_id, admin, action, notes),
        )

    async def list_refunds(
        self,
        admin: Actor,
        status: RefundStatus | str | None = None,
        limit: int = 100,
    ) -> list[Refund]:
        self._require_admin(admin)
        return await self._refunds.list_refunds(status, limit)

    async def refund_statistics(self, admin: Actor) -> dict:
        self._require_admin(admin)
        return await self._refunds.refund_statistics()

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def start_dispute_review(
        self,
        admin: Actor,
        order_id: uuid.UUID,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> Order:
        return await self._audited(
            admin,
            action=AuditAction.DISPUTE_REVIEW_STARTED,
            target_type=AuditTargetType.DISPUTE,
            target_id=str(order_id),
            order_id=order_id,
            severity=AuditSeverity.MEDIUM,
            details={"notes": notes},
            operation=lambda: self._disputes.start_review(order_id, admin, notes, expected_version),
        )

    async def resolve_dispute_with_refund(
        self,
        admin: Actor,
        order_id: uuid.UUID,
        resolution: str,
        amount: int | None = None,
        expected_version: int | None = None,
    ) -> tuple[Order, Refund]:
        return await self._audited(
            admin,
            action=AuditAction.DISPUTE_RESOLVED,
            target_type=AuditTargetType.DISPUTE,
            target_id=str(order_id),
            order_id=order_id,
            severity=AuditSeverity.HIGH,
            details={"outcome": "refund", "resolution": resolution, "amount": amount},
            operation=lambda: self._disputes.resolve_with_refund(
                order_id, admin, resolution, amount, expected_version
            ),
        )

    async def resolve_dispute_for_freelancer(
        self,
        admin: Actor,
        order_id: uuid.UUID,
        resolution: str,
        expected_version: int | None = None,
    ) -> Order:
        return await self._audited(
            admin,
            action=AuditAction.DISPUTE_RESOLVED,
            target_type=AuditTargetType.DISPUTE,
            target_id=str(order_id),
            order_id=order_id,
            severity=AuditSeverity.HIGH,
            details={"outcome": "release", "resolution": resolution},
            operation=lambda: self._disputes.resolve_for_freelancer(
                order_id, admin, resolution, expected_version
            ),
        )

    async def list_open_disputes(self, admin: Actor) -> list[dict]:
        self._require_admin(admin)
        return await self._disputes.list_open_disputes()

    async def dispute_statistics(self, admin: Actor) -> dict:
        self._require_admin(admin)
        return await self._disputes.dispute_statistics()

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    async def list_audit_entries(
        self,
        admin: Actor,
        target_id: str | None = None,
        actor_id: str | None = None,
        action: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        self._require_admin(admin)
        return await self._audit_repo.list_recent(
            target_id=target_id, actor_id=actor_id, action=action, limit=limit
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if not actor.is_admin:
            logger.warning("admin.forbidden", actor_id=actor.id, role=actor.role.value)
            raise AuthorizationError(
                "Admin role required", actor_id=actor.id, role=actor.role.value
            )

    async def _audited(
        self,
        admin: Actor,
        *,
        action: AuditAction,
        target_type: AuditTargetType,
        target_id: str,
        order_id: uuid.UUID | None,
        severity: AuditSeverity,
        details: dict[str, Any] | None,
        operation: Callable[[], Awaitable[Any]],
    ) -> Any:
        self._require_admin(admin)

        order = await self._order_repo.get_by_id(order_id) if order_id is not None else None
        old_values = order.state_snapshot() if order is not None else None

        try:
            result = await operation()
        except EscrowError as exc:
            await self._record_failure(
                admin, action, target_type, target_id, severity, details, old_values, exc
            )
            raise

        if order is None and order_id is not None:
            order = await self._order_repo.get_by_id(order_id)
        entry = await self._audit_repo.record(
            AuditLogEntry(
                actor_id=admin.id,
                actor_role=admin.role.value,
                action=action.value,
                target_type=target_type.value,
                target_id=target_id,
                details=details,
                old_values=old_values,
                new_values=order.state_snapshot() if order is not None else None,
                severity=severity.value,
                success=True,
            )
        )
        logger.info(
            "admin.action",
            action=action.value,
            target=f"{target_type.value}:{target_id}",
            severity=severity.value,
            audit_id=str(entry.id),
        )
        return result

    async def _record_failure(
        self,
        admin: Actor,
        action: AuditAction,
        target_type: AuditTargetType,
        target_id: str,
        severity: AuditSeverity,
        details: dict[str, Any] | None,
        old_values: dict | None,
        exc: EscrowError,
    ) -> None:
        """Write the rejected attempt in its own transaction."""
        if isinstance(exc, IntegrityFailure):
            severity = AuditSeverity.CRITICAL
        factory = self._audit_session_factory or get_session_factory()
        async with session_scope(factory) as audit_session:
            await AuditLogRepository(audit_session).record(
                AuditLogEntry(
                    actor_id=admin.id,
                    actor_role=admin.role.value,
                    action=action.value,
                    target_type=target_type.value,
                    target_id=target_id,
                    details={**(details or {}), "error_code": exc.code, **exc.details},
                    old_values=old_values,
                    new_values=None,
                    severity=severity.value,
                    success=False,
                    error_message=exc.message,
                )
            )
        logger.warning(
            "admin.action_rejected",
            action=action.value,
            target=f"{target_type.value}:{target_id}",
            error_code=exc.code,
            error=exc.message,
        )
