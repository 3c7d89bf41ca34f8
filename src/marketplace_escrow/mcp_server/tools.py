"""MCP Tool definitions for the marketplace escrow service.

These tools expose order lookups and the buyer/seller dispute and refund
entry points via the Model Context Protocol, so support agents can call
them programmatically.

Tools:
    - order_summary: Status triple, flags and allowed events of an order
    - open_dispute: Either party contests an order
    - request_refund: Buyer opens a pending refund request
    - list_open_disputes: Admin queue of pending / under-review disputes

The MCP server is mounted into FastAPI at /mcp via app.mount().
Each tool manages its own database session (no FastAPI Depends available).
"""

from __future__ import annotations

import uuid

from mcp.server.fastmcp import FastMCP

from marketplace_escrow.domain.collaborators import Actor
from marketplace_escrow.domain.enums import ActorRole
from marketplace_escrow.domain.exceptions import EscrowError, ValidationError
from marketplace_escrow.infrastructure.database.engine import session_scope
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.dispute_service import DisputeService
from marketplace_escrow.services.order_service import OrderService
from marketplace_escrow.services.refund_service import RefundService

logger = get_logger(__name__)

# Mounted into the FastAPI app in main.py
mcp = FastMCP(
    "Marketplace Escrow",
    json_response=True,
)


def _actor(actor_id: str, role: str) -> Actor:
    try:
        actor_role = ActorRole(role.lower())
    except ValueError as err:
        raise ValidationError(f"Unknown role: {role}") from err
    if actor_role == ActorRole.SYSTEM:
        raise ValidationError("The system role cannot be used from a tool call")
    return Actor(id=actor_id, role=actor_role)


def _order_uuid(order_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(order_id)
    except ValueError as err:
        raise ValidationError(f"Invalid order id: {order_id}") from err


def _error(tool: str, exc: EscrowError) -> dict:
    logger.warning(f"mcp.{tool}.rejected", code=exc.code, error=exc.message)
    return {"error": exc.code, "message": exc.message, "details": exc.details}


@mcp.tool()
async def order_summary(order_id: str) -> dict:
    """Get the current state of an order.

    Args:
        order_id: UUID of the order.

    Returns:
        Phase, the status/escrow/dispute triple, refund and milestone totals,
        the events that can fire next and the current version.
    """
    try:
        oid = _order_uuid(order_id)
        async with session_scope() as session:
            summary = await OrderService(session).get_summary(oid)
    except EscrowError as exc:
        return _error("order_summary", exc)
    summary["auto_release_date"] = (
        summary["auto_release_date"].isoformat() if summary["auto_release_date"] else None
    )
    return summary


@mcp.tool()
async def open_dispute(
    order_id: str,
    actor_id: str,
    role: str,
    reason: str,
    details: str = "",
    expected_version: int | None = None,
) -> dict:
    """Open a dispute on an order in progress.

    Args:
        order_id: UUID of the order.
        actor_id: Id of the buyer or seller raising the dispute.
        role: "buyer" or "seller".
        reason: Short reason for the dispute.
        details: Optional longer description.
        expected_version: Order version last read, to reject stale writes.

    Returns:
        The new phase and version, or an error object.
    """
    try:
        actor = _actor(actor_id, role)
        oid = _order_uuid(order_id)
        async with session_scope() as session:
            order = await DisputeService(session).open_dispute(
                oid,
                actor,
                reason,
                details=details or None,
                expected_version=expected_version,
            )
            result = {
                "order_id": str(order.id),
                "phase": order.phase,
                "dispute_status": order.dispute_status.value,
                "version": order.version,
            }
    except EscrowError as exc:
        return _error("open_dispute", exc)
    result["message"] = "Dispute opened. An admin will review it."
    return result


@mcp.tool()
async def request_refund(
    order_id: str,
    buyer_id: str,
    amount: int,
    reason: str,
    description: str = "",
    priority: str = "medium",
) -> dict:
    """Request a refund for an order. An admin approves or rejects it later.

    Args:
        order_id: UUID of the order.
        buyer_id: Id of the buyer who placed the order.
        amount: Amount in the smallest currency unit; at most what is still in escrow.
        reason: Short reason for the refund.
        description: Optional longer description.
        priority: low, medium, high or critical.

    Returns:
        The pending refund record, or an error object.
    """
    try:
        oid = _order_uuid(order_id)
        async with session_scope() as session:
            refund = await RefundService(session).request_refund(
                oid,
                Actor(id=buyer_id, role=ActorRole.BUYER),
                amount,
                reason,
                description=description or None,
                priority=priority,
            )
            result = {
                "refund_id": str(refund.id),
                "order_id": str(refund.order_id),
                "amount": refund.amount,
                "status": refund.status,
                "priority": refund.priority,
            }
    except EscrowError as exc:
        return _error("request_refund", exc)
    return result


@mcp.tool()
async def list_open_disputes(admin_id: str) -> dict:
    """List pending and under-review disputes, oldest first.

    Args:
        admin_id: Id of the admin asking.

    Returns:
        A list of disputes with their age in days and evidence count.
    """
    async with session_scope() as session:
        disputes = await DisputeService(session).list_open_disputes()
    logger.info("mcp.list_open_disputes", admin_id=admin_id, count=len(disputes))
    return {
        "disputes": [
            {
                "order_id": str(d["order"].id),
                "phase": d["order"].phase,
                "dispute_reason": d["order"].dispute_reason,
                "opened_by": d["order"].dispute_opened_by,
                "days_since_opened": d["days_since_opened"],
                "evidence_count": d["evidence_count"],
            }
            for d in disputes
        ]
    }
