"""Order REST API routes for buyers and sellers.

The MCP tools in mcp_server/tools.py call the same service layer,
ensuring consistency.

Routes:
    POST   /api/v1/orders                                  — Record a funded order
    GET    /api/v1/orders/{id}                             — Order details
    GET    /api/v1/orders/{id}/summary                     — Status triple + allowed events
    GET    /api/v1/orders/{id}/events                      — Transition trail
    POST   /api/v1/orders/{id}/submit                      — Seller delivers work
    POST   /api/v1/orders/{id}/revision                    — Buyer requests changes
    POST   /api/v1/orders/{id}/approve                     — Buyer approves work
    POST   /api/v1/orders/{id}/milestones                  — Buyer sets up milestones
    POST   /api/v1/orders/{id}/milestones/{idx}/submit     — Seller delivers a milestone
    POST   /api/v1/orders/{id}/milestones/{idx}/revision   — Buyer requests milestone changes
    POST   /api/v1/orders/{id}/milestones/{idx}/approve    — Buyer approves a milestone
    POST   /api/v1/orders/{id}/milestones/{idx}/pay        — Buyer releases a milestone
    POST   /api/v1/orders/{id}/dispute                     — Either party opens a dispute
    GET    /api/v1/orders/{id}/evidence                    — Dispute evidence
    POST   /api/v1/orders/{id}/evidence                    — Add dispute evidence
    POST   /api/v1/orders/{id}/refund-requests             — Buyer requests a refund
    GET    /api/v1/orders/{id}/refunds                     — Refund records of the order
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from marketplace_escrow.api.deps import (
    get_actor,
    get_dispute_service,
    get_milestone_service,
    get_order_service,
    get_refund_service,
    idempotency_guard,
)
from marketplace_escrow.domain.collaborators import Actor
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.admin import RefundResponse
from marketplace_escrow.schemas.orders import (
    AddEvidenceRequest,
    ApproveWorkRequest,
    CreateMilestonesRequest,
    CreateOrderRequest,
    EvidenceResponse,
    OpenDisputeRequest,
    OrderEventResponse,
    OrderResponse,
    OrderSummaryResponse,
    RequestRefundRequest,
    RevisionRequestIn,
    SubmitWorkRequest,
    VersionedRequest,
)
from marketplace_escrow.services import (
    DisputeService,
    MilestoneService,
    OrderService,
    RefundService,
)

router = APIRouter(
    prefix="/api/v1/orders",
    tags=["Orders"],
    dependencies=[Depends(idempotency_guard)],
)
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Create + read
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=OrderResponse,
    status_code=201,
    summary="Record a funded order",
)
async def create_order(
    request: CreateOrderRequest,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """Called by the payment collaborator after funding succeeded. Idempotent on payment_reference."""
    order = await svc.create_order(
        gig=request.gig.to_snapshot(),
        buyer_id=request.buyer_id,
        seller_id=request.seller_id,
        price=request.price,
        payment_reference=request.payment_reference,
    )
    return OrderResponse.model_validate(order)


@router.get("/{order_id}", response_model=OrderResponse, summary="Get order details")
async def get_order(
    order_id: uuid.UUID,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await svc.get_order(order_id)
    return OrderResponse.model_validate(order)


@router.get(
    "/{order_id}/summary",
    response_model=OrderSummaryResponse,
    summary="Status triple, flags and allowed events",
)
async def get_order_summary(
    order_id: uuid.UUID,
    svc: OrderService = Depends(get_order_service),
) -> OrderSummaryResponse:
    return OrderSummaryResponse(**await svc.get_summary(order_id))


@router.get(
    "/{order_id}/events",
    response_model=list[OrderEventResponse],
    summary="Get the transition trail",
)
async def get_order_events(
    order_id: uuid.UUID,
    svc: OrderService = Depends(get_order_service),
) -> list[OrderEventResponse]:
    events = await svc.get_events(order_id)
    return [OrderEventResponse.model_validate(e) for e in events]


# ---------------------------------------------------------------------------
# Flat delivery
# ---------------------------------------------------------------------------


@router.post("/{order_id}/submit", response_model=OrderResponse, summary="Seller delivers work")
async def submit_work(
    order_id: uuid.UUID,
    request: SubmitWorkRequest,
    actor: Actor = Depends(get_actor),
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await svc.submit_work(
        order_id,
        actor,
        request.uploads(),
        description=request.description,
        expected_version=request.expected_version,
    )
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/revision", response_model=OrderResponse, summary="Request a revision")
async def request_revision(
    order_id: uuid.UUID,
    request: RevisionRequestIn,
    actor: Actor = Depends(get_actor),
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await svc.request_revision(
        order_id,
        actor,
        request.reason,
        details=request.details,
        expected_version=request.expected_version,
    )
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/approve", response_model=OrderResponse, summary="Approve delivered work")
async def approve_work(
    order_id: uuid.UUID,
    request: ApproveWorkRequest,
    actor: Actor = Depends(get_actor),
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await svc.approve_work(
        order_id, actor, feedback=request.feedback, expected_version=request.expected_version
    )
    return OrderResponse.model_validate(order)


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------


@router.post(
    "/{order_id}/milestones",
    response_model=OrderResponse,
    summary="Define the milestone plan",
)
async def create_milestones(
    order_id: uuid.UUID,
    request: CreateMilestonesRequest,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> OrderResponse:
    order = await svc.create_milestones(
        order_id,
        actor,
        [m.to_template() for m in request.milestones],
        expected_version=request.expected_version,
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/milestones/{index}/submit",
    response_model=OrderResponse,
    summary="Deliver a milestone",
)
async def submit_milestone(
    order_id: uuid.UUID,
    index: int,
    request: SubmitWorkRequest,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> OrderResponse:
    order = await svc.submit_milestone(
        order_id,
        index,
        actor,
        request.uploads(),
        description=request.description,
        expected_version=request.expected_version,
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/milestones/{index}/revision",
    response_model=OrderResponse,
    summary="Request changes to a milestone",
)
async def request_milestone_revision(
    order_id: uuid.UUID,
    index: int,
    request: RevisionRequestIn,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> OrderResponse:
    order = await svc.request_milestone_revision(
        order_id,
        index,
        actor,
        request.reason,
        details=request.details,
        expected_version=request.expected_version,
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/milestones/{index}/approve",
    response_model=OrderResponse,
    summary="Approve a milestone",
)
async def approve_milestone(
    order_id: uuid.UUID,
    index: int,
    request: ApproveWorkRequest,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> OrderResponse:
    order = await svc.approve_milestone(
        order_id,
        index,
        actor,
        feedback=request.feedback,
        expected_version=request.expected_version,
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/milestones/{index}/pay",
    response_model=OrderResponse,
    summary="Release a milestone's amount to the seller",
)
async def pay_milestone(
    order_id: uuid.UUID,
    index: int,
    request: VersionedRequest,
    actor: Actor = Depends(get_actor),
    svc: MilestoneService = Depends(get_milestone_service),
) -> OrderResponse:
    order = await svc.pay_milestone(
        order_id, index, actor, expected_version=request.expected_version
    )
    return OrderResponse.model_validate(order)


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


@router.post("/{order_id}/dispute", response_model=OrderResponse, summary="Open a dispute")
async def open_dispute(
    order_id: uuid.UUID,
    request: OpenDisputeRequest,
    actor: Actor = Depends(get_actor),
    svc: DisputeService = Depends(get_dispute_service),
) -> OrderResponse:
    """Freezes the order: FUNDED / WORK_SUBMITTED / APPROVED -> DISPUTE_PENDING."""
    order = await svc.open_dispute(
        order_id,
        actor,
        request.reason,
        details=request.details,
        expected_version=request.expected_version,
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/evidence",
    response_model=EvidenceResponse,
    status_code=201,
    summary="Add dispute evidence",
)
async def add_evidence(
    order_id: uuid.UUID,
    request: AddEvidenceRequest,
    actor: Actor = Depends(get_actor),
    svc: DisputeService = Depends(get_dispute_service),
) -> EvidenceResponse:
    evidence = await svc.add_evidence(
        order_id,
        actor,
        request.kind,
        request.description,
        attachments=[a.to_ref() for a in request.attachments],
    )
    return EvidenceResponse.model_validate(evidence)


@router.get(
    "/{order_id}/evidence",
    response_model=list[EvidenceResponse],
    summary="List dispute evidence",
)
async def list_evidence(
    order_id: uuid.UUID,
    svc: DisputeService = Depends(get_dispute_service),
) -> list[EvidenceResponse]:
    return [EvidenceResponse.model_validate(e) for e in await svc.get_evidence(order_id)]


# ---------------------------------------------------------------------------
# Refund requests
# ---------------------------------------------------------------------------


@router.post(
    "/{order_id}/refund-requests",
    response_model=RefundResponse,
    status_code=201,
    summary="Request a refund",
)
async def request_refund(
    order_id: uuid.UUID,
    request: RequestRefundRequest,
    actor: Actor = Depends(get_actor),
    svc: RefundService = Depends(get_refund_service),
) -> RefundResponse:
    """Opens a pending refund for admin processing. The order is unchanged until then."""
    refund = await svc.request_refund(
        order_id,
        actor,
        request.amount,
        request.reason,
        description=request.description,
        priority=request.priority,
    )
    return RefundResponse.model_validate(refund)


@router.get(
    "/{order_id}/refunds",
    response_model=list[RefundResponse],
    summary="Refund records of an order",
)
async def list_order_refunds(
    order_id: uuid.UUID,
    svc: RefundService = Depends(get_refund_service),
) -> list[RefundResponse]:
    return [RefundResponse.model_validate(r) for r in await svc.get_order_refunds(order_id)]
