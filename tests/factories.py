"""Builders for collaborator payloads, orders and HTTP request bodies used across the suite."""

from __future__ import annotations

import itertools
from typing import TYPE_CHECKING

from marketplace_escrow.domain.collaborators import (
    AttachmentRef,
    DeliverableUpload,
    GigSnapshot,
    MilestoneTemplate,
)
from marketplace_escrow.services.order_service import OrderService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.collaborators import Actor
    from marketplace_escrow.infrastructure.database.orm_models import Order

_references = itertools.count(1)


def make_upload(name: str = "logo.png") -> DeliverableUpload:
    """A preview/final pair as returned by the attachment store."""
    return DeliverableUpload(
        preview=AttachmentRef(url=f"https://files.test/preview/{name}", size=1024, type="image/png"),
        final=AttachmentRef(url=f"https://files.test/final/{name}", size=4096, type="image/png"),
        original_name=name,
    )


def make_gig(
    delivery_days: int | None = 5,
    milestones: tuple[MilestoneTemplate, ...] = (),
) -> GigSnapshot:
    return GigSnapshot(
        gig_id="gig-42",
        title="Logo design",
        delivery_days=delivery_days,
        milestones=milestones,
    )


def two_milestones(first: int = 20_000, second: int = 30_000) -> tuple[MilestoneTemplate, ...]:
    return (
        MilestoneTemplate(title="Concepts", amount=first, delivery_days=3),
        MilestoneTemplate(title="Final files", amount=second, delivery_days=4),
    )


def next_payment_reference() -> str:
    return f"pi_test_{next(_references)}"


async def create_funded_order(
    session: AsyncSession,
    settings: Settings,
    buyer: Actor,
    seller: Actor,
    price: int = 50_000,
    milestones: tuple[MilestoneTemplate, ...] = (),
) -> Order:
    """Record a funded order and commit it."""
    order = await OrderService(session, settings).create_order(
        gig=make_gig(milestones=milestones),
        buyer_id=buyer.id,
        seller_id=seller.id,
        price=price,
        payment_reference=next_payment_reference(),
    )
    await session.commit()
    return order


# ---------------------------------------------------------------------------
# HTTP payloads
# ---------------------------------------------------------------------------


def headers(actor_id: str, role: str) -> dict[str, str]:
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}


BUYER = headers("buyer-1", "buyer")
SELLER = headers("seller-1", "seller")
ADMIN = headers("admin-1", "admin")


def order_payload(price: int = 50_000, milestones: list[dict] | None = None) -> dict:
    return {
        "gig": {
            "gig_id": "gig-42",
            "title": "Logo design",
            "delivery_days": 5,
            "milestones": milestones or [],
        },
        "buyer_id": "buyer-1",
        "seller_id": "seller-1",
        "price": price,
        "payment_reference": next_payment_reference(),
    }


DELIVERY = {
    "deliverables": [
        {
            "preview": {"url": "https://files.test/preview/logo.png", "size": 1024},
            "final": {"url": "https://files.test/final/logo.png", "size": 4096},
            "original_name": "logo.png",
        }
    ],
    "description": "First draft",
}
