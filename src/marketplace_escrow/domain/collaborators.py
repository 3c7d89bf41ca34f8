"""Shapes and protocols for the external collaborators of the escrow core.

Identity, the gig catalog, file storage and fraud scoring all live outside
this service. The domain only sees the narrow values they hand over:

    - Actor:              who is asking (id + role), from the auth layer
    - GigSnapshot:        price/milestone template copied at order creation
    - AttachmentRef:      opaque {url, size, type} triple from file storage
    - RiskGate:           admission-control check before an order is funded

This is a Protocol (structural subtyping) so concrete gates don't need to
inherit from a base class. The domain layer has ZERO imports from any
external service.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from marketplace_escrow.domain.enums import ActorRole


@dataclass(frozen=True)
class Actor:
    """An authenticated caller, as asserted by the upstream identity layer."""

    id: str
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    @property
    def is_privileged(self) -> bool:
        """Admins and the platform itself may act outside buyer/seller flows."""
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)

    @classmethod
    def system(cls) -> Actor:
        return cls(id="SYSTEM", role=ActorRole.SYSTEM)


@dataclass(frozen=True)
class AttachmentRef:
    """A stored file, as returned by the attachment collaborator."""

    url: str
    size: int = 0
    type: str = "application/octet-stream"


@dataclass(frozen=True)
class DeliverableUpload:
    """One delivered file: a watermarked preview plus the full-quality final.

    Attributes:
        preview: Restricted-access version shown before approval.
        final: Full version, only served once the work is approved.
        original_name: File name as uploaded by the seller.
        description: Optional note from the seller.
    """

    preview: AttachmentRef
    final: AttachmentRef
    original_name: str = ""
    description: str = ""


@dataclass(frozen=True)
class MilestoneTemplate:
    """A seller-defined milestone copied from the gig at order creation."""

    title: str
    amount: int
    delivery_days: int = 0
    description: str = ""


@dataclass(frozen=True)
class GigSnapshot:
    """What the order keeps of the gig, decoupled from later gig edits.

    Attributes:
        gig_id: Catalog identifier.
        title: Title at the time of ordering.
        cover_image: Optional cover reference.
        delivery_days: Expected delivery time for flat-priced gigs.
        milestones: Ordered templates when the gig bills by milestone.
    """

    gig_id: str
    title: str
    cover_image: str | None = None
    delivery_days: int | None = None
    milestones: tuple[MilestoneTemplate, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class RiskAssessment:
    """Answer from the fraud/risk gate."""

    allowed: bool
    reason: str = ""
    score: float | None = None


@runtime_checkable
class RiskGate(Protocol):
    """Admission control consulted before a funded order is recorded."""

    async def assess(
        self,
        buyer_id: str,
        seller_id: str,
        gig_id: str,
        amount: int,
    ) -> RiskAssessment:
        """Decide whether the order may be admitted.

        Returns:
            A RiskAssessment; ``allowed=False`` blocks order creation.
        """
        ...


class AllowAllRiskGate:
    """Default gate used when no fraud collaborator is wired in."""

    async def assess(
        self,
        buyer_id: str,
        seller_id: str,
        gig_id: str,
        amount: int,
    ) -> RiskAssessment:
        return RiskAssessment(allowed=True, reason="no risk gate configured")
