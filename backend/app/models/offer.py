"""Offer database model for single-item cash negotiation."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
import uuid

from sqlalchemy import String, Text, Integer, Numeric, TIMESTAMP, Index, text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class OfferStatus(str, Enum):
    """Offer lifecycle states."""
    PENDING = "pending"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"


ACTIVE_OFFER_STATUSES = (OfferStatus.PENDING.value, OfferStatus.COUNTERED.value)


class OfferParty(str, Enum):
    """Which side made the last proposal."""
    BUYER = "buyer"
    SELLER = "seller"


class Offer(Base):
    """Cash offer from a buyer on one listed product."""

    __tablename__ = "offers"

    # Primary Key
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )

    # Participants (plain ids, owned by the account service)
    product_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    # Pricing
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    list_price: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        nullable=False
    )  # Listing price captured at creation
    min_amount: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        nullable=False
    )  # Threshold captured at creation; every later amount must stay above it

    # Negotiation state
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=OfferStatus.PENDING.value,
        index=True
    )
    proposer: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=OfferParty.BUYER.value
    )  # "buyer" | "seller"
    round_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    reject_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Fulfillment intent
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Timestamps
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False)
    responded_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP,
        nullable=False,
        default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP,
        nullable=False,
        default=datetime.utcnow
    )

    # Optimistic concurrency guard
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_offer_product_buyer_status", "product_id", "buyer_id", "status"),
        Index("idx_offer_expires_status", "expires_at", "status"),
        # At most one active offer per (product, buyer), enforced by the database too
        Index(
            "uq_offer_active_product_buyer",
            "product_id",
            "buyer_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'countered')"),
            sqlite_where=text("status IN ('pending', 'countered')"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_OFFER_STATUSES

    @property
    def due_at(self) -> datetime | None:
        """Deadline of the current phase; None once terminal."""
        return self.expires_at if self.is_active else None

    @property
    def waiting_for(self) -> str:
        """Party expected to act next, or the status once terminal."""
        if not self.is_active:
            return self.status
        return OfferParty.SELLER.value if self.proposer == OfferParty.BUYER.value else OfferParty.BUYER.value

    def party_of(self, user_id: str) -> str | None:
        if user_id == self.buyer_id:
            return OfferParty.BUYER.value
        if user_id == self.seller_id:
            return OfferParty.SELLER.value
        return None

    def __repr__(self) -> str:
        return f"<Offer(id={self.id}, amount={self.amount}, status={self.status})>"
