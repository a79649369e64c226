"""
Trade models for multi-item barter with an optional cash differential.

A Trade owns its items, the two shipments created once it is accepted, the
cash leg (when one side pays a differential) and at most one dispute.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import String, Text, Integer, Numeric, ForeignKey, TIMESTAMP, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class TradeStatus(str, Enum):
    """Trade lifecycle states."""
    PROPOSED = "proposed"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    PAYMENT_PENDING = "payment_pending"
    SHIPPING_PENDING = "shipping_pending"
    CONFIRMATION_PENDING = "confirmation_pending"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


NEGOTIATING_STATUSES = (TradeStatus.PROPOSED.value, TradeStatus.COUNTERED.value)
TERMINAL_TRADE_STATUSES = (
    TradeStatus.COMPLETED.value,
    TradeStatus.REJECTED.value,
    TradeStatus.EXPIRED.value,
    TradeStatus.CANCELLED.value,
)


class TradeSide(str, Enum):
    INITIATOR = "initiator"
    RECEIVER = "receiver"


class ShipmentStatus(str, Enum):
    NOT_SHIPPED = "not_shipped"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CONFIRMED = "confirmed"


class CashPaymentStatus(str, Enum):
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class DisputeOutcome(str, Enum):
    COMPLETE = "complete"
    CANCEL = "cancel"


class Trade(Base):
    """Barter negotiation between an initiator and a receiver."""

    __tablename__ = "trades"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    trade_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)

    # Participants
    initiator_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    receiver_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    current_proposer_id: Mapped[str] = mapped_column(String(36), nullable=False)

    status: Mapped[str] = mapped_column(
        String(24),
        nullable=False,
        default=TradeStatus.PROPOSED.value,
        index=True
    )
    disputed_from: Mapped[str | None] = mapped_column(String(24), nullable=True)

    # Cash differential (frozen at proposal time)
    cash_amount: Mapped[Decimal | None] = mapped_column(Numeric(20, 8), nullable=True)
    cash_payer_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    cash_commission: Mapped[Decimal | None] = mapped_column(Numeric(20, 8), nullable=True)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)

    # Phase deadlines
    response_deadline: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    payment_deadline: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    shipping_deadline: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    confirmation_deadline: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)

    initiator_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    receiver_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False, default=datetime.utcnow)
    accepted_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Relationships
    items: Mapped[List["TradeItem"]] = relationship(
        "TradeItem",
        back_populates="trade",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="TradeItem.side",
    )
    shipments: Mapped[List["TradeShipment"]] = relationship(
        "TradeShipment",
        back_populates="trade",
        lazy="selectin",
    )
    cash_payment: Mapped[Optional["TradeCashPayment"]] = relationship(
        "TradeCashPayment",
        back_populates="trade",
        uselist=False,
        lazy="selectin",
    )
    dispute: Mapped[Optional["TradeDispute"]] = relationship(
        "TradeDispute",
        back_populates="trade",
        uselist=False,
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_trade_status_response", "status", "response_deadline"),
        Index("idx_trade_status_shipping", "status", "shipping_deadline"),
    )

    @property
    def initiator_items(self) -> List["TradeItem"]:
        return [i for i in self.items if i.side == TradeSide.INITIATOR.value]

    @property
    def receiver_items(self) -> List["TradeItem"]:
        return [i for i in self.items if i.side == TradeSide.RECEIVER.value]

    @property
    def cash_recipient_id(self) -> str | None:
        if not self.cash_payer_id:
            return None
        return self.receiver_id if self.cash_payer_id == self.initiator_id else self.initiator_id

    @property
    def has_cash_leg(self) -> bool:
        return self.cash_amount is not None and self.cash_amount > 0

    @property
    def due_at(self) -> datetime | None:
        """Deadline of the current phase. None when terminal or disputed (deadlines frozen)."""
        if self.status in NEGOTIATING_STATUSES:
            return self.response_deadline
        return {
            TradeStatus.PAYMENT_PENDING.value: self.payment_deadline,
            TradeStatus.SHIPPING_PENDING.value: self.shipping_deadline,
            TradeStatus.CONFIRMATION_PENDING.value: self.confirmation_deadline,
        }.get(self.status)

    @property
    def waiting_for(self) -> str | None:
        """User expected to respond while the trade is being negotiated."""
        if self.status not in NEGOTIATING_STATUSES:
            return None
        return self.counterparty_of(self.current_proposer_id)

    def counterparty_of(self, user_id: str) -> str:
        return self.receiver_id if user_id == self.initiator_id else self.initiator_id

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.initiator_id, self.receiver_id)

    def shipment_from(self, shipper_id: str) -> Optional["TradeShipment"]:
        for shipment in self.shipments:
            if shipment.shipper_id == shipper_id:
                return shipment
        return None

    def __repr__(self) -> str:
        return f"<Trade(id={self.id}, number={self.trade_number}, status={self.status})>"


class TradeItem(Base):
    """One product on one side of a trade, with its value frozen at proposal time."""

    __tablename__ = "trade_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    trade_id: Mapped[str] = mapped_column(String(36), ForeignKey("trades.id"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    side: Mapped[str] = mapped_column(String(10), nullable=False)  # "initiator" | "receiver"
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    value_at_trade: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)

    trade: Mapped["Trade"] = relationship("Trade", back_populates="items")


class TradeShipment(Base):
    """Shipment of one side's items to the other side."""

    __tablename__ = "trade_shipments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    trade_id: Mapped[str] = mapped_column(String(36), ForeignKey("trades.id"), nullable=False, index=True)
    shipper_id: Mapped[str] = mapped_column(String(36), nullable=False)

    carrier: Mapped[str | None] = mapped_column(String(50), nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ShipmentStatus.NOT_SHIPPED.value)

    shipped_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)

    trade: Mapped["Trade"] = relationship("Trade", back_populates="shipments")


class TradeCashPayment(Base):
    """Escrowed cash differential owed by one participant to the other."""

    __tablename__ = "trade_cash_payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    trade_id: Mapped[str] = mapped_column(String(36), ForeignKey("trades.id"), unique=True, nullable=False)
    payer_id: Mapped[str] = mapped_column(String(36), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(36), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    commission: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)  # Charged to the payer

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=CashPaymentStatus.PENDING.value)
    hold_id: Mapped[str | None] = mapped_column(String(100), nullable=True)  # Payment gateway reference

    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False, default=datetime.utcnow)
    paid_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)

    # Guards the hold: two payment attempts cannot both store a hold_id
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    trade: Mapped["Trade"] = relationship("Trade", back_populates="cash_payment")

    __mapper_args__ = {"version_id_col": version}


class TradeDispute(Base):
    """Dispute on a trade. Resolution comes from external arbitration."""

    __tablename__ = "trade_disputes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    trade_id: Mapped[str] = mapped_column(String(36), ForeignKey("trades.id"), unique=True, nullable=False)
    raised_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)  # None when raised on deadline expiry

    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)  # "complete" | "cancel"
    resolved_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False, default=datetime.utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)

    trade: Mapped["Trade"] = relationship("Trade", back_populates="dispute")

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None
