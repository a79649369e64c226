"""Pydantic schemas for trade requests and responses."""

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class TradeItemIn(BaseModel):
    """One product offered or requested in a trade."""
    product_id: str = Field(..., min_length=1)
    quantity: int = 1


class TradeCreate(BaseModel):
    """Schema for proposing a trade."""
    receiver_id: str = Field(..., min_length=1)
    initiator_items: List[TradeItemIn]
    receiver_items: List[TradeItemIn]
    cash_amount: Optional[Decimal] = None
    cash_payer_id: Optional[str] = None
    message: Optional[str] = Field(None, max_length=500)


class TradeRespond(BaseModel):
    """
    Schema for responding to a trade proposal.

    For a counter, the item lists keep their sides: initiator_items are always
    the initiator's products, receiver_items the receiver's.
    """
    action: Literal["accept", "reject", "counter"]
    initiator_items: Optional[List[TradeItemIn]] = None
    receiver_items: Optional[List[TradeItemIn]] = None
    cash_amount: Optional[Decimal] = None
    cash_payer_id: Optional[str] = None
    message: Optional[str] = Field(None, max_length=500)


class TradeShip(BaseModel):
    carrier: str = Field(..., min_length=1, max_length=50)
    tracking_number: Optional[str] = Field(None, max_length=100)


class TradeDisputeCreate(BaseModel):
    reason: str
    description: str = Field(..., min_length=1, max_length=1000)


class TradeDisputeResolve(BaseModel):
    """Arbitration decision."""
    resolution: str = Field(..., min_length=1)
    outcome: Literal["complete", "cancel"]
    resolved_by_id: Optional[str] = None


class TradeCancel(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class TradeItemResponse(BaseModel):
    id: str
    product_id: str
    side: str
    quantity: int
    value_at_trade: Decimal

    model_config = {"from_attributes": True}


class TradeShipmentResponse(BaseModel):
    id: str
    shipper_id: str
    carrier: Optional[str]
    tracking_number: Optional[str]
    status: str
    shipped_at: Optional[datetime]
    delivered_at: Optional[datetime]
    confirmed_at: Optional[datetime]

    model_config = {"from_attributes": True}


class TradeCashPaymentResponse(BaseModel):
    id: str
    payer_id: str
    recipient_id: str
    amount: Decimal
    commission: Decimal
    total_amount: Decimal
    status: str
    failure_reason: Optional[str]
    failed_attempts: int
    paid_at: Optional[datetime]
    released_at: Optional[datetime]
    refunded_at: Optional[datetime]

    model_config = {"from_attributes": True}


class TradeDisputeResponse(BaseModel):
    id: str
    raised_by_id: Optional[str]
    reason: str
    description: str
    resolution: Optional[str]
    outcome: Optional[str]
    created_at: datetime
    resolved_at: Optional[datetime]

    model_config = {"from_attributes": True}


class TradeResponse(BaseModel):
    """Full trade response schema."""
    id: str
    trade_number: str
    initiator_id: str
    receiver_id: str
    current_proposer_id: str
    waiting_for: Optional[str]
    status: str
    disputed_from: Optional[str]
    cash_amount: Optional[Decimal]
    cash_payer_id: Optional[str]
    cash_commission: Optional[Decimal]
    commission_rate: Decimal
    response_deadline: Optional[datetime]
    payment_deadline: Optional[datetime]
    shipping_deadline: Optional[datetime]
    confirmation_deadline: Optional[datetime]
    initiator_message: Optional[str]
    receiver_message: Optional[str]
    items: List[TradeItemResponse]
    shipments: List[TradeShipmentResponse]
    cash_payment: Optional[TradeCashPaymentResponse]
    dispute: Optional[TradeDisputeResponse]
    created_at: datetime
    updated_at: datetime
    accepted_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancel_reason: Optional[str]
    version: int

    model_config = {"from_attributes": True}


class TradeDelivered(BaseModel):
    """Carrier callback: the shipper's parcel reached the other party."""
    shipper_id: str = Field(..., min_length=1)
