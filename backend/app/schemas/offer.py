"""Pydantic schemas for offer requests and responses."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class OfferCreate(BaseModel):
    """Schema for a buyer's opening offer."""
    product_id: str = Field(..., min_length=1)
    amount: Decimal
    message: Optional[str] = Field(None, max_length=500)


class OfferCounter(BaseModel):
    """Schema for a counter proposal."""
    amount: Decimal
    message: Optional[str] = Field(None, max_length=500)


class OfferReject(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class OfferResponse(BaseModel):
    """Full offer response schema."""
    id: str
    product_id: str
    buyer_id: str
    seller_id: str
    amount: Decimal
    list_price: Decimal
    min_amount: Decimal
    status: str
    proposer: str
    waiting_for: str
    round_count: int
    message: Optional[str]
    reject_reason: Optional[str]
    order_id: Optional[str]
    expires_at: datetime
    responded_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    version: int

    model_config = {"from_attributes": True}
