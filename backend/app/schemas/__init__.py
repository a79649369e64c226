"""Pydantic schemas package."""

from app.schemas.common import Page
from app.schemas.offer import (
    OfferCreate,
    OfferCounter,
    OfferReject,
    OfferResponse,
)
from app.schemas.trade import (
    TradeItemIn,
    TradeCreate,
    TradeRespond,
    TradeShip,
    TradeDisputeCreate,
    TradeDisputeResolve,
    TradeCancel,
    TradeDelivered,
    TradeItemResponse,
    TradeShipmentResponse,
    TradeCashPaymentResponse,
    TradeDisputeResponse,
    TradeResponse,
)

__all__ = [
    "Page",
    "OfferCreate",
    "OfferCounter",
    "OfferReject",
    "OfferResponse",
    "TradeItemIn",
    "TradeCreate",
    "TradeRespond",
    "TradeShip",
    "TradeDisputeCreate",
    "TradeDisputeResolve",
    "TradeCancel",
    "TradeDelivered",
    "TradeItemResponse",
    "TradeShipmentResponse",
    "TradeCashPaymentResponse",
    "TradeDisputeResponse",
    "TradeResponse",
]
