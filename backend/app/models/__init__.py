"""Database models package."""

from app.models.offer import Offer, OfferStatus, OfferParty, ACTIVE_OFFER_STATUSES
from app.models.trade import (
    Trade,
    TradeItem,
    TradeShipment,
    TradeCashPayment,
    TradeDispute,
    TradeStatus,
    TradeSide,
    ShipmentStatus,
    CashPaymentStatus,
    DisputeOutcome,
    NEGOTIATING_STATUSES,
    TERMINAL_TRADE_STATUSES,
)
from app.models.item_lock import ItemLock
from app.models.commission_rule import CommissionRule
from app.models.activity_log import ActivityLog

__all__ = [
    "Offer",
    "OfferStatus",
    "OfferParty",
    "ACTIVE_OFFER_STATUSES",
    "Trade",
    "TradeItem",
    "TradeShipment",
    "TradeCashPayment",
    "TradeDispute",
    "TradeStatus",
    "TradeSide",
    "ShipmentStatus",
    "CashPaymentStatus",
    "DisputeOutcome",
    "NEGOTIATING_STATUSES",
    "TERMINAL_TRADE_STATUSES",
    "ItemLock",
    "CommissionRule",
    "ActivityLog",
]
