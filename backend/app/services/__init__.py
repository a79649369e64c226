"""Business logic services package."""

from app.config import settings
from app.services.collaborators import (
    HttpCatalogClient,
    HttpPaymentGateway,
    HttpOrderClient,
    EventBusNotifier,
)
from app.services.commission import commission, resolve_rate
from app.services.offer_engine import OfferEngine
from app.services.trade_engine import TradeEngine
from app.services.deadline_scheduler import DeadlineScheduler


def build_offer_engine() -> OfferEngine:
    """Offer engine wired to the configured HTTP collaborators."""
    return OfferEngine(
        catalog=HttpCatalogClient(settings.CATALOG_SERVICE_URL),
        orders=HttpOrderClient(settings.ORDER_SERVICE_URL),
        notifier=EventBusNotifier(settings.NOTIFICATION_SERVICE_URL),
    )


def build_trade_engine() -> TradeEngine:
    """Trade engine wired to the configured HTTP collaborators."""
    return TradeEngine(
        catalog=HttpCatalogClient(settings.CATALOG_SERVICE_URL),
        payments=HttpPaymentGateway(settings.PAYMENT_SERVICE_URL),
        notifier=EventBusNotifier(settings.NOTIFICATION_SERVICE_URL),
    )


def build_scheduler() -> DeadlineScheduler:
    return DeadlineScheduler(build_offer_engine(), build_trade_engine())


__all__ = [
    # Engines
    "OfferEngine",
    "TradeEngine",
    "DeadlineScheduler",
    "build_offer_engine",
    "build_trade_engine",
    "build_scheduler",
    # Commission
    "commission",
    "resolve_rate",
]
