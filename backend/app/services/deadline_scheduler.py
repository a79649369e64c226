"""
Deadline scheduler.

Polls for offers and trades whose current phase deadline has passed and hands
them to the engines' batch expiry. Several instances may run at once: every
entity is expired in its own version-guarded transaction, so the loser of a
race simply skips it.
"""

import asyncio
import contextlib
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import NotFound, ValidationError
from app.database import AsyncSessionLocal
from app.models.offer import Offer
from app.models.trade import Trade
from app.services.offer_engine import OfferEngine
from app.services.trade_engine import TradeEngine

logger = logging.getLogger(__name__)

ENTITY_MODELS = {"offer": Offer, "trade": Trade}


class DeadlineScheduler:
    """Drives expire_offers / expire_trades on a fixed interval."""

    def __init__(
        self,
        offers: OfferEngine,
        trades: TradeEngine,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        interval_seconds: Optional[float] = None,
    ):
        self.offers = offers
        self.trades = trades
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.SCHEDULER_INTERVAL_SECONDS

    async def next_due(self, db: AsyncSession, entity_type: str, entity_id: str) -> Optional[datetime]:
        """
        Deadline of the entity's current phase.

        Returns:
            The deadline, or None for terminal and disputed entities

        Raises:
            ValidationError: Unknown entity type
            NotFound: Entity does not exist
        """
        model = ENTITY_MODELS.get(entity_type)
        if model is None:
            raise ValidationError("entity_type", "Entity type must be one of: offer, trade")
        entity = await db.get(model, entity_id, populate_existing=True)
        if entity is None:
            raise NotFound(f"{entity_type.capitalize()} not found")
        return entity.due_at

    async def run_once(self) -> Dict[str, int]:
        """Run one sweep over offers then trades."""
        async with self.session_factory() as db:
            expired_offers = await self.offers.expire_offers(db)
            moved_trades = await self.trades.expire_trades(db)
        if expired_offers or moved_trades:
            logger.info(f"Deadline sweep: {expired_offers} offer(s), {moved_trades} trade(s)")
        return {"offers": expired_offers, "trades": moved_trades}

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        """Sweep every interval until stop is set (or the task is cancelled)."""
        stop = stop or asyncio.Event()
        logger.info(f"Deadline scheduler started, interval {self.interval_seconds}s")
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception:
                # Keep polling; the next sweep picks up whatever was missed
                logger.exception("Deadline sweep failed")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
        logger.info("Deadline scheduler stopped")
