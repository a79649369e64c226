"""Events API router for SSE and negotiation statistics."""

import json
from datetime import datetime, timedelta
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sse_starlette.sse import EventSourceResponse

from app.api.deps import get_current_user_id
from app.database import get_db
from app.core.events import event_bus
from app.models.offer import Offer, ACTIVE_OFFER_STATUSES
from app.models.trade import Trade, TradeStatus, TERMINAL_TRADE_STATUSES

router = APIRouter()


@router.get("/events")
async def event_stream(
    request: Request,
    user_id: str = Depends(get_current_user_id),
):
    """
    Server-Sent Events (SSE) stream of the caller's offer and trade events.

    Usage:
        const eventSource = new EventSource('/api/events');
        eventSource.addEventListener('trade_accepted', (e) => {
            console.log(JSON.parse(e.data));
        });
    """
    async def generate():
        async for event in event_bus.subscribe(user_id):
            # Check if client disconnected
            if await request.is_disconnected():
                break

            yield {
                "event": event["type"],
                "data": json.dumps(event["data"])
            }

    return EventSourceResponse(generate())


@router.get("/stats")
async def get_negotiation_stats(db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    """
    Get engine-wide negotiation counters.
    """
    active_offers_result = await db.execute(
        select(func.count()).select_from(Offer).where(Offer.status.in_(ACTIVE_OFFER_STATUSES))
    )
    active_offers = active_offers_result.scalar()

    # Trades still moving (negotiating, paying, shipping, confirming)
    open_trades_result = await db.execute(
        select(func.count()).select_from(Trade).where(
            Trade.status.notin_(TERMINAL_TRADE_STATUSES + (TradeStatus.DISPUTED.value,))
        )
    )
    open_trades = open_trades_result.scalar()

    disputed_result = await db.execute(
        select(func.count()).select_from(Trade).where(Trade.status == TradeStatus.DISPUTED.value)
    )
    disputed_trades = disputed_result.scalar()

    # Completed trades in last 24h
    yesterday = datetime.utcnow() - timedelta(days=1)
    completed_24h_result = await db.execute(
        select(func.count()).select_from(Trade).where(
            and_(
                Trade.status == TradeStatus.COMPLETED.value,
                Trade.completed_at >= yesterday
            )
        )
    )
    completed_trades_24h = completed_24h_result.scalar()

    return {
        "active_offers": active_offers,
        "open_trades": open_trades,
        "disputed_trades": disputed_trades,
        "completed_trades_24h": completed_trades_24h,
        "stream_subscribers": event_bus.subscriber_count,
    }
