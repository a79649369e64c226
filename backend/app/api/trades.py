"""
Trade endpoints for item-for-item swaps with an optional cash differential.
"""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, get_current_user_id, get_trade_engine, require_admin
from app.schemas.common import Page
from app.schemas.trade import (
    TradeCreate,
    TradeRespond,
    TradeShip,
    TradeDelivered,
    TradeDisputeCreate,
    TradeDisputeResolve,
    TradeCancel,
    TradeResponse,
)
from app.services.trade_engine import TradeEngine

router = APIRouter()


@router.post("", response_model=TradeResponse, status_code=status.HTTP_201_CREATED)
async def propose_trade(
    request: TradeCreate,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: TradeEngine = Depends(get_trade_engine),
):
    """
    Propose a trade.

    Example:
        ```json
        {
          "receiver_id": "user-456",
          "initiator_items": [{"product_id": "prod-1"}],
          "receiver_items": [{"product_id": "prod-9"}],
          "cash_amount": "50.00",
          "cash_payer_id": "user-123",
          "message": "My jacket plus 50 for your boots?"
        }
        ```

    All listed items are locked until the trade is answered.
    """
    return await engine.propose_trade(
        db,
        initiator_id=user_id,
        receiver_id=request.receiver_id,
        initiator_items=request.initiator_items,
        receiver_items=request.receiver_items,
        cash_amount=request.cash_amount,
        cash_payer_id=request.cash_payer_id,
        message=request.message,
    )


@router.get("", response_model=Page[TradeResponse])
async def list_trades(
    role: Literal["initiator", "receiver", "all"] = Query("all"),
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: TradeEngine = Depends(get_trade_engine),
):
    """List trades you started or received."""
    trades, total = await engine.list_trades(
        db,
        user_id=user_id,
        role=role,
        status=status_filter,
        page=page,
        page_size=page_size,
    )
    return Page[TradeResponse](
        items=[TradeResponse.model_validate(t) for t in trades],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{trade_id}", response_model=TradeResponse)
async def get_trade(
    trade_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: TradeEngine = Depends(get_trade_engine),
):
    """Get a trade you take part in."""
    return await engine.get_trade(db, trade_id, user_id)


@router.post("/{trade_id}/respond", response_model=TradeResponse)
async def respond_to_trade(
    trade_id: str,
    request: TradeRespond,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: TradeEngine = Depends(get_trade_engine),
):
    """
    Accept, reject or counter the last proposal.

    Examples:

    Accept:
        ```json
        {"action": "accept"}
        ```

    Counter without the cash:
        ```json
        {"action": "counter", "cash_amount": "0", "message": "Straight swap?"}
        ```
    """
    return await engine.respond_to_trade(
        db,
        trade_id,
        user_id,
        request.action,
        initiator_items=request.initiator_items,
        receiver_items=request.receiver_items,
        cash_amount=request.cash_amount,
        cash_payer_id=request.cash_payer_id,
        message=request.message,
    )


@router.post("/{trade_id}/payment", response_model=TradeResponse)
async def record_cash_payment(
    trade_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: TradeEngine = Depends(get_trade_engine),
):
    """Pay the cash differential into escrow (cash payer only)."""
    return await engine.record_cash_payment(db, trade_id, user_id)


@router.post("/{trade_id}/ship", response_model=TradeResponse)
async def mark_shipped(
    trade_id: str,
    request: TradeShip,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: TradeEngine = Depends(get_trade_engine),
):
    """Mark your items as shipped."""
    return await engine.mark_shipped(db, trade_id, user_id, request.carrier, request.tracking_number)


@router.post("/{trade_id}/delivered", response_model=TradeResponse, dependencies=[Depends(require_admin)])
async def record_delivery(
    trade_id: str,
    request: TradeDelivered,
    db: AsyncSession = Depends(get_db),
    engine: TradeEngine = Depends(get_trade_engine),
):
    """Carrier callback marking a shipment delivered."""
    return await engine.record_delivery(db, trade_id, request.shipper_id)


@router.post("/{trade_id}/confirm", response_model=TradeResponse)
async def confirm_receipt(
    trade_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: TradeEngine = Depends(get_trade_engine),
):
    """
    Confirm you received the other party's items.

    The second confirmation completes the trade and releases any held cash.
    """
    return await engine.confirm_receipt(db, trade_id, user_id)


@router.post("/{trade_id}/dispute", response_model=TradeResponse)
async def raise_dispute(
    trade_id: str,
    request: TradeDisputeCreate,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: TradeEngine = Depends(get_trade_engine),
):
    """Open a dispute during fulfilment."""
    return await engine.raise_dispute(db, trade_id, user_id, request.reason, request.description)


@router.post("/{trade_id}/dispute/resolve", response_model=TradeResponse, dependencies=[Depends(require_admin)])
async def resolve_dispute(
    trade_id: str,
    request: TradeDisputeResolve,
    db: AsyncSession = Depends(get_db),
    engine: TradeEngine = Depends(get_trade_engine),
):
    """Apply an arbitration decision (admin key required)."""
    return await engine.resolve_dispute(
        db,
        trade_id,
        resolution=request.resolution,
        outcome=request.outcome,
        resolved_by_id=request.resolved_by_id,
    )


@router.post("/{trade_id}/cancel", response_model=TradeResponse)
async def cancel_trade(
    trade_id: str,
    request: TradeCancel,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: TradeEngine = Depends(get_trade_engine),
):
    """Cancel a trade that has not been accepted yet."""
    return await engine.cancel_trade(db, trade_id, user_id, request.reason)
