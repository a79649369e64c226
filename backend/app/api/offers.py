"""
Offer endpoints for buyer/seller price negotiation on a single product.
"""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, get_current_user_id, get_offer_engine
from app.schemas.common import Page
from app.schemas.offer import OfferCreate, OfferCounter, OfferReject, OfferResponse
from app.services.offer_engine import OfferEngine

router = APIRouter()


@router.post("", response_model=OfferResponse, status_code=status.HTTP_201_CREATED)
async def create_offer(
    request: OfferCreate,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: OfferEngine = Depends(get_offer_engine),
):
    """
    Make an offer on a product.

    The amount must be at least OFFER_MIN_FRACTION of the listing price. The
    seller has OFFER_EXPIRY_HOURS to answer.

    Example:
        ```json
        {"product_id": "prod-123", "amount": "120.00", "message": "Would you take 120?"}
        ```
    """
    return await engine.create_offer(
        db,
        product_id=request.product_id,
        buyer_id=user_id,
        amount=request.amount,
        message=request.message,
    )


@router.get("", response_model=Page[OfferResponse])
async def list_offers(
    role: Literal["sent", "received", "all"] = Query("all"),
    status_filter: Optional[str] = Query(None, alias="status"),
    product_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: OfferEngine = Depends(get_offer_engine),
):
    """List offers you sent or received."""
    offers, total = await engine.list_offers(
        db,
        user_id=user_id,
        role=role,
        status=status_filter,
        product_id=product_id,
        page=page,
        page_size=page_size,
    )
    return Page[OfferResponse](
        items=[OfferResponse.model_validate(o) for o in offers],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{offer_id}", response_model=OfferResponse)
async def get_offer(
    offer_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: OfferEngine = Depends(get_offer_engine),
):
    """Get an offer you are a party to."""
    return await engine.get_offer(db, offer_id, user_id)


@router.post("/{offer_id}/counter", response_model=OfferResponse)
async def counter_offer(
    offer_id: str,
    request: OfferCounter,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: OfferEngine = Depends(get_offer_engine),
):
    """
    Counter the last proposal with a new amount.

    Only the party that did not make the last proposal can counter.
    """
    return await engine.counter_offer(db, offer_id, user_id, request.amount, request.message)


@router.post("/{offer_id}/accept", response_model=OfferResponse)
async def accept_offer(
    offer_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: OfferEngine = Depends(get_offer_engine),
):
    """
    Accept the last proposal.

    Creates the order and rejects every other open offer on the product.
    """
    return await engine.accept_offer(db, offer_id, user_id)


@router.post("/{offer_id}/reject", response_model=OfferResponse)
async def reject_offer(
    offer_id: str,
    request: Optional[OfferReject] = None,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: OfferEngine = Depends(get_offer_engine),
):
    """Reject the last proposal."""
    reason = request.reason if request else None
    return await engine.reject_offer(db, offer_id, user_id, reason)


@router.post("/{offer_id}/withdraw", response_model=OfferResponse)
async def withdraw_offer(
    offer_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: OfferEngine = Depends(get_offer_engine),
):
    """Withdraw your offer (buyer only)."""
    return await engine.withdraw_offer(db, offer_id, user_id)
