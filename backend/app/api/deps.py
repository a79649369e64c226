"""API dependencies for caller identity and engine wiring."""

from functools import lru_cache

from fastapi import HTTPException, status, Header

from app.config import settings
from app.core.security import verify_api_key
from app.database import get_db
from app.services import build_offer_engine, build_trade_engine, OfferEngine, TradeEngine

__all__ = ["get_db", "get_current_user_id", "require_admin", "get_offer_engine", "get_trade_engine"]


async def get_current_user_id(
    x_user_id: str = Header(..., description="Authenticated user id, set by the upstream gateway")
) -> str:
    """
    Dependency that returns the calling user's id.

    Authentication happens upstream; the gateway forwards the verified id in
    the X-User-Id header.

    Raises:
        HTTPException: 401 if the header is blank
    """
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": "MISSING_USER",
                "message": "X-User-Id header is required"
            }
        )
    return user_id


async def require_admin(
    x_admin_key: str = Header(..., description="Arbitration API key")
) -> None:
    """
    Dependency guarding arbitration and carrier callbacks.

    Raises:
        HTTPException: 401 if the key does not match ADMIN_API_KEY_HASH
    """
    if not verify_api_key(x_admin_key, settings.ADMIN_API_KEY_HASH):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": "INVALID_API_KEY",
                "message": "Invalid API key provided"
            }
        )


@lru_cache
def get_offer_engine() -> OfferEngine:
    return build_offer_engine()


@lru_cache
def get_trade_engine() -> TradeEngine:
    return build_trade_engine()
