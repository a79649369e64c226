"""
Input validators for offers and trades.

Each validator returns None when the input is acceptable, or the
ValidationError describing the offending field. Engines run them with
ensure_valid() before touching any state.
"""

from decimal import Decimal
from typing import Optional, Sequence

from app.core.errors import ValidationError, InvalidAmount
from app.core.money import MoneyInput, parse_money, is_currency_exact
from app.schemas.trade import TradeItemIn
from app.services.collaborators import Listing

MESSAGE_MAX_LENGTH = 500
DESCRIPTION_MAX_LENGTH = 1000

DISPUTE_REASONS = ("not_as_described", "damaged", "wrong_item", "not_received", "payment_failed")


def ensure_valid(*results: Optional[ValidationError]) -> None:
    """Raise the first validation failure, if any."""
    for error in results:
        if error is not None:
            raise error


def validate_amount(value: Optional[MoneyInput], field: str = "amount", allow_zero: bool = False) -> Optional[ValidationError]:
    """Amount must be a positive (or non-negative) currency-exact number."""
    if value is None:
        return InvalidAmount(field, "Amount is required")
    try:
        amount = parse_money(value)
    except ValueError as e:
        return InvalidAmount(field, str(e))
    if amount < 0 or (amount == 0 and not allow_zero):
        return InvalidAmount(field, "Amount must be positive" if not allow_zero else "Amount cannot be negative")
    if not is_currency_exact(amount):
        return InvalidAmount(field, "Amount has more decimal places than the currency allows")
    return None


def validate_offer_bounds(amount: Decimal, min_amount: Decimal, max_amount: Optional[Decimal] = None) -> Optional[ValidationError]:
    if amount < min_amount:
        return InvalidAmount("amount", f"Offer too low. Minimum offer: {min_amount}")
    if max_amount is not None and amount > max_amount:
        return InvalidAmount("amount", f"Offer cannot exceed the listing price of {max_amount}")
    return None


def validate_purchasable(listing: Listing, buyer_id: str) -> Optional[ValidationError]:
    """Product must be active and not belong to the buyer."""
    if not listing.is_active:
        return InvalidAmount("product_id", "This product is not for sale right now")
    if listing.owner_id == buyer_id:
        return InvalidAmount("product_id", "You cannot make an offer on your own product")
    return None


def validate_parties(initiator_id: str, receiver_id: str) -> Optional[ValidationError]:
    if not receiver_id:
        return ValidationError("receiver_id", "Receiver is required")
    if initiator_id == receiver_id:
        return ValidationError("receiver_id", "You cannot trade with yourself")
    return None


def validate_item_sets(initiator_items: Sequence[TradeItemIn], receiver_items: Sequence[TradeItemIn]) -> Optional[ValidationError]:
    """Both sides need at least one item; a product may appear only once per trade."""
    if not initiator_items:
        return ValidationError("initiator_items", "Offer at least one item")
    if not receiver_items:
        return ValidationError("receiver_items", "Request at least one item")

    seen: set[str] = set()
    for field, items in (("initiator_items", initiator_items), ("receiver_items", receiver_items)):
        for item in items:
            if item.quantity < 1:
                return ValidationError(field, "Quantity must be at least 1")
            if item.product_id in seen:
                return ValidationError(field, "The same product appears more than once")
            seen.add(item.product_id)
    return None


def validate_side_listings(
    field: str,
    owner_id: str,
    listings: Sequence[Optional[Listing]],
    require_trade_enabled: bool = False,
) -> Optional[ValidationError]:
    """Every listing on a side must exist, be active and belong to that side's user."""
    for listing in listings:
        if listing is None or listing.owner_id != owner_id or not listing.is_active:
            if field == "initiator_items":
                return ValidationError(field, "Some items are not yours or are not active")
            return ValidationError(field, "Some requested items are not available for trade")
        if require_trade_enabled and not listing.trade_enabled:
            return ValidationError(field, "Some requested items are not available for trade")
    return None


def validate_cash_leg(
    cash_amount: Optional[MoneyInput],
    cash_payer_id: Optional[str],
    initiator_id: str,
    receiver_id: str,
) -> Optional[ValidationError]:
    """Cash is optional; when positive the payer must be one of the two participants."""
    if cash_amount is None:
        if cash_payer_id is not None:
            return ValidationError("cash_payer_id", "Cash payer given without a cash amount")
        return None
    error = validate_amount(cash_amount, field="cash_amount", allow_zero=True)
    if error:
        return error
    if parse_money(cash_amount) > 0 and cash_payer_id not in (initiator_id, receiver_id):
        return ValidationError("cash_payer_id", "Cash payer must be one of the trade participants")
    return None


def validate_text(value: Optional[str], field: str, max_length: int = MESSAGE_MAX_LENGTH, required: bool = False) -> Optional[ValidationError]:
    if value is None or not value.strip():
        return ValidationError(field, f"{field} is required") if required else None
    if len(value) > max_length:
        return ValidationError(field, f"{field} must be at most {max_length} characters")
    return None


def validate_dispute_reason(reason: str) -> Optional[ValidationError]:
    if reason not in DISPUTE_REASONS:
        return ValidationError("reason", f"Reason must be one of: {', '.join(DISPUTE_REASONS)}")
    return None
