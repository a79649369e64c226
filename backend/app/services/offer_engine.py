"""
Offer engine: single-item cash negotiation between a buyer and a seller.

The buyer opens with an amount; the two sides then alternate counters until
one accepts, rejects, the buyer withdraws, or the offer runs past expires_at.
Acceptance locks the product, turns away competing offers and asks the order
subsystem for an order in the same unit of work.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import (
    DuplicateActiveOffer,
    Expired,
    InvalidState,
    NotAuthorized,
    NotFound,
    ValidationError,
    ConcurrentModification,
)
from app.core.money import MoneyInput, parse_money
from app.database import transaction
from app.models.offer import Offer, OfferStatus, OfferParty, ACTIVE_OFFER_STATUSES
from app.services import item_locks
from app.services.activity import log_activity
from app.services.collaborators import (
    CatalogService,
    OrderService,
    NotificationService,
    call_dependency,
    notify_quietly,
)
from app.services.validation import (
    ensure_valid,
    validate_amount,
    validate_offer_bounds,
    validate_purchasable,
    validate_text,
)

logger = logging.getLogger(__name__)


# Valid state transitions
VALID_TRANSITIONS = {
    'pending': ['accepted', 'rejected', 'countered', 'expired', 'withdrawn'],
    'countered': ['accepted', 'rejected', 'countered', 'expired', 'withdrawn'],
}

LOCK_HOLDER = "offer"


def _offer_payload(offer: Offer) -> Dict[str, Any]:
    return {
        "offer_id": str(offer.id),
        "product_id": str(offer.product_id),
        "amount": str(offer.amount),
        "status": offer.status,
        "round_count": offer.round_count,
    }


class OfferEngine:
    """Service for buyer/seller offer negotiation."""

    def __init__(
        self,
        catalog: CatalogService,
        orders: OrderService,
        notifier: NotificationService,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.catalog = catalog
        self.orders = orders
        self.notifier = notifier
        self.clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get(self, db: AsyncSession, offer_id: str) -> Offer:
        offer = await db.get(Offer, offer_id)
        if not offer:
            raise NotFound("Offer not found")
        return offer

    @staticmethod
    def _transition(offer: Offer, new_status: OfferStatus) -> None:
        if new_status.value not in VALID_TRANSITIONS.get(offer.status, []):
            raise InvalidState(f"Offer is already {offer.status}")
        offer.status = new_status.value

    def _expire(self, db: AsyncSession, offer: Offer, now: datetime) -> None:
        self._transition(offer, OfferStatus.EXPIRED)
        offer.updated_at = now
        log_activity(db, "offer_expired", "offer", offer.id, data=_offer_payload(offer))

    async def _notify_expired(self, offer: Offer) -> None:
        for user_id in (offer.buyer_id, offer.seller_id):
            await notify_quietly(self.notifier, user_id, "offer_expired", _offer_payload(offer))

    async def _load_for_response(self, db: AsyncSession, offer_id: str, actor_id: str) -> Offer:
        """
        Load an offer the actor wants to answer (accept, reject or counter).

        Raises:
            NotFound: Offer does not exist
            NotAuthorized: Actor is not a party, or made the last proposal
            InvalidState: Offer is already decided
            Expired: Offer ran past expires_at (persisted as expired first)
        """
        offer = await self._get(db, offer_id)
        party = offer.party_of(actor_id)
        if party is None:
            raise NotAuthorized("You are not a party to this offer")
        if not offer.is_active:
            raise InvalidState(f"Offer is already {offer.status}")
        if party == offer.proposer:
            raise NotAuthorized("Waiting for the other party to respond")
        await self._raise_if_expired(db, offer)
        return offer

    async def _raise_if_expired(self, db: AsyncSession, offer: Offer) -> None:
        now = self.clock()
        if now <= offer.expires_at:
            return
        async with transaction(db):
            self._expire(db, offer, now)
        logger.info(f"Offer {offer.id} expired on access")
        await self._notify_expired(offer)
        raise Expired("This offer has expired")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_offer(
        self,
        db: AsyncSession,
        product_id: str,
        buyer_id: str,
        amount: MoneyInput,
        message: Optional[str] = None,
    ) -> Offer:
        """
        Buyer opens a negotiation on a product.

        Args:
            db: Database session
            product_id: Product being bid on
            buyer_id: Buyer user id
            amount: Offered amount
            message: Optional note to the seller

        Returns:
            Created Offer in pending state

        Raises:
            InvalidAmount: Amount malformed, below the minimum, or product not purchasable
            NotFound: Product does not exist
            ItemLocked: Product already committed to a trade or an accepted offer
            DuplicateActiveOffer: Buyer already has an active offer on this product
        """
        ensure_valid(validate_amount(amount), validate_text(message, "message"))
        amount = parse_money(amount)

        listing = await call_dependency("catalog", self.catalog.get_listing(product_id))
        if listing is None:
            raise NotFound("Product not found")
        ensure_valid(validate_purchasable(listing, buyer_id))

        min_amount = listing.price * settings.OFFER_MIN_FRACTION
        ensure_valid(validate_offer_bounds(amount, min_amount))

        await item_locks.ensure_unlocked(db, [product_id])

        result = await db.execute(
            select(Offer.id).where(
                Offer.product_id == product_id,
                Offer.buyer_id == buyer_id,
                Offer.status.in_(ACTIVE_OFFER_STATUSES),
            )
        )
        if result.first() is not None:
            raise DuplicateActiveOffer()

        now = self.clock()
        offer = Offer(
            product_id=product_id,
            buyer_id=buyer_id,
            seller_id=listing.owner_id,
            amount=amount,
            list_price=listing.price,
            min_amount=min_amount,
            status=OfferStatus.PENDING.value,
            proposer=OfferParty.BUYER.value,
            round_count=1,
            message=message,
            expires_at=now + timedelta(hours=settings.OFFER_EXPIRY_HOURS),
            created_at=now,
            updated_at=now,
        )

        try:
            async with transaction(db):
                db.add(offer)
                await db.flush()  # Assign offer.id
                log_activity(db, "offer_created", "offer", offer.id, buyer_id, {
                    **_offer_payload(offer),
                    "list_price": str(offer.list_price),
                })
        except IntegrityError as e:
            # A parallel request created the active offer first
            raise DuplicateActiveOffer() from e

        logger.info(f"Offer {offer.id} created on product {product_id}: {amount}")
        await notify_quietly(self.notifier, offer.seller_id, "offer_created", _offer_payload(offer))
        return offer

    async def counter_offer(
        self,
        db: AsyncSession,
        offer_id: str,
        actor_id: str,
        amount: MoneyInput,
        message: Optional[str] = None,
    ) -> Offer:
        """
        Counter with a new amount. Only the party that did not make the last proposal may counter.

        Raises:
            ValidationError: Amount outside [min_amount, list_price] or round limit reached
            NotAuthorized, InvalidState, Expired: As for any response
        """
        offer = await self._load_for_response(db, offer_id, actor_id)

        ensure_valid(validate_amount(amount), validate_text(message, "message"))
        amount = parse_money(amount)
        ensure_valid(validate_offer_bounds(amount, offer.min_amount, offer.list_price))

        if offer.round_count >= settings.OFFER_MAX_COUNTER_ROUNDS:
            raise ValidationError(
                "amount",
                f"Maximum negotiation rounds ({settings.OFFER_MAX_COUNTER_ROUNDS}) reached. Accept or reject."
            )

        now = self.clock()
        async with transaction(db):
            self._transition(offer, OfferStatus.COUNTERED)
            offer.amount = amount
            offer.proposer = offer.party_of(actor_id)
            offer.round_count += 1
            offer.message = message
            offer.expires_at = now + timedelta(hours=settings.OFFER_EXPIRY_HOURS)
            offer.responded_at = now
            offer.updated_at = now
            log_activity(db, "offer_countered", "offer", offer.id, actor_id, _offer_payload(offer))

        logger.info(f"Offer {offer.id} countered by {offer.proposer}: {amount} (round {offer.round_count})")
        other = offer.seller_id if actor_id == offer.buyer_id else offer.buyer_id
        await notify_quietly(self.notifier, other, "offer_countered", _offer_payload(offer))
        return offer

    async def accept_offer(self, db: AsyncSession, offer_id: str, actor_id: str) -> Offer:
        """
        Accept the current proposal and hand it to the order subsystem.

        Raises:
            DependencyFailure: Order creation failed; nothing is committed
            ItemLocked: Product was committed elsewhere in the meantime
            ConcurrentModification: Another write to this offer won the race
        """
        offer = await self._load_for_response(db, offer_id, actor_id)

        now = self.clock()
        acquired: List[str] = []
        try:
            async with transaction(db):
                self._transition(offer, OfferStatus.ACCEPTED)
                offer.responded_at = now
                offer.updated_at = now
                await db.flush()  # Version check before anything else is written

                acquired = await item_locks.acquire(
                    db, self.catalog, LOCK_HOLDER, offer.id, {offer.product_id: offer.seller_id}
                )
                competing = await self._reject_competing(db, offer, now)

                offer.order_id = await call_dependency(
                    "orders", self.orders.create_order_from_offer(offer.id, offer.amount)
                )
                log_activity(db, "offer_accepted", "offer", offer.id, actor_id, {
                    **_offer_payload(offer),
                    "order_id": offer.order_id,
                    "auto_rejected": [o.id for o in competing],
                })
        except Exception:
            await item_locks.unlock_in_catalog(self.catalog, acquired)
            raise

        logger.info(f"Offer {offer.id} accepted at {offer.amount}, order {offer.order_id}")
        other = offer.seller_id if actor_id == offer.buyer_id else offer.buyer_id
        await notify_quietly(self.notifier, other, "offer_accepted", _offer_payload(offer))
        for rejected in competing:
            await notify_quietly(self.notifier, rejected.buyer_id, "offer_rejected", _offer_payload(rejected))
        return offer

    async def _reject_competing(self, db: AsyncSession, accepted: Offer, now: datetime) -> List[Offer]:
        """Reject every other active offer on the accepted offer's product."""
        result = await db.execute(
            select(Offer).where(
                Offer.product_id == accepted.product_id,
                Offer.id != accepted.id,
                Offer.status.in_(ACTIVE_OFFER_STATUSES),
            )
        )
        competing = list(result.scalars().all())
        for other in competing:
            self._transition(other, OfferStatus.REJECTED)
            other.reject_reason = "Another offer on this product was accepted"
            other.responded_at = now
            other.updated_at = now
            log_activity(db, "offer_rejected", "offer", other.id, None, {
                **_offer_payload(other),
                "auto": True,
            })
        return competing

    async def reject_offer(
        self,
        db: AsyncSession,
        offer_id: str,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> Offer:
        """Reject the current proposal. Terminal."""
        ensure_valid(validate_text(reason, "reason"))
        offer = await self._load_for_response(db, offer_id, actor_id)

        now = self.clock()
        async with transaction(db):
            self._transition(offer, OfferStatus.REJECTED)
            offer.reject_reason = reason
            offer.responded_at = now
            offer.updated_at = now
            log_activity(db, "offer_rejected", "offer", offer.id, actor_id, _offer_payload(offer))

        logger.info(f"Offer {offer.id} rejected")
        other = offer.seller_id if actor_id == offer.buyer_id else offer.buyer_id
        await notify_quietly(self.notifier, other, "offer_rejected", _offer_payload(offer))
        return offer

    async def withdraw_offer(self, db: AsyncSession, offer_id: str, actor_id: str) -> Offer:
        """Buyer takes the offer back. Terminal."""
        offer = await self._get(db, offer_id)
        if actor_id != offer.buyer_id:
            raise NotAuthorized("Only the buyer can withdraw an offer")
        if not offer.is_active:
            raise InvalidState(f"Offer is already {offer.status}")
        await self._raise_if_expired(db, offer)

        now = self.clock()
        async with transaction(db):
            self._transition(offer, OfferStatus.WITHDRAWN)
            offer.updated_at = now
            log_activity(db, "offer_withdrawn", "offer", offer.id, actor_id, _offer_payload(offer))

        logger.info(f"Offer {offer.id} withdrawn")
        await notify_quietly(self.notifier, offer.seller_id, "offer_withdrawn", _offer_payload(offer))
        return offer

    async def expire_offers(self, db: AsyncSession, limit: Optional[int] = None) -> int:
        """
        Expire active offers past expires_at.

        Each offer expires in its own transaction; one that changed under us
        is skipped and picked up again on the next run if still due.

        Returns:
            Number of offers expired by this call
        """
        now = self.clock()
        result = await db.execute(
            select(Offer.id)
            .where(Offer.status.in_(ACTIVE_OFFER_STATUSES), Offer.expires_at < now)
            .order_by(Offer.expires_at)
            .limit(limit or settings.SCHEDULER_BATCH_SIZE)
        )
        offer_ids = list(result.scalars().all())

        expired = 0
        for offer_id in offer_ids:
            offer = await db.get(Offer, offer_id, populate_existing=True)
            if offer is None or not offer.is_active or offer.expires_at >= now:
                continue
            try:
                async with transaction(db):
                    self._expire(db, offer, now)
            except ConcurrentModification:
                logger.info(f"Offer {offer_id} changed while expiring, skipped")
                continue
            expired += 1
            await self._notify_expired(offer)

        if expired:
            logger.info(f"Expired {expired} offer(s)")
        return expired

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_offer(self, db: AsyncSession, offer_id: str, user_id: str) -> Offer:
        offer = await self._get(db, offer_id)
        if offer.party_of(user_id) is None:
            raise NotAuthorized("You are not a party to this offer")
        return offer

    async def list_offers(
        self,
        db: AsyncSession,
        user_id: str,
        role: str = "all",
        status: Optional[str] = None,
        product_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Offer], int]:
        """
        List offers the user takes part in.

        Args:
            role: "sent" (as buyer), "received" (as seller) or "all"

        Returns:
            (offers on the requested page, total matching)
        """
        if role == "sent":
            query = select(Offer).where(Offer.buyer_id == user_id)
        elif role == "received":
            query = select(Offer).where(Offer.seller_id == user_id)
        elif role == "all":
            query = select(Offer).where(or_(Offer.buyer_id == user_id, Offer.seller_id == user_id))
        else:
            raise ValidationError("role", "Role must be one of: sent, received, all")

        if status:
            query = query.where(Offer.status == status)
        if product_id:
            query = query.where(Offer.product_id == product_id)

        total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()

        page = max(page, 1)
        query = query.order_by(Offer.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
        result = await db.execute(query)
        return list(result.scalars().all()), total
