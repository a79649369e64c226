"""
Trade engine: multi-item barter with an optional cash differential.

Lifecycle:
    proposed/countered -> accepted -> payment_pending (cash leg) -> shipping_pending
    -> confirmation_pending -> completed

Fulfilment phases can move to disputed, which only arbitration
(resolve_dispute) leaves. Every phase has a deadline enforced by
expire_trades().
"""

import logging
import secrets
import string
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, func, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import (
    ConcurrentModification,
    DependencyFailure,
    Expired,
    InvalidState,
    NotAuthorized,
    NotFound,
    ValidationError,
    WrongPhase,
)
from app.core.money import MoneyInput, parse_money
from app.database import transaction
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
)
from app.schemas.trade import TradeItemIn
from app.services import item_locks
from app.services.activity import log_activity
from app.services.collaborators import (
    CatalogService,
    Listing,
    PaymentGateway,
    NotificationService,
    call_dependency,
    notify_quietly,
)
from app.services.commission import commission, resolve_rate
from app.services.validation import (
    DESCRIPTION_MAX_LENGTH,
    ensure_valid,
    validate_cash_leg,
    validate_dispute_reason,
    validate_item_sets,
    validate_parties,
    validate_side_listings,
    validate_text,
)

logger = logging.getLogger(__name__)


# Valid state transitions
VALID_TRANSITIONS = {
    'proposed': ['accepted', 'rejected', 'countered', 'expired', 'cancelled'],
    'countered': ['accepted', 'rejected', 'countered', 'expired', 'cancelled'],
    'accepted': ['payment_pending', 'shipping_pending'],
    'payment_pending': ['shipping_pending', 'disputed', 'cancelled'],
    'shipping_pending': ['confirmation_pending', 'disputed'],
    'confirmation_pending': ['completed', 'disputed'],
    'disputed': ['completed', 'cancelled'],
}

LOCK_HOLDER = "trade"
DEADLINE_DISPUTE_REASON = "deadline_expired"

_BASE36 = string.digits + string.ascii_uppercase


def _base36(number: int) -> str:
    digits = []
    while True:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
        if number == 0:
            return "".join(reversed(digits))


def generate_trade_number(now: datetime) -> str:
    """Human-readable trade reference, e.g. TRD-MF3K2J1A-7QXZ."""
    millis = int((now - datetime(1970, 1, 1)).total_seconds() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"TRD-{_base36(millis)}-{suffix}"


def _trade_payload(trade: Trade) -> Dict[str, Any]:
    return {
        "trade_id": str(trade.id),
        "trade_number": trade.trade_number,
        "status": trade.status,
        "cash_amount": str(trade.cash_amount) if trade.cash_amount is not None else None,
    }


class TradeEngine:
    """Service for item-for-item trades between two users."""

    def __init__(
        self,
        catalog: CatalogService,
        payments: PaymentGateway,
        notifier: NotificationService,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.catalog = catalog
        self.payments = payments
        self.notifier = notifier
        self.clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get(self, db: AsyncSession, trade_id: str) -> Trade:
        # Always re-read: items, shipments and the cash leg must reflect committed state
        trade = await db.get(Trade, trade_id, populate_existing=True)
        if not trade:
            raise NotFound("Trade not found")
        return trade

    async def _get_for_participant(self, db: AsyncSession, trade_id: str, user_id: str) -> Trade:
        trade = await self._get(db, trade_id)
        if not trade.is_participant(user_id):
            raise NotAuthorized("You are not a party to this trade")
        return trade

    @staticmethod
    def _transition(trade: Trade, new_status: TradeStatus) -> None:
        if new_status.value not in VALID_TRANSITIONS.get(trade.status, []):
            raise InvalidState(f"Trade is already {trade.status}")
        trade.status = new_status.value

    @staticmethod
    def _require_phase(trade: Trade, status: TradeStatus, message: str) -> None:
        if trade.status != status.value:
            raise WrongPhase(message)

    async def _notify(self, user_ids: Sequence[str], event_type: str, trade: Trade) -> None:
        payload = _trade_payload(trade)
        for user_id in user_ids:
            await notify_quietly(self.notifier, user_id, event_type, payload)

    async def _load_listings(self, items: Sequence[TradeItemIn]) -> List[Optional[Listing]]:
        listings = []
        for item in items:
            listings.append(await call_dependency("catalog", self.catalog.get_listing(item.product_id)))
        return listings

    @staticmethod
    def _build_items(side: TradeSide, items: Sequence[TradeItemIn], listings: Sequence[Listing]) -> List[TradeItem]:
        return [
            TradeItem(
                product_id=item.product_id,
                side=side.value,
                quantity=item.quantity,
                value_at_trade=listing.price,
            )
            for item, listing in zip(items, listings)
        ]

    async def _validate_sides(
        self,
        initiator_id: str,
        receiver_id: str,
        initiator_items: Sequence[TradeItemIn],
        receiver_items: Sequence[TradeItemIn],
    ) -> List[TradeItem]:
        """Check catalog ownership of both sides and snapshot their values."""
        offered = await self._load_listings(initiator_items)
        requested = await self._load_listings(receiver_items)
        ensure_valid(
            validate_side_listings("initiator_items", initiator_id, offered),
            validate_side_listings("receiver_items", receiver_id, requested, require_trade_enabled=True),
        )
        return (
            self._build_items(TradeSide.INITIATOR, initiator_items, offered)
            + self._build_items(TradeSide.RECEIVER, receiver_items, requested)
        )

    @staticmethod
    def _lock_owners(trade: Trade, items: Sequence[TradeItem]) -> Dict[str, str]:
        return {
            item.product_id: trade.initiator_id if item.side == TradeSide.INITIATOR.value else trade.receiver_id
            for item in items
        }

    def _start_shipping(self, trade: Trade, now: datetime) -> None:
        """Move to shipping_pending and create one shipment placeholder per side."""
        self._transition(trade, TradeStatus.SHIPPING_PENDING)
        trade.shipping_deadline = now + timedelta(days=settings.TRADE_SHIPPING_DEADLINE_DAYS)
        if not trade.shipments:
            for shipper_id in (trade.initiator_id, trade.receiver_id):
                trade.shipments.append(
                    TradeShipment(shipper_id=shipper_id, status=ShipmentStatus.NOT_SHIPPED.value)
                )

    def _open_dispute(
        self,
        trade: Trade,
        raised_by_id: Optional[str],
        reason: str,
        description: str,
        now: datetime,
    ) -> None:
        previous = trade.status
        self._transition(trade, TradeStatus.DISPUTED)
        trade.disputed_from = previous
        trade.dispute = TradeDispute(
            raised_by_id=raised_by_id,
            reason=reason,
            description=description,
            created_at=now,
        )
        trade.updated_at = now

    async def _release_cash(self, db: AsyncSession, trade: Trade, now: datetime) -> None:
        """Pay held cash out to the recipient. Call after the trade state is flushed."""
        payment = trade.cash_payment
        if payment is None:
            return
        if payment.status == CashPaymentStatus.HELD.value:
            payment.status = CashPaymentStatus.RELEASED.value
            payment.released_at = now
            await db.flush()
            await call_dependency("payments", self.payments.release_funds(payment.hold_id, payment.recipient_id))
        elif payment.status == CashPaymentStatus.PENDING.value:
            await self._unwind_cash(db, trade, now)

    async def _unwind_cash(self, db: AsyncSession, trade: Trade, now: datetime) -> None:
        """Give held cash back to the payer, or abandon a leg that was never captured."""
        payment = trade.cash_payment
        if payment is None:
            return
        if payment.status == CashPaymentStatus.HELD.value:
            payment.status = CashPaymentStatus.REFUNDED.value
            payment.refunded_at = now
            await db.flush()
            await call_dependency("payments", self.payments.refund_funds(payment.hold_id))
        elif payment.status == CashPaymentStatus.PENDING.value:
            payment.status = CashPaymentStatus.CANCELLED.value
            await db.flush()
            if payment.hold_id:
                # Void a hold that was placed but never captured
                await call_dependency("payments", self.payments.refund_funds(payment.hold_id))

    async def _close_negotiation(
        self,
        db: AsyncSession,
        trade: Trade,
        status: TradeStatus,
        now: datetime,
        reason: Optional[str] = None,
    ) -> List[str]:
        """
        Reject, cancel or expire a trade and drop its lock rows.

        Returns:
            Released product ids, to unlock in the catalog after commit
        """
        self._transition(trade, status)
        trade.updated_at = now
        if status == TradeStatus.CANCELLED:
            trade.cancelled_at = now
            trade.cancel_reason = reason
        await db.flush()
        return await item_locks.release(db, LOCK_HOLDER, trade.id)

    async def _raise_if_overdue(self, db: AsyncSession, trade: Trade) -> None:
        """
        Apply an elapsed deadline before acting on the trade.

        Raises:
            Expired: The current phase's deadline has passed
        """
        now = self.clock()
        due = trade.due_at
        if due is None or now <= due:
            return
        async with transaction(db):
            event_type, released = await self._expire_phase(db, trade, now)
        await item_locks.unlock_in_catalog(self.catalog, released)
        logger.info(f"Trade {trade.id} {event_type} on access")
        await self._notify((trade.initiator_id, trade.receiver_id), event_type, trade)
        raise Expired("The deadline for this step has passed")

    async def _expire_phase(self, db: AsyncSession, trade: Trade, now: datetime) -> Tuple[str, List[str]]:
        """
        Apply the deadline outcome for the trade's current phase.

        Any refund is the last step, so a failed refund rolls back the
        whole outcome.

        Returns:
            (event type recorded, product ids to unlock in the catalog after commit)
        """
        released: List[str] = []
        if trade.status in NEGOTIATING_STATUSES:
            released = await self._close_negotiation(db, trade, TradeStatus.EXPIRED, now)
            event_type = "trade_expired"
        elif trade.status == TradeStatus.PAYMENT_PENDING.value:
            released = await self._close_negotiation(
                db, trade, TradeStatus.CANCELLED, now, reason="Payment deadline passed"
            )
            event_type = "trade_cancelled"
        else:
            phase = "Shipping" if trade.status == TradeStatus.SHIPPING_PENDING.value else "Confirmation"
            self._open_dispute(
                trade,
                None,
                DEADLINE_DISPUTE_REASON,
                f"{phase} deadline passed without both parties completing the step",
                now,
            )
            event_type = "trade_disputed"
        log_activity(db, event_type, "trade", trade.id, None, {
            **_trade_payload(trade),
            "deadline": True,
        })
        if event_type == "trade_cancelled":
            await self._unwind_cash(db, trade, now)
        return event_type, released

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def propose_trade(
        self,
        db: AsyncSession,
        initiator_id: str,
        receiver_id: str,
        initiator_items: Sequence[TradeItemIn],
        receiver_items: Sequence[TradeItemIn],
        cash_amount: Optional[MoneyInput] = None,
        cash_payer_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> Trade:
        """
        Propose a trade to another user.

        Args:
            db: Database session
            initiator_id: User proposing the trade
            receiver_id: User receiving the proposal
            initiator_items: Products the initiator gives
            receiver_items: Products the initiator asks for
            cash_amount: Optional cash differential
            cash_payer_id: Which participant pays the differential
            message: Optional note to the receiver

        Returns:
            Created Trade in proposed state, with all items locked

        Raises:
            ValidationError: Bad parties, items or cash leg
            ItemLocked: An item is committed to another negotiation
        """
        ensure_valid(
            validate_parties(initiator_id, receiver_id),
            validate_item_sets(initiator_items, receiver_items),
            validate_cash_leg(cash_amount, cash_payer_id, initiator_id, receiver_id),
            validate_text(message, "message"),
        )
        items = await self._validate_sides(initiator_id, receiver_id, initiator_items, receiver_items)
        await item_locks.ensure_unlocked(db, [item.product_id for item in items])

        cash = parse_money(cash_amount) if cash_amount is not None else Decimal(0)
        rate = await resolve_rate(db, cash)

        now = self.clock()
        trade = Trade(
            trade_number=generate_trade_number(now),
            initiator_id=initiator_id,
            receiver_id=receiver_id,
            current_proposer_id=initiator_id,
            status=TradeStatus.PROPOSED.value,
            cash_amount=cash if cash > 0 else None,
            cash_payer_id=cash_payer_id if cash > 0 else None,
            cash_commission=commission(cash, rate) if cash > 0 else None,
            commission_rate=rate,
            response_deadline=now + timedelta(hours=settings.TRADE_RESPONSE_DEADLINE_HOURS),
            initiator_message=message,
            created_at=now,
            updated_at=now,
            items=items,
            shipments=[],
            cash_payment=None,
            dispute=None,
        )

        acquired: List[str] = []
        try:
            async with transaction(db):
                db.add(trade)
                await db.flush()  # Assign trade.id
                acquired = await item_locks.acquire(
                    db, self.catalog, LOCK_HOLDER, trade.id, self._lock_owners(trade, items)
                )
                log_activity(db, "trade_proposed", "trade", trade.id, initiator_id, {
                    **_trade_payload(trade),
                    "commission_rate": str(rate),
                    "items": [item.product_id for item in items],
                })
        except Exception:
            await item_locks.unlock_in_catalog(self.catalog, acquired)
            raise

        logger.info(f"Trade {trade.trade_number} proposed by {initiator_id} to {receiver_id}")
        await self._notify([receiver_id], "trade_proposed", trade)
        return trade

    async def respond_to_trade(
        self,
        db: AsyncSession,
        trade_id: str,
        actor_id: str,
        action: str,  # "accept" | "reject" | "counter"
        initiator_items: Optional[Sequence[TradeItemIn]] = None,
        receiver_items: Optional[Sequence[TradeItemIn]] = None,
        cash_amount: Optional[MoneyInput] = None,
        cash_payer_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> Trade:
        """
        Respond to the last proposal. Only the party that did not make it may respond.

        Counter item lists keep their sides: initiator_items are always the
        initiator's products. Omitted lists and cash keep their current values.

        Raises:
            NotAuthorized: Not a participant, or waiting for the other party
            InvalidState: Trade is no longer being negotiated
            Expired: Response deadline has passed (trade persisted as expired)
        """
        if action not in ("accept", "reject", "counter"):
            raise ValidationError("action", "Action must be one of: accept, reject, counter")
        ensure_valid(validate_text(message, "message"))

        trade = await self._get_for_participant(db, trade_id, actor_id)
        if trade.status not in NEGOTIATING_STATUSES:
            raise InvalidState(f"Trade is already {trade.status}")
        if actor_id == trade.current_proposer_id:
            raise NotAuthorized("Waiting for the other party to respond")
        await self._raise_if_overdue(db, trade)

        if action == "accept":
            return await self._accept(db, trade, actor_id, message)
        if action == "reject":
            return await self._reject(db, trade, actor_id, message)
        return await self._counter(
            db, trade, actor_id, initiator_items, receiver_items, cash_amount, cash_payer_id, message
        )

    def _set_message(self, trade: Trade, actor_id: str, message: Optional[str]) -> None:
        if message is None:
            return
        if actor_id == trade.initiator_id:
            trade.initiator_message = message
        else:
            trade.receiver_message = message

    async def _accept(self, db: AsyncSession, trade: Trade, actor_id: str, message: Optional[str]) -> Trade:
        now = self.clock()
        async with transaction(db):
            self._transition(trade, TradeStatus.ACCEPTED)
            trade.accepted_at = now
            trade.updated_at = now
            self._set_message(trade, actor_id, message)
            await db.flush()

            if trade.has_cash_leg:
                self._transition(trade, TradeStatus.PAYMENT_PENDING)
                trade.payment_deadline = now + timedelta(hours=settings.TRADE_PAYMENT_DEADLINE_HOURS)
                trade.cash_payment = TradeCashPayment(
                    payer_id=trade.cash_payer_id,
                    recipient_id=trade.cash_recipient_id,
                    amount=trade.cash_amount,
                    commission=trade.cash_commission,
                    total_amount=trade.cash_amount + trade.cash_commission,
                    status=CashPaymentStatus.PENDING.value,
                    failed_attempts=0,
                    created_at=now,
                )
            else:
                self._start_shipping(trade, now)
            log_activity(db, "trade_accepted", "trade", trade.id, actor_id, _trade_payload(trade))

        logger.info(f"Trade {trade.trade_number} accepted, now {trade.status}")
        await self._notify([trade.counterparty_of(actor_id)], "trade_accepted", trade)
        return trade

    async def _reject(self, db: AsyncSession, trade: Trade, actor_id: str, message: Optional[str]) -> Trade:
        now = self.clock()
        async with transaction(db):
            self._set_message(trade, actor_id, message)
            released = await self._close_negotiation(db, trade, TradeStatus.REJECTED, now)
            log_activity(db, "trade_rejected", "trade", trade.id, actor_id, _trade_payload(trade))
        await item_locks.unlock_in_catalog(self.catalog, released)

        logger.info(f"Trade {trade.trade_number} rejected")
        await self._notify([trade.counterparty_of(actor_id)], "trade_rejected", trade)
        return trade

    async def _counter(
        self,
        db: AsyncSession,
        trade: Trade,
        actor_id: str,
        initiator_items: Optional[Sequence[TradeItemIn]],
        receiver_items: Optional[Sequence[TradeItemIn]],
        cash_amount: Optional[MoneyInput],
        cash_payer_id: Optional[str],
        message: Optional[str],
    ) -> Trade:
        if initiator_items is None:
            initiator_items = [TradeItemIn(product_id=i.product_id, quantity=i.quantity) for i in trade.initiator_items]
        if receiver_items is None:
            receiver_items = [TradeItemIn(product_id=i.product_id, quantity=i.quantity) for i in trade.receiver_items]
        if cash_amount is None and cash_payer_id is None:
            cash_amount, cash_payer_id = trade.cash_amount, trade.cash_payer_id
        elif cash_payer_id is None:
            cash_payer_id = trade.cash_payer_id

        ensure_valid(
            validate_item_sets(initiator_items, receiver_items),
            validate_cash_leg(cash_amount, cash_payer_id, trade.initiator_id, trade.receiver_id),
        )
        items = await self._validate_sides(trade.initiator_id, trade.receiver_id, initiator_items, receiver_items)
        await item_locks.ensure_unlocked(db, [item.product_id for item in items], LOCK_HOLDER, trade.id)

        cash = parse_money(cash_amount) if cash_amount is not None else Decimal(0)
        kept = {item.product_id for item in items}
        dropped = [item.product_id for item in trade.items if item.product_id not in kept]

        now = self.clock()
        acquired: List[str] = []
        try:
            async with transaction(db):
                self._transition(trade, TradeStatus.COUNTERED)
                trade.updated_at = now
                await db.flush()  # Version check before touching locks

                await item_locks.release(db, LOCK_HOLDER, trade.id, dropped)
                trade.items = items
                acquired = await item_locks.acquire(
                    db, self.catalog, LOCK_HOLDER, trade.id, self._lock_owners(trade, items)
                )

                # Commission is recomputed on the new amount with the rate frozen at proposal
                trade.cash_amount = cash if cash > 0 else None
                trade.cash_payer_id = cash_payer_id if cash > 0 else None
                trade.cash_commission = commission(cash, trade.commission_rate) if cash > 0 else None

                trade.current_proposer_id = actor_id
                trade.response_deadline = now + timedelta(hours=settings.TRADE_RESPONSE_DEADLINE_HOURS)
                self._set_message(trade, actor_id, message)
                log_activity(db, "trade_countered", "trade", trade.id, actor_id, {
                    **_trade_payload(trade),
                    "items": sorted(kept),
                    "released": dropped,
                })
        except Exception:
            await item_locks.unlock_in_catalog(self.catalog, acquired)
            raise

        await item_locks.unlock_in_catalog(self.catalog, dropped)
        logger.info(f"Trade {trade.trade_number} countered by {actor_id}")
        await self._notify([trade.counterparty_of(actor_id)], "trade_countered", trade)
        return trade

    async def cancel_trade(self, db: AsyncSession, trade_id: str, actor_id: str, reason: str) -> Trade:
        """Either participant withdraws from a trade that has not been accepted yet."""
        ensure_valid(validate_text(reason, "reason", required=True))
        trade = await self._get_for_participant(db, trade_id, actor_id)
        if trade.status not in NEGOTIATING_STATUSES:
            raise InvalidState("A trade can only be cancelled before it is accepted")
        await self._raise_if_overdue(db, trade)

        now = self.clock()
        async with transaction(db):
            released = await self._close_negotiation(db, trade, TradeStatus.CANCELLED, now, reason=reason)
            log_activity(db, "trade_cancelled", "trade", trade.id, actor_id, {
                **_trade_payload(trade),
                "reason": reason,
            })
        await item_locks.unlock_in_catalog(self.catalog, released)

        logger.info(f"Trade {trade.trade_number} cancelled by {actor_id}")
        await self._notify([trade.counterparty_of(actor_id)], "trade_cancelled", trade)
        return trade

    # ------------------------------------------------------------------
    # Fulfilment
    # ------------------------------------------------------------------

    async def record_cash_payment(self, db: AsyncSession, trade_id: str, payer_id: str) -> Trade:
        """
        Collect the cash differential into escrow.

        The hold is placed and saved first, so a retry after a failed capture
        reuses it instead of holding the payer's funds twice. Saving the hold
        is version-checked: when two attempts race, the one that loses voids
        its own hold.

        Raises:
            WrongPhase: Trade is not waiting for payment
            NotAuthorized: Caller is not the cash payer
            ConcurrentModification: Another payment attempt stored its hold first
            DependencyFailure: Hold or capture failed; trade stays in payment_pending
        """
        trade = await self._get_for_participant(db, trade_id, payer_id)
        self._require_phase(trade, TradeStatus.PAYMENT_PENDING, "This trade is not waiting for payment")
        if payer_id != trade.cash_payer_id:
            raise NotAuthorized("Only the cash payer can pay for this trade")
        await self._raise_if_overdue(db, trade)

        payment = trade.cash_payment
        try:
            if not payment.hold_id:
                hold_id = await call_dependency(
                    "payments", self.payments.hold_funds(payer_id, payment.total_amount)
                )
                try:
                    async with transaction(db):
                        payment.hold_id = hold_id
                except ConcurrentModification:
                    await self._void_hold(trade_id, hold_id)
                    raise

            now = self.clock()
            async with transaction(db):
                payment.status = CashPaymentStatus.HELD.value
                payment.paid_at = now
                payment.failure_reason = None
                self._start_shipping(trade, now)
                trade.updated_at = now
                log_activity(db, "trade_paid", "trade", trade.id, payer_id, {
                    **_trade_payload(trade),
                    "total_amount": str(payment.total_amount),
                })
                await db.flush()
                await call_dependency("payments", self.payments.capture_funds(payment.hold_id))
        except DependencyFailure as e:
            await self._record_payment_failure(db, trade_id, payer_id, e.message)
            raise

        logger.info(f"Trade {trade.trade_number} cash leg held: {payment.total_amount}")
        await self._notify([trade.cash_recipient_id], "trade_paid", trade)
        return trade

    async def _void_hold(self, trade_id: str, hold_id: str) -> None:
        try:
            await call_dependency("payments", self.payments.refund_funds(hold_id))
        except DependencyFailure:
            logger.error(f"Could not void duplicate hold {hold_id} for trade {trade_id}", exc_info=True)
        else:
            logger.warning(f"Voided duplicate hold {hold_id} for trade {trade_id}")

    async def _record_payment_failure(self, db: AsyncSession, trade_id: str, payer_id: str, reason: str) -> None:
        trade = await self._get(db, trade_id)
        payment = trade.cash_payment
        async with transaction(db):
            payment.failure_reason = reason
            payment.failed_attempts += 1
            log_activity(db, "trade_payment_failed", "trade", trade.id, payer_id, {
                **_trade_payload(trade),
                "failed_attempts": payment.failed_attempts,
            })
        logger.warning(f"Payment for trade {trade.trade_number} failed (attempt {payment.failed_attempts}): {reason}")
        await self._notify([payer_id], "trade_payment_failed", trade)

    async def mark_shipped(
        self,
        db: AsyncSession,
        trade_id: str,
        shipper_id: str,
        carrier: str,
        tracking_number: Optional[str] = None,
    ) -> Trade:
        """
        Mark the caller's items as shipped.

        When both sides have shipped the trade waits for confirmation.
        """
        ensure_valid(
            validate_text(carrier, "carrier", max_length=50, required=True),
            validate_text(tracking_number, "tracking_number", max_length=100),
        )
        trade = await self._get_for_participant(db, trade_id, shipper_id)
        self._require_phase(trade, TradeStatus.SHIPPING_PENDING, "This trade is not waiting for shipment")
        shipment = trade.shipment_from(shipper_id)
        if shipment.status != ShipmentStatus.NOT_SHIPPED.value:
            raise InvalidState("You have already marked your items as shipped")

        now = self.clock()
        async with transaction(db):
            shipment.status = ShipmentStatus.SHIPPED.value
            shipment.carrier = carrier
            shipment.tracking_number = tracking_number
            shipment.shipped_at = now
            trade.updated_at = now
            if all(s.status != ShipmentStatus.NOT_SHIPPED.value for s in trade.shipments):
                self._transition(trade, TradeStatus.CONFIRMATION_PENDING)
                trade.confirmation_deadline = now + timedelta(days=settings.TRADE_CONFIRMATION_DEADLINE_DAYS)
            log_activity(db, "trade_shipped", "trade", trade.id, shipper_id, {
                **_trade_payload(trade),
                "carrier": carrier,
                "tracking_number": tracking_number,
            })

        logger.info(f"Trade {trade.trade_number}: {shipper_id} shipped via {carrier}")
        await self._notify([trade.counterparty_of(shipper_id)], "trade_shipped", trade)
        return trade

    async def record_delivery(self, db: AsyncSession, trade_id: str, shipper_id: str) -> Trade:
        """Carrier reported that the shipper's parcel was delivered."""
        trade = await self._get(db, trade_id)
        if trade.status not in (TradeStatus.SHIPPING_PENDING.value, TradeStatus.CONFIRMATION_PENDING.value):
            raise WrongPhase("This trade has no shipment in transit")
        shipment = trade.shipment_from(shipper_id)
        if shipment is None:
            raise NotFound("Shipment not found")
        if shipment.status != ShipmentStatus.SHIPPED.value:
            raise InvalidState(f"Shipment is {shipment.status}")

        now = self.clock()
        async with transaction(db):
            shipment.status = ShipmentStatus.DELIVERED.value
            shipment.delivered_at = now
            trade.updated_at = now
            log_activity(db, "trade_delivered", "trade", trade.id, None, {
                **_trade_payload(trade),
                "shipper_id": shipper_id,
            })

        await self._notify([trade.counterparty_of(shipper_id)], "trade_delivered", trade)
        return trade

    async def confirm_receipt(self, db: AsyncSession, trade_id: str, confirmer_id: str) -> Trade:
        """
        Confirm the counterparty's items arrived.

        The second confirmation completes the trade and releases held cash in
        the same unit of work; a failed release leaves the trade unconfirmed.
        """
        trade = await self._get_for_participant(db, trade_id, confirmer_id)
        self._require_phase(trade, TradeStatus.CONFIRMATION_PENDING, "This trade is not waiting for confirmation")
        shipment = trade.shipment_from(trade.counterparty_of(confirmer_id))
        if shipment.status == ShipmentStatus.CONFIRMED.value:
            raise InvalidState("You have already confirmed receipt")

        now = self.clock()
        async with transaction(db):
            shipment.status = ShipmentStatus.CONFIRMED.value
            shipment.confirmed_at = now
            trade.updated_at = now
            completing = all(s.status == ShipmentStatus.CONFIRMED.value for s in trade.shipments)
            if completing:
                self._transition(trade, TradeStatus.COMPLETED)
                trade.completed_at = now
            log_activity(db, "trade_confirmed", "trade", trade.id, confirmer_id, _trade_payload(trade))
            if completing:
                await db.flush()
                await self._release_cash(db, trade, now)

        if trade.status == TradeStatus.COMPLETED.value:
            logger.info(f"Trade {trade.trade_number} completed")
            await self._notify((trade.initiator_id, trade.receiver_id), "trade_completed", trade)
        else:
            await self._notify([trade.counterparty_of(confirmer_id)], "trade_confirmed", trade)
        return trade

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def raise_dispute(
        self,
        db: AsyncSession,
        trade_id: str,
        raised_by_id: str,
        reason: str,
        description: str,
    ) -> Trade:
        """
        Open a dispute during fulfilment. Deadlines stop running until it is resolved.

        Allowed in shipping_pending and confirmation_pending, and in
        payment_pending once a payment attempt has failed.
        """
        ensure_valid(
            validate_dispute_reason(reason),
            validate_text(description, "description", max_length=DESCRIPTION_MAX_LENGTH, required=True),
        )
        trade = await self._get_for_participant(db, trade_id, raised_by_id)
        if trade.dispute is not None:
            raise InvalidState("A dispute has already been raised for this trade")

        payment_failed = (
            trade.status == TradeStatus.PAYMENT_PENDING.value
            and trade.cash_payment is not None
            and trade.cash_payment.failure_reason is not None
        )
        if trade.status not in (TradeStatus.SHIPPING_PENDING.value, TradeStatus.CONFIRMATION_PENDING.value) and not payment_failed:
            raise WrongPhase("Disputes can only be raised while the trade is being fulfilled")

        now = self.clock()
        async with transaction(db):
            self._open_dispute(trade, raised_by_id, reason, description, now)
            log_activity(db, "trade_disputed", "trade", trade.id, raised_by_id, {
                **_trade_payload(trade),
                "reason": reason,
            })

        logger.info(f"Trade {trade.trade_number} disputed by {raised_by_id}: {reason}")
        await self._notify([trade.counterparty_of(raised_by_id)], "trade_disputed", trade)
        return trade

    async def resolve_dispute(
        self,
        db: AsyncSession,
        trade_id: str,
        resolution: str,
        outcome: str,
        resolved_by_id: Optional[str] = None,
    ) -> Trade:
        """
        Apply an arbitration decision.

        "complete" finishes the trade and releases held cash; "cancel" refunds
        it and frees the items. The payout or refund is the last step before
        commit; catalog unlocks follow the commit.
        """
        if outcome not in (DisputeOutcome.COMPLETE.value, DisputeOutcome.CANCEL.value):
            raise ValidationError("outcome", "Outcome must be one of: complete, cancel")
        ensure_valid(validate_text(resolution, "resolution", max_length=DESCRIPTION_MAX_LENGTH, required=True))

        trade = await self._get(db, trade_id)
        if trade.status != TradeStatus.DISPUTED.value:
            raise InvalidState("This trade is not in dispute")

        now = self.clock()
        released: List[str] = []
        async with transaction(db):
            dispute = trade.dispute
            dispute.resolution = resolution
            dispute.outcome = outcome
            dispute.resolved_by_id = resolved_by_id
            dispute.resolved_at = now
            trade.updated_at = now

            if outcome == DisputeOutcome.COMPLETE.value:
                self._transition(trade, TradeStatus.COMPLETED)
                trade.completed_at = now
            else:
                self._transition(trade, TradeStatus.CANCELLED)
                trade.cancelled_at = now
                trade.cancel_reason = resolution
                released = await item_locks.release(db, LOCK_HOLDER, trade.id)
            log_activity(db, "trade_dispute_resolved", "trade", trade.id, resolved_by_id, {
                **_trade_payload(trade),
                "outcome": outcome,
            })
            await db.flush()

            if outcome == DisputeOutcome.COMPLETE.value:
                await self._release_cash(db, trade, now)
            else:
                await self._unwind_cash(db, trade, now)
        await item_locks.unlock_in_catalog(self.catalog, released)

        logger.info(f"Trade {trade.trade_number} dispute resolved: {outcome}")
        await self._notify((trade.initiator_id, trade.receiver_id), "trade_dispute_resolved", trade)
        return trade

    # ------------------------------------------------------------------
    # Deadlines
    # ------------------------------------------------------------------

    async def expire_trades(self, db: AsyncSession, limit: Optional[int] = None) -> int:
        """
        Apply every elapsed phase deadline.

        Response deadline -> expired; payment deadline -> cancelled;
        shipping or confirmation deadline -> disputed. Each trade is handled in
        its own transaction and a trade that changed concurrently is skipped.

        Returns:
            Number of trades moved by this call
        """
        now = self.clock()
        result = await db.execute(
            select(Trade.id)
            .where(or_(
                and_(Trade.status.in_(NEGOTIATING_STATUSES), Trade.response_deadline < now),
                and_(Trade.status == TradeStatus.PAYMENT_PENDING.value, Trade.payment_deadline < now),
                and_(Trade.status == TradeStatus.SHIPPING_PENDING.value, Trade.shipping_deadline < now),
                and_(Trade.status == TradeStatus.CONFIRMATION_PENDING.value, Trade.confirmation_deadline < now),
            ))
            .limit(limit or settings.SCHEDULER_BATCH_SIZE)
        )
        trade_ids = list(result.scalars().all())

        moved = 0
        for trade_id in trade_ids:
            trade = await self._get(db, trade_id)
            due = trade.due_at
            if due is None or due >= now:
                continue
            try:
                async with transaction(db):
                    event_type, released = await self._expire_phase(db, trade, now)
            except ConcurrentModification:
                logger.info(f"Trade {trade_id} changed while expiring, skipped")
                continue
            except DependencyFailure:
                logger.error(f"Could not apply deadline to trade {trade_id}, will retry", exc_info=True)
                continue
            moved += 1
            await item_locks.unlock_in_catalog(self.catalog, released)
            await self._notify((trade.initiator_id, trade.receiver_id), event_type, trade)

        if moved:
            logger.info(f"Applied deadlines to {moved} trade(s)")
        return moved

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_trade(self, db: AsyncSession, trade_id: str, user_id: str) -> Trade:
        return await self._get_for_participant(db, trade_id, user_id)

    async def list_trades(
        self,
        db: AsyncSession,
        user_id: str,
        role: str = "all",
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Trade], int]:
        """
        List trades the user takes part in.

        Args:
            role: "initiator", "receiver" or "all"

        Returns:
            (trades on the requested page, total matching)
        """
        if role == "initiator":
            query = select(Trade).where(Trade.initiator_id == user_id)
        elif role == "receiver":
            query = select(Trade).where(Trade.receiver_id == user_id)
        elif role == "all":
            query = select(Trade).where(or_(Trade.initiator_id == user_id, Trade.receiver_id == user_id))
        else:
            raise ValidationError("role", "Role must be one of: initiator, receiver, all")

        if status:
            query = query.where(Trade.status == status)

        total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()

        page = max(page, 1)
        query = query.order_by(Trade.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
        result = await db.execute(query)
        return list(result.scalars().all()), total
