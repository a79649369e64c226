"""Tests for the trade engine: negotiation, cash leg, fulfilment and disputes."""

import asyncio
import re
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.config import settings
from app.core.errors import (
    ConcurrentModification,
    DependencyFailure,
    Expired,
    InvalidState,
    ItemLocked,
    NotAuthorized,
    NotFound,
    ValidationError,
    WrongPhase,
)
from app.models.commission_rule import CommissionRule
from app.models.item_lock import ItemLock
from app.services import item_locks
from app.services.trade_engine import DEADLINE_DISPUTE_REASON, generate_trade_number

from fakes import ALICE, BOB, items


async def propose(trade_engine, db, **kwargs):
    """Alice offers her jacket for Bob's boots unless told otherwise."""
    params = {
        "initiator_id": ALICE,
        "receiver_id": BOB,
        "initiator_items": items("prod-jacket"),
        "receiver_items": items("prod-boots"),
    }
    params.update(kwargs)
    return await trade_engine.propose_trade(db, **params)


async def locked_products(db):
    result = await db.execute(select(ItemLock.product_id))
    return set(result.scalars().all())


async def ship_both(trade_engine, db, trade):
    await trade_engine.mark_shipped(db, trade.id, ALICE, "yurtici", "YK-1")
    return await trade_engine.mark_shipped(db, trade.id, BOB, "aras", "AR-2")


def test_trade_number_format(clock):
    number = generate_trade_number(clock.now)
    assert re.fullmatch(r"TRD-[0-9A-Z]+-[0-9A-Z]{4}", number)


@pytest.mark.asyncio
async def test_propose_trade_locks_all_items(db, trade_engine, catalog, notifier, clock):
    trade = await propose(
        trade_engine, db,
        initiator_items=items("prod-jacket", "prod-watch"),
        message="Jacket and watch for your boots?",
    )

    assert trade.status == "proposed"
    assert trade.current_proposer_id == ALICE
    assert trade.waiting_for == BOB
    assert trade.response_deadline == clock.now + timedelta(hours=settings.TRADE_RESPONSE_DEADLINE_HOURS)
    assert trade.cash_amount is None
    assert {(i.product_id, i.side) for i in trade.items} == {
        ("prod-jacket", "initiator"),
        ("prod-watch", "initiator"),
        ("prod-boots", "receiver"),
    }
    values = {i.product_id: i.value_at_trade for i in trade.items}
    assert values["prod-boots"] == Decimal("250.00")

    assert await locked_products(db) == {"prod-jacket", "prod-watch", "prod-boots"}
    assert catalog.locked == {"prod-jacket", "prod-watch", "prod-boots"}
    assert notifier.events_for(BOB) == ["trade_proposed"]


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides, field", [
    ({"receiver_id": ALICE}, "receiver_id"),
    ({"initiator_items": []}, "initiator_items"),
    ({"receiver_items": []}, "receiver_items"),
    ({"receiver_items": items("prod-boots", "prod-boots")}, "receiver_items"),
    ({"initiator_items": items("prod-bag")}, "initiator_items"),
    ({"receiver_items": items("prod-watch")}, "receiver_items"),
    ({"receiver_items": items("prod-camera")}, "receiver_items"),
    ({"receiver_items": items("prod-missing")}, "receiver_items"),
    ({"cash_amount": "10.00", "cash_payer_id": "user-stranger"}, "cash_payer_id"),
    ({"cash_amount": "-5"}, "cash_amount"),
    ({"cash_payer_id": ALICE}, "cash_payer_id"),
])
async def test_propose_trade_validation(db, trade_engine, catalog, overrides, field):
    with pytest.raises(ValidationError) as exc_info:
        await propose(trade_engine, db, **overrides)

    assert exc_info.value.field == field
    assert catalog.locked == set()
    assert await locked_products(db) == set()


@pytest.mark.asyncio
async def test_items_cannot_be_in_two_open_trades(db, trade_engine):
    await propose(trade_engine, db)

    with pytest.raises(ItemLocked):
        await propose(trade_engine, db, receiver_items=items("prod-bag"))

    # Unrelated items are still free
    other = await propose(
        trade_engine, db,
        initiator_items=items("prod-watch"),
        receiver_items=items("prod-bag"),
    )
    assert other.status == "proposed"


@pytest.mark.asyncio
async def test_catalog_lock_failure_rolls_back_proposal(db, trade_engine, catalog):
    catalog.fail_lock = True

    with pytest.raises(DependencyFailure):
        await propose(trade_engine, db)

    trades, total = await trade_engine.list_trades(db, ALICE)
    assert total == 0
    assert await locked_products(db) == set()


@pytest.mark.asyncio
async def test_cash_leg_commission(db, trade_engine):
    """Cash 50.00 at the default 5%: commission 2.50, payer charged 52.50."""
    trade = await propose(trade_engine, db, cash_amount="50.00", cash_payer_id=ALICE)

    assert trade.cash_amount == Decimal("50.00")
    assert trade.cash_commission == Decimal("2.50")
    assert trade.commission_rate == Decimal("0.05")
    assert trade.cash_recipient_id == BOB

    trade = await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")

    assert trade.status == "payment_pending"
    assert trade.payment_deadline is not None
    assert trade.cash_payment.payer_id == ALICE
    assert trade.cash_payment.recipient_id == BOB
    assert trade.cash_payment.total_amount == Decimal("52.50")
    assert trade.cash_payment.status == "pending"


@pytest.mark.asyncio
async def test_zero_cash_means_no_cash_leg(db, trade_engine):
    trade = await propose(trade_engine, db, cash_amount="0")
    assert trade.cash_amount is None

    trade = await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")
    assert trade.status == "shipping_pending"
    assert trade.cash_payment is None


@pytest.mark.asyncio
async def test_commission_rate_frozen_at_proposal(db, trade_engine):
    trade = await propose(trade_engine, db, cash_amount="50.00", cash_payer_id=ALICE)

    db.add(CommissionRule(name="Flat 10%", percentage=Decimal("10.00"), min_amount=Decimal("0")))
    await db.commit()

    trade = await trade_engine.respond_to_trade(db, trade.id, BOB, "counter", cash_amount="100.00")

    assert trade.cash_amount == Decimal("100.00")
    assert trade.cash_payer_id == ALICE
    assert trade.cash_commission == Decimal("5.00")

    # A new trade picks up the new rule
    fresh = await propose(
        trade_engine, db,
        initiator_items=items("prod-watch"),
        receiver_items=items("prod-bag"),
        cash_amount="100.00",
        cash_payer_id=ALICE,
    )
    assert fresh.cash_commission == Decimal("10.00")


@pytest.mark.asyncio
async def test_counter_swaps_items_and_turn(db, trade_engine, catalog, notifier):
    trade = await propose(trade_engine, db, initiator_items=items("prod-jacket", "prod-watch"))

    # Alice proposed, so she cannot answer her own proposal
    with pytest.raises(NotAuthorized):
        await trade_engine.respond_to_trade(db, trade.id, ALICE, "accept")

    trade = await trade_engine.respond_to_trade(
        db, trade.id, BOB, "counter",
        initiator_items=items("prod-jacket"),
        receiver_items=items("prod-boots", "prod-bag"),
        message="Keep the watch, I'll add the bag",
    )

    assert trade.status == "countered"
    assert trade.current_proposer_id == BOB
    assert trade.waiting_for == ALICE
    assert trade.receiver_message == "Keep the watch, I'll add the bag"
    assert {i.product_id for i in trade.items} == {"prod-jacket", "prod-boots", "prod-bag"}
    assert await locked_products(db) == {"prod-jacket", "prod-boots", "prod-bag"}
    assert catalog.locked == {"prod-jacket", "prod-boots", "prod-bag"}
    assert "trade_countered" in notifier.events_for(ALICE)

    trade = await trade_engine.respond_to_trade(db, trade.id, ALICE, "accept")
    assert trade.status == "shipping_pending"


@pytest.mark.asyncio
async def test_counter_cannot_use_items_locked_elsewhere(db, trade_engine):
    trade = await propose(trade_engine, db)
    await propose(
        trade_engine, db,
        initiator_items=items("prod-watch"),
        receiver_items=items("prod-bag"),
    )

    with pytest.raises(ItemLocked):
        await trade_engine.respond_to_trade(
            db, trade.id, BOB, "counter", receiver_items=items("prod-boots", "prod-bag"),
        )


@pytest.mark.asyncio
async def test_reject_releases_items(db, trade_engine, catalog):
    trade = await propose(trade_engine, db)

    trade = await trade_engine.respond_to_trade(db, trade.id, BOB, "reject", message="Not interested")

    assert trade.status == "rejected"
    assert await locked_products(db) == set()
    assert catalog.locked == set()

    # Terminal states are absorbing
    with pytest.raises(InvalidState):
        await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")
    with pytest.raises(InvalidState):
        await trade_engine.cancel_trade(db, trade.id, ALICE, "Changed my mind")


@pytest.mark.asyncio
async def test_cancel_before_acceptance_only(db, trade_engine, catalog):
    trade = await propose(trade_engine, db)

    with pytest.raises(ValidationError):
        await trade_engine.cancel_trade(db, trade.id, ALICE, "")
    with pytest.raises(NotAuthorized):
        await trade_engine.cancel_trade(db, trade.id, "user-stranger", "Spam")

    trade = await trade_engine.cancel_trade(db, trade.id, ALICE, "Found another jacket")
    assert trade.status == "cancelled"
    assert trade.cancel_reason == "Found another jacket"
    assert catalog.locked == set()

    accepted = await propose(trade_engine, db)
    await trade_engine.respond_to_trade(db, accepted.id, BOB, "accept")
    with pytest.raises(InvalidState):
        await trade_engine.cancel_trade(db, accepted.id, ALICE, "Too late")


@pytest.mark.asyncio
async def test_response_after_deadline_expires_trade(db, trade_engine, clock, catalog):
    trade = await propose(trade_engine, db)
    clock.advance(hours=settings.TRADE_RESPONSE_DEADLINE_HOURS, seconds=1)

    with pytest.raises(Expired):
        await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")

    trade = await trade_engine.get_trade(db, trade.id, ALICE)
    assert trade.status == "expired"
    assert catalog.locked == set()


@pytest.mark.asyncio
async def test_full_trade_with_cash_completes(db, trade_engine, payments, catalog, notifier):
    """Propose with cash, accept, pay, ship both ways, confirm both ways."""
    trade = await propose(trade_engine, db, cash_amount="50.00", cash_payer_id=ALICE)
    trade = await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")

    with pytest.raises(NotAuthorized):
        await trade_engine.record_cash_payment(db, trade.id, BOB)

    trade = await trade_engine.record_cash_payment(db, trade.id, ALICE)
    assert trade.status == "shipping_pending"
    assert trade.cash_payment.status == "held"
    assert payments.holds["hold-1"]["amount"] == Decimal("52.50")
    assert payments.holds["hold-1"]["state"] == "captured"
    assert {s.shipper_id for s in trade.shipments} == {ALICE, BOB}

    trade = await trade_engine.mark_shipped(db, trade.id, ALICE, "yurtici", "YK-1")
    assert trade.status == "shipping_pending"
    with pytest.raises(InvalidState):
        await trade_engine.mark_shipped(db, trade.id, ALICE, "yurtici", "YK-1")

    trade = await trade_engine.mark_shipped(db, trade.id, BOB, "aras", "AR-2")
    assert trade.status == "confirmation_pending"
    assert trade.confirmation_deadline is not None

    trade = await trade_engine.confirm_receipt(db, trade.id, ALICE)
    assert trade.status == "confirmation_pending"
    with pytest.raises(InvalidState):
        await trade_engine.confirm_receipt(db, trade.id, ALICE)

    trade = await trade_engine.confirm_receipt(db, trade.id, BOB)
    assert trade.status == "completed"
    assert trade.completed_at is not None
    assert trade.cash_payment.status == "released"
    assert payments.holds["hold-1"]["state"] == "released"
    assert payments.holds["hold-1"]["recipient_id"] == BOB
    assert "trade_completed" in notifier.events_for(ALICE)
    assert "trade_completed" in notifier.events_for(BOB)

    # Completed trades are final
    with pytest.raises(InvalidState):
        await trade_engine.raise_dispute(db, trade.id, ALICE, "damaged", "Scratched")


@pytest.mark.asyncio
async def test_fulfilment_steps_require_their_phase(db, trade_engine):
    trade = await propose(trade_engine, db)

    with pytest.raises(WrongPhase):
        await trade_engine.mark_shipped(db, trade.id, ALICE, "yurtici")
    with pytest.raises(WrongPhase):
        await trade_engine.record_cash_payment(db, trade.id, ALICE)

    trade = await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")
    with pytest.raises(WrongPhase):
        await trade_engine.confirm_receipt(db, trade.id, ALICE)
    # No cash leg, nothing to pay
    with pytest.raises(WrongPhase):
        await trade_engine.record_cash_payment(db, trade.id, ALICE)


@pytest.mark.asyncio
async def test_failed_capture_keeps_payment_pending(db, trade_engine, payments):
    trade = await propose(trade_engine, db, cash_amount="50.00", cash_payer_id=ALICE)
    await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")

    payments.fail_on = {"capture"}
    with pytest.raises(DependencyFailure):
        await trade_engine.record_cash_payment(db, trade.id, ALICE)

    trade = await trade_engine.get_trade(db, trade.id, ALICE)
    assert trade.status == "payment_pending"
    assert trade.shipments == []
    assert trade.cash_payment.status == "pending"
    assert trade.cash_payment.failed_attempts == 1
    assert trade.cash_payment.failure_reason
    assert trade.cash_payment.hold_id == "hold-1"

    # Retry reuses the hold instead of placing a second one
    payments.fail_on = set()
    trade = await trade_engine.record_cash_payment(db, trade.id, ALICE)
    assert trade.status == "shipping_pending"
    assert len(payments.holds) == 1
    assert [c for c in payments.calls if c[0] == "hold"] == [("hold", "hold-1")]


@pytest.mark.asyncio
async def test_failed_hold_allows_payment_dispute(db, trade_engine, payments):
    trade = await propose(trade_engine, db, cash_amount="50.00", cash_payer_id=ALICE)
    await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")

    # Nothing has failed yet
    with pytest.raises(WrongPhase):
        await trade_engine.raise_dispute(db, trade.id, BOB, "payment_failed", "Never paid")

    payments.fail_on = {"hold"}
    with pytest.raises(DependencyFailure):
        await trade_engine.record_cash_payment(db, trade.id, ALICE)

    trade = await trade_engine.raise_dispute(db, trade.id, BOB, "payment_failed", "Payment keeps failing")
    assert trade.status == "disputed"
    assert trade.disputed_from == "payment_pending"
    assert trade.due_at is None


@pytest.mark.asyncio
async def test_payment_deadline_cancels_trade(db, trade_engine, clock, catalog):
    trade = await propose(trade_engine, db, cash_amount="50.00", cash_payer_id=ALICE)
    await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")
    clock.advance(hours=settings.TRADE_PAYMENT_DEADLINE_HOURS, seconds=1)

    with pytest.raises(Expired):
        await trade_engine.record_cash_payment(db, trade.id, ALICE)

    trade = await trade_engine.get_trade(db, trade.id, ALICE)
    assert trade.status == "cancelled"
    assert trade.cash_payment.status == "cancelled"
    assert catalog.locked == set()


@pytest.mark.asyncio
async def test_shipping_deadline_opens_dispute(db, trade_engine, clock, notifier):
    """Alice ships, Bob never does: the deadline turns the trade into a dispute."""
    trade = await propose(trade_engine, db)
    await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")
    await trade_engine.mark_shipped(db, trade.id, ALICE, "yurtici", "YK-1")

    clock.advance(days=settings.TRADE_SHIPPING_DEADLINE_DAYS, seconds=1)

    assert await trade_engine.expire_trades(db) == 1
    assert await trade_engine.expire_trades(db) == 0

    trade = await trade_engine.get_trade(db, trade.id, ALICE)
    assert trade.status == "disputed"
    assert trade.disputed_from == "shipping_pending"
    assert trade.dispute.reason == DEADLINE_DISPUTE_REASON
    assert trade.dispute.raised_by_id is None
    assert trade.due_at is None
    assert "trade_disputed" in notifier.events_for(BOB)


@pytest.mark.asyncio
async def test_expire_trades_applies_each_phase(db, trade_engine, clock):
    negotiating = await propose(trade_engine, db)
    clock.advance(hours=30)
    unpaid = await propose(
        trade_engine, db,
        initiator_items=items("prod-watch"),
        receiver_items=items("prod-bag"),
        cash_amount="20.00",
        cash_payer_id=BOB,
    )
    await trade_engine.respond_to_trade(db, unpaid.id, BOB, "accept")

    # First proposal is past its response deadline, the payment deadline is still ahead
    clock.advance(hours=settings.TRADE_RESPONSE_DEADLINE_HOURS - 30, seconds=1)
    assert await trade_engine.expire_trades(db) == 1

    negotiating = await trade_engine.get_trade(db, negotiating.id, ALICE)
    unpaid = await trade_engine.get_trade(db, unpaid.id, ALICE)
    assert negotiating.status == "expired"
    assert unpaid.status == "payment_pending"

    clock.advance(hours=settings.TRADE_PAYMENT_DEADLINE_HOURS)
    assert await trade_engine.expire_trades(db) == 1

    unpaid = await trade_engine.get_trade(db, unpaid.id, BOB)
    assert unpaid.status == "cancelled"
    assert unpaid.cash_payment.status == "cancelled"


@pytest.mark.asyncio
async def test_dispute_during_fulfilment(db, trade_engine, notifier):
    trade = await propose(trade_engine, db)

    with pytest.raises(WrongPhase):
        await trade_engine.raise_dispute(db, trade.id, BOB, "damaged", "Too early")

    await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")
    await ship_both(trade_engine, db, trade)

    with pytest.raises(ValidationError):
        await trade_engine.raise_dispute(db, trade.id, BOB, "bad_vibes", "Did not like it")
    with pytest.raises(ValidationError):
        await trade_engine.raise_dispute(db, trade.id, BOB, "damaged", "")
    with pytest.raises(NotAuthorized):
        await trade_engine.raise_dispute(db, trade.id, "user-stranger", "damaged", "Not mine")

    trade = await trade_engine.raise_dispute(db, trade.id, BOB, "not_as_described", "The jacket is torn")
    assert trade.status == "disputed"
    assert trade.disputed_from == "confirmation_pending"
    assert trade.dispute.raised_by_id == BOB
    assert "trade_disputed" in notifier.events_for(ALICE)

    with pytest.raises(InvalidState):
        await trade_engine.raise_dispute(db, trade.id, ALICE, "damaged", "Boots too")
    with pytest.raises(WrongPhase):
        await trade_engine.confirm_receipt(db, trade.id, ALICE)


@pytest.mark.asyncio
async def test_resolve_dispute_cancel_refunds_and_unlocks(db, trade_engine, payments, catalog):
    trade = await propose(trade_engine, db, cash_amount="50.00", cash_payer_id=ALICE)
    await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")
    await trade_engine.record_cash_payment(db, trade.id, ALICE)
    await trade_engine.raise_dispute(db, trade.id, ALICE, "not_received", "Boots never shipped")

    with pytest.raises(ValidationError):
        await trade_engine.resolve_dispute(db, trade.id, "Refund", "split")

    trade = await trade_engine.resolve_dispute(
        db, trade.id, "Seller never shipped, refund the buyer", "cancel", resolved_by_id="arbiter-1"
    )

    assert trade.status == "cancelled"
    assert trade.dispute.outcome == "cancel"
    assert trade.dispute.resolved_by_id == "arbiter-1"
    assert trade.dispute.resolved_at is not None
    assert trade.cash_payment.status == "refunded"
    assert payments.holds["hold-1"]["state"] == "refunded"
    assert await locked_products(db) == set()
    assert catalog.locked == set()

    with pytest.raises(InvalidState):
        await trade_engine.resolve_dispute(db, trade.id, "Again", "complete")


@pytest.mark.asyncio
async def test_resolve_dispute_complete_releases_cash(db, trade_engine, payments):
    trade = await propose(trade_engine, db, cash_amount="50.00", cash_payer_id=ALICE)
    await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")
    await trade_engine.record_cash_payment(db, trade.id, ALICE)
    await ship_both(trade_engine, db, trade)
    await trade_engine.raise_dispute(db, trade.id, ALICE, "damaged", "Sole is loose")

    trade = await trade_engine.resolve_dispute(db, trade.id, "Damage is cosmetic", "complete")

    assert trade.status == "completed"
    assert trade.cash_payment.status == "released"
    assert payments.holds["hold-1"]["recipient_id"] == BOB


@pytest.mark.asyncio
async def test_record_delivery(db, trade_engine):
    trade = await propose(trade_engine, db)
    await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")

    with pytest.raises(InvalidState):
        await trade_engine.record_delivery(db, trade.id, ALICE)

    await trade_engine.mark_shipped(db, trade.id, ALICE, "yurtici", "YK-1")
    trade = await trade_engine.record_delivery(db, trade.id, ALICE)
    assert trade.shipment_from(ALICE).status == "delivered"

    with pytest.raises(NotFound):
        await trade_engine.record_delivery(db, trade.id, "user-stranger")

    # A delivered parcel still counts as shipped
    trade = await trade_engine.mark_shipped(db, trade.id, BOB, "aras")
    assert trade.status == "confirmation_pending"


@pytest.mark.asyncio
async def test_get_and_list_trades(db, trade_engine):
    first = await propose(trade_engine, db)
    await propose(
        trade_engine, db,
        initiator_id=BOB,
        receiver_id=ALICE,
        initiator_items=items("prod-bag"),
        receiver_items=items("prod-watch"),
    )

    started, total = await trade_engine.list_trades(db, ALICE, role="initiator")
    assert total == 1
    assert started[0].id == first.id

    everything, total = await trade_engine.list_trades(db, ALICE)
    assert total == 2

    proposed, total = await trade_engine.list_trades(db, BOB, status="proposed", role="receiver")
    assert total == 1

    with pytest.raises(ValidationError):
        await trade_engine.list_trades(db, ALICE, role="observer")
    with pytest.raises(NotAuthorized):
        await trade_engine.get_trade(db, first.id, "user-stranger")
    with pytest.raises(NotFound):
        await trade_engine.get_trade(db, "no-such-trade", ALICE)


@pytest.mark.asyncio
async def test_cancel_resolution_survives_catalog_unlock_failure(db, trade_engine, payments, catalog):
    trade = await propose(trade_engine, db, cash_amount="50.00", cash_payer_id=ALICE)
    await trade_engine.respond_to_trade(db, trade.id, BOB, "accept")
    await trade_engine.record_cash_payment(db, trade.id, ALICE)
    await trade_engine.raise_dispute(db, trade.id, ALICE, "not_received", "Boots never shipped")

    catalog.fail_unlock = True
    await trade_engine.resolve_dispute(db, trade.id, "Refund the buyer", "cancel")

    # The refund went out, so the engine must agree it did
    trade = await trade_engine.get_trade(db, trade.id, ALICE)
    assert trade.status == "cancelled"
    assert trade.cash_payment.status == "refunded"
    assert payments.holds["hold-1"]["state"] == "refunded"
    assert await locked_products(db) == set()
    # Catalog side is left for cleanup
    assert catalog.locked == {"prod-jacket", "prod-boots"}


@pytest.mark.asyncio
async def test_failed_void_leaves_payment_deadline_for_retry(db, trade_engine, payments, catalog, clock):
    trade = await propose(trade_engine, db, cash_amount="50.00", cash_payer_id=ALICE)
    trade_id = trade.id
    await trade_engine.respond_to_trade(db, trade_id, BOB, "accept")
    payments.fail_on = {"capture"}
    with pytest.raises(DependencyFailure):
        await trade_engine.record_cash_payment(db, trade_id, ALICE)

    clock.advance(hours=settings.TRADE_PAYMENT_DEADLINE_HOURS, seconds=1)
    payments.fail_on = {"refund"}
    assert await trade_engine.expire_trades(db) == 0

    trade = await trade_engine.get_trade(db, trade_id, ALICE)
    assert trade.status == "payment_pending"
    assert trade.cash_payment.status == "pending"
    assert await locked_products(db) == {"prod-jacket", "prod-boots"}
    assert catalog.locked == {"prod-jacket", "prod-boots"}

    payments.fail_on = set()
    assert await trade_engine.expire_trades(db) == 1

    trade = await trade_engine.get_trade(db, trade_id, ALICE)
    assert trade.status == "cancelled"
    assert trade.cash_payment.status == "cancelled"
    assert payments.holds["hold-1"]["state"] == "refunded"
    assert catalog.locked == set()


@pytest.mark.asyncio
async def test_concurrent_payments_keep_a_single_hold(session_factory, trade_engine, payments):
    """Two payment attempts both reach the gateway; the one that saves second voids its hold."""
    async with session_factory() as setup:
        trade = await propose(trade_engine, setup, cash_amount="50.00", cash_payer_id=ALICE)
        await trade_engine.respond_to_trade(setup, trade.id, BOB, "accept")
        trade_id = trade.id

    gates = [asyncio.Event(), asyncio.Event()]
    arrived = []
    hold_funds = payments.hold_funds

    async def paused_hold(payer_id, amount):
        gate = gates[len(arrived)]
        arrived.append(payer_id)
        await gate.wait()
        return await hold_funds(payer_id, amount)

    payments.hold_funds = paused_hold

    async with session_factory() as first, session_factory() as second:
        attempts = [
            asyncio.create_task(trade_engine.record_cash_payment(first, trade_id, ALICE)),
            asyncio.create_task(trade_engine.record_cash_payment(second, trade_id, ALICE)),
        ]
        for _ in range(100):
            if len(arrived) == 2:
                break
            await asyncio.sleep(0.01)
        assert len(arrived) == 2

        # Both saw no hold; let one finish before the other stores its hold
        gates[0].set()
        await asyncio.wait(attempts, return_when=asyncio.FIRST_COMPLETED)
        gates[1].set()
        results = await asyncio.gather(*attempts, return_exceptions=True)

    assert sorted(type(r).__name__ for r in results) == ["ConcurrentModification", "Trade"]
    assert payments.holds["hold-1"]["state"] == "captured"
    assert payments.holds["hold-2"]["state"] == "refunded"
    live = [h for h in payments.holds.values() if h["state"] in ("held", "captured")]
    assert len(live) == 1

    async with session_factory() as check:
        trade = await trade_engine.get_trade(check, trade_id, ALICE)
        assert trade.status == "shipping_pending"
        assert trade.cash_payment.hold_id == "hold-1"
        assert trade.cash_payment.status == "held"


@pytest.mark.asyncio
async def test_concurrent_transitions_only_one_wins(session_factory, trade_engine, catalog):
    """Bob counters in one worker and accepts in another; the later write loses."""
    async with session_factory() as setup:
        trade = await propose(trade_engine, setup)
        trade_id = trade.id

    reached = asyncio.Event()
    resume = asyncio.Event()
    get_listing = catalog.get_listing

    async def paused_get_listing(product_id):
        reached.set()
        await resume.wait()
        return await get_listing(product_id)

    async with session_factory() as first, session_factory() as second:
        # The counter reads the proposed trade, then stalls on the catalog
        catalog.get_listing = paused_get_listing
        counter = asyncio.create_task(trade_engine.respond_to_trade(
            second, trade_id, BOB, "counter", cash_amount="20", cash_payer_id=ALICE
        ))
        await asyncio.wait_for(reached.wait(), timeout=1)
        catalog.get_listing = get_listing

        accepted = await trade_engine.respond_to_trade(first, trade_id, BOB, "accept")
        assert accepted.status == "shipping_pending"

        resume.set()
        with pytest.raises(ConcurrentModification):
            await counter

    async with session_factory() as check:
        trade = await trade_engine.get_trade(check, trade_id, ALICE)
        assert trade.status == "shipping_pending"
        assert trade.cash_amount is None
        assert await locked_products(check) == {"prod-jacket", "prod-boots"}


@pytest.mark.asyncio
async def test_lock_table_settles_a_stale_lock_check(session_factory, trade_engine, catalog, monkeypatch):
    """A proposal whose lock check read before the other's commit still cannot take the item."""
    async with session_factory() as first:
        await propose(trade_engine, first)

    async def nothing_locked_yet(db, product_ids):
        return {}

    monkeypatch.setattr(item_locks, "find_locked", nothing_locked_yet)

    async with session_factory() as second:
        with pytest.raises(ItemLocked):
            await propose(trade_engine, second, initiator_items=items("prod-watch"))

        trades, total = await trade_engine.list_trades(second, ALICE)
        assert total == 1
    assert catalog.locked == {"prod-jacket", "prod-boots"}
