"""Tests for commission calculation and rate resolution."""

from decimal import Decimal

import pytest

from app.config import settings
from app.models.commission_rule import CommissionRule
from app.services.commission import commission, resolve_rate


def test_commission_on_fifty_at_five_percent():
    """Cash 50 at 5% costs the payer 2.50 on top, 52.50 total."""
    fee = commission(Decimal("50"), Decimal("0.05"))

    assert fee == Decimal("2.50")
    assert Decimal("50") + fee == Decimal("52.50")


def test_commission_truncates_instead_of_rounding():
    # 33.33 * 5% = 1.6665, never rounded up to 1.67
    assert commission(Decimal("33.33"), Decimal("0.05")) == Decimal("1.66")
    # Half-even rounding would give 0.04 here
    assert commission(Decimal("0.70"), Decimal("0.05")) == Decimal("0.03")
    assert commission(Decimal("0.39"), Decimal("0.05")) == Decimal("0.01")


def test_commission_on_zero_is_zero():
    assert commission(Decimal("0"), Decimal("0.05")) == Decimal("0.00")


@pytest.mark.parametrize("amount,rate", [
    (Decimal("-1"), Decimal("0.05")),
    (Decimal("10"), Decimal("-0.01")),
    (Decimal("10"), Decimal("1.5")),
])
def test_commission_rejects_out_of_range_input(amount, rate):
    with pytest.raises(ValueError):
        commission(amount, rate)


async def test_resolve_rate_falls_back_to_configured_default(db):
    assert await resolve_rate(db, Decimal("100")) == settings.TRADE_COMMISSION_RATE


async def test_resolve_rate_picks_highest_applicable_tier(db):
    db.add_all([
        CommissionRule(name="base", percentage=Decimal("5.00"), min_amount=Decimal("0")),
        CommissionRule(name="mid", percentage=Decimal("4.00"), min_amount=Decimal("500")),
        CommissionRule(name="high", percentage=Decimal("3.00"), min_amount=Decimal("2000")),
        CommissionRule(name="retired", percentage=Decimal("1.00"), min_amount=Decimal("1000"), is_active=False),
    ])
    await db.commit()

    assert await resolve_rate(db, Decimal("100")) == Decimal("0.05")
    assert await resolve_rate(db, Decimal("500")) == Decimal("0.04")
    assert await resolve_rate(db, Decimal("1500")) == Decimal("0.04")
    assert await resolve_rate(db, Decimal("2500")) == Decimal("0.03")
