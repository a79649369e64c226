"""Platform commission on trade cash legs."""

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.money import truncate
from app.models.commission_rule import CommissionRule


def commission(amount: Decimal, rate: Decimal) -> Decimal:
    """
    Commission owed on a cash amount.

    Truncated to the currency's minor unit; never rounded up.

    Args:
        amount: Cash amount (>= 0)
        rate: Fraction, e.g. Decimal("0.05") for 5%

    Returns:
        Commission in the currency's minor unit
    """
    if amount < 0:
        raise ValueError("Commission amount cannot be negative")
    if rate < 0 or rate > 1:
        raise ValueError("Commission rate must be between 0 and 1")
    return truncate(amount * rate)


async def resolve_rate(db: AsyncSession, amount: Decimal) -> Decimal:
    """
    Rate to freeze on a new trade.

    Picks the active rule with the largest min_amount not above the amount,
    falling back to TRADE_COMMISSION_RATE when no rule applies.
    """
    result = await db.execute(
        select(CommissionRule)
        .where(
            CommissionRule.is_active.is_(True),
            CommissionRule.min_amount <= amount,
        )
        .order_by(CommissionRule.min_amount.desc())
        .limit(1)
    )
    rule = result.scalar_one_or_none()
    if rule is None:
        return settings.TRADE_COMMISSION_RATE
    return rule.rate
