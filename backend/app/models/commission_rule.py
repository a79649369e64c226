"""Commission rate table for trade cash legs."""

from datetime import datetime
from decimal import Decimal
import uuid

from sqlalchemy import String, Boolean, Numeric, TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class CommissionRule(Base):
    """Platform fee rule. The active rule with the highest min_amount not above the cash amount applies."""

    __tablename__ = "commission_rules"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)  # 5.00 = 5%
    min_amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False, default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False, default=datetime.utcnow)

    @property
    def rate(self) -> Decimal:
        return self.percentage / Decimal(100)

    def __repr__(self) -> str:
        return f"<CommissionRule(name={self.name}, percentage={self.percentage}, min_amount={self.min_amount})>"
