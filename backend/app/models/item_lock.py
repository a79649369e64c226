"""Item lock map: which products are committed to an active negotiation."""

from datetime import datetime

from sqlalchemy import String, TIMESTAMP, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class ItemLock(Base):
    """
    Exclusive claim on a product.

    product_id is the primary key, so two concurrent negotiations inserting a
    lock for the same product cannot both commit.
    """

    __tablename__ = "item_locks"

    product_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    holder_type: Mapped[str] = mapped_column(String(10), nullable=False)  # "offer" | "trade"
    holder_id: Mapped[str] = mapped_column(String(36), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_item_lock_holder", "holder_type", "holder_id"),
    )

    def __repr__(self) -> str:
        return f"<ItemLock(product_id={self.product_id}, holder={self.holder_type}:{self.holder_id})>"
