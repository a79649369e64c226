"""Activity log database model."""

from datetime import datetime

from sqlalchemy import String, Integer, TIMESTAMP, Index
from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class ActivityLog(Base):
    """Audit trail of every offer and trade transition."""

    __tablename__ = "activity_log"

    # Primary Key
    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True
    )

    # Event Details
    event_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False
    )
    entity_type: Mapped[str] = mapped_column(String(10), nullable=False)  # "offer" | "trade"
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)

    # Null for scheduler-driven transitions
    actor_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    # Event Data
    data: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict
    )

    # Timestamp
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP,
        nullable=False,
        default=datetime.utcnow
    )

    __table_args__ = (
        Index('idx_activity_created', 'created_at'),
        Index('idx_activity_type', 'event_type'),
        Index('idx_activity_entity', 'entity_type', 'entity_id'),
    )

    def __repr__(self) -> str:
        return f"<ActivityLog(id={self.id}, type={self.event_type}, entity={self.entity_type}:{self.entity_id})>"
