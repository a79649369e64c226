"""Audit log helper shared by the engines."""

from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.activity_log import ActivityLog


def log_activity(
    db: AsyncSession,
    event_type: str,
    entity_type: str,
    entity_id: str,
    actor_id: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
) -> ActivityLog:
    """Stage an activity row in the caller's unit of work."""
    activity = ActivityLog(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        data=data or {},
    )
    db.add(activity)
    return activity
