from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from controlplane.logger import get_logger
from controlplane.models.event import Event

_logger = get_logger("services.events")


async def list_events(
    session: AsyncSession,
    limit: int = 200,
    category: Optional[str] = None,
) -> List[Event]:
    query = select(Event).order_by(Event.created_at.desc())
    if category:
        query = query.where(Event.category == category)
    result = await session.execute(query.limit(limit))
    return list(result.scalars().all())


async def record_event(
    session: AsyncSession,
    category: str,
    name: str,
    *,
    level: str = "INFO",
    fields: Optional[Dict[str, Any]] = None,
) -> Event:
    """Stage an audit event; it commits with the caller's transaction."""
    event = Event(
        id=str(uuid4()),
        category=category,
        name=name,
        level=level,
        fields=fields or {},
    )
    session.add(event)
    _logger.debug("events.record", "Staged audit event", event_id=event.id, category=category, name=name)
    return event
