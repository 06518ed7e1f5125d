from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from controlplane.dependencies import get_db_session
from controlplane.schemas.events import AuditEventOut
from controlplane.services import events as event_service

router = APIRouter(prefix="/events", tags=["events"])


@router.get("", response_model=List[AuditEventOut])
async def list_events(
    limit: int = 200,
    category: Optional[str] = None,
    session: AsyncSession = Depends(get_db_session),
) -> List[AuditEventOut]:
    bounded_limit = max(1, min(limit, 1000))
    events = await event_service.list_events(session, limit=bounded_limit, category=category)
    return [AuditEventOut.model_validate(event) for event in events]
