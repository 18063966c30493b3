from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends

from mcloud.dependencies import get_store
from mcloud.schemas.events import EventOut
from mcloud.services import events as event_service
from mcloud.services.store import ClusterStateStore

router = APIRouter(prefix="/cluster/events", tags=["events"])


@router.get("", response_model=List[EventOut])
async def list_events(
    limit: int = 200,
    category: Optional[str] = None,
    store: ClusterStateStore = Depends(get_store),
) -> List[EventOut]:
    bounded_limit = max(1, min(limit, 1000))
    async with store.session() as session:
        events = await event_service.list_events(session, limit=bounded_limit, category=category)
    return [EventOut.model_validate(event) for event in events]
