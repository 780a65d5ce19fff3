from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError

from webhook_pipeline.common.event_types import is_valid_event_type
from webhook_pipeline.common.models import StoredEvent, TimelinePage, TimelineQuery
from webhook_pipeline.pipeline import Pipeline, get_pipeline


router = APIRouter()


@router.get("/timeline", response_model=TimelinePage)
async def get_timeline(
    organization_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    event_types: Optional[List[str]] = Query(None),
    limit: int = Query(50),
    offset: int = Query(0),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Most recent domain events first, filtered by organization, actor or type."""
    unknown = [t for t in event_types or [] if not is_valid_event_type(t)]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown event types: {', '.join(unknown)}")

    try:
        query = TimelineQuery(
            organization_id=organization_id,
            actor_id=actor_id,
            event_types=event_types,
            limit=limit,
            offset=offset,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return await pipeline.audit_log.timeline(query)


@router.get("/undelivered", response_model=List[StoredEvent])
async def get_undelivered(
    limit: int = Query(100, ge=1, le=500),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Events with a subscriber that has not handled them yet, oldest first."""
    return await pipeline.audit_log.list_undelivered(limit=limit)
