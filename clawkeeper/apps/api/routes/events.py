from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.apps.api.deps import get_db, get_org_id
from clawkeeper.apps.api.routes.scans import read_json_body
from clawkeeper.persistence.repos import events as events_repo
from clawkeeper.services.events import record_agent_event
from clawkeeper.services.scan_validation import validate_agent_event

router = APIRouter(prefix="/events", tags=["events"])


class EventResponse(BaseModel):
    id: int
    org_id: str
    host_id: str | None
    event_type: str
    title: str
    detail: dict[str, Any]
    actor: str
    created_at: datetime


@router.post("")
async def post_agent_event(
    request: Request,
    org_id: str = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    event = validate_agent_event(await read_json_body(request))
    await record_agent_event(
        session=db,
        org_id=org_id,
        event_type=event.event_type,
        hostname=event.hostname,
    )
    return {"ok": True}


@router.get("", response_model=list[EventResponse])
async def list_events(
    event_type: str | None = Query(default=None),
    host_id: str | None = Query(default=None),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    org_id: str = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
) -> list[EventResponse]:
    rows = await events_repo.list_events(
        db,
        org_id=org_id,
        event_type=event_type,
        host_id=host_id,
        created_from=created_from,
        created_to=created_to,
        offset=offset,
        limit=limit,
    )
    return [
        EventResponse(
            id=row.id,
            org_id=row.org_id,
            host_id=row.host_id,
            event_type=row.event_type,
            title=row.title,
            detail=row.detail_json or {},
            actor=row.actor,
            created_at=row.created_at,
        )
        for row in rows
    ]
