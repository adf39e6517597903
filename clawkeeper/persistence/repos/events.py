from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.domain.models import Event


async def list_events(
    session: AsyncSession,
    *,
    org_id: str,
    event_type: str | None = None,
    host_id: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Event]:
    # Scope all event queries to an org to prevent cross-tenant leakage.
    stmt = select(Event).where(Event.org_id == org_id)
    if event_type:
        stmt = stmt.where(Event.event_type == event_type)
    if host_id:
        stmt = stmt.where(Event.host_id == host_id)
    if created_from:
        stmt = stmt.where(Event.created_at >= created_from)
    if created_to:
        stmt = stmt.where(Event.created_at <= created_to)

    stmt = stmt.order_by(Event.created_at.desc(), Event.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
