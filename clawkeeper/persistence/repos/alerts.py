from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.domain.models import AlertEvent, AlertRule


async def list_enabled_rules(session: AsyncSession, *, org_id: str) -> list[AlertRule]:
    result = await session.execute(
        select(AlertRule)
        .where(AlertRule.org_id == org_id, AlertRule.enabled.is_(True))
        .order_by(AlertRule.created_at.asc(), AlertRule.id.asc())
    )
    return list(result.scalars().all())


async def claim_rule_notification(
    session: AsyncSession,
    *,
    rule_id: str,
    now: datetime,
    since: datetime,
) -> bool:
    # Conditional UPDATE: concurrent scans race on the row and exactly one claims the window.
    result = await session.execute(
        update(AlertRule)
        .where(
            AlertRule.id == rule_id,
            or_(AlertRule.last_notified_at.is_(None), AlertRule.last_notified_at < since),
        )
        .values(last_notified_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def list_alert_events(
    session: AsyncSession,
    *,
    org_id: str,
    host_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AlertEvent]:
    stmt = select(AlertEvent).where(AlertEvent.org_id == org_id)
    if host_id:
        stmt = stmt.where(AlertEvent.host_id == host_id)
    stmt = stmt.order_by(AlertEvent.notified_at.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
