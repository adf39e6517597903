from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.domain.models import Insight


async def find_open_insight(
    session: AsyncSession,
    *,
    org_id: str,
    insight_type: str,
    dedupe_key: str = "",
) -> Insight | None:
    # Backed by the partial unique index, so at most one row matches.
    result = await session.execute(
        select(Insight)
        .where(
            Insight.org_id == org_id,
            Insight.insight_type == insight_type,
            Insight.dedupe_key == dedupe_key,
            Insight.is_resolved.is_(False),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_open_insights(session: AsyncSession, *, org_id: str) -> list[Insight]:
    result = await session.execute(
        select(Insight)
        .where(Insight.org_id == org_id, Insight.is_resolved.is_(False))
        .order_by(Insight.created_at.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def compare_and_swap_insight(
    session: AsyncSession,
    *,
    insight_id: str,
    expected_version: int,
    values: dict[str, Any],
) -> bool:
    result = await session.execute(
        update(Insight)
        .where(Insight.id == insight_id, Insight.version == expected_version)
        .values(**values, version=expected_version + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def claim_insight_notification(
    session: AsyncSession,
    *,
    insight_id: str,
    now: datetime,
    since: datetime,
) -> bool:
    # Same conditional-UPDATE claim as alert rules: one notifier per insight per window.
    result = await session.execute(
        update(Insight)
        .where(
            Insight.id == insight_id,
            or_(Insight.last_notified_at.is_(None), Insight.last_notified_at < since),
        )
        .values(last_notified_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
