from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.domain.models import NotificationSettings, Organization, OrgMember


async def get_org_plan(session: AsyncSession, org_id: str) -> str | None:
    result = await session.execute(select(Organization.plan).where(Organization.id == org_id))
    return result.scalar_one_or_none()


async def get_owner_email(session: AsyncSession, org_id: str) -> str | None:
    # First owner by membership age; members without an email are skipped.
    result = await session.execute(
        select(OrgMember.email)
        .where(
            OrgMember.org_id == org_id,
            OrgMember.role == "owner",
            OrgMember.email.is_not(None),
        )
        .order_by(OrgMember.created_at.asc())
        .limit(1)
    )
    email = result.scalar_one_or_none()
    return email or None


async def get_notification_settings(
    session: AsyncSession,
    org_id: str,
) -> NotificationSettings | None:
    result = await session.execute(
        select(NotificationSettings).where(NotificationSettings.org_id == org_id)
    )
    return result.scalar_one_or_none()
