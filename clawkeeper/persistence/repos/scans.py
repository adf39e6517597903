from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.domain.models import Scan, ScanCheck


async def get_previous_scan(
    session: AsyncSession,
    *,
    host_id: str,
    exclude_scan_id: str,
) -> Scan | None:
    # Latest scan for the host by agent-reported time, excluding the one just recorded.
    result = await session.execute(
        select(Scan)
        .where(Scan.host_id == host_id, Scan.id != exclude_scan_id)
        .order_by(Scan.scanned_at.desc(), Scan.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_scan_at_or_before(
    session: AsyncSession,
    *,
    org_id: str,
    host_id: str,
    before: datetime,
) -> Scan | None:
    result = await session.execute(
        select(Scan)
        .where(Scan.org_id == org_id, Scan.host_id == host_id, Scan.scanned_at <= before)
        .order_by(Scan.scanned_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_check_statuses(session: AsyncSession, *, scan_id: str) -> dict[str, str]:
    # Map check_name -> status; a duplicated name keeps the last row inserted.
    result = await session.execute(
        select(ScanCheck.check_name, ScanCheck.status)
        .where(ScanCheck.scan_id == scan_id)
        .order_by(ScanCheck.id.asc())
    )
    return {name: status for name, status in result.all()}


async def list_checks(session: AsyncSession, *, scan_id: str) -> list[ScanCheck]:
    result = await session.execute(
        select(ScanCheck).where(ScanCheck.scan_id == scan_id).order_by(ScanCheck.id.asc())
    )
    return list(result.scalars().all())


async def list_host_scans(
    session: AsyncSession,
    *,
    org_id: str,
    host_id: str,
    scanned_from: datetime | None = None,
    scanned_to: datetime | None = None,
    limit: int = 50,
) -> list[Scan]:
    # Always scope by org so a host id from another tenant returns nothing.
    stmt = select(Scan).where(Scan.org_id == org_id, Scan.host_id == host_id)
    if scanned_from:
        stmt = stmt.where(Scan.scanned_at >= scanned_from)
    if scanned_to:
        stmt = stmt.where(Scan.scanned_at <= scanned_to)
    stmt = stmt.order_by(Scan.scanned_at.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_fleet_check_statuses(
    session: AsyncSession,
    *,
    org_id: str,
    exclude_host_id: str,
) -> list[dict[str, str]]:
    # Check statuses from the latest scan of every other host in the org.
    host_ids = (
        await session.execute(
            select(Scan.host_id)
            .where(Scan.org_id == org_id, Scan.host_id != exclude_host_id)
            .distinct()
        )
    ).scalars().all()
    fleet = []
    for host_id in sorted(host_ids):
        latest = await session.scalar(
            select(Scan.id)
            .where(Scan.org_id == org_id, Scan.host_id == host_id)
            .order_by(Scan.scanned_at.desc(), Scan.created_at.desc())
            .limit(1)
        )
        if latest is not None:
            fleet.append(await get_check_statuses(session, scan_id=latest))
    return fleet
