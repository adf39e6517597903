from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.core.config import get_settings
from clawkeeper.core.errors import HostLimitReached, PersistenceError
from clawkeeper.domain.models import Host
from clawkeeper.services.plans import can_add_host, normalize_plan


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostMetadata:
    # Denormalized last-scan summary written onto the host row.
    platform: str
    os_version: str
    agent_version: str
    last_grade: str
    last_score: float
    last_scan_at: datetime


@dataclass(frozen=True)
class HostResolution:
    host: Host
    is_new: bool


async def resolve_host(
    *,
    session: AsyncSession,
    org_id: str,
    plan: str,
    hostname: str,
    metadata: HostMetadata,
) -> HostResolution:
    # Create-or-update by (org, hostname); a lost creation race falls back to an update.
    attempts = max(1, int(get_settings().host_create_max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            host = await _find_host(session, org_id, hostname)
            if host is not None:
                _apply_metadata(host, metadata)
                await session.commit()
                return HostResolution(host=host, is_new=False)

            host_count = await _count_hosts(session, org_id)
            if not can_add_host(plan, host_count):
                await session.rollback()
                plan_name = normalize_plan(plan)
                raise HostLimitReached(
                    f"Host limit reached ({plan_name} plan). Upgrade to Pro for more hosts."
                )

            host = Host(org_id=org_id, hostname=hostname)
            _apply_metadata(host, metadata)
            session.add(host)
            await session.commit()
            logger.info("host_registered org_id=%s host_id=%s hostname=%s", org_id, host.id, hostname)
            return HostResolution(host=host, is_new=True)
        except IntegrityError:
            # The (org_id, hostname) constraint means a concurrent upload created it first.
            await session.rollback()
            logger.info(
                "host_create_conflict org_id=%s hostname=%s attempt=%s", org_id, hostname, attempt
            )
            continue
        except SQLAlchemyError as exc:
            await session.rollback()
            raise PersistenceError("Failed to create or update host") from exc
    raise PersistenceError("Failed to create or update host")


async def find_host_id(session: AsyncSession, org_id: str, hostname: str) -> str | None:
    # Lookup only; never registers a host.
    result = await session.execute(
        select(Host.id).where(Host.org_id == org_id, Host.hostname == hostname)
    )
    return result.scalar_one_or_none()


async def _find_host(session: AsyncSession, org_id: str, hostname: str) -> Host | None:
    result = await session.execute(
        select(Host)
        .where(Host.org_id == org_id, Host.hostname == hostname)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _count_hosts(session: AsyncSession, org_id: str) -> int:
    count = await session.scalar(select(func.count()).select_from(Host).where(Host.org_id == org_id))
    return int(count or 0)


def _apply_metadata(host: Host, metadata: HostMetadata) -> None:
    # Last write wins; concurrent uploads from one host are not reconciled.
    host.platform = metadata.platform
    host.os_version = metadata.os_version
    host.agent_version = metadata.agent_version
    host.last_grade = metadata.last_grade
    host.last_score = metadata.last_score
    host.last_scan_at = metadata.last_scan_at
