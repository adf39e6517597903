from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from clawkeeper.core.errors import HostLimitReached
from clawkeeper.domain.models import Host
from clawkeeper.persistence.db import SessionLocal
from clawkeeper.services.hosts import HostMetadata, resolve_host
from clawkeeper.tests.utils.factories import seed_host, seed_org


pytestmark = pytest.mark.usefixtures("fresh_schema")


def _metadata(grade: str = "B", score: float = 82) -> HostMetadata:
    return HostMetadata(
        platform="linux",
        os_version="Ubuntu 24.04",
        agent_version="1.4.0",
        last_grade=grade,
        last_score=score,
        last_scan_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
    )


async def _host_count(org_id: str) -> int:
    async with SessionLocal() as session:
        count = await session.scalar(select(func.count()).select_from(Host).where(Host.org_id == org_id))
    return int(count or 0)


@pytest.mark.asyncio
async def test_first_sighting_creates_host() -> None:
    org_id = await seed_org(plan="pro")
    async with SessionLocal() as session:
        resolution = await resolve_host(
            session=session, org_id=org_id, plan="pro", hostname="web-1", metadata=_metadata()
        )
    assert resolution.is_new is True
    assert resolution.host.hostname == "web-1"
    assert resolution.host.last_grade == "B"


@pytest.mark.asyncio
async def test_existing_host_metadata_overwritten() -> None:
    org_id = await seed_org(plan="pro")
    host_id = await seed_host(org_id, "web-1")
    async with SessionLocal() as session:
        resolution = await resolve_host(
            session=session,
            org_id=org_id,
            plan="pro",
            hostname="web-1",
            metadata=_metadata(grade="D", score=41),
        )
    assert resolution.is_new is False
    assert resolution.host.id == host_id
    async with SessionLocal() as session:
        host = await session.get(Host, host_id)
        assert host.last_grade == "D"
        assert host.last_score == 41
        assert host.platform == "linux"


@pytest.mark.asyncio
async def test_host_limit_blocks_new_host_but_not_existing() -> None:
    org_id = await seed_org(plan="free")
    await seed_host(org_id, "laptop")
    async with SessionLocal() as session:
        with pytest.raises(HostLimitReached, match="Host limit reached \\(free plan\\)"):
            await resolve_host(
                session=session, org_id=org_id, plan="free", hostname="desktop", metadata=_metadata()
            )
        resolution = await resolve_host(
            session=session, org_id=org_id, plan="free", hostname="laptop", metadata=_metadata()
        )
    assert resolution.is_new is False
    assert await _host_count(org_id) == 1


@pytest.mark.asyncio
async def test_same_hostname_in_other_org_is_separate() -> None:
    first_org = await seed_org(plan="free")
    second_org = await seed_org(plan="free")
    await seed_host(first_org, "shared-name")
    async with SessionLocal() as session:
        resolution = await resolve_host(
            session=session,
            org_id=second_org,
            plan="free",
            hostname="shared-name",
            metadata=_metadata(),
        )
    assert resolution.is_new is True


@pytest.mark.asyncio
async def test_concurrent_first_sightings_create_one_host() -> None:
    org_id = await seed_org(plan="pro")

    async def _resolve():
        async with SessionLocal() as session:
            return await resolve_host(
                session=session, org_id=org_id, plan="pro", hostname="racer", metadata=_metadata()
            )

    results = await asyncio.gather(*[_resolve() for _ in range(4)])
    assert await _host_count(org_id) == 1
    assert len({result.host.id for result in results}) == 1
    assert sum(1 for result in results if result.is_new) == 1
