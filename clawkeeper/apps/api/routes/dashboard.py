from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.apps.api.deps import get_db, get_org_id
from clawkeeper.persistence.repos import alerts as alerts_repo
from clawkeeper.persistence.repos import insights as insights_repo
from clawkeeper.persistence.repos import scans as scans_repo

router = APIRouter(tags=["dashboard"])


class AlertEventResponse(BaseModel):
    id: str
    alert_rule_id: str | None
    host_id: str | None
    scan_id: str | None
    message: str
    notified_at: datetime


class InsightResponse(BaseModel):
    id: str
    insight_type: str
    severity: str
    category: str
    title: str
    description: str
    remediation: str
    affected_hosts: list[dict[str, Any]]
    metadata: dict[str, Any]
    scan_id: str | None
    created_at: datetime
    updated_at: datetime


class ScanSummaryResponse(BaseModel):
    id: str
    host_id: str
    score: float
    grade: str
    passed: int
    failed: int
    fixed: int
    skipped: int
    scanned_at: datetime


@router.get("/alert-events", response_model=list[AlertEventResponse])
async def list_alert_events(
    host_id: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    org_id: str = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
) -> list[AlertEventResponse]:
    rows = await alerts_repo.list_alert_events(
        db, org_id=org_id, host_id=host_id, offset=offset, limit=limit
    )
    return [
        AlertEventResponse(
            id=row.id,
            alert_rule_id=row.alert_rule_id,
            host_id=row.host_id,
            scan_id=row.scan_id,
            message=row.message,
            notified_at=row.notified_at,
        )
        for row in rows
    ]


@router.get("/insights", response_model=list[InsightResponse])
async def list_open_insights(
    org_id: str = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
) -> list[InsightResponse]:
    rows = await insights_repo.list_open_insights(db, org_id=org_id)
    return [
        InsightResponse(
            id=row.id,
            insight_type=row.insight_type,
            severity=row.severity,
            category=row.category,
            title=row.title,
            description=row.description,
            remediation=row.remediation,
            affected_hosts=row.affected_hosts_json or [],
            metadata=row.metadata_json or {},
            scan_id=row.scan_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
        for row in rows
    ]


@router.get("/hosts/{host_id}/scans", response_model=list[ScanSummaryResponse])
async def list_host_scans(
    host_id: str,
    scanned_from: datetime | None = Query(default=None),
    scanned_to: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    org_id: str = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
) -> list[ScanSummaryResponse]:
    rows = await scans_repo.list_host_scans(
        db,
        org_id=org_id,
        host_id=host_id,
        scanned_from=scanned_from,
        scanned_to=scanned_to,
        limit=limit,
    )
    return [
        ScanSummaryResponse(
            id=row.id,
            host_id=row.host_id,
            score=row.score,
            grade=row.grade,
            passed=row.passed,
            failed=row.failed,
            fixed=row.fixed,
            skipped=row.skipped,
            scanned_at=row.scanned_at,
        )
        for row in rows
    ]
