from __future__ import annotations

import logging

from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.core.errors import PersistenceError
from clawkeeper.domain.models import Scan, ScanCheck
from clawkeeper.domain.scans import ScanPayload


logger = logging.getLogger(__name__)


async def record_scan(
    *,
    session: AsyncSession,
    org_id: str,
    host_id: str,
    payload: ScanPayload,
) -> Scan:
    """Persist the scan row, then its check results.

    The scan row is authoritative: a failure there raises PersistenceError and
    the upload fails. Check rows are written in a second step; if that step
    fails the scan is kept without checks and the failure is only logged.
    """
    scan = Scan(
        host_id=host_id,
        org_id=org_id,
        score=payload.score,
        grade=payload.grade,
        passed=payload.passed,
        failed=payload.failed,
        fixed=payload.fixed,
        skipped=payload.skipped,
        raw_report=payload.raw_report,
        scanned_at=payload.scanned_at,
    )
    try:
        session.add(scan)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception("scan_insert_failed org_id=%s host_id=%s", org_id, host_id)
        raise PersistenceError("Failed to insert scan") from exc

    # Detach so a rollback of the check insert cannot expire the committed scan.
    session.expunge(scan)
    if payload.checks:
        await _insert_checks(session, scan, payload)
    logger.info(
        "scan_recorded org_id=%s host_id=%s scan_id=%s grade=%s checks=%s",
        org_id,
        host_id,
        scan.id,
        scan.grade,
        len(payload.checks),
    )
    return scan


async def _insert_checks(session: AsyncSession, scan: Scan, payload: ScanPayload) -> None:
    # Bulk insert in one statement; the scan stays committed if this fails.
    rows = [
        {
            "scan_id": scan.id,
            "status": check.status,
            "check_name": check.check_name,
            "detail": check.detail,
            "created_at": scan.created_at,
        }
        for check in payload.checks
    ]
    try:
        await session.execute(insert(ScanCheck), rows)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning(
            "scan_checks_insert_failed scan_id=%s checks=%s",
            scan.id,
            len(rows),
            exc_info=exc,
        )
