from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.core.errors import CreditsExhausted, OrganizationNotFound, PersistenceError
from clawkeeper.persistence.repos.organizations import get_org_plan
from clawkeeper.services.credits import CreditCheckResult, get_credit_ledger
from clawkeeper.services.hosts import HostMetadata, resolve_host
from clawkeeper.services.scan_validation import validate_scan_payload
from clawkeeper.services.scans import record_scan
from clawkeeper.services.side_effects import ScanSideEffectJob, dispatch_scan_side_effects


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    host_id: str
    scan_id: str
    is_new_host: bool
    credits: CreditCheckResult

    def to_response(self) -> dict[str, Any]:
        return {"ok": True, "host_id": self.host_id, "scan_id": self.scan_id}


async def ingest_scan(*, session: AsyncSession, org_id: str, raw: Any) -> IngestResult:
    """Run one agent upload through the authoritative pipeline.

    Order: credit gate, payload validation, host resolution, scan recording.
    Host and scan rows are committed before this returns; event diffing,
    alerting and insights are dispatched afterwards and cannot fail the call.
    A credit is spent once the gate passes, even if validation then rejects
    the payload.
    """
    plan = await _load_plan(session, org_id)

    credits = await get_credit_ledger().check_and_deduct(session=session, org_id=org_id)
    if not credits.allowed:
        logger.info("scan_rejected_no_credits org_id=%s cap=%s", org_id, credits.cap)
        raise CreditsExhausted(
            "No scan credits remaining. Credits refill every 30 days; upgrade your plan for more."
        )

    payload = validate_scan_payload(raw)

    resolution = await resolve_host(
        session=session,
        org_id=org_id,
        plan=plan,
        hostname=payload.hostname,
        metadata=HostMetadata(
            platform=payload.platform,
            os_version=payload.os_version,
            agent_version=payload.agent_version,
            last_grade=payload.grade,
            last_score=payload.score,
            last_scan_at=payload.scanned_at,
        ),
    )
    # Read ids before the recorder can roll back and expire session state.
    host_id = resolution.host.id
    scan = await record_scan(session=session, org_id=org_id, host_id=host_id, payload=payload)

    await dispatch_scan_side_effects(
        ScanSideEffectJob.from_scan(
            org_id=org_id,
            host_id=host_id,
            scan_id=scan.id,
            payload=payload,
            is_new_host=resolution.is_new,
        )
    )
    logger.info(
        "scan_ingested org_id=%s host_id=%s scan_id=%s new_host=%s remaining=%s",
        org_id,
        host_id,
        scan.id,
        resolution.is_new,
        credits.remaining,
    )
    return IngestResult(
        host_id=host_id,
        scan_id=scan.id,
        is_new_host=resolution.is_new,
        credits=credits,
    )


async def _load_plan(session: AsyncSession, org_id: str) -> str:
    try:
        plan = await get_org_plan(session, org_id)
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError("Database error while loading organization") from exc
    if plan is None:
        raise OrganizationNotFound("Organization not found")
    return plan
