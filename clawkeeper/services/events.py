from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.domain.events import ACTORS, EVENT_TYPES
from clawkeeper.domain.models import Event
from clawkeeper.domain.scans import ScanPayload
from clawkeeper.persistence.db import SessionLocal
from clawkeeper.persistence.repos import scans as scans_repo
from clawkeeper.services.hosts import find_host_id
from clawkeeper.services.scan_validation import validate_agent_event


logger = logging.getLogger(__name__)

_AGENT_EVENT_TITLES = {
    "agent.installed": "Agent installed on {hostname}",
    "agent.started": "Agent scan started on {hostname}",
    "agent.stopped": "Agent scan finished on {hostname}",
    "agent.uninstalled": "Agent uninstalled from {hostname}",
}


@dataclass(frozen=True)
class EventDraft:
    # Unpersisted audit event produced by the diff.
    event_type: str
    title: str
    detail: dict[str, Any] = field(default_factory=dict)
    actor: str = "system"


@dataclass(frozen=True)
class PriorScan:
    grade: str
    check_statuses: dict[str, str]


def diff_scan(
    *,
    scan_id: str,
    hostname: str,
    payload: ScanPayload,
    is_new_host: bool,
    prior: PriorScan | None,
) -> list[EventDraft]:
    """Compute the audit events for a freshly recorded scan.

    scan.completed is always first. A new host adds host.registered and is
    never diffed. Otherwise a prior scan yields grade.changed when the letter
    differs in either direction and one check.flipped per check whose name
    appears in the prior scan with a different status.
    """
    drafts = [
        EventDraft(
            event_type="scan.completed",
            title=f"Scan completed on {hostname}",
            detail={
                "scan_id": scan_id,
                "grade": payload.grade,
                "score": payload.score,
                "passed": payload.passed,
                "failed": payload.failed,
                "skipped": payload.skipped,
            },
            actor="agent",
        )
    ]
    if is_new_host:
        drafts.append(
            EventDraft(
                event_type="host.registered",
                title=f"New host registered: {hostname}",
                detail={"platform": payload.platform, "os_version": payload.os_version},
                actor="agent",
            )
        )
        return drafts
    if prior is None:
        return drafts

    if prior.grade != payload.grade:
        drafts.append(
            EventDraft(
                event_type="grade.changed",
                title=f"Grade changed {prior.grade} -> {payload.grade} on {hostname}",
                detail={
                    "previous_grade": prior.grade,
                    "new_grade": payload.grade,
                    "scan_id": scan_id,
                },
            )
        )

    # A check name repeated in one upload flips at most once.
    seen: set[str] = set()
    for check in payload.checks:
        if check.check_name in seen:
            continue
        seen.add(check.check_name)
        previous_status = prior.check_statuses.get(check.check_name)
        if previous_status is None or previous_status == check.status:
            continue
        drafts.append(
            EventDraft(
                event_type="check.flipped",
                title=f"{check.check_name}: {previous_status} -> {check.status} on {hostname}",
                detail={
                    "check_name": check.check_name,
                    "previous_status": previous_status,
                    "new_status": check.status,
                    "scan_id": scan_id,
                },
            )
        )
    return drafts


async def generate_scan_events(
    *,
    org_id: str,
    host_id: str,
    scan_id: str,
    hostname: str,
    payload: ScanPayload,
    is_new_host: bool,
) -> list[Event]:
    # Side-effect consumer: owns its session and never raises.
    try:
        async with SessionLocal() as session:
            prior = None
            if not is_new_host:
                prior = await load_prior_scan(session, host_id=host_id, scan_id=scan_id)
            drafts = diff_scan(
                scan_id=scan_id,
                hostname=hostname,
                payload=payload,
                is_new_host=is_new_host,
                prior=prior,
            )
            events = [_to_event(org_id, host_id, draft) for draft in drafts]
            session.add_all(events)
            await session.commit()
    except Exception as exc:  # noqa: BLE001 - diffing must not fail ingestion
        logger.warning(
            "scan_events_failed org_id=%s host_id=%s scan_id=%s",
            org_id,
            host_id,
            scan_id,
            exc_info=exc,
        )
        return []
    logger.info(
        "scan_events_recorded org_id=%s scan_id=%s types=%s",
        org_id,
        scan_id,
        ",".join(event.event_type for event in events),
    )
    return events


async def load_prior_scan(session: AsyncSession, *, host_id: str, scan_id: str) -> PriorScan | None:
    previous = await scans_repo.get_previous_scan(session, host_id=host_id, exclude_scan_id=scan_id)
    if previous is None:
        return None
    statuses = await scans_repo.get_check_statuses(session, scan_id=previous.id)
    return PriorScan(grade=previous.grade, check_statuses=statuses)


async def create_event(
    *,
    session: AsyncSession | None = None,
    org_id: str,
    event_type: str,
    title: str,
    host_id: str | None = None,
    detail: dict[str, Any] | None = None,
    actor: str = "system",
) -> Event | None:
    # Append one audit event best-effort; write failures are logged, not raised.
    if event_type not in EVENT_TYPES:
        raise ValueError(f"unknown event_type: {event_type}")
    if actor not in ACTORS:
        raise ValueError(f"unknown actor: {actor}")
    event = Event(
        org_id=org_id,
        host_id=host_id,
        event_type=event_type,
        title=title,
        detail_json=detail or {},
        actor=actor,
    )
    if session is None:
        async with SessionLocal() as event_session:
            return await _commit_event(event_session, event)
    return await _commit_event(session, event)


async def record_agent_event(
    *,
    session: AsyncSession,
    org_id: str,
    event_type: Any,
    hostname: Any,
) -> Event | None:
    # Lifecycle pings never register hosts; unknown hostnames are recorded without a host id.
    request = validate_agent_event({"event_type": event_type, "hostname": hostname})
    event_type, hostname = request.event_type, request.hostname

    host_id = await find_host_id(session, org_id, hostname)
    title = _AGENT_EVENT_TITLES[event_type].format(hostname=hostname)
    return await create_event(
        session=session,
        org_id=org_id,
        event_type=event_type,
        title=title,
        host_id=host_id,
        detail={"hostname": hostname},
        actor="agent",
    )


async def _commit_event(session: AsyncSession, event: Event) -> Event | None:
    try:
        session.add(event)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning(
            "event_write_failed org_id=%s event_type=%s",
            event.org_id,
            event.event_type,
            exc_info=exc,
        )
        return None
    return event


def _to_event(org_id: str, host_id: str, draft: EventDraft) -> Event:
    return Event(
        org_id=org_id,
        host_id=host_id,
        event_type=draft.event_type,
        title=draft.title,
        detail_json=draft.detail,
        actor=draft.actor,
    )
