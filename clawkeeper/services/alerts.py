from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.core.config import get_settings
from clawkeeper.core.errors import SideEffectError
from clawkeeper.domain.models import AlertEvent, AlertRule
from clawkeeper.domain.scans import ScanPayload, is_worse_grade
from clawkeeper.persistence.db import SessionLocal
from clawkeeper.persistence.repos import alerts as alerts_repo
from clawkeeper.persistence.repos import scans as scans_repo
from clawkeeper.persistence.repos.organizations import get_owner_email
from clawkeeper.services.notifications import AlertNotification, notify_alert


logger = logging.getLogger(__name__)

RULE_TYPES = ("grade_drop", "score_below", "check_fail")


def evaluate_rule(
    rule_type: str,
    config: dict[str, Any] | None,
    payload: ScanPayload,
    previous_grade: str | None,
) -> str | None:
    """Return the alert message if the rule triggers for this scan, else None.

    grade_drop needs a prior scan and fires only on a worse letter
    (A < B < C < D < F). score_below fires strictly under the threshold.
    check_fail matches FAIL checks whose name contains the configured
    fragment, case-insensitively. Misconfigured rules never fire.
    """
    config = config or {}
    if rule_type == "grade_drop":
        if previous_grade is not None and is_worse_grade(payload.grade, previous_grade):
            return f"Grade dropped from {previous_grade} to {payload.grade} on {payload.hostname}"
        return None
    if rule_type == "score_below":
        threshold = config.get("threshold")
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
            return None
        if payload.score < threshold:
            return (
                f"Score {_format_number(payload.score)} is below threshold "
                f"{_format_number(threshold)} on {payload.hostname}"
            )
        return None
    if rule_type == "check_fail":
        target = config.get("check_name")
        if not isinstance(target, str) or not target:
            return None
        needle = target.lower()
        for check in payload.failing_checks():
            if needle in check.check_name.lower():
                return f'Check "{check.check_name}" failed on {payload.hostname}: {check.detail}'
        return None
    return None


async def evaluate_alerts(
    *,
    org_id: str,
    host_id: str,
    scan_id: str,
    payload: ScanPayload,
    now: Callable[[], datetime] | None = None,
) -> list[AlertEvent]:
    # Side-effect consumer: owns its session and never raises.
    clock = now or _utc_now
    fired: list[AlertEvent] = []
    try:
        async with SessionLocal() as session:
            rules = await alerts_repo.list_enabled_rules(session, org_id=org_id)
            if not rules:
                return fired
            previous = await scans_repo.get_previous_scan(
                session, host_id=host_id, exclude_scan_id=scan_id
            )
            previous_grade = previous.grade if previous is not None else None
            owner_email = await get_owner_email(session, org_id)
            await session.commit()
            # Detach loaded rows so a per-rule rollback cannot expire them.
            session.expunge_all()

            for rule in rules:
                try:
                    event = await _apply_rule(
                        session,
                        rule=rule,
                        org_id=org_id,
                        host_id=host_id,
                        scan_id=scan_id,
                        payload=payload,
                        previous_grade=previous_grade,
                        owner_email=owner_email,
                        now=clock(),
                    )
                except SideEffectError as exc:
                    logger.warning(
                        "alert_rule_failed org_id=%s rule_id=%s", org_id, rule.id, exc_info=exc
                    )
                    continue
                if event is not None:
                    fired.append(event)
    except Exception as exc:  # noqa: BLE001 - alerting must not fail ingestion
        logger.warning(
            "alert_evaluation_failed org_id=%s host_id=%s scan_id=%s",
            org_id,
            host_id,
            scan_id,
            exc_info=exc,
        )
    return fired


async def _apply_rule(
    session: AsyncSession,
    *,
    rule: AlertRule,
    org_id: str,
    host_id: str,
    scan_id: str,
    payload: ScanPayload,
    previous_grade: str | None,
    owner_email: str | None,
    now: datetime,
) -> AlertEvent | None:
    message = evaluate_rule(rule.rule_type, rule.config_json, payload, previous_grade)
    if message is None:
        return None

    window = timedelta(seconds=get_settings().alert_rate_limit_window_s)
    try:
        claimed = await alerts_repo.claim_rule_notification(
            session, rule_id=rule.id, now=now, since=now - window
        )
        if not claimed:
            # Cooldown suppression is a silent no-op, not an error.
            await session.commit()
            logger.info("alert_rate_limited org_id=%s rule_id=%s", org_id, rule.id)
            return None
        event = AlertEvent(
            org_id=org_id,
            alert_rule_id=rule.id,
            host_id=host_id,
            scan_id=scan_id,
            message=message,
            notified_at=now,
        )
        session.add(event)
        await session.commit()
        session.expunge(event)
    except SQLAlchemyError as exc:
        await session.rollback()
        raise SideEffectError("Failed to record alert event") from exc

    logger.info("alert_fired org_id=%s rule_id=%s scan_id=%s", org_id, rule.id, scan_id)
    if owner_email is None:
        logger.info("alert_owner_email_missing org_id=%s rule_id=%s", org_id, rule.id)
    await notify_alert(
        session=session,
        org_id=org_id,
        owner_email=owner_email,
        alert=AlertNotification(
            rule_id=rule.id,
            rule_name=rule.name,
            rule_type=rule.rule_type,
            hostname=payload.hostname,
            message=message,
            scan_id=scan_id,
            grade=payload.grade,
            score=payload.score,
        ),
    )
    return event


def _format_number(value: float) -> str:
    return f"{value:g}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
