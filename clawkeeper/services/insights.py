from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.core.config import get_settings
from clawkeeper.core.errors import SideEffectError
from clawkeeper.domain.models import Insight
from clawkeeper.domain.scans import ScanPayload, grade_rank, is_worse_grade
from clawkeeper.persistence.db import SessionLocal
from clawkeeper.persistence.repos import insights as insights_repo
from clawkeeper.persistence.repos import scans as scans_repo
from clawkeeper.persistence.repos.organizations import get_org_plan
from clawkeeper.services.notifications import NotificationPayload, notify
from clawkeeper.services.plans import get_plan_limits


logger = logging.getLogger(__name__)

# Exact check_name strings emitted by the scanner.
CRITICAL_CHECKS: dict[str, str] = {
    "Privileged Mode": "critical",
    "Network Mode": "critical",
    "Port Binding": "high",
    "Container User": "high",
    "Volume Mounts": "high",
    "PermitRootLogin": "critical",
    "PasswordAuthentication": "high",
    "OpenClaw Gateway": "critical",
    "Open Ports": "high",
    "gateway.bind": "high",
    "gateway.auth": "high",
    "SOUL.md Integrity": "high",
    "User Account": "high",
    "Session Prompt Injection": "critical",
    "Session Rogue Commands": "critical",
    "Memory Prompt Injection": "critical",
    "Skills Prompt Injection": "critical",
    "Log File Content": "high",
}

CREDENTIAL_CHECKS: tuple[str, ...] = (
    "Credential Exposure",
    "Credential Exposure Config",
    "Credential Exposure History",
    "Credential Exposure Memory",
    "Credential Exposure Sessions",
    "SOUL.md Sensitive Data",
    "Credential Files",
    "Credential Directory",
)

PROMPT_INJECTION_CHECKS: tuple[str, ...] = (
    "Session Prompt Injection",
    "Session Rogue Commands",
    "Memory Prompt Injection",
    "Skills Prompt Injection",
)

# CVE audit results arrive as one check per advisory, e.g. "CVE: CVE-2026-25253".
CVE_CHECK_PREFIX = "CVE: "
CVE_AUDIT_CHECK = "CVE Audit"

# Easy fixes surfaced as low-severity quick wins.
QUICK_WIN_CHECKS: dict[str, str] = {
    "Firewall": "Enable the firewall:\n  macOS: sudo /usr/libexec/ApplicationFirewall/socketfilterfw --setglobalstate on\n  Linux: sudo ufw enable",
    "FileVault": "Enable FileVault: sudo fdesetup enable",
    "Auto Updates": "Enable automatic updates:\n  macOS: sudo softwareupdate --schedule on\n  Linux: sudo apt install unattended-upgrades && sudo dpkg-reconfigure -plow unattended-upgrades",
    "Remote Login": "Disable remote login: sudo systemsetup -setremotelogin off",
    "Siri": "Disable Siri: System Settings > Siri & Spotlight > Disable Ask Siri",
    "Bluetooth": "Disable Bluetooth: System Settings > Bluetooth > Turn Off",
    "AirDrop & Handoff": "Disable AirDrop: System Settings > General > AirDrop & Handoff > turn both off",
    "Location Services": "Disable Location Services: System Settings > Privacy & Security > Location Services > turn off",
    "Spotlight Indexing": "Disable Spotlight indexing: sudo mdutil -a -i off",
    "iCloud": "Sign out of iCloud: System Settings > Apple ID > Sign Out",
    "Automatic Login": "Disable automatic login: System Settings > Users & Groups > Login Options > turn off",
    "Screen Sharing": "Disable Screen Sharing: System Settings > General > Sharing > Screen Sharing > turn off",
    "Analytics & Telemetry": "Disable analytics: System Settings > Privacy & Security > Analytics & Improvements > turn all off",
    "Container Bonjour": "Set OPENCLAW_DISABLE_BONJOUR=1 in your container environment variables",
    "mDNS": "Disable mDNS broadcasting: check OpenClaw config or set OPENCLAW_DISABLE_BONJOUR=1",
    "gateway.controlUI": "Disable the web control UI: set controlUI: false in gateway config",
    "gateway.discover": "Disable mDNS discovery: set discover.mode: off in gateway config",
    "exec.ask": "Enable explicit consent: set exec.ask: on in OpenClaw config",
    "logging.redactSensitive": "Enable log redaction: set logging.redactSensitive: tools in OpenClaw config",
    "Disk Encryption": "Enable LUKS disk encryption on your Linux volumes",
    "Fail2ban": "Install and enable fail2ban:\n  sudo apt install fail2ban && sudo systemctl enable --now fail2ban",
}

REMEDIATIONS: dict[str, str] = {
    "Privileged Mode": "Run containers without --privileged flag. Use specific capabilities with --cap-add instead.",
    "Network Mode": "Do not use host network mode. Use bridge or custom networks: docker run --network=bridge",
    "Port Binding": "Bind ports to localhost only: use 127.0.0.1:PORT:PORT instead of PORT:PORT in docker-compose.",
    "Container User": 'Run containers as non-root: add USER openclaw to Dockerfile or user: "1000:1000" in compose.',
    "Volume Mounts": "Remove sensitive host path mounts (/, /etc, /var/run/docker.sock). Use named volumes instead.",
    "PermitRootLogin": "In /etc/ssh/sshd_config set PermitRootLogin no. Restart sshd: sudo systemctl restart sshd",
    "PasswordAuthentication": "In /etc/ssh/sshd_config set PasswordAuthentication no. Use key-based auth instead. Restart sshd.",
    "OpenClaw Gateway": "Bind the gateway to localhost only. Set gateway.bind: loopback in OpenClaw config.",
    "Open Ports": "Restrict port bindings to localhost. Avoid exposing the OpenClaw gateway (18789) on all interfaces.",
    "gateway.bind": "Set gateway.bind: loopback in OpenClaw config to restrict access to local connections only.",
    "gateway.auth": "Enable token authentication: set gateway.auth.mode: token in OpenClaw config.",
    "SOUL.md Integrity": "Inspect SOUL.md for prompt injection patterns. Remove any suspicious instructions or encoded content.",
    "User Account": "Switch to a non-root/non-admin user. Create a dedicated 'openclaw' standard user account.",
    "Session Prompt Injection": "1. Review flagged session JSONL files for injected instructions\n2. Rotate credentials if agent was compromised\n3. Enable sandbox mode and exec.ask",
    "Session Rogue Commands": "1. Review flagged session files for suspicious commands\n2. Audit what data was accessed or transmitted\n3. Rotate all credentials\n4. Enable sandbox mode",
    "Memory Prompt Injection": "1. Open MEMORY.md and remove injected/poisoned instructions\n2. Remove base64 blocks and invisible Unicode\n3. chmod 600 MEMORY.md\n4. Re-scan",
    "Skills Prompt Injection": "1. Quarantine the flagged skill (rename SKILL.md)\n2. Review the skill body for injection language\n3. Only use skills from trusted sources",
    "Log File Content": "Review log files for leaked credentials, rotate any exposed secrets and enable log redaction.",
    **QUICK_WIN_CHECKS,
}

CREDENTIAL_REMEDIATION = (
    "1. Rotate all exposed credentials immediately\n"
    "2. Move secrets to environment variables or a secrets manager\n"
    "3. Re-scan to verify remediation"
)

PROMPT_INJECTION_REMEDIATION = (
    "1. Review the flagged session files and MEMORY.md for injected instructions\n"
    "2. Remove any suspicious content from MEMORY.md\n"
    "3. Quarantine any skills with prompt injection language\n"
    "4. Rotate credentials if rogue commands accessed sensitive data\n"
    "5. Review session transcripts for unauthorized tool use\n"
    "6. Re-scan to verify remediation"
)

# Share of the other hosts that must pass a check before a failure counts as drift.
FLEET_PASS_RATIO = 0.6

_CVE_SEVERITIES = ("CRITICAL", "HIGH", "MEDIUM", "LOW")
_CVE_FIX_RE = re.compile(r"\[upgrade to >= ([^\]]+)\]")
_CVE_PACKAGES_RE = re.compile(r"affects ([^\[]+)\[")
_NOTIFY_SEVERITIES = frozenset({"critical", "high"})
# Insight types without a channel filter of their own ride on notify_on_critical.
_NOTIFICATION_TYPES = {
    "cve_vulnerability": "cve_vulnerability",
    "credential_exposure": "credential_exposure",
    "grade_degradation": "grade_degradation",
    "new_regression": "new_regression",
}


@dataclass(frozen=True)
class PendingInsight:
    insight_type: str
    severity: str
    category: str
    title: str
    description: str
    remediation: str
    affected_hosts: list[dict[str, str]]
    scan_id: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def check_name(self) -> str | None:
        return self.metadata.get("check_name")

    @property
    def dedupe_key(self) -> str:
        # Check-scoped insights dedupe per check; org-wide roll-ups share the empty key.
        return self.check_name or ""


@dataclass(frozen=True)
class UpsertResult:
    insight_id: str
    created: bool
    host_added: bool


def analyze_critical_failures(host_id: str, scan_id: str, payload: ScanPayload) -> list[PendingInsight]:
    pending = []
    for check in payload.failing_checks():
        severity = CRITICAL_CHECKS.get(check.check_name)
        # Credential checks roll up into their own insight.
        if severity is None or check.check_name in CREDENTIAL_CHECKS:
            continue
        pending.append(
            PendingInsight(
                insight_type="critical_failure",
                severity=severity,
                category="security",
                title=f"{check.check_name} Failed",
                description=check.detail or f'Critical security check "{check.check_name}" is failing.',
                remediation=REMEDIATIONS.get(
                    check.check_name,
                    f'Review and fix the "{check.check_name}" check configuration.',
                ),
                affected_hosts=[_affected(host_id, payload.hostname, check.detail)],
                metadata={"check_name": check.check_name},
                scan_id=scan_id,
            )
        )
    return pending


def analyze_credential_exposure(host_id: str, scan_id: str, payload: ScanPayload) -> list[PendingInsight]:
    names = [c.check_name for c in payload.failing_checks() if c.check_name in CREDENTIAL_CHECKS]
    if not names:
        return []
    joined = ", ".join(names)
    return [
        PendingInsight(
            insight_type="credential_exposure",
            severity="critical",
            category="security",
            title="Credential Exposure Detected",
            description=f"{len(names)} credential-related check(s) failing: {joined}.",
            remediation=CREDENTIAL_REMEDIATION,
            affected_hosts=[_affected(host_id, payload.hostname, joined)],
            metadata={"check_names": names},
            scan_id=scan_id,
        )
    ]


def analyze_prompt_injection(host_id: str, scan_id: str, payload: ScanPayload) -> list[PendingInsight]:
    failing = [c for c in payload.failing_checks() if c.check_name in PROMPT_INJECTION_CHECKS]
    if not failing:
        return []
    names = [c.check_name for c in failing]
    joined = ", ".join(names)
    details = "; ".join(c.detail for c in failing if c.detail)
    return [
        PendingInsight(
            insight_type="prompt_injection",
            severity="critical",
            category="security",
            title="Prompt Injection Detected",
            description=(
                f"{len(names)} prompt injection/rogue command check(s) failing: {joined}. {details}"
            ).rstrip(),
            remediation=PROMPT_INJECTION_REMEDIATION,
            affected_hosts=[_affected(host_id, payload.hostname, joined)],
            metadata={"check_names": names},
            scan_id=scan_id,
        )
    ]


def parse_cve_detail(detail: str) -> tuple[str, str, str]:
    """Pull (severity, fix_version, packages) out of a CVE check detail.

    The agent writes details like
    ``HIGH (8.8): description - affects openclaw [upgrade to >= 2026.1.29]``.
    Unknown severities read as high; a missing fix version reads as "latest".
    """
    severity = "high"
    for label in _CVE_SEVERITIES:
        if detail.startswith(label):
            severity = label.lower()
            break
    fix_match = _CVE_FIX_RE.search(detail)
    fix_version = fix_match.group(1) if fix_match else "latest"
    packages_match = _CVE_PACKAGES_RE.search(detail)
    packages = "openclaw"
    if packages_match:
        packages = re.sub(r"\s*[—-]\s*$", "", packages_match.group(1).strip())
    return severity, fix_version, packages


def analyze_cve_vulnerabilities(host_id: str, scan_id: str, payload: ScanPayload) -> list[PendingInsight]:
    pending = []
    for check in payload.failing_checks():
        if not check.check_name.startswith(CVE_CHECK_PREFIX):
            continue
        cve_id = check.check_name[len(CVE_CHECK_PREFIX):].strip()
        severity, fix_version, packages = parse_cve_detail(check.detail)
        pending.append(
            PendingInsight(
                insight_type="cve_vulnerability",
                severity=severity,
                category="security",
                title=f"{cve_id}: Vulnerability Detected",
                description=check.detail,
                remediation=(
                    f"1. Upgrade OpenClaw to version {fix_version} or later:\n"
                    "   npm install -g openclaw@latest\n"
                    "   (or update your Docker image to the latest tag)\n\n"
                    "2. If using Docker Compose, update the image tag and run:\n"
                    "   docker compose pull && docker compose up -d\n\n"
                    "3. Re-run the Clawkeeper scan to verify the fix:\n"
                    "   clawkeeper scan\n\n"
                    f"Affected packages: {packages}\n"
                    f"More info: https://nvd.nist.gov/vuln/detail/{cve_id}"
                ),
                affected_hosts=[_affected(host_id, payload.hostname, check.detail)],
                metadata={
                    "check_name": check.check_name,
                    "cve_id": cve_id,
                    "fix_version": fix_version,
                    "packages": packages,
                },
                scan_id=scan_id,
            )
        )
    return pending


def analyze_new_regressions(
    host_id: str,
    scan_id: str,
    payload: ScanPayload,
    previous_statuses: dict[str, str],
) -> list[PendingInsight]:
    # PASS -> FAIL against the immediately preceding scan.
    pending = []
    for check in payload.failing_checks():
        if previous_statuses.get(check.check_name) != "PASS":
            continue
        pending.append(
            PendingInsight(
                insight_type="new_regression",
                severity="high" if check.check_name in CRITICAL_CHECKS else "medium",
                category="drift",
                title=f"Regression: {check.check_name}",
                description=f'"{check.check_name}" flipped from PASS to FAIL on {payload.hostname}.',
                remediation=REMEDIATIONS.get(
                    check.check_name,
                    "Investigate what changed and restore the passing configuration "
                    f'for "{check.check_name}".',
                ),
                affected_hosts=[_affected(host_id, payload.hostname, check.detail)],
                metadata={"check_name": check.check_name, "previous_status": "PASS"},
                scan_id=scan_id,
            )
        )
    return pending


def analyze_grade_degradation(
    host_id: str,
    scan_id: str,
    payload: ScanPayload,
    old_grade: str | None,
    old_score: float | None,
    lookback_days: int,
) -> list[PendingInsight]:
    if old_grade is None or not is_worse_grade(payload.grade, old_grade):
        return []
    drop = grade_rank(payload.grade) - grade_rank(old_grade)
    return [
        PendingInsight(
            insight_type="grade_degradation",
            severity="high" if drop >= 2 else "medium",
            category="compliance",
            title=f"Grade Degraded on {payload.hostname}",
            description=f"Grade dropped {old_grade} -> {payload.grade} over the last {lookback_days} days.",
            remediation=(
                f"Review recent scan results on {payload.hostname} to identify which checks changed. "
                "Focus on fixing critical and high-severity failures first."
            ),
            affected_hosts=[_affected(host_id, payload.hostname, f"{old_grade} -> {payload.grade}")],
            metadata={
                "old_grade": old_grade,
                "new_grade": payload.grade,
                "old_score": old_score,
                "new_score": payload.score,
            },
            scan_id=scan_id,
        )
    ]


def analyze_quick_wins(host_id: str, scan_id: str, payload: ScanPayload) -> list[PendingInsight]:
    pending = []
    for check in payload.failing_checks():
        fix = QUICK_WIN_CHECKS.get(check.check_name)
        if fix is None or check.check_name in CRITICAL_CHECKS or check.check_name in CREDENTIAL_CHECKS:
            continue
        pending.append(
            PendingInsight(
                insight_type="quick_win",
                severity="low",
                category="compliance",
                title=f"Quick Win: {check.check_name}",
                description=f'"{check.check_name}" is an easy fix that will improve your security score.',
                remediation=fix,
                affected_hosts=[_affected(host_id, payload.hostname, check.detail)],
                metadata={"check_name": check.check_name},
                scan_id=scan_id,
            )
        )
    return pending


def analyze_fleet_inconsistency(
    host_id: str,
    scan_id: str,
    payload: ScanPayload,
    fleet_statuses: list[dict[str, str]],
) -> list[PendingInsight]:
    """Flag checks this host fails while most of the other hosts pass them.

    fleet_statuses holds the latest check statuses of every other host in the
    org. Only PASS and FAIL votes count toward the ratio.
    """
    passing: dict[str, int] = {}
    failing: dict[str, int] = {}
    for statuses in fleet_statuses:
        for name, status in statuses.items():
            if status == "PASS":
                passing[name] = passing.get(name, 0) + 1
            elif status == "FAIL":
                failing[name] = failing.get(name, 0) + 1

    pending = []
    for check in payload.failing_checks():
        passed = passing.get(check.check_name, 0)
        total = passed + failing.get(check.check_name, 0)
        if total < 1 or passed / total <= FLEET_PASS_RATIO:
            continue
        pending.append(
            PendingInsight(
                insight_type="fleet_inconsistency",
                severity="medium",
                category="drift",
                title=f"Fleet Drift: {check.check_name}",
                description=(
                    f'"{check.check_name}" passes on {passed}/{total} other hosts '
                    f"but fails on {payload.hostname}."
                ),
                remediation=(
                    f'Standardize the configuration for "{check.check_name}" across your fleet. '
                    "Use a passing host as the reference configuration."
                ),
                affected_hosts=[_affected(host_id, payload.hostname, check.detail)],
                metadata={
                    "check_name": check.check_name,
                    "fleet_passing": passed,
                    "fleet_total": total,
                },
                scan_id=scan_id,
            )
        )
    return pending


async def generate_insights(
    *,
    org_id: str,
    host_id: str,
    scan_id: str,
    payload: ScanPayload,
    now: Callable[[], datetime] | None = None,
) -> list[PendingInsight]:
    """Run the analyzers for one scan, then upsert, auto-resolve and notify.

    Side-effect consumer: owns its session and never raises. Skipped when
    insights are disabled or the org's plan does not include them.
    """
    settings = get_settings()
    if not settings.insights_enabled:
        return []
    clock = now or _utc_now
    try:
        async with SessionLocal() as session:
            plan = await get_org_plan(session, org_id)
            if plan is None or not get_plan_limits(plan).insights:
                return []

            previous = await scans_repo.get_previous_scan(
                session, host_id=host_id, exclude_scan_id=scan_id
            )
            previous_statuses: dict[str, str] = {}
            if previous is not None:
                previous_statuses = await scans_repo.get_check_statuses(session, scan_id=previous.id)
            lookback = settings.grade_degradation_lookback_days
            old_scan = await scans_repo.get_scan_at_or_before(
                session,
                org_id=org_id,
                host_id=host_id,
                before=clock() - timedelta(days=lookback),
            )
            fleet_statuses = await scans_repo.list_fleet_check_statuses(
                session, org_id=org_id, exclude_host_id=host_id
            )
            await session.commit()

            pending = [
                *analyze_critical_failures(host_id, scan_id, payload),
                *analyze_credential_exposure(host_id, scan_id, payload),
                *analyze_prompt_injection(host_id, scan_id, payload),
                *analyze_cve_vulnerabilities(host_id, scan_id, payload),
                *analyze_new_regressions(host_id, scan_id, payload, previous_statuses),
                *analyze_grade_degradation(
                    host_id,
                    scan_id,
                    payload,
                    old_scan.grade if old_scan is not None else None,
                    old_scan.score if old_scan is not None else None,
                    lookback,
                ),
                *analyze_quick_wins(host_id, scan_id, payload),
                *analyze_fleet_inconsistency(host_id, scan_id, payload, fleet_statuses),
            ]
            written = []
            for insight in pending:
                written.append(
                    (insight, await upsert_insight(session, org_id=org_id, insight=insight, now=clock()))
                )

            await auto_resolve(session, org_id=org_id, host_id=host_id, payload=payload, now=clock())

            await notify_if_needed(session, org_id=org_id, written=written, now=clock())
    except Exception as exc:  # noqa: BLE001 - insights must not fail ingestion
        logger.warning(
            "insight_generation_failed org_id=%s host_id=%s scan_id=%s",
            org_id,
            host_id,
            scan_id,
            exc_info=exc,
        )
        return []
    logger.info("insights_generated org_id=%s scan_id=%s count=%s", org_id, scan_id, len(pending))
    return pending


async def upsert_insight(
    session: AsyncSession,
    *,
    org_id: str,
    insight: PendingInsight,
    now: datetime,
) -> UpsertResult:
    """Insert the open insight for this dedupe key, or merge this host into it.

    Commits per insight. A concurrent insert trips the partial unique index and
    a concurrent merge loses the version compare-and-swap; both retry against
    the fresh row. Resolved insights are never touched.
    """
    attempts = max(1, get_settings().insight_upsert_max_attempts)
    for attempt in range(1, attempts + 1):
        existing = await insights_repo.find_open_insight(
            session,
            org_id=org_id,
            insight_type=insight.insight_type,
            dedupe_key=insight.dedupe_key,
        )
        if existing is None:
            row = Insight(
                org_id=org_id,
                insight_type=insight.insight_type,
                dedupe_key=insight.dedupe_key,
                severity=insight.severity,
                category=insight.category,
                title=insight.title,
                description=insight.description,
                remediation=insight.remediation,
                affected_hosts_json=list(insight.affected_hosts),
                metadata_json=dict(insight.metadata),
                scan_id=insight.scan_id,
                created_at=now,
                updated_at=now,
            )
            try:
                session.add(row)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "insight_create_conflict org_id=%s insight_type=%s attempt=%s",
                    org_id,
                    insight.insight_type,
                    attempt,
                )
                continue
            return UpsertResult(insight_id=row.id, created=True, host_added=True)

        current = list(existing.affected_hosts_json or [])
        merged = merge_affected_hosts(current, insight.affected_hosts)
        swapped = await insights_repo.compare_and_swap_insight(
            session,
            insight_id=existing.id,
            expected_version=existing.version,
            values={
                "affected_hosts_json": merged,
                "description": insight.description,
                "scan_id": insight.scan_id,
                "updated_at": now,
            },
        )
        await session.commit()
        if swapped:
            return UpsertResult(
                insight_id=existing.id, created=False, host_added=len(merged) > len(current)
            )
        logger.debug(
            "insight_merge_cas_conflict org_id=%s insight_id=%s attempt=%s",
            org_id,
            existing.id,
            attempt,
        )
    raise SideEffectError("Failed to upsert insight")


def merge_affected_hosts(
    current: list[dict[str, Any]],
    incoming: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    # Keyed by host_id; a repeat host replaces its previous detail.
    merged = [dict(entry) for entry in current]
    for entry in incoming:
        for index, existing in enumerate(merged):
            if existing.get("host_id") == entry.get("host_id"):
                merged[index] = dict(entry)
                break
        else:
            merged.append(dict(entry))
    return merged


def resolves_for_host(
    insight_type: str,
    check_name: str | None,
    payload: ScanPayload,
) -> bool:
    """Whether this scan clears the host from an open insight.

    A PASS on the insight's check clears it. CVE insights also clear when the
    CVE audit passes outright, or when the audit ran and that advisory is no
    longer among the failing CVE checks.
    """
    passing = {check.check_name for check in payload.checks if check.status == "PASS"}
    if insight_type == "cve_vulnerability":
        failing_cves = {
            check.check_name
            for check in payload.failing_checks()
            if check.check_name.startswith(CVE_CHECK_PREFIX)
        }
        audit_passed = CVE_AUDIT_CHECK in passing
        audit_ran = (
            audit_passed
            or bool(failing_cves)
            or any(check.check_name == CVE_AUDIT_CHECK for check in payload.checks)
        )
        if audit_passed:
            return True
        if audit_ran and check_name and check_name not in failing_cves:
            return True
    return bool(check_name) and check_name in passing


async def auto_resolve(
    session: AsyncSession,
    *,
    org_id: str,
    host_id: str,
    payload: ScanPayload,
    now: datetime,
) -> list[str]:
    # Drops this host from open insights its scan clears; returns ids of insights fully resolved.
    if not any(check.status == "PASS" for check in payload.checks):
        return []
    resolved: list[str] = []
    attempts = max(1, get_settings().insight_upsert_max_attempts)
    for attempt in range(1, attempts + 1):
        conflicted = False
        for insight in await insights_repo.list_open_insights(session, org_id=org_id):
            check_name = (insight.metadata_json or {}).get("check_name")
            if not resolves_for_host(insight.insight_type, check_name, payload):
                continue
            hosts = insight.affected_hosts_json or []
            remaining = [entry for entry in hosts if entry.get("host_id") != host_id]
            if len(remaining) == len(hosts):
                continue
            values: dict[str, Any] = {"affected_hosts_json": remaining, "updated_at": now}
            if not remaining:
                values.update(is_resolved=True, resolved_at=now)
            swapped = await insights_repo.compare_and_swap_insight(
                session, insight_id=insight.id, expected_version=insight.version, values=values
            )
            if not swapped:
                conflicted = True
                continue
            if not remaining:
                resolved.append(insight.id)
                logger.info("insight_resolved org_id=%s insight_id=%s", org_id, insight.id)
        await session.commit()
        if not conflicted:
            return resolved
        logger.debug("insight_resolve_cas_conflict org_id=%s attempt=%s", org_id, attempt)
    raise SideEffectError("Failed to resolve insights")


def notification_type(insight_type: str) -> str:
    return _NOTIFICATION_TYPES.get(insight_type, "critical_failure")


async def notify_if_needed(
    session: AsyncSession,
    *,
    org_id: str,
    written: list[tuple[PendingInsight, UpsertResult]],
    now: datetime,
) -> int:
    # Only new insights or newly affected hosts notify, at most once per insight per window.
    window = timedelta(seconds=get_settings().insight_notify_window_s)
    sent = 0
    for insight, result in written:
        if insight.severity not in _NOTIFY_SEVERITIES or not result.host_added:
            continue
        claimed = await insights_repo.claim_insight_notification(
            session, insight_id=result.insight_id, now=now, since=now - window
        )
        await session.commit()
        if not claimed:
            logger.info(
                "insight_notification_suppressed org_id=%s insight_id=%s",
                org_id,
                result.insight_id,
            )
            continue
        hostname = insight.affected_hosts[0]["hostname"] if insight.affected_hosts else "unknown"
        delivery = await notify(
            session=session,
            org_id=org_id,
            payload=NotificationPayload(
                type=notification_type(insight.insight_type),
                severity=insight.severity,
                title=insight.title,
                description=insight.description,
                remediation=insight.remediation,
                hostname=hostname,
                metadata=insight.metadata,
            ),
        )
        if delivery.delivered:
            sent += 1
    return sent


def _affected(host_id: str, hostname: str, detail: str) -> dict[str, str]:
    return {"host_id": host_id, "hostname": hostname, "detail": detail or ""}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
