from __future__ import annotations

from datetime import datetime, timezone

from clawkeeper.domain.scans import CheckResult, ScanPayload
from clawkeeper.services.insights import (
    analyze_credential_exposure,
    analyze_critical_failures,
    analyze_cve_vulnerabilities,
    analyze_fleet_inconsistency,
    analyze_grade_degradation,
    analyze_new_regressions,
    analyze_prompt_injection,
    analyze_quick_wins,
    merge_affected_hosts,
    notification_type,
    parse_cve_detail,
    resolves_for_host,
)


def _payload(checks: dict[str, str], grade: str = "B") -> ScanPayload:
    return ScanPayload(
        hostname="web-1",
        platform="linux",
        score=70,
        grade=grade,
        scanned_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        checks=tuple(CheckResult(status=s, check_name=n, detail=f"{n} detail") for n, s in checks.items()),
    )


def test_critical_failures_only_for_catalogued_checks() -> None:
    payload = _payload({"Privileged Mode": "FAIL", "Firewall": "FAIL", "Port Binding": "PASS"})
    pending = analyze_critical_failures("h1", "s1", payload)

    assert [p.title for p in pending] == ["Privileged Mode Failed"]
    assert pending[0].severity == "critical"
    assert pending[0].check_name == "Privileged Mode"
    assert pending[0].affected_hosts == [
        {"host_id": "h1", "hostname": "web-1", "detail": "Privileged Mode detail"}
    ]


def test_credential_checks_roll_up_into_one_insight() -> None:
    payload = _payload({"Credential Files": "FAIL", "Credential Exposure Config": "FAIL"})
    pending = analyze_credential_exposure("h1", "s1", payload)

    assert len(pending) == 1
    assert pending[0].severity == "critical"
    assert pending[0].metadata["check_names"] == ["Credential Files", "Credential Exposure Config"]
    assert pending[0].check_name is None


def test_regressions_require_previous_pass() -> None:
    payload = _payload({"Firewall": "FAIL", "Open Ports": "FAIL", "FileVault": "FAIL"})
    previous = {"Firewall": "PASS", "Open Ports": "PASS", "FileVault": "FAIL"}
    pending = analyze_new_regressions("h1", "s1", payload, previous)

    severities = {p.metadata["check_name"]: p.severity for p in pending}
    assert severities == {"Firewall": "medium", "Open Ports": "high"}


def test_grade_degradation_severity_scales_with_drop() -> None:
    one_step = analyze_grade_degradation("h1", "s1", _payload({}, grade="C"), "B", 82, 7)
    two_steps = analyze_grade_degradation("h1", "s1", _payload({}, grade="D"), "B", 82, 7)
    improved = analyze_grade_degradation("h1", "s1", _payload({}, grade="A"), "B", 82, 7)

    assert one_step[0].severity == "medium"
    assert two_steps[0].severity == "high"
    assert improved == []
    assert analyze_grade_degradation("h1", "s1", _payload({}, grade="F"), None, None, 7) == []


def test_merge_affected_hosts_replaces_by_host_id() -> None:
    current = [{"host_id": "h1", "hostname": "a", "detail": "old"}]
    incoming = [
        {"host_id": "h1", "hostname": "a", "detail": "new"},
        {"host_id": "h2", "hostname": "b", "detail": "x"},
    ]
    merged = merge_affected_hosts(current, incoming)

    assert merged == [
        {"host_id": "h1", "hostname": "a", "detail": "new"},
        {"host_id": "h2", "hostname": "b", "detail": "x"},
    ]
    assert current[0]["detail"] == "old"


def _with_details(checks: list[tuple[str, str, str]]) -> ScanPayload:
    return ScanPayload(
        hostname="web-1",
        platform="linux",
        score=70,
        grade="B",
        scanned_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        checks=tuple(CheckResult(status=s, check_name=n, detail=d) for n, s, d in checks),
    )


def test_check_scoped_insights_dedupe_on_check_name() -> None:
    critical = analyze_critical_failures("h1", "s1", _payload({"Privileged Mode": "FAIL"}))
    rollup = analyze_credential_exposure("h1", "s1", _payload({"Credential Files": "FAIL"}))

    assert critical[0].dedupe_key == "Privileged Mode"
    assert rollup[0].dedupe_key == ""


def test_prompt_injection_rolls_up_with_details() -> None:
    payload = _with_details(
        [
            ("Session Prompt Injection", "FAIL", "2 sessions flagged"),
            ("Memory Prompt Injection", "FAIL", ""),
            ("Skills Prompt Injection", "PASS", ""),
        ]
    )
    pending = analyze_prompt_injection("h1", "s1", payload)

    assert len(pending) == 1
    assert pending[0].severity == "critical"
    assert pending[0].metadata == {
        "check_names": ["Session Prompt Injection", "Memory Prompt Injection"]
    }
    assert pending[0].description == (
        "2 prompt injection/rogue command check(s) failing: "
        "Session Prompt Injection, Memory Prompt Injection. 2 sessions flagged"
    )
    assert notification_type("prompt_injection") == "critical_failure"


def test_cve_detail_parsing() -> None:
    detail = "HIGH (8.8): token leak — affects openclaw, clawhub — [upgrade to >= 2026.1.29]"
    assert parse_cve_detail(detail) == ("high", "2026.1.29", "openclaw, clawhub")
    assert parse_cve_detail("MEDIUM (5.0): info leak") == ("medium", "latest", "openclaw")
    assert parse_cve_detail("unscored advisory") == ("high", "latest", "openclaw")


def test_cve_failures_become_one_insight_per_advisory() -> None:
    payload = _with_details(
        [
            ("CVE: CVE-2026-25253", "FAIL", "CRITICAL (9.8): RCE - affects openclaw [upgrade to >= 2026.1.29]"),
            ("CVE: CVE-2026-11111", "FAIL", "LOW (2.1): minor"),
            ("CVE Audit", "FAIL", "2 advisories"),
        ]
    )
    pending = analyze_cve_vulnerabilities("h1", "s1", payload)

    assert [p.title for p in pending] == [
        "CVE-2026-25253: Vulnerability Detected",
        "CVE-2026-11111: Vulnerability Detected",
    ]
    assert [p.severity for p in pending] == ["critical", "low"]
    assert pending[0].metadata["cve_id"] == "CVE-2026-25253"
    assert "version 2026.1.29 or later" in pending[0].remediation
    assert pending[0].remediation.endswith("https://nvd.nist.gov/vuln/detail/CVE-2026-25253")
    assert notification_type("cve_vulnerability") == "cve_vulnerability"


def test_quick_wins_skip_checks_owned_by_other_analyzers() -> None:
    payload = _payload({"Siri": "FAIL", "Bluetooth": "PASS", "Privileged Mode": "FAIL"})
    pending = analyze_quick_wins("h1", "s1", payload)

    assert [p.title for p in pending] == ["Quick Win: Siri"]
    assert pending[0].severity == "low"
    assert pending[0].remediation.startswith("Disable Siri")


def test_fleet_drift_needs_a_clear_majority() -> None:
    payload = _payload({"Firewall": "FAIL", "FileVault": "FAIL", "Auto Updates": "FAIL"})
    fleet = [
        {"Firewall": "PASS", "FileVault": "PASS", "Auto Updates": "SKIPPED"},
        {"Firewall": "PASS", "FileVault": "FAIL"},
        {"Firewall": "PASS", "FileVault": "PASS"},
        {"Firewall": "FAIL", "FileVault": "FAIL"},
        {"Firewall": "PASS", "FileVault": "PASS"},
    ]
    pending = analyze_fleet_inconsistency("h1", "s1", payload, fleet)

    # Firewall passes on 4/5 (80%); FileVault on 3/5 sits exactly at the 60% line.
    assert [p.metadata["check_name"] for p in pending] == ["Firewall"]
    assert pending[0].metadata["fleet_total"] == 5
    assert analyze_fleet_inconsistency("h1", "s1", payload, []) == []


def test_cve_resolution_rules() -> None:
    audit_passed = _payload({"CVE Audit": "PASS"})
    still_failing = _payload({"CVE: CVE-1": "FAIL"})
    no_audit = _payload({"Firewall": "PASS"})

    assert resolves_for_host("cve_vulnerability", "CVE: CVE-1", audit_passed)
    assert not resolves_for_host("cve_vulnerability", "CVE: CVE-1", still_failing)
    assert resolves_for_host("cve_vulnerability", "CVE: CVE-2", still_failing)
    assert not resolves_for_host("cve_vulnerability", "CVE: CVE-1", no_audit)
    assert resolves_for_host("critical_failure", "Firewall", no_audit)
    assert not resolves_for_host("credential_exposure", None, no_audit)
