from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


# Letter order is severity order: A is best, F is worst.
GRADES: tuple[str, ...] = ("A", "B", "C", "D", "F")
CHECK_STATUSES: tuple[str, ...] = ("PASS", "FAIL", "FIXED", "SKIPPED")


def grade_rank(grade: str) -> int:
    # Unknown grades rank as worst so a malformed stored grade never reads as an improvement.
    try:
        return GRADES.index(grade)
    except ValueError:
        return len(GRADES)


def is_worse_grade(new_grade: str, previous_grade: str) -> bool:
    return grade_rank(new_grade) > grade_rank(previous_grade)


@dataclass(frozen=True)
class CheckResult:
    status: str
    check_name: str
    detail: str = ""


@dataclass(frozen=True)
class ScanPayload:
    # Normalized agent upload with every optional field defaulted.
    hostname: str
    platform: str
    score: float
    grade: str
    scanned_at: datetime
    os_version: str = ""
    passed: int = 0
    failed: int = 0
    fixed: int = 0
    skipped: int = 0
    checks: tuple[CheckResult, ...] = field(default_factory=tuple)
    raw_report: str = ""
    agent_version: str = "unknown"

    def failing_checks(self) -> list[CheckResult]:
        return [check for check in self.checks if check.status == "FAIL"]

    def to_job_dict(self) -> dict:
        # Plain JSON-safe shape for queue handoff to side-effect workers.
        return {
            "hostname": self.hostname,
            "platform": self.platform,
            "score": self.score,
            "grade": self.grade,
            "scanned_at": self.scanned_at.isoformat(),
            "os_version": self.os_version,
            "passed": self.passed,
            "failed": self.failed,
            "fixed": self.fixed,
            "skipped": self.skipped,
            "checks": [
                {"status": c.status, "check_name": c.check_name, "detail": c.detail}
                for c in self.checks
            ],
            "agent_version": self.agent_version,
        }

    @classmethod
    def from_job_dict(cls, data: dict) -> "ScanPayload":
        return cls(
            hostname=data["hostname"],
            platform=data["platform"],
            score=data["score"],
            grade=data["grade"],
            scanned_at=datetime.fromisoformat(data["scanned_at"]),
            os_version=data.get("os_version", ""),
            passed=int(data.get("passed", 0)),
            failed=int(data.get("failed", 0)),
            fixed=int(data.get("fixed", 0)),
            skipped=int(data.get("skipped", 0)),
            checks=tuple(
                CheckResult(status=c["status"], check_name=c["check_name"], detail=c.get("detail", ""))
                for c in data.get("checks", [])
            ),
            raw_report="",
            agent_version=data.get("agent_version", "unknown"),
        )
