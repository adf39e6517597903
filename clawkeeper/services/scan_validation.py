from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field, StrictInt, StrictStr, field_validator
from pydantic import ValidationError as PydanticValidationError

from clawkeeper.core.errors import AgentEventValidationError, ScanValidationError
from clawkeeper.domain.events import AGENT_EVENT_TYPES
from clawkeeper.domain.scans import CHECK_STATUSES, GRADES, CheckResult, ScanPayload


HOSTNAME_MAX_LEN = 255
PLATFORM_MAX_LEN = 64
OS_VERSION_MAX_LEN = 255
AGENT_VERSION_MAX_LEN = 64
CHECK_NAME_MAX_LEN = 255
CHECK_DETAIL_MAX_LEN = 10_000
MAX_CHECKS = 500
RAW_REPORT_MAX_BYTES = 1_000_000


class CheckEntry(BaseModel):
    status: Literal["PASS", "FAIL", "FIXED", "SKIPPED"]
    check_name: StrictStr = Field(min_length=1, max_length=CHECK_NAME_MAX_LEN)
    detail: StrictStr = Field(default="", max_length=CHECK_DETAIL_MAX_LEN)

    @field_validator("detail", mode="before")
    @classmethod
    def _detail_default(cls, value: Any) -> Any:
        return "" if value is None else value


class ScanUploadRequest(BaseModel):
    # Field order is validation order; the first failing field names the error.
    hostname: StrictStr = Field(min_length=1, max_length=HOSTNAME_MAX_LEN)
    platform: StrictStr = Field(min_length=1, max_length=PLATFORM_MAX_LEN)
    score: float = Field(strict=True, ge=0, le=100, allow_inf_nan=False)
    grade: Literal["A", "B", "C", "D", "F"]
    checks: list[CheckEntry] = Field(max_length=MAX_CHECKS)
    os_version: StrictStr = Field(default="", max_length=OS_VERSION_MAX_LEN)
    agent_version: StrictStr = Field(default="unknown", max_length=AGENT_VERSION_MAX_LEN)
    passed: StrictInt = Field(default=0, ge=0)
    failed: StrictInt = Field(default=0, ge=0)
    fixed: StrictInt = Field(default=0, ge=0)
    skipped: StrictInt = Field(default=0, ge=0)
    raw_report: StrictStr = ""
    scanned_at: datetime | None = None

    model_config = {"extra": "ignore"}

    @field_validator("os_version", "raw_report", mode="before")
    @classmethod
    def _empty_string_default(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("agent_version", mode="before")
    @classmethod
    def _agent_version_default(cls, value: Any) -> Any:
        return "unknown" if value is None or value == "" else value

    @field_validator("passed", "failed", "fixed", "skipped", mode="before")
    @classmethod
    def _count_default(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("raw_report")
    @classmethod
    def _raw_report_bytes(cls, value: str) -> str:
        if len(value.encode("utf-8")) > RAW_REPORT_MAX_BYTES:
            raise ValueError("raw_report too large")
        return value

    @field_validator("scanned_at", mode="before")
    @classmethod
    def _scanned_at_text(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        # Only ISO strings; numeric epoch values are not timestamps on this wire.
        if not isinstance(value, (str, datetime)):
            raise ValueError("scanned_at must be a string")
        return value

    @field_validator("scanned_at")
    @classmethod
    def _scanned_at_utc(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class AgentEventRequest(BaseModel):
    event_type: Literal["agent.installed", "agent.started", "agent.stopped", "agent.uninstalled"]
    hostname: StrictStr = Field(min_length=1, max_length=HOSTNAME_MAX_LEN)

    model_config = {"extra": "ignore"}


def validate_scan_payload(
    body: Any,
    *,
    now: Callable[[], datetime] | None = None,
) -> ScanPayload:
    """Validate an agent scan upload and return the normalized payload.

    Pure function: no I/O. Raises ScanValidationError with a message naming the
    first offending field; nothing is partially accepted.
    """
    try:
        request = ScanUploadRequest.model_validate(body)
    except PydanticValidationError as exc:
        raise ScanValidationError(_scan_error_message(exc.errors()[0])) from None

    scanned_at = request.scanned_at or (now or _utc_now)()
    return ScanPayload(
        hostname=request.hostname,
        platform=request.platform,
        score=request.score,
        grade=request.grade,
        scanned_at=scanned_at,
        os_version=request.os_version,
        passed=request.passed,
        failed=request.failed,
        fixed=request.fixed,
        skipped=request.skipped,
        checks=tuple(
            CheckResult(status=entry.status, check_name=entry.check_name, detail=entry.detail)
            for entry in request.checks
        ),
        raw_report=request.raw_report,
        agent_version=request.agent_version,
    )


def validate_agent_event(body: Any) -> AgentEventRequest:
    try:
        return AgentEventRequest.model_validate(body)
    except PydanticValidationError as exc:
        error = exc.errors()[0]
        loc = error["loc"]
        if not loc:
            message = "Request body must be a JSON object"
        elif loc[0] == "event_type":
            message = f"Invalid event_type. Must be one of: {', '.join(AGENT_EVENT_TYPES)}"
        elif error["type"] == "string_too_long":
            message = f"hostname must be at most {HOSTNAME_MAX_LEN} characters"
        else:
            message = "hostname is required"
        raise AgentEventValidationError(message) from None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _scan_error_message(error: dict[str, Any]) -> str:
    # Maps the first pydantic error onto the field-naming messages agents already parse.
    loc = error["loc"]
    kind = error["type"]
    if not loc:
        return "Request body must be a JSON object"

    field = loc[0]
    if field == "checks":
        return _check_error_message(loc, kind)
    if kind == "string_too_long":
        return f"{field} must be at most {error['ctx']['max_length']} characters"
    if field in ("hostname", "platform"):
        return f"{field} is required (string)"
    if field == "score":
        return "score must be a number 0-100"
    if field == "grade":
        return f"grade must be one of: {', '.join(GRADES)}"
    if field in ("passed", "failed", "fixed", "skipped"):
        return f"{field} must be a non-negative integer"
    if field == "raw_report" and kind == "value_error":
        return f"raw_report must be at most {RAW_REPORT_MAX_BYTES} bytes"
    if field == "scanned_at":
        return "scanned_at must be an ISO 8601 timestamp"
    return f"{field} must be a string"


def _check_error_message(loc: tuple[Any, ...], kind: str) -> str:
    if len(loc) == 1:
        if kind == "too_long":
            return f"checks must contain at most {MAX_CHECKS} entries"
        return "checks must be an array"
    prefix = f"checks[{loc[1]}]"
    if len(loc) == 2:
        return f"{prefix} must be an object"
    sub = loc[2]
    if sub == "status":
        return f"{prefix}.status must be one of: {', '.join(CHECK_STATUSES)}"
    if sub == "check_name":
        if kind == "string_too_long":
            return f"{prefix}.check_name must be at most {CHECK_NAME_MAX_LEN} characters"
        return f"{prefix}.check_name is required"
    if kind == "string_too_long":
        return f"{prefix}.detail must be at most {CHECK_DETAIL_MAX_LEN} characters"
    return f"{prefix}.detail must be a string"
