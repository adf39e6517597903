from __future__ import annotations


class ClawkeeperError(Exception):
    """Base error for Clawkeeper."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ClawkeeperError):
    """Malformed or out-of-range agent input; never retried."""

    status_code = 400
    code = "VALIDATION_ERROR"


class ScanValidationError(ValidationError):
    """Scan upload payload failed structural or semantic validation."""

    code = "INVALID_SCAN_PAYLOAD"


class AgentEventValidationError(ValidationError):
    """Agent lifecycle event payload is not acceptable."""

    code = "INVALID_AGENT_EVENT"


class QuotaExceeded(ClawkeeperError):
    """Plan limit reached; surfaced verbatim so the operator knows to upgrade."""

    status_code = 403
    code = "QUOTA_EXCEEDED"


class CreditsExhausted(QuotaExceeded):
    """No scan credits left in the current refill period."""

    status_code = 402
    code = "CREDITS_EXHAUSTED"


class HostLimitReached(QuotaExceeded):
    """Registering another host would exceed the plan's host count."""

    code = "HOST_LIMIT_REACHED"


class OrganizationNotFound(ClawkeeperError):
    """The caller resolved to an organization that does not exist."""

    status_code = 404
    code = "ORGANIZATION_NOT_FOUND"


class PersistenceError(ClawkeeperError):
    """Authoritative write (ledger, host, scan) failed."""

    status_code = 500
    code = "PERSISTENCE_ERROR"


class LedgerContentionError(PersistenceError):
    """Credit ledger compare-and-swap kept losing to concurrent writers."""

    status_code = 503
    code = "LEDGER_CONTENTION"


class SideEffectError(ClawkeeperError):
    """Diffing, alerting, insight or notification failure; logged and swallowed."""

    code = "SIDE_EFFECT_ERROR"
