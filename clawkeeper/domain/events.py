from __future__ import annotations


# Closed set of audit event types; shield.* events are written by the runtime shield reporter.
EVENT_TYPES: frozenset[str] = frozenset(
    {
        "scan.completed",
        "grade.changed",
        "check.flipped",
        "host.registered",
        "agent.installed",
        "agent.started",
        "agent.stopped",
        "agent.uninstalled",
        "shield.blocked",
        "shield.warned",
    }
)

AGENT_EVENT_TYPES: tuple[str, ...] = (
    "agent.installed",
    "agent.started",
    "agent.stopped",
    "agent.uninstalled",
)

ACTORS: tuple[str, ...] = ("agent", "system")
