"""
Run events published alongside the collected graph.

The only event collection emits today is "missing permission": a step could
not read a resource kind because the credentials lack an IAM permission.
Events are logged when published and kept so the run summary and the graph
upload can report them.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

MISSING_PERMISSION = "missing_permission"


class EventPublisher:
    """Collects events for one run."""

    def __init__(self) -> None:
        self._events: list[dict] = []

    @property
    def events(self) -> list[dict]:
        return list(self._events)

    def publish(self, event: dict) -> None:
        self._events.append(event)

    def missing_permissions(self) -> list[dict]:
        return [e for e in self._events if e.get("type") == MISSING_PERMISSION]


def publish_missing_permission_event(
    publisher: EventPublisher,
    permission: str,
    step_id: str,
    log: logging.Logger | None = None,
) -> dict:
    """Publish a missing-permission event and log it.

    The event is ``{"type": "missing_permission", "permission": ..., "stepId": ...}``.
    """
    event = {
        "type": MISSING_PERMISSION,
        "permission": permission,
        "stepId": step_id,
    }
    (log or logger).warning(
        "Step %s skipped: missing permission %s", step_id, permission,
    )
    publisher.publish(event)
    return event
