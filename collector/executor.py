"""
Collection run: context passed to every step, and the executor that runs the
step graph in dependency order.

Steps run one at a time.  A step that hits a missing permission publishes an
event and returns; the run goes on.  Any other exception aborts the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from collector.config import CollectorConfig
from collector.errors import MissingPermissionError, StepGraphError
from collector.events import EventPublisher, publish_missing_permission_event
from collector.graph import JobState
from collector.registry import StepDescriptor, execution_order, select_steps

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_DISABLED = "disabled"


# ---------------------------------------------------------------------------
# CollectionContext
# ---------------------------------------------------------------------------

@dataclass
class CollectionContext:
    """Everything a step needs: config, job state, events and a logger."""

    config: CollectorConfig
    job_state: JobState = field(default_factory=JobState)
    events: EventPublisher = field(default_factory=EventPublisher)
    logger: logging.Logger = logger
    credentials: Any = None
    step: StepDescriptor | None = None
    _outputs: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def step_id(self) -> str | None:
        return self.step.id if self.step else None

    def set_output(self, slot: str, value: Any) -> None:
        """Write a typed output slot declared by the running step."""
        if self.step is not None and slot not in self.step.outputs:
            raise StepGraphError(f"Step {self.step.id} does not declare output slot {slot}")
        self._outputs[slot] = value

    def get_output(self, slot: str, default: Any = None) -> Any:
        """Read an output slot the running step declares as an input."""
        if self.step is not None and slot not in self.step.inputs:
            raise StepGraphError(f"Step {self.step.id} does not declare input slot {slot}")
        return self._outputs.get(slot, default)

    def missing_permission(self, err: MissingPermissionError) -> None:
        """Record that the running step stopped because of *err*."""
        self.logger.debug("Permission denied in step %s: %s", self.step_id, err.cause or err)
        publish_missing_permission_event(
            self.events,
            permission=err.permission,
            step_id=self.step_id or "unknown",
            log=self.logger,
        )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

@dataclass
class StepResult:
    step_id: str
    status: str
    entities_added: int = 0
    relationships_added: int = 0
    elapsed: float = 0.0


def _undeclared_writes(step: StepDescriptor, before: dict, after: dict) -> list[str]:
    undeclared = []
    for entity_type, count in after["entities_by_type"].items():
        if count > before["entities_by_type"].get(entity_type, 0) and entity_type not in step.entity_types:
            undeclared.append(entity_type)
    for rel_type, count in after["relationships_by_type"].items():
        if count > before["relationships_by_type"].get(rel_type, 0) and rel_type not in step.relationship_types:
            undeclared.append(rel_type)
    return undeclared


def run_step(context: CollectionContext, step: StepDescriptor) -> StepResult:
    """Run one step against *context*; non-permission errors propagate."""
    job_state = context.job_state
    before = job_state.summary()
    permission_events = len(context.events.missing_permissions())
    started = datetime.now(timezone.utc)

    context.step = step
    context.logger = logging.getLogger(f"collector.steps.{step.id}")
    try:
        step.handler(context)
    finally:
        context.step = None
        context.logger = logger

    after = job_state.summary()
    undeclared = _undeclared_writes(step, before, after)
    if undeclared:
        logger.warning("Step %s wrote undeclared types: %s", step.id, ", ".join(undeclared))

    partial = len(context.events.missing_permissions()) > permission_events
    return StepResult(
        step_id=step.id,
        status=STATUS_PARTIAL if partial else STATUS_SUCCESS,
        entities_added=after["entity_count"] - before["entity_count"],
        relationships_added=after["relationship_count"] - before["relationship_count"],
        elapsed=(datetime.now(timezone.utc) - started).total_seconds(),
    )


def run_steps(
    context: CollectionContext,
    steps: Sequence[StepDescriptor],
    only: Iterable[str] | None = None,
    on_progress: Callable[[StepDescriptor], None] | None = None,
) -> dict:
    """Run *steps* in dependency order and return a run summary.

    ``only`` narrows the run to those step ids and their dependencies.
    Steps named in ``config.disabled_steps`` are skipped; their dependents
    still run and see no entities from them.
    """
    if only:
        steps = select_steps(steps, only)
    ordered = execution_order(steps)
    disabled = context.config.disabled_steps

    logger.info(
        "Starting collection for project %s (%d steps)",
        context.config.project_id, len(ordered),
    )
    start_time = datetime.now(timezone.utc)
    results: list[StepResult] = []

    for step in ordered:
        if step.id in disabled:
            logger.info("Step %s disabled by configuration", step.id)
            results.append(StepResult(step_id=step.id, status=STATUS_DISABLED))
            continue

        if on_progress:
            on_progress(step)

        try:
            result = run_step(context, step)
        except Exception as exc:
            logger.error("Step %s failed, aborting run: %s", step.id, exc)
            raise

        logger.info(
            "Step %s %s: +%d entities, +%d relationships (%.1fs)",
            step.id, result.status, result.entities_added,
            result.relationships_added, result.elapsed,
        )
        results.append(result)

    elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
    summary = context.job_state.summary()
    logger.info(
        "Collection complete for project %s: %d entities, %d relationships (%.1fs)",
        context.config.project_id,
        summary["entity_count"],
        summary["relationship_count"],
        elapsed,
    )

    return {
        "project_id": context.config.project_id,
        "entity_count": summary["entity_count"],
        "relationship_count": summary["relationship_count"],
        "steps": results,
        "missing_permissions": context.events.missing_permissions(),
        "elapsed": elapsed,
    }
