"""Tests for collector/executor.py: run order, step status, slots and failures."""

from __future__ import annotations

import logging
import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from collector.config import CollectorConfig
from collector.errors import MissingPermissionError, StepGraphError
from collector.executor import (
    STATUS_DISABLED,
    STATUS_PARTIAL,
    STATUS_SUCCESS,
    CollectionContext,
    run_steps,
)
from collector.registry import EntitySchema, StepDescriptor


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _context(**config_kwargs) -> CollectionContext:
    return CollectionContext(config=CollectorConfig(project_id="p1", **config_kwargs))


def _recording_step(step_id, calls, depends_on=(), **kwargs) -> StepDescriptor:
    def handler(context):
        calls.append(step_id)

    return StepDescriptor(
        id=step_id, name=step_id, handler=handler, depends_on=depends_on, **kwargs
    )


def _entity_step(step_id, entity_type="google_thing", declared=True) -> StepDescriptor:
    def handler(context):
        context.job_state.add_entity(
            {"_key": f"{step_id}-1", "_type": entity_type, "_class": "Resource"}
        )

    entities = (EntitySchema("Thing", entity_type, "Resource"),) if declared else ()
    return StepDescriptor(id=step_id, name=step_id, handler=handler, entities=entities)


# =========================================================================
# Ordering and results
# =========================================================================

class TestRunSteps:
    def test_runs_in_dependency_order(self):
        calls = []
        steps = [
            _recording_step("c", calls, ("b",)),
            _recording_step("b", calls, ("a",)),
            _recording_step("a", calls),
        ]
        summary = run_steps(_context(), steps)

        assert calls == ["a", "b", "c"]
        assert [r.step_id for r in summary["steps"]] == ["a", "b", "c"]
        assert all(r.status == STATUS_SUCCESS for r in summary["steps"])
        assert summary["project_id"] == "p1"

    def test_counts_what_each_step_added(self):
        summary = run_steps(_context(), [_entity_step("a")])
        assert summary["entity_count"] == 1
        assert summary["steps"][0].entities_added == 1

    def test_only_runs_selection_and_dependencies(self):
        calls = []
        steps = [
            _recording_step("a", calls),
            _recording_step("b", calls, ("a",)),
            _recording_step("other", calls),
        ]
        run_steps(_context(), steps, only=["b"])
        assert calls == ["a", "b"]

    def test_progress_callback(self):
        calls = []
        on_progress = MagicMock()
        run_steps(_context(), [_recording_step("a", calls)], on_progress=on_progress)
        on_progress.assert_called_once()
        assert on_progress.call_args[0][0].id == "a"

    def test_invalid_graph_runs_nothing(self):
        calls = []
        steps = [_recording_step("a", calls, ("b",)), _recording_step("b", calls, ("a",))]
        with pytest.raises(StepGraphError):
            run_steps(_context(), steps)
        assert calls == []


class TestDisabledSteps:
    def test_disabled_step_skipped_dependents_run(self):
        calls = []
        steps = [_recording_step("a", calls), _recording_step("b", calls, ("a",))]
        summary = run_steps(_context(disabled_steps=frozenset({"a"})), steps)

        assert calls == ["b"]
        statuses = {r.step_id: r.status for r in summary["steps"]}
        assert statuses == {"a": STATUS_DISABLED, "b": STATUS_SUCCESS}


class TestMissingPermission:
    def test_step_marked_partial_and_run_continues(self, caplog):
        calls = []

        def denied(context):
            context.missing_permission(
                MissingPermissionError("appengine.applications.get", RuntimeError("403"))
            )

        steps = [
            StepDescriptor(id="denied", name="Denied", handler=denied),
            _recording_step("after", calls, ("denied",)),
        ]
        with caplog.at_level(logging.WARNING):
            summary = run_steps(_context(), steps)

        assert calls == ["after"]
        statuses = {r.step_id: r.status for r in summary["steps"]}
        assert statuses == {"denied": STATUS_PARTIAL, "after": STATUS_SUCCESS}
        assert summary["missing_permissions"] == [
            {
                "type": "missing_permission",
                "permission": "appengine.applications.get",
                "stepId": "denied",
            }
        ]
        assert any("missing permission appengine.applications.get" in r.message
                   for r in caplog.records)


class TestFatalErrors:
    def test_other_exceptions_abort_run(self, caplog):
        calls = []

        def boom(context):
            raise RuntimeError("API exploded")

        steps = [
            _entity_step("first"),
            StepDescriptor(id="boom", name="Boom", handler=boom, depends_on=("first",)),
            _recording_step("after", calls, ("boom",)),
        ]
        context = _context()

        with caplog.at_level(logging.ERROR, logger="collector.executor"):
            with pytest.raises(RuntimeError, match="API exploded"):
                run_steps(context, steps)

        assert calls == []
        # Entities written before the failure stay in the job state.
        assert context.job_state.entity_count == 1
        assert any("Step boom failed" in r.message for r in caplog.records)

    def test_context_reset_after_failure(self):
        def boom(context):
            raise RuntimeError("x")

        context = _context()
        with pytest.raises(RuntimeError):
            run_steps(context, [StepDescriptor(id="boom", name="Boom", handler=boom)])
        assert context.step is None
        assert context.step_id is None


class TestUndeclaredWrites:
    def test_warns_on_undeclared_entity_type(self, caplog):
        with caplog.at_level(logging.WARNING, logger="collector.executor"):
            run_steps(_context(), [_entity_step("sneaky", declared=False)])
        assert any("wrote undeclared types" in r.message for r in caplog.records)

    def test_declared_type_no_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="collector.executor"):
            run_steps(_context(), [_entity_step("honest")])
        assert not any("undeclared" in r.message for r in caplog.records)


class TestOutputSlots:
    def test_slot_passed_between_steps(self):
        seen = []

        def producer(context):
            context.set_output("app", {"_key": "apps/p1"})

        def consumer(context):
            seen.append(context.get_output("app"))

        steps = [
            StepDescriptor(id="p", name="p", handler=producer, outputs=("app",)),
            StepDescriptor(id="c", name="c", handler=consumer, depends_on=("p",), inputs=("app",)),
        ]
        run_steps(_context(), steps)
        assert seen == [{"_key": "apps/p1"}]

    def test_undeclared_output_rejected(self):
        def producer(context):
            context.set_output("app", 1)

        with pytest.raises(StepGraphError, match="output slot app"):
            run_steps(_context(), [StepDescriptor(id="p", name="p", handler=producer)])

    def test_undeclared_input_rejected(self):
        def consumer(context):
            context.get_output("app")

        with pytest.raises(StepGraphError, match="input slot app"):
            run_steps(_context(), [StepDescriptor(id="c", name="c", handler=consumer)])

    def test_unset_slot_reads_default(self):
        seen = []

        def consumer(context):
            seen.append(context.get_output("app", "none"))

        steps = [
            StepDescriptor(id="p", name="p", handler=lambda context: None, outputs=("app",)),
            StepDescriptor(id="c", name="c", handler=consumer, depends_on=("p",), inputs=("app",)),
        ]
        run_steps(_context(), steps)
        assert seen == ["none"]
