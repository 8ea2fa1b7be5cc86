"""
Step descriptors and the dependency graph they form.

Each step declares what it produces (entity and relationship schemas, typed
output slots), what it consumes (entity types it iterates, input slots) and
which steps must run before it.  ``execution_order`` validates the whole
registry and returns a deterministic topological order.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterable, Sequence

from collector.errors import StepGraphError

if TYPE_CHECKING:
    from collector.executor import CollectionContext


@dataclass(frozen=True)
class EntitySchema:
    resource_name: str
    type: str
    klass: str


@dataclass(frozen=True)
class RelationshipSchema:
    klass: str
    type: str
    source_type: str
    target_type: str


@dataclass(frozen=True)
class StepDescriptor:
    """A unit of collection work and its place in the dependency graph.

    ``entities`` / ``relationships`` are schema metadata; they are not
    enforced, only reported when a step writes something undeclared.
    ``reads`` lists entity types the step looks up in the job state,
    ``outputs`` / ``inputs`` name the typed data slots it writes / reads.
    """

    id: str
    name: str
    handler: Callable[[CollectionContext], None]
    entities: tuple[EntitySchema, ...] = ()
    relationships: tuple[RelationshipSchema, ...] = ()
    depends_on: tuple[str, ...] = ()
    reads: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    inputs: tuple[str, ...] = ()

    @property
    def entity_types(self) -> frozenset[str]:
        return frozenset(e.type for e in self.entities)

    @property
    def relationship_types(self) -> frozenset[str]:
        return frozenset(r.type for r in self.relationships)


# ---------------------------------------------------------------------------
# Graph operations
# ---------------------------------------------------------------------------

def _index(steps: Sequence[StepDescriptor]) -> dict[str, StepDescriptor]:
    by_id: dict[str, StepDescriptor] = {}
    for step in steps:
        if step.id in by_id:
            raise StepGraphError(f"Duplicate step id: {step.id}")
        by_id[step.id] = step
    return by_id


def transitive_dependencies(
    steps_by_id: dict[str, StepDescriptor], step_id: str
) -> set[str]:
    """Every step id *step_id* depends on, directly or indirectly."""
    found: set[str] = set()
    stack = list(steps_by_id[step_id].depends_on)
    while stack:
        dep = stack.pop()
        if dep in found:
            continue
        if dep not in steps_by_id:
            raise StepGraphError(f"Unknown step: {dep}")
        found.add(dep)
        stack.extend(steps_by_id[dep].depends_on)
    return found


def execution_order(steps: Sequence[StepDescriptor]) -> list[StepDescriptor]:
    """Validate *steps* and return them in dependency order.

    Among steps that are ready at the same time, registry order wins, so
    the result is stable across runs.
    """
    by_id = _index(steps)
    position = {step.id: i for i, step in enumerate(steps)}

    for step in steps:
        for dep in step.depends_on:
            if dep not in by_id:
                raise StepGraphError(f"Step {step.id} depends on unknown step {dep}")
            if dep == step.id:
                raise StepGraphError(f"Step {step.id} depends on itself")

    remaining = {step.id: len(set(step.depends_on)) for step in steps}
    dependents: dict[str, list[str]] = {step.id: [] for step in steps}
    for step in steps:
        for dep in set(step.depends_on):
            dependents[dep].append(step.id)

    ready = [(position[sid], sid) for sid, n in remaining.items() if n == 0]
    heapq.heapify(ready)
    ordered: list[StepDescriptor] = []

    while ready:
        _, sid = heapq.heappop(ready)
        ordered.append(by_id[sid])
        for dependent in dependents[sid]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, (position[dependent], dependent))

    if len(ordered) != len(steps):
        stuck = sorted(sid for sid, n in remaining.items() if n > 0)
        raise StepGraphError(f"Dependency cycle among steps: {', '.join(stuck)}")

    _check_declared_inputs(by_id)
    return ordered


def _check_declared_inputs(by_id: dict[str, StepDescriptor]) -> None:
    """Every type a step reads and every slot it consumes must come from a dependency."""
    for step in by_id.values():
        upstream = [by_id[d] for d in transitive_dependencies(by_id, step.id)]
        produced_types = set().union(*(s.entity_types for s in upstream))
        produced_slots = set().union(*(s.outputs for s in upstream))

        for entity_type in step.reads:
            if entity_type not in produced_types:
                raise StepGraphError(
                    f"Step {step.id} reads {entity_type} but no dependency produces it"
                )
        for slot in step.inputs:
            if slot not in produced_slots:
                raise StepGraphError(
                    f"Step {step.id} consumes slot {slot} but no dependency outputs it"
                )


def select_steps(
    steps: Sequence[StepDescriptor], step_ids: Iterable[str]
) -> list[StepDescriptor]:
    """Return the requested steps plus everything they depend on, in registry order."""
    by_id = _index(steps)
    wanted: set[str] = set()
    for sid in step_ids:
        if sid not in by_id:
            raise StepGraphError(f"Unknown step: {sid}")
        wanted.add(sid)
        wanted |= transitive_dependencies(by_id, sid)
    return [step for step in steps if step.id in wanted]
