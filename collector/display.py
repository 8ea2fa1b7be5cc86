"""
ANSI terminal output for the collector CLI.

``format_*`` functions return strings; ``print_*`` functions write to stderr
so stdout stays free for machine-readable output.
"""

from __future__ import annotations

import sys
from typing import Any, Dict, Iterable

# ---------------------------------------------------------------------------
# ANSI colour constants
# ---------------------------------------------------------------------------

RED = "\033[31m"
BOLD_RED = "\033[1;31m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
CYAN = "\033[36m"
RESET = "\033[0m"
BOLD = "\033[1m"

_SEPARATOR_WIDTH = 56
_BORDER = "━" * _SEPARATOR_WIDTH

_STATUS_COLOURS = {
    "success": GREEN,
    "partial": YELLOW,
    "disabled": CYAN,
}


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Retrieve *key* from a dict **or** an attribute on a dataclass / object."""
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


# ---------------------------------------------------------------------------
# Collection progress
# ---------------------------------------------------------------------------

def print_collect_header(project_id: str) -> None:
    lines = [
        f"{BOLD}{_BORDER}{RESET}",
        f"{BOLD}  GCP GRAPH COLLECTOR{RESET}",
        f"  Collecting resources for project {project_id}",
        f"{BOLD}{_BORDER}{RESET}",
    ]
    print("\n".join(lines), file=sys.stderr)
    sys.stderr.flush()


def print_step_progress(step_name: str) -> None:
    """Print a single step line, e.g. ``→ Collecting Cloud Functions...``."""
    print(f"  → Collecting {step_name}...", file=sys.stderr)
    sys.stderr.flush()


def format_step_status(status: str) -> str:
    colour = _STATUS_COLOURS.get(status, RED)
    return f"{colour}{status}{RESET}"


def format_collect_complete(summary: Dict[str, Any]) -> str:
    """Return the run-completion banner.

    *summary* is the dict returned by ``collector.executor.run_steps``.
    """
    project_id = _get(summary, "project_id", "unknown")
    entity_count = _get(summary, "entity_count", 0)
    relationship_count = _get(summary, "relationship_count", 0)
    missing = _get(summary, "missing_permissions", []) or []

    lines = [
        f"{GREEN}  ✓ Collected: {entity_count} entities, {relationship_count} relationships{RESET}",
        f"  Project: {project_id}",
    ]

    for result in _get(summary, "steps", []) or []:
        lines.append(
            f"    {_get(result, 'step_id')}: {format_step_status(_get(result, 'status'))}"
            f" (+{_get(result, 'entities_added', 0)} / +{_get(result, 'relationships_added', 0)})"
        )

    if missing:
        lines.append(f"{YELLOW}  Missing permissions:{RESET}")
        for event in missing:
            lines.append(f"{YELLOW}    {event['permission']} (step {event['stepId']}){RESET}")

    lines.append(f"{BOLD}{_BORDER}{RESET}")
    return "\n".join(lines)


def print_collect_complete(summary: Dict[str, Any]) -> None:
    print(format_collect_complete(summary), file=sys.stderr)
    sys.stderr.flush()


def format_error(message: str) -> str:
    return f"{BOLD_RED}Error:{RESET} {message}"


# ---------------------------------------------------------------------------
# Step listing
# ---------------------------------------------------------------------------

def format_step_list(steps: Iterable[Any]) -> str:
    """Describe each step with its dependencies and declared outputs."""
    lines: list[str] = []
    for step in steps:
        lines.append(f"{BOLD}{step.id}{RESET}  {step.name}")
        if step.depends_on:
            lines.append(f"    depends on: {', '.join(step.depends_on)}")
        for entity in step.entities:
            lines.append(f"    entity:       {entity.type} ({entity.klass})")
        for rel in step.relationships:
            lines.append(
                f"    relationship: {rel.type} "
                f"({rel.source_type} {rel.klass} {rel.target_type})"
            )
    return "\n".join(lines)
