#!/usr/bin/env python3
"""
graph-collector: collect a GCP project's resources into an entity graph.

Usage:
    graph-collector collect [options]   Run the collection steps
    graph-collector steps               List steps and the schemas they declare
    graph-collector validate            Check the step dependency graph

Options for ``collect``:
    --project ID          GCP project to collect
    --credentials FILE    Service account key file
    --config FILE         YAML config file (default ~/.gcp-graph-collector/config.yaml)
    --output FILE         Write the graph as JSON to FILE (default: stdout)
    --step ID             Only run this step and its dependencies (repeatable)
    --disable ID          Skip this step (repeatable)
    --server-url URL      Upload the graph to this sync server
    --token TOKEN         Bearer token for the sync server
"""

from __future__ import annotations

import json
import logging
import os
import sys

from collector.display import (
    format_error,
    format_step_list,
    print_collect_complete,
    print_collect_header,
    print_step_progress,
)
from collector.errors import CollectorError, ConfigError
from collector.executor import CollectionContext, run_steps
from collector.graph import JobState
from collector.registry import execution_order
from collector.steps import ALL_STEPS

logger = logging.getLogger("graph-collector")

_KNOWN_COMMANDS = ("collect", "steps", "validate")


def _configure_logging() -> None:
    # stderr only, so JSON written to stdout stays clean.
    level_name = os.environ.get("COLLECTOR_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(name)s: %(message)s",
        stream=sys.stderr,
    )


def main() -> None:
    """Dispatch to the appropriate sub-command."""
    _configure_logging()
    args = sys.argv[1:]

    if not args or args[0] not in _KNOWN_COMMANDS:
        if args:
            print(f"Unknown command: {args[0]}", file=sys.stderr)
        print(__doc__, file=sys.stderr)
        sys.exit(1)

    try:
        if args[0] == "collect":
            _cmd_collect(args[1:])
        elif args[0] == "steps":
            _cmd_steps()
        elif args[0] == "validate":
            _cmd_validate()
    except CollectorError as exc:
        print(format_error(str(exc)), file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        logger.debug("Unhandled error", exc_info=True)
        print(format_error(f"{args[0]} failed: {exc}"), file=sys.stderr)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------

def _flag_values(args: list[str], flag: str) -> list[str]:
    """Every value given for *flag*, e.g. ``--step a --step b`` -> ``[a, b]``."""
    values = []
    for i, arg in enumerate(args):
        if arg != flag:
            continue
        if i + 1 >= len(args) or args[i + 1].startswith("--"):
            raise ConfigError(f"{flag} needs a value")
        values.append(args[i + 1])
    return values


def _flag_value(args: list[str], flag: str) -> str | None:
    values = _flag_values(args, flag)
    return values[-1] if values else None


# ---------------------------------------------------------------------------
# graph-collector collect
# ---------------------------------------------------------------------------

def _cmd_collect(args: list[str]) -> None:
    """Run the collection and write / upload the resulting graph."""
    from collector.config import resolve_config

    config = resolve_config(
        project_id=_flag_value(args, "--project"),
        credentials_file=_flag_value(args, "--credentials"),
        server_url=_flag_value(args, "--server-url"),
        token=_flag_value(args, "--token"),
        disabled_steps=_flag_values(args, "--disable") or None,
        output=_flag_value(args, "--output"),
        config_path=_flag_value(args, "--config"),
    )

    context = CollectionContext(
        config=config,
        job_state=JobState(server_url=config.server_url, token=config.token),
        credentials=config.load_credentials(),
    )

    print_collect_header(config.project_id)
    summary = run_steps(
        context,
        ALL_STEPS,
        only=_flag_values(args, "--step") or None,
        on_progress=lambda step: print_step_progress(step.name),
    )

    events = context.events.events
    if config.output:
        context.job_state.write_json(config.output, events)
    else:
        json.dump(context.job_state.to_dict(events), sys.stdout, indent=2, default=str)
        sys.stdout.write("\n")

    if config.server_url:
        if context.job_state.flush(project_id=config.project_id, events=events):
            print("\033[32m  Graph uploaded to server.\033[0m", file=sys.stderr)
        else:
            print("\033[33m  Graph upload skipped or failed.\033[0m", file=sys.stderr)

    print_collect_complete(summary)


# ---------------------------------------------------------------------------
# graph-collector steps / validate
# ---------------------------------------------------------------------------

def _cmd_steps() -> None:
    """Print every step, in execution order, with its declared schemas."""
    print(format_step_list(execution_order(ALL_STEPS)))


def _cmd_validate() -> None:
    ordered = execution_order(ALL_STEPS)
    print(f"\033[32mStep graph OK: {len(ordered)} steps\033[0m")
    for i, step in enumerate(ordered, 1):
        print(f"  {i:2d}. {step.id}")


if __name__ == "__main__":
    main()
