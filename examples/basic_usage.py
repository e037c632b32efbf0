#!/usr/bin/env python3
"""Programmatic routine run example.

This demonstrates using the orchestrator components directly:

* load settings from `.env`
* create an agent and a daily routine for an owner
* trigger the routine and follow its log stream until it completes

The agent runtime comes from `AGENT_RUNTIME` (`dry_run` by default).
"""

from __future__ import annotations

import argparse
from typing import Sequence

from agent_ops.orchestrator.config import OrchestratorSettings
from agent_ops.orchestrator.logging import configure_logging
from agent_ops.orchestrator.services import build_services
from agent_ops.orchestrator.store.models import RoutineFrequency
from agent_ops.orchestrator.streaming.events import CompletionEvent
from agent_ops.orchestrator.streaming.stream import iter_execution_stream


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a routine and follow its logs.")
    parser.add_argument("--owner-id", type=int, default=1, help="Owner to create the routine for")
    parser.add_argument("--agent-name", default="Inbox triage", help="Agent name")
    parser.add_argument("--routine-name", default="Morning digest", help="Routine name")
    parser.add_argument(
        "--mailbox",
        default="inbox",
        help="Value passed to the runtime as routine config (optional)",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = OrchestratorSettings()
    configure_logging(settings.log_level)

    services = build_services(settings)
    try:
        services.startup(start_scheduler=False)

        agent = services.routines.create_agent(owner_id=args.owner_id, name=args.agent_name)
        routine = services.routines.create_routine(
            owner_id=args.owner_id,
            agent_id=agent.id,
            name=args.routine_name,
            frequency=RoutineFrequency.DAILY,
            config={"mailbox": args.mailbox},
        )

        execution = services.scheduler.run_now(args.owner_id, routine.id)
        print(f"Started execution #{execution.id} for routine {routine.name!r}")

        for event in iter_execution_stream(
            broadcaster=services.broadcaster,
            logs=services.logs,
            executions=services.executions,
            owner_id=args.owner_id,
            execution_id=execution.id,
        ):
            if isinstance(event, CompletionEvent):
                print(f"Finished: {event.status.value} (cost ${event.cost_usd or 0:.4f})")
                return 0 if event.status.value == "completed" else 4
            print(f"  [{event.line.stage or '-'}] {event.line.message}")
    finally:
        services.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
