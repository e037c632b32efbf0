"""CLI entrypoint for the orchestrator.

Store setup, one-off scheduler ticks, manual runs, log tailing, the task
workflow, and the HTTP server.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
import threading
from typing import Any

from pydantic import ValidationError

from agent_ops import __version__
from agent_ops.orchestrator.config import OrchestratorSettings
from agent_ops.orchestrator.errors import OrchestratorError
from agent_ops.orchestrator.logging import configure_logging
from agent_ops.orchestrator.scheduling.completion import CompletionWaitResult, wait_for_completion
from agent_ops.orchestrator.services import Services, build_services
from agent_ops.orchestrator.store.models import Execution, LogLine, TaskPriority, TaskStatus
from agent_ops.orchestrator.streaming.events import CompletionEvent
from agent_ops.orchestrator.streaming.stream import iter_execution_stream
from agent_ops.orchestrator.workflow.state_machine import TransitionContext

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-ops",
        description="Schedule agent routines, track executions and drive the task workflow",
    )
    parser.add_argument("--version", action="version", version=f"agent-ops {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the database schema")

    subparsers.add_parser(
        "tick",
        help="Run one scheduler tick and wait for the executions it starts",
    )

    run_routine = subparsers.add_parser("run-routine", help="Run a routine now and wait for it")
    run_routine.add_argument("--owner-id", type=int, required=True, help="Owner of the routine")
    run_routine.add_argument("--routine-id", type=int, required=True, help="Routine to run")
    _add_wait_arguments(run_routine)

    run_agent = subparsers.add_parser("run-agent", help="Run an agent directly and wait for it")
    run_agent.add_argument("--owner-id", type=int, required=True, help="Owner of the agent")
    run_agent.add_argument("--agent-id", type=int, required=True, help="Agent to run")
    _add_wait_arguments(run_agent)

    logs = subparsers.add_parser("logs", help="Print the log lines of an execution")
    logs.add_argument("--owner-id", type=int, required=True, help="Owner of the execution")
    logs.add_argument("--execution-id", type=int, required=True, help="Execution to read")
    logs.add_argument(
        "--since-id",
        type=int,
        default=0,
        help="Only print lines with a larger id (resume from a previous read)",
    )
    logs.add_argument(
        "--follow",
        action="store_true",
        help="Keep printing new lines until the execution completes",
    )

    tasks = subparsers.add_parser("tasks", help="List tasks")
    tasks.add_argument("--owner-id", type=int, required=True, help="Owner of the tasks")
    tasks.add_argument(
        "--status",
        default=None,
        choices=[s.value for s in TaskStatus],
        help="Only list tasks in this status",
    )
    tasks.add_argument("--assigned-to-agent-id", type=int, default=None, help="Filter by assignee")
    tasks.add_argument("--limit", type=int, default=50, help="Maximum number of tasks")

    propose = subparsers.add_parser("propose-task", help="Record a suggested task")
    propose.add_argument("--owner-id", type=int, required=True, help="Owner of the task")
    propose.add_argument("--title", required=True, help="Task title")
    propose.add_argument("--description", default="", help="Task description")
    propose.add_argument(
        "--priority",
        default=TaskPriority.MEDIUM.value,
        choices=[p.value for p in TaskPriority],
        help="Task priority",
    )
    propose.add_argument("--reasoning", default=None, help="Why the task is suggested")
    propose.add_argument(
        "--proposed-by-agent-id", type=int, default=None, help="Agent that suggested the task"
    )

    transition = subparsers.add_parser("transition-task", help="Change the status of a task")
    transition.add_argument("--owner-id", type=int, required=True, help="Owner of the task")
    transition.add_argument("--task-id", type=int, required=True, help="Task to change")
    transition.add_argument(
        "--status",
        required=True,
        choices=[s.value for s in TaskStatus],
        help="Target status",
    )
    transition.add_argument("--changed-by", default=None, help="Who makes the change")
    transition.add_argument("--approved-by", default=None, help="Approver (to approved)")
    transition.add_argument(
        "--approval-reasoning", default=None, help="Why the task is approved (to approved)"
    )
    transition.add_argument(
        "--assign-to-agent-id",
        dest="assigned_to_agent_id",
        type=int,
        default=None,
        help="Agent that will work on the task (to approved)",
    )
    transition.add_argument(
        "--rejection-reasoning", default=None, help="Why the task is rejected (to rejected)"
    )
    transition.add_argument(
        "--execution-id", type=int, default=None, help="Execution doing the work (to in_progress)"
    )
    transition.add_argument(
        "--blocked-reason", default=None, help="What the task waits on (to waiting/blocked)"
    )
    transition.add_argument(
        "--completion-summary", default=None, help="Outcome of the work (to completed)"
    )

    serve = subparsers.add_parser("serve", help="Run the REST + SSE server")
    serve.add_argument("--host", default=None, help="Bind address (default ORCHESTRATOR_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Port (default ORCHESTRATOR_PORT)")

    return parser


def _add_wait_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--poll-seconds",
        type=float,
        default=None,
        help="Polling interval in seconds (default COMPLETION_POLL_SECONDS)",
    )
    parser.add_argument(
        "--timeout-seconds",
        type=float,
        default=None,
        help="Give up waiting after this many seconds (capped at 600)",
    )


def _format_line(line: LogLine) -> str:
    stage = line.stage or "-"
    return f"[{line.id}] {line.created_at.isoformat()} {line.level.value:<7} {stage}: {line.message}"


def _format_execution(execution: Execution) -> str:
    parts = [f"Execution #{execution.id}", f"status={execution.status.value}"]
    if execution.duration_ms is not None:
        parts.append(f"duration_ms={execution.duration_ms}")
    if execution.cost_usd is not None:
        parts.append(f"cost_usd={execution.cost_usd}")
    if execution.error_message:
        parts.append(f"error={execution.error_message!r}")
    return " ".join(parts)


def _wait_exit_code(result: CompletionWaitResult) -> int:
    # Exit codes are designed to be CI-friendly.
    if result.timed_out:
        return 5
    if result.completion == "completed":
        return 0
    return 4


def _wait(services: Services, args: argparse.Namespace, execution: Execution) -> int:
    settings = services.settings
    result = wait_for_completion(
        services.executions,
        owner_id=execution.owner_id,
        execution_id=execution.id,
        poll_interval_seconds=args.poll_seconds or settings.completion_poll_seconds,
        timeout_seconds=(
            args.timeout_seconds
            if args.timeout_seconds is not None
            else settings.completion_timeout_seconds
        ),
    )
    print(f"{_format_execution(result.execution)}; completion={result.completion}")
    return _wait_exit_code(result)


def _serve(settings: OrchestratorSettings, args: argparse.Namespace) -> int:
    import uvicorn

    from agent_ops.server.app import create_app
    from agent_ops.server.config import ServerSettings

    server_settings = ServerSettings()
    app = create_app(settings=settings, server_settings=server_settings)
    uvicorn.run(
        app,
        host=args.host or server_settings.host,
        port=args.port or server_settings.port,
        log_config=None,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = OrchestratorSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    if args.command == "serve":
        try:
            return _serve(settings, args)
        except Exception:
            logger.exception("Command failed")
            return 1

    services: Services | None = None
    try:
        services = build_services(settings)
        services.db.create_schema()

        if args.command == "init-db":
            print(f"Schema ready ({services.db.backend})")
            return 0

        if args.command == "tick":
            runner = services.runner
            threads: list[threading.Thread] = []

            def dispatch(execution: Execution, **kwargs: Any) -> None:
                threads.append(runner.dispatch(execution, **kwargs))

            scheduler = dataclasses.replace(services.scheduler, dispatch=dispatch)
            report = scheduler.tick()
            timeout = settings.completion_timeout_seconds
            for thread in threads:
                thread.join(timeout=timeout)
            print(
                f"Triggered {len(report.triggered)} execution(s), "
                f"skipped {len(report.skipped)}, failed {len(report.failed)}, "
                f"started {len(report.tasks_dispatched)} task(s)"
            )
            return 4 if report.failed else 0

        if args.command == "run-routine":
            execution = services.scheduler.run_now(args.owner_id, args.routine_id)
            print(f"Started execution #{execution.id} for routine {args.routine_id}")
            return _wait(services, args, execution)

        if args.command == "run-agent":
            execution = services.scheduler.run_agent_now(args.owner_id, args.agent_id)
            print(f"Started execution #{execution.id} for agent {args.agent_id}")
            return _wait(services, args, execution)

        if args.command == "logs":
            if not args.follow:
                lines = services.logs.list_since(args.owner_id, args.execution_id, args.since_id)
                for line in lines:
                    print(_format_line(line))
                return 0

            for event in iter_execution_stream(
                broadcaster=services.broadcaster,
                logs=services.logs,
                executions=services.executions,
                owner_id=args.owner_id,
                execution_id=args.execution_id,
                since_id=args.since_id,
                idle_poll_seconds=settings.stream_idle_poll_seconds,
            ):
                if isinstance(event, CompletionEvent):
                    print(f"Execution #{event.execution_id} {event.status.value}")
                    return 0 if event.status.value == "completed" else 4
                print(_format_line(event.line), flush=True)
            return 0

        if args.command == "tasks":
            for task in services.tasks.list_tasks(
                args.owner_id,
                status=TaskStatus(args.status) if args.status else None,
                assigned_to_agent_id=args.assigned_to_agent_id,
                limit=args.limit,
            ):
                print(
                    f"#{task.id} [{task.status.value}] ({task.priority.value}) {task.title}"
                )
            return 0

        if args.command == "propose-task":
            task = services.tasks.propose(
                owner_id=args.owner_id,
                title=args.title,
                description=args.description,
                priority=TaskPriority(args.priority),
                suggestion_reasoning=args.reasoning,
                proposed_by_agent_id=args.proposed_by_agent_id,
            )
            print(f"Proposed task #{task.id}: {task.title}")
            return 0

        if args.command == "transition-task":
            context = TransitionContext(
                changed_by=args.changed_by,
                approved_by=args.approved_by,
                approval_reasoning=args.approval_reasoning,
                assigned_to_agent_id=args.assigned_to_agent_id,
                rejection_reasoning=args.rejection_reasoning,
                execution_id=args.execution_id,
                blocked_reason=args.blocked_reason,
                completion_summary=args.completion_summary,
            )
            task = services.tasks.transition(
                args.owner_id, args.task_id, TaskStatus(args.status), context
            )
            print(f"Task #{task.id} is now {task.status.value}")
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except OrchestratorError as e:
        logger.warning(str(e), extra={"error_type": type(e).__name__})
        print(str(e), file=sys.stderr)
        return 3

    except Exception:
        logger.exception("Command failed")
        return 1

    finally:
        if services is not None:
            services.close()


if __name__ == "__main__":
    raise SystemExit(main())
