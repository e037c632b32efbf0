"""Wiring: builds the stores, workflow, scheduler and broadcaster from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from agent_ops.orchestrator.config import OrchestratorSettings
from agent_ops.orchestrator.runtime.factory import RuntimeFactory
from agent_ops.orchestrator.runtime.provider import AgentRuntime
from agent_ops.orchestrator.scheduling.runner import ExecutionRunner
from agent_ops.orchestrator.scheduling.scheduler import Scheduler
from agent_ops.orchestrator.store.database import Database
from agent_ops.orchestrator.store.executions import ExecutionStore
from agent_ops.orchestrator.store.logs import LogStore
from agent_ops.orchestrator.store.routines import RoutineStore
from agent_ops.orchestrator.streaming.broadcaster import ProgressBroadcaster
from agent_ops.orchestrator.workflow.task_engine import TaskEngine

logger = logging.getLogger(__name__)

ABANDONED_ON_RESTART = "abandoned: orchestrator restarted while the execution was in flight"


@dataclass
class Services:
    settings: OrchestratorSettings
    db: Database
    routines: RoutineStore
    executions: ExecutionStore
    logs: LogStore
    tasks: TaskEngine
    broadcaster: ProgressBroadcaster
    runner: ExecutionRunner
    scheduler: Scheduler

    def startup(self, *, start_scheduler: bool | None = None) -> None:
        """Create the schema, fail leftovers from a previous process, start the loop."""

        self.db.create_schema()
        self.executions.abandon_inflight(ABANDONED_ON_RESTART)
        if start_scheduler is None:
            start_scheduler = self.settings.scheduler_enabled
        if start_scheduler:
            self.scheduler.start()

    def close(self) -> None:
        if self.scheduler.running:
            self.scheduler.stop()
        self.db.close()


def build_services(
    settings: OrchestratorSettings, *, runtime: AgentRuntime | None = None
) -> Services:
    """Build every component and connect the listeners.

    Log appends feed the broadcaster; terminal executions feed both the
    broadcaster (completion event) and the task engine (linked task).
    """

    db = Database(settings.database_url)
    routines = RoutineStore(db)
    executions = ExecutionStore(db)
    logs = LogStore(db)
    tasks = TaskEngine(db)
    broadcaster = ProgressBroadcaster()

    logs.add_listener(broadcaster.publish_log)
    executions.add_listener(tasks.on_execution_finished)
    executions.add_listener(broadcaster.publish_completion)

    runner = ExecutionRunner(
        executions=executions,
        logs=logs,
        runtime=runtime or RuntimeFactory.create(settings.agent_runtime),
    )
    scheduler = Scheduler(
        routines=routines,
        executions=executions,
        tasks=tasks,
        dispatch=runner.dispatch,
        tick_seconds=settings.scheduler_tick_seconds,
        task_dispatch_enabled=settings.task_dispatch_enabled,
    )

    logger.debug("Services built", extra={"backend": db.backend})
    return Services(
        settings=settings,
        db=db,
        routines=routines,
        executions=executions,
        logs=logs,
        tasks=tasks,
        broadcaster=broadcaster,
        runner=runner,
        scheduler=scheduler,
    )
