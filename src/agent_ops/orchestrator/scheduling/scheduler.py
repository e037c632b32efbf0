"""Polling scheduler: triggers due routines and dispatches approved tasks.

One tick:

1. Ask the store which routines are due (across all owners).
2. For each, create a ``scheduled`` execution, stamp the routine's
   ``last_run_at`` / ``next_run_at``, and hand the execution to the runner.
3. Optionally, give every approved task assigned to an active agent its own
   execution and move the task to ``in_progress``.

A routine whose execution cannot be created (store error, or one already in
flight) keeps its ``next_run_at`` and is simply seen again on the next tick.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from agent_ops.orchestrator.errors import (
    EntityDisabled,
    ExecutionAlreadyActive,
    InvalidTransition,
    OrchestratorError,
)
from agent_ops.orchestrator.store.executions import ExecutionStore
from agent_ops.orchestrator.store.models import (
    AgentStatus,
    Execution,
    ExecutionParent,
    Routine,
    RoutineStatus,
    Task,
    TaskStatus,
    TriggerType,
    utc_now,
)
from agent_ops.orchestrator.store.routines import RoutineStore
from agent_ops.orchestrator.workflow.state_machine import TransitionContext
from agent_ops.orchestrator.workflow.task_engine import TaskEngine

logger = logging.getLogger(__name__)

SCHEDULER_ACTOR = "scheduler"

# dispatch(execution, config=..., task_id=...) must return quickly.
Dispatch = Callable[..., Any]


class TickReport(BaseModel):
    """Outcome of one scheduler tick."""

    triggered: list[int] = Field(default_factory=list, description="Execution ids created.")
    skipped: list[int] = Field(
        default_factory=list, description="Routine ids that already had an execution in flight."
    )
    failed: list[int] = Field(
        default_factory=list, description="Routine ids whose execution could not be created."
    )
    tasks_dispatched: list[int] = Field(default_factory=list, description="Task ids started.")


@dataclass
class Scheduler:
    routines: RoutineStore
    executions: ExecutionStore
    tasks: TaskEngine
    dispatch: Dispatch
    tick_seconds: float = 60.0
    task_dispatch_enabled: bool = True
    clock: Callable[[], datetime] = utc_now

    _stop: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _thread: threading.Thread | None = field(default=None, init=False, repr=False)

    # -- tick ------------------------------------------------------------

    def tick(self) -> TickReport:
        report = TickReport()
        now = self.clock()

        try:
            due = self.routines.list_due(now)
        except OrchestratorError:
            logger.exception("Due-routine query failed; retrying next tick")
            return report

        for routine in due:
            self._trigger_scheduled(routine, now, report)

        if self.task_dispatch_enabled:
            self._dispatch_approved_tasks(report)

        if report.triggered or report.failed or report.tasks_dispatched:
            logger.info(
                "Scheduler tick",
                extra={
                    "due": len(due),
                    "triggered": len(report.triggered),
                    "skipped": len(report.skipped),
                    "failed": len(report.failed),
                    "tasks_dispatched": len(report.tasks_dispatched),
                },
            )
        return report

    def _trigger_scheduled(self, routine: Routine, now: datetime, report: TickReport) -> None:
        try:
            execution = self.executions.create(
                owner_id=routine.owner_id,
                parent=ExecutionParent.routine(routine.id),
                trigger_type=TriggerType.SCHEDULED,
            )
        except ExecutionAlreadyActive:
            logger.info(
                "Routine already running; skipping",
                extra={"routine_id": routine.id, "owner_id": routine.owner_id},
            )
            report.skipped.append(routine.id)
            return
        except OrchestratorError:
            logger.exception(
                "Could not create scheduled execution",
                extra={"routine_id": routine.id, "owner_id": routine.owner_id},
            )
            report.failed.append(routine.id)
            return

        try:
            self.routines.record_scheduled_run(routine, now)
        except OrchestratorError:
            # The run goes ahead; the routine stays due and the in-flight
            # guard keeps the next tick from starting a second one.
            logger.exception(
                "Could not record scheduled run",
                extra={"routine_id": routine.id, "execution_id": execution.id},
            )

        if self._hand_off(execution, config=routine.config):
            report.triggered.append(execution.id)
        else:
            report.failed.append(routine.id)

    def _dispatch_approved_tasks(self, report: TickReport) -> None:
        try:
            approved = self.tasks.list_dispatchable()
        except OrchestratorError:
            logger.exception("Approved-task query failed; retrying next tick")
            return

        for task in approved:
            if self._start_task(task):
                report.tasks_dispatched.append(task.id)

    def _start_task(self, task: Task) -> bool:
        if task.assigned_to_agent_id is None:
            return False
        try:
            execution = self.executions.create(
                owner_id=task.owner_id,
                parent=ExecutionParent.agent(task.assigned_to_agent_id),
                trigger_type=TriggerType.SCHEDULED,
                metadata={"task_id": task.id},
            )
        except ExecutionAlreadyActive:
            # Agent busy; the task waits for a later tick.
            return False
        except OrchestratorError:
            logger.exception(
                "Could not create task execution",
                extra={"task_id": task.id, "agent_id": task.assigned_to_agent_id},
            )
            return False

        try:
            self.tasks.transition(
                task.owner_id,
                task.id,
                TaskStatus.IN_PROGRESS,
                TransitionContext(changed_by=SCHEDULER_ACTOR, execution_id=execution.id),
            )
        except OrchestratorError as e:
            logger.warning(
                "Task changed before it could start; abandoning its execution",
                extra={"task_id": task.id, "execution_id": execution.id, "error": str(e)},
            )
            self._abandon(execution, f"Task {task.id} could not be started: {e}")
            return False

        config = {"task": {"id": task.id, "title": task.title, "description": task.description}}
        return self._hand_off(execution, config=config, task_id=task.id)

    # -- manual triggers -------------------------------------------------

    def run_now(self, owner_id: int, routine_id: int) -> Execution:
        """Trigger a routine immediately; its schedule is left untouched.

        Raises:
            NotFound: Unknown routine.
            EntityDisabled: The routine or its agent is disabled.
            ExecutionAlreadyActive: The routine is already running.
        """

        routine = self.routines.get_routine(owner_id, routine_id)
        if routine.status != RoutineStatus.ACTIVE:
            raise EntityDisabled("routine", routine_id)
        agent = self.routines.get_agent(owner_id, routine.agent_id)
        if agent.status != AgentStatus.ACTIVE:
            raise EntityDisabled("agent", agent.id)

        execution = self.executions.create(
            owner_id=owner_id,
            parent=ExecutionParent.routine(routine_id),
            trigger_type=TriggerType.MANUAL,
        )
        self._hand_off(execution, config=routine.config)
        return execution

    def run_agent_now(
        self, owner_id: int, agent_id: int, *, config: dict[str, Any] | None = None
    ) -> Execution:
        """Run an agent directly, outside any routine."""

        agent = self.routines.get_agent(owner_id, agent_id)
        if agent.status != AgentStatus.ACTIVE:
            raise EntityDisabled("agent", agent_id)

        execution = self.executions.create(
            owner_id=owner_id,
            parent=ExecutionParent.agent(agent_id),
            trigger_type=TriggerType.MANUAL,
        )
        self._hand_off(execution, config=config or {})
        return execution

    # -- hand-off --------------------------------------------------------

    def _hand_off(
        self, execution: Execution, *, config: dict[str, Any], task_id: int | None = None
    ) -> bool:
        try:
            self.dispatch(execution, config=config, task_id=task_id)
        except Exception as e:
            logger.exception("Dispatch failed", extra={"execution_id": execution.id})
            self._abandon(execution, f"Dispatch failed: {e}")
            return False
        return True

    def _abandon(self, execution: Execution, reason: str) -> None:
        try:
            self.executions.mark_running(execution.owner_id, execution.id)
            self.executions.fail(execution.owner_id, execution.id, error_message=reason)
        except InvalidTransition:
            # Already finished.
            return
        except OrchestratorError:
            logger.exception(
                "Could not fail abandoned execution", extra={"execution_id": execution.id}
            )

    # -- loop ------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started", extra={"tick_seconds": self.tick_seconds})

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
        self._thread = None
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop.wait(self.tick_seconds)
