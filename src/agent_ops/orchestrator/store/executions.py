"""Execution lifecycle store.

An execution moves strictly ``pending -> running -> completed | failed``.
Every transition is a compare-and-set ``UPDATE ... WHERE status = <expected>``
so two writers racing on the same row cannot both win; the loser gets
:class:`InvalidTransition` and the row is left as the winner wrote it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from agent_ops.orchestrator.errors import ExecutionAlreadyActive, InvalidTransition, NotFound
from agent_ops.orchestrator.store.database import Database, agents, executions, routines
from agent_ops.orchestrator.store.models import (
    ACTIVE_EXECUTION_STATUSES,
    Execution,
    ExecutionParent,
    ExecutionPatch,
    ExecutionStatus,
    TriggerType,
    patch_values,
    utc_now,
)

logger = logging.getLogger(__name__)

ExecutionListener = Callable[[Execution], None]

_ACTIVE_VALUES = [s.value for s in ACTIVE_EXECUTION_STATUSES]


def _execution(row: Any) -> Execution:
    data = dict(row._mapping)
    data["metadata"] = data.pop("metadata_json") or {}
    return Execution.model_validate(data)


def _execution_values(patch: ExecutionPatch) -> dict[str, Any]:
    values = patch_values(patch)
    if "metadata" in values:
        values["metadata_json"] = values.pop("metadata") or {}
    return values


def _elapsed_ms(started_at: datetime | None, now: datetime) -> int:
    if started_at is None:
        return 0
    return max(0, int((now - started_at).total_seconds() * 1000))


@dataclass
class ExecutionStore:
    db: Database

    def __post_init__(self) -> None:
        self._listeners: list[ExecutionListener] = []
        self._listeners_lock = threading.Lock()

    def add_listener(self, listener: ExecutionListener) -> None:
        """Call ``listener(execution)`` after every terminal transition commits."""

        with self._listeners_lock:
            self._listeners.append(listener)

    def _notify(self, execution: Execution) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(execution)
            except Exception:
                # The transition is committed; a broken listener must not undo it.
                logger.exception(
                    "Execution listener failed",
                    extra={"execution_id": execution.id, "status": execution.status.value},
                )

    # -- creation --------------------------------------------------------

    def create(
        self,
        *,
        owner_id: int,
        parent: ExecutionParent,
        trigger_type: TriggerType,
        metadata: dict[str, Any] | None = None,
    ) -> Execution:
        """Create a ``pending`` execution for a routine or an agent.

        Raises:
            NotFound: The parent does not exist or belongs to another owner.
            ExecutionAlreadyActive: The parent already has a pending or running execution.
        """

        try:
            with self.db.transaction() as conn:
                agent_id, routine_id = self._resolve_parent(conn, owner_id, parent)
                active_id = self._active_execution_id(conn, agent_id, routine_id)
                if active_id is not None:
                    raise ExecutionAlreadyActive(parent.kind, parent.id, active_id)
                row = conn.execute(
                    insert(executions)
                    .values(
                        owner_id=owner_id,
                        agent_id=agent_id,
                        routine_id=routine_id,
                        status=ExecutionStatus.PENDING.value,
                        trigger_type=TriggerType(trigger_type).value,
                        created_at=utc_now(),
                        metadata_json=metadata or {},
                    )
                    .returning(*executions.c)
                ).one()
        except IntegrityError as e:
            # Lost the race against a concurrent create; the partial unique index caught it.
            raise ExecutionAlreadyActive(parent.kind, parent.id) from e

        execution = _execution(row)
        logger.info(
            "Execution created",
            extra={
                "execution_id": execution.id,
                "owner_id": owner_id,
                "parent_kind": parent.kind,
                "parent_id": parent.id,
                "trigger_type": execution.trigger_type.value,
            },
        )
        return execution

    @staticmethod
    def _resolve_parent(
        conn: Connection, owner_id: int, parent: ExecutionParent
    ) -> tuple[int, int | None]:
        if parent.kind == "routine":
            agent_id = conn.execute(
                select(routines.c.agent_id).where(
                    routines.c.id == parent.id, routines.c.owner_id == owner_id
                )
            ).scalar_one_or_none()
            if agent_id is None:
                raise NotFound("routine", parent.id)
            return agent_id, parent.id

        found = conn.execute(
            select(agents.c.id).where(agents.c.id == parent.id, agents.c.owner_id == owner_id)
        ).scalar_one_or_none()
        if found is None:
            raise NotFound("agent", parent.id)
        return parent.id, None

    @staticmethod
    def _active_execution_id(
        conn: Connection, agent_id: int, routine_id: int | None
    ) -> int | None:
        stmt = select(executions.c.id).where(executions.c.status.in_(_ACTIVE_VALUES))
        if routine_id is not None:
            stmt = stmt.where(executions.c.routine_id == routine_id)
        else:
            stmt = stmt.where(
                executions.c.agent_id == agent_id, executions.c.routine_id.is_(None)
            )
        return conn.execute(stmt.limit(1)).scalar_one_or_none()

    # -- transitions -----------------------------------------------------

    def mark_running(self, owner_id: int, execution_id: int) -> Execution:
        return self._transition(
            owner_id,
            execution_id,
            expected=ExecutionStatus.PENDING,
            patch=lambda current, now: ExecutionPatch(
                status=ExecutionStatus.RUNNING, started_at=now
            ),
        )

    def complete(
        self,
        owner_id: int,
        execution_id: int,
        *,
        cost_usd: float,
        duration_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Execution:
        """Finish a running execution successfully.

        ``duration_ms`` defaults to the time elapsed since ``mark_running``.
        ``metadata`` is merged over what the execution already carries.
        """

        def patch(current: Any, now: datetime) -> ExecutionPatch:
            merged = dict(current.metadata_json or {})
            merged.update(metadata or {})
            return ExecutionPatch(
                status=ExecutionStatus.COMPLETED,
                completed_at=now,
                cost_usd=cost_usd,
                duration_ms=(
                    duration_ms if duration_ms is not None else _elapsed_ms(current.started_at, now)
                ),
                metadata=merged,
            )

        return self._transition(
            owner_id, execution_id, expected=ExecutionStatus.RUNNING, patch=patch
        )

    def fail(
        self,
        owner_id: int,
        execution_id: int,
        *,
        error_message: str,
        duration_ms: int | None = None,
    ) -> Execution:
        def patch(current: Any, now: datetime) -> ExecutionPatch:
            return ExecutionPatch(
                status=ExecutionStatus.FAILED,
                completed_at=now,
                error_message=error_message,
                duration_ms=(
                    duration_ms if duration_ms is not None else _elapsed_ms(current.started_at, now)
                ),
            )

        return self._transition(
            owner_id, execution_id, expected=ExecutionStatus.RUNNING, patch=patch
        )

    def _transition(
        self,
        owner_id: int,
        execution_id: int,
        *,
        expected: ExecutionStatus,
        patch: Callable[[Any, datetime], ExecutionPatch],
    ) -> Execution:
        now = utc_now()
        with self.db.transaction() as conn:
            current = self._row(conn, owner_id, execution_id)
            planned = patch(current, now)
            to = planned.status
            if to is None:
                raise ValueError("an execution patch must set the target status")
            if current.status != expected.value:
                raise InvalidTransition("execution", execution_id, current.status, to.value)

            row = conn.execute(
                update(executions)
                .where(
                    executions.c.id == execution_id,
                    executions.c.owner_id == owner_id,
                    executions.c.status == expected.value,
                )
                .values(**_execution_values(planned))
                .returning(*executions.c)
            ).one_or_none()
            if row is None:
                latest = self._row(conn, owner_id, execution_id)
                raise InvalidTransition("execution", execution_id, latest.status, to.value)

        execution = _execution(row)
        logger.info(
            "Execution %s",
            to.value,
            extra={
                "execution_id": execution_id,
                "owner_id": owner_id,
                "status": to.value,
                "duration_ms": execution.duration_ms,
            },
        )
        if to.is_terminal:
            self._notify(execution)
        return execution

    # -- reads -----------------------------------------------------------

    @staticmethod
    def _row(conn: Connection, owner_id: int, execution_id: int) -> Any:
        row = conn.execute(
            select(executions).where(
                executions.c.id == execution_id, executions.c.owner_id == owner_id
            )
        ).one_or_none()
        if row is None:
            raise NotFound("execution", execution_id)
        return row

    def get(self, owner_id: int, execution_id: int) -> Execution:
        with self.db.transaction() as conn:
            return _execution(self._row(conn, owner_id, execution_id))

    def get_recent(
        self, owner_id: int, parent: ExecutionParent, *, limit: int = 20, offset: int = 0
    ) -> list[Execution]:
        """Newest-first executions of a routine, or of everything an agent ran."""

        with self.db.transaction() as conn:
            self._resolve_parent(conn, owner_id, parent)
            stmt = select(executions).where(executions.c.owner_id == owner_id)
            if parent.kind == "routine":
                stmt = stmt.where(executions.c.routine_id == parent.id)
            else:
                stmt = stmt.where(executions.c.agent_id == parent.id)
            rows = conn.execute(
                stmt.order_by(executions.c.created_at.desc(), executions.c.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
        return [_execution(r) for r in rows]

    def list_for_owner(
        self,
        owner_id: int,
        *,
        status: ExecutionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Execution]:
        stmt = select(executions).where(executions.c.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(executions.c.status == ExecutionStatus(status).value)
        with self.db.transaction() as conn:
            rows = conn.execute(
                stmt.order_by(executions.c.created_at.desc(), executions.c.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
        return [_execution(r) for r in rows]

    # -- recovery --------------------------------------------------------

    def abandon_inflight(self, reason: str) -> list[int]:
        """Fail every pending/running execution left behind by a previous process.

        Goes through the legal path (``pending -> running -> failed``) so
        listeners see an ordinary failure. Returns the ids that were failed.
        """

        with self.db.transaction() as conn:
            rows = conn.execute(
                select(executions.c.id, executions.c.owner_id, executions.c.status)
                .where(executions.c.status.in_(_ACTIVE_VALUES))
                .order_by(executions.c.id.asc())
            ).all()

        abandoned: list[int] = []
        for row in rows:
            try:
                if row.status == ExecutionStatus.PENDING.value:
                    self.mark_running(row.owner_id, row.id)
                self.fail(row.owner_id, row.id, error_message=reason)
            except InvalidTransition:
                # Finished on its own between the select and the update.
                continue
            abandoned.append(row.id)

        if abandoned:
            logger.warning(
                "Abandoned in-flight executions",
                extra={"execution_ids": abandoned, "reason": reason},
            )
        return abandoned
