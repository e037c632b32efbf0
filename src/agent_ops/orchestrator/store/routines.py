"""Agents and routines: the scheduling side of the store.

Routines are never hard-deleted. Disabling one (or its agent) takes it out of
the due query; its executions and logs stay readable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.engine import Connection

from agent_ops.orchestrator.errors import NotFound
from agent_ops.orchestrator.store.database import Database, agents, routines
from agent_ops.orchestrator.store.models import (
    Agent,
    AgentStatus,
    Routine,
    RoutineFrequency,
    RoutinePatch,
    RoutineStatus,
    patch_values,
    utc_now,
)

logger = logging.getLogger(__name__)

# Frequencies the scheduler selects, and how far a run pushes the next one.
RUN_INTERVALS: dict[RoutineFrequency, timedelta] = {
    RoutineFrequency.DAILY: timedelta(hours=24),
    RoutineFrequency.WEEKLY: timedelta(days=7),
}


def next_run_after(frequency: RoutineFrequency, ran_at: datetime) -> datetime | None:
    """When a routine that ran at ``ran_at`` is due again.

    ``manual`` and ``auto`` routines are never scheduled, so they get ``None``.
    """

    interval = RUN_INTERVALS.get(RoutineFrequency(frequency))
    if interval is None:
        return None
    return ran_at + interval


def _agent(row: Any) -> Agent:
    return Agent.model_validate(dict(row._mapping))


def _routine(row: Any) -> Routine:
    return Routine.model_validate(dict(row._mapping))


@dataclass
class RoutineStore:
    db: Database

    # -- agents ----------------------------------------------------------

    def create_agent(
        self, *, owner_id: int, name: str, status: AgentStatus = AgentStatus.ACTIVE
    ) -> Agent:
        with self.db.transaction() as conn:
            result = conn.execute(
                insert(agents)
                .values(
                    owner_id=owner_id,
                    name=name,
                    status=AgentStatus(status).value,
                    created_at=utc_now(),
                )
                .returning(*agents.c)
            )
            return _agent(result.one())

    def get_agent(self, owner_id: int, agent_id: int) -> Agent:
        with self.db.transaction() as conn:
            return _agent(self._agent_row(conn, owner_id, agent_id))

    def set_agent_status(self, owner_id: int, agent_id: int, status: AgentStatus) -> Agent:
        with self.db.transaction() as conn:
            result = conn.execute(
                update(agents)
                .where(agents.c.id == agent_id, agents.c.owner_id == owner_id)
                .values(status=AgentStatus(status).value)
                .returning(*agents.c)
            )
            row = result.one_or_none()
            if row is None:
                raise NotFound("agent", agent_id)
        logger.info(
            "Agent status changed",
            extra={"agent_id": agent_id, "owner_id": owner_id, "status": row.status},
        )
        return _agent(row)

    @staticmethod
    def _agent_row(conn: Connection, owner_id: int, agent_id: int) -> Any:
        row = conn.execute(
            select(agents).where(agents.c.id == agent_id, agents.c.owner_id == owner_id)
        ).one_or_none()
        if row is None:
            raise NotFound("agent", agent_id)
        return row

    # -- routines --------------------------------------------------------

    def create_routine(
        self,
        *,
        owner_id: int,
        agent_id: int,
        name: str,
        frequency: RoutineFrequency = RoutineFrequency.MANUAL,
        description: str | None = None,
        config: dict[str, Any] | None = None,
        next_run_at: datetime | None = None,
    ) -> Routine:
        """Create an active routine.

        A ``next_run_at`` of ``None`` makes a daily/weekly routine due on the
        next scheduler tick.
        """

        now = utc_now()
        with self.db.transaction() as conn:
            self._agent_row(conn, owner_id, agent_id)
            result = conn.execute(
                insert(routines)
                .values(
                    owner_id=owner_id,
                    agent_id=agent_id,
                    name=name,
                    description=description,
                    frequency=RoutineFrequency(frequency).value,
                    status=RoutineStatus.ACTIVE.value,
                    config=config or {},
                    last_run_at=None,
                    next_run_at=next_run_at,
                    created_at=now,
                    updated_at=now,
                )
                .returning(*routines.c)
            )
            return _routine(result.one())

    def get_routine(self, owner_id: int, routine_id: int) -> Routine:
        with self.db.transaction() as conn:
            row = conn.execute(
                select(routines).where(
                    routines.c.id == routine_id, routines.c.owner_id == owner_id
                )
            ).one_or_none()
        if row is None:
            raise NotFound("routine", routine_id)
        return _routine(row)

    def list_routines(
        self, owner_id: int, *, status: RoutineStatus | None = None
    ) -> list[Routine]:
        stmt = select(routines).where(routines.c.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(routines.c.status == RoutineStatus(status).value)
        with self.db.transaction() as conn:
            rows = conn.execute(stmt.order_by(routines.c.id.asc())).all()
        return [_routine(r) for r in rows]

    def update(self, owner_id: int, routine_id: int, patch: RoutinePatch) -> Routine:
        """Write the explicitly-set fields of ``patch``."""

        values = patch_values(patch)
        values["updated_at"] = utc_now()
        with self.db.transaction() as conn:
            row = conn.execute(
                update(routines)
                .where(routines.c.id == routine_id, routines.c.owner_id == owner_id)
                .values(**values)
                .returning(*routines.c)
            ).one_or_none()
        if row is None:
            raise NotFound("routine", routine_id)
        return _routine(row)

    def set_routine_status(
        self, owner_id: int, routine_id: int, status: RoutineStatus
    ) -> Routine:
        routine = self.update(owner_id, routine_id, RoutinePatch(status=RoutineStatus(status)))
        logger.info(
            "Routine status changed",
            extra={"routine_id": routine_id, "owner_id": owner_id, "status": routine.status.value},
        )
        return routine

    def list_due(self, now: datetime, *, limit: int | None = None) -> list[Routine]:
        """Routines the scheduler should trigger at ``now``, across all owners.

        Active routine, active agent, daily/weekly frequency, and
        ``next_run_at`` unset or not in the future. Never-run routines come
        first, then the most overdue, then by id.
        """

        stmt = (
            select(routines)
            .join(agents, agents.c.id == routines.c.agent_id)
            .where(
                and_(
                    routines.c.status == RoutineStatus.ACTIVE.value,
                    agents.c.status == AgentStatus.ACTIVE.value,
                    routines.c.frequency.in_([f.value for f in RUN_INTERVALS]),
                    or_(routines.c.next_run_at.is_(None), routines.c.next_run_at <= now),
                )
            )
            .order_by(routines.c.next_run_at.asc().nulls_first(), routines.c.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.db.transaction() as conn:
            rows = conn.execute(stmt).all()
        return [_routine(r) for r in rows]

    def record_scheduled_run(self, routine: Routine, ran_at: datetime) -> Routine:
        """Stamp a scheduled trigger: ``last_run_at`` and the next due time."""

        return self.update(
            routine.owner_id,
            routine.id,
            RoutinePatch(
                last_run_at=ran_at,
                next_run_at=next_run_after(routine.frequency, ran_at),
            ),
        )
