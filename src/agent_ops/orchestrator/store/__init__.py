"""Relational store: schema, records and the per-entity stores."""

from agent_ops.orchestrator.store.database import Database
from agent_ops.orchestrator.store.executions import ExecutionStore
from agent_ops.orchestrator.store.logs import LogStore
from agent_ops.orchestrator.store.routines import RoutineStore

__all__ = ["Database", "ExecutionStore", "LogStore", "RoutineStore"]
