"""Agent Ops.

Runs autonomous agents on a schedule or on demand and exposes their progress:
- routines triggered by a polling scheduler, one execution in flight at a time
- execution lifecycle and append-only logs in a relational store
- a task approval workflow (suggest -> approve -> run -> complete)
- live, resumable log streams
"""

__version__ = "0.1.0"

from agent_ops.orchestrator.config import OrchestratorSettings

__all__ = ["__version__", "OrchestratorSettings"]
