"""FastAPI server adapter for agent-ops.

This module exposes a REST + SSE API over the orchestrator services.

Design intent:
- Keep business logic in `agent_ops.orchestrator.*`
- Keep server-specific concerns (routing, CORS, SSE framing) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from agent_ops.server.app import create_app
