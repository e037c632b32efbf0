"""Console script entrypoint.

The CLI is implemented in `agent_ops.orchestrator.main`.
"""

from __future__ import annotations

from agent_ops.orchestrator.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
