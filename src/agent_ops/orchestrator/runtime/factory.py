"""Factory for creating agent runtimes."""

import importlib
import logging

from agent_ops.orchestrator.runtime.dry_run import DryRunRuntime
from agent_ops.orchestrator.runtime.provider import AgentRuntime

logger = logging.getLogger(__name__)


class RuntimeFactory:
    """Factory for creating agent runtime instances."""

    @staticmethod
    def create(name: str) -> AgentRuntime:
        """Create an agent runtime from its configured name.

        Args:
            name: ``"dry_run"``, or an import path of the form ``"package.module:ClassName"``
                naming an :class:`AgentRuntime` subclass with a no-argument constructor.

        Returns:
            Runtime instance.

        Raises:
            ValueError: If the name cannot be resolved to a runtime.
        """
        logger.info(f"Creating agent runtime: {name}")

        if name == "dry_run":
            return DryRunRuntime()

        module_name, sep, attr = name.partition(":")
        if not sep or not module_name or not attr:
            raise ValueError(f"Unsupported agent runtime: {name}")

        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            raise ValueError(f"Cannot import agent runtime module {module_name!r}: {e}") from e

        runtime_cls = getattr(module, attr, None)
        if not isinstance(runtime_cls, type) or not issubclass(runtime_cls, AgentRuntime):
            raise ValueError(f"{name} is not an AgentRuntime subclass")
        return runtime_cls()
