"""
mcp-relay - relay MCP server capabilities into a host capability registry.

Keeps one lifecycle-managed connection per configured MCP server, registers
the tools, prompts and resources each server exposes under server-namespaced
host ids, and routes host invocations back to the owning server.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

__version__ = "0.1.0"

if TYPE_CHECKING:
    from mcprelay.core.supervisor import ConnectionSupervisor as ConnectionSupervisor

__all__ = ["ConnectionSupervisor", "__version__"]


def __getattr__(name: str):
    # Lazy import so that `mcprelay.mcp.*` can read __version__ without pulling in the supervisor.
    if name == "ConnectionSupervisor":
        from mcprelay.core.supervisor import ConnectionSupervisor  # local import

        return ConnectionSupervisor
    raise AttributeError(name)
