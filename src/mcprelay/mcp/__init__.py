"""
MCP runtime - transports and per-server connection state machines.
"""

from __future__ import annotations

from mcprelay.mcp.connection import ConnectionSettings, ServerConnection
from mcprelay.mcp.models import Capability, CapabilityKind, ConnectionDescriptor, ConnectionState, TransportKind
from mcprelay.mcp.transport import MCPTransportHandle, TransportHandle, open_transport

__all__ = [
    "Capability",
    "CapabilityKind",
    "ConnectionDescriptor",
    "ConnectionSettings",
    "ConnectionState",
    "MCPTransportHandle",
    "ServerConnection",
    "TransportHandle",
    "TransportKind",
    "open_transport",
]
