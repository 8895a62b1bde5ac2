"""
Runtime models shared by the transport, connection and registry layers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class ConnectionState(str, Enum):
    """Lifecycle state of one server connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class TransportKind(str, Enum):
    STDIO = "stdio"  # local process
    HTTP = "http"    # streamable HTTP
    SSE = "sse"      # server-sent events (legacy remote)


class CapabilityKind(str, Enum):
    TOOL = "tool"
    PROMPT = "prompt"
    RESOURCE = "resource"


@dataclass(frozen=True)
class ConnectionDescriptor:
    name: str
    transport: TransportKind = TransportKind.STDIO
    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[Path] = None
    url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    api_key: Optional[str] = None
    enabled: bool = True

    def key(self) -> str:
        return self.name

    def request_headers(self) -> Dict[str, str]:
        headers = dict(self.headers or {})
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers


@dataclass(frozen=True)
class Capability:
    """A tool, prompt or resource as reported by the server."""

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)
    kind: CapabilityKind = CapabilityKind.TOOL
    uri: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
            "kind": self.kind.value,
            "uri": self.uri,
        }
