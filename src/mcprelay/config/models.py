"""
Configuration models (Pydantic).

These models define the on-disk schema of the `servers`, `tool_states` and
`relay` sections of the configuration file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from mcprelay.mcp.connection import ConnectionSettings
from mcprelay.mcp.models import ConnectionDescriptor, TransportKind


class ServerConfig(BaseModel):
    name: str
    transport: Literal["stdio", "http", "sse"] = "stdio"
    # stdio
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    # http / sse
    url: Optional[str] = None
    api_key: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    enabled: bool = True

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("server name cannot be empty")
        return v

    @model_validator(mode="after")
    def _validate_transport(self) -> "ServerConfig":
        if self.transport == "stdio" and not (self.command or "").strip():
            raise ValueError("Command is required for stdio transport")
        if self.transport in ("http", "sse") and not (self.url or "").strip():
            raise ValueError(f"URL is required for {self.transport} transport")
        return self

    def to_descriptor(self, base_dir: Optional[Path] = None) -> ConnectionDescriptor:
        cwd_path: Optional[Path] = None
        if self.cwd:
            p = Path(self.cwd)
            cwd_path = p if p.is_absolute() or base_dir is None else (base_dir / p).resolve()
        return ConnectionDescriptor(
            name=self.name,
            transport=TransportKind(self.transport),
            command=self.command,
            args=[str(a) for a in self.args],
            env={str(k): str(v) for k, v in self.env.items()},
            cwd=cwd_path,
            url=self.url,
            headers={str(k): str(v) for k, v in self.headers.items()},
            api_key=self.api_key or None,
            enabled=self.enabled,
        )


class CapabilityState(BaseModel):
    enabled: bool = True
    custom_id: Optional[str] = None

    @field_validator("custom_id")
    @classmethod
    def _validate_custom_id(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class RelayTimeouts(BaseModel):
    open_seconds: float = Field(default=30.0, gt=0)
    discovery_seconds: float = Field(default=30.0, gt=0)
    health_check_seconds: float = Field(default=10.0, gt=0)
    call_seconds: float = Field(default=300.0, gt=0)
    close_seconds: float = Field(default=5.0, gt=0)


class RelaySettings(BaseModel):
    """The `relay` section: reconnect policy, health checks and timeouts."""

    auto_reconnect: bool = True
    reconnect_delay_seconds: float = Field(default=5.0, ge=0)
    max_reconnect_attempts: int = Field(default=3, ge=0)
    # 0 disables the health check
    health_check_interval_seconds: float = Field(default=30.0, ge=0)
    timeouts: RelayTimeouts = Field(default_factory=RelayTimeouts)

    def to_connection_settings(self) -> ConnectionSettings:
        return ConnectionSettings(
            auto_reconnect=self.auto_reconnect,
            reconnect_delay_seconds=self.reconnect_delay_seconds,
            max_reconnect_attempts=self.max_reconnect_attempts,
            health_check_interval_seconds=self.health_check_interval_seconds,
            open_timeout_seconds=self.timeouts.open_seconds,
            discovery_timeout_seconds=self.timeouts.discovery_seconds,
            health_check_timeout_seconds=self.timeouts.health_check_seconds,
            call_timeout_seconds=self.timeouts.call_seconds,
            close_timeout_seconds=self.timeouts.close_seconds,
        )
