"""
ConnectionSupervisor - owns one ServerConnection per configured MCP server.

Creates connections from configuration, wires their lifecycle events into the
capability registry and the shared event bus, and answers status queries.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from loguru import logger

from mcprelay.core.events import Event, EventBus, EventHandler
from mcprelay.errors import DuplicateName, NotFound, RelayError
from mcprelay.mcp.connection import ConnectionSettings, ServerConnection
from mcprelay.mcp.models import Capability, ConnectionDescriptor, ConnectionState
from mcprelay.mcp.transport import TransportFactory
from mcprelay.registry.registry import CapabilityRegistry

StatusCallback = Callable[[str, ConnectionState], None]


class SupervisorConfig(Protocol):
    def list_server_descriptors(self) -> List[ConnectionDescriptor]: ...

    def get_settings(self) -> Any: ...

    def watch(self, callback: Callable[[str, Any], None]) -> None: ...

    def unwatch(self, callback: Callable[[str, Any], None]) -> None: ...


@dataclass
class ServerStatus:
    name: str
    state: ConnectionState
    enabled: bool = True
    capabilities: List[Capability] = field(default_factory=list)
    last_error: Optional[str] = None
    last_connected: Optional[datetime] = None
    reconnect_attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "enabled": self.enabled,
            "capabilities": [c.to_dict() for c in self.capabilities],
            "last_error": self.last_error,
            "last_connected": self.last_connected.isoformat() if self.last_connected else None,
            "reconnect_attempts": self.reconnect_attempts,
        }


class ConnectionSupervisor:
    """
    Supervisor for the configured MCP servers.

    Bus events:
    - server.status_changed: {"server", "state", "previous"}
    - server.error:          {"server", "error", "code"}
    - server.removed:        {"server"}
    """

    def __init__(
        self,
        config: SupervisorConfig,
        registry: CapabilityRegistry,
        *,
        event_bus: Optional[EventBus] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.event_bus = event_bus or EventBus()
        self._transport_factory = transport_factory

        self._connections: Dict[str, ServerConnection] = {}
        self._subscriptions: Dict[str, List[Tuple[str, EventHandler]]] = {}
        self._status_callbacks: List[StatusCallback] = []
        self._reload_lock = asyncio.Lock()
        self._reload_task: Optional[asyncio.Task] = None
        self._reload_requested = False
        self._started = False

    @property
    def server_names(self) -> List[str]:
        return sorted(self._connections.keys())

    def get_connection(self, name: str) -> Optional[ServerConnection]:
        return self._connections.get(name)

    def _connection_settings(self) -> ConnectionSettings:
        try:
            return self.config.get_settings().to_connection_settings()
        except Exception as e:
            logger.warning(f"Invalid relay settings, using defaults: {e}")
            return ConnectionSettings()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Create and connect one connection per enabled configured server."""
        if not self._started:
            self.config.watch(self._on_config_changed)
            self._started = True
        await self._connect_configured()

    async def _connect_configured(self) -> None:
        created: List[ServerConnection] = []
        for descriptor in self.config.list_server_descriptors():
            if not descriptor.enabled:
                logger.debug(f"MCP server '{descriptor.name}' is disabled, skipping")
                continue
            if descriptor.name in self._connections:
                logger.warning(f"Duplicate MCP server name in configuration: {descriptor.name}")
                continue
            created.append(self._create_connection(descriptor))

        logger.info(f"Starting {len(created)} MCP server connection(s)")
        if created:
            await asyncio.gather(*(self._connect_quietly(conn) for conn in created))

    async def shutdown(self) -> None:
        """Disconnect every server and stop reacting to configuration changes."""
        if self._started:
            self.config.unwatch(self._on_config_changed)
            self._started = False
        task, self._reload_task = self._reload_task, None
        if task is not None and not task.done():
            task.cancel()
        for name in list(self._connections.keys()):
            await self._drop(name)
        logger.info("Connection supervisor shut down")

    async def add_server(self, descriptor: ConnectionDescriptor) -> ServerConnection:
        """Create a connection for `descriptor` and connect it."""
        if descriptor.name in self._connections:
            raise DuplicateName(f'Server with name "{descriptor.name}" already exists', server=descriptor.name)
        conn = self._create_connection(descriptor)
        await self._connect_quietly(conn)
        return conn

    async def remove_server(self, name: str) -> None:
        """Unregister, disconnect and discard the connection for `name`."""
        if name not in self._connections:
            raise NotFound(f'Server "{name}" not found', server=name)
        await self._drop(name)
        self.event_bus.emit("server.removed", {"server": name}, source="supervisor")
        logger.info(f"Removed MCP server: {name}")

    async def reconnect_server(self, name: str) -> ServerConnection:
        """Manual reconnect; resets the automatic reconnect budget."""
        conn = self._connections.get(name)
        if conn is None:
            descriptor = next((d for d in self.config.list_server_descriptors() if d.name == name), None)
            if descriptor is None:
                raise NotFound(f'Server "{name}" not found', server=name)
            return await self.add_server(descriptor)
        try:
            await conn.reconnect()
        except RelayError as e:
            logger.warning(f"Manual reconnect of '{name}' failed: {e}")
        return conn

    async def reload_all(self) -> None:
        """Disconnect every connection and recreate them from current configuration."""
        async with self._reload_lock:
            logger.info("Reloading all MCP server connections")
            for name in list(self._connections.keys()):
                await self._drop(name)
            await self._connect_configured()

    async def _connect_quietly(self, conn: ServerConnection) -> None:
        try:
            await conn.connect()
        except RelayError as e:
            # Already surfaced through the connection's error event
            logger.debug(f"Initial connect of '{conn.name}' failed: {e}")

    async def _drop(self, name: str) -> None:
        conn = self._connections.pop(name, None)
        if conn is None:
            return
        self._unwire(name, conn)
        self.registry.unregister_all(name)
        await conn.disconnect()

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _create_connection(self, descriptor: ConnectionDescriptor) -> ServerConnection:
        conn = ServerConnection(
            descriptor,
            settings=self._connection_settings(),
            transport_factory=self._transport_factory,
        )
        self._connections[descriptor.name] = conn
        self._wire(conn)
        return conn

    def _wire(self, conn: ServerConnection) -> None:
        name = conn.name

        def on_discovered(event: Event) -> None:
            if self._connections.get(name) is not conn:
                return
            self.registry.register_all(name, event.data.get("capabilities") or [], conn)

        def on_status(event: Event) -> None:
            if self._connections.get(name) is not conn:
                return
            state = event.data["state"]
            if state is not ConnectionState.CONNECTED:
                self.registry.unregister_all(name)
            self.event_bus.emit("server.status_changed", dict(event.data), source=name)
            for callback in list(self._status_callbacks):
                try:
                    callback(name, state)
                except Exception as e:
                    logger.error(f"Status callback error for {name}: {e}")

        def on_error(event: Event) -> None:
            if self._connections.get(name) is not conn:
                return
            self.event_bus.emit("server.error", dict(event.data), source=name)

        subscriptions: List[Tuple[str, EventHandler]] = [
            ("capabilities_discovered", on_discovered),
            ("status_changed", on_status),
            ("error", on_error),
        ]
        for event_name, handler in subscriptions:
            conn.events.subscribe(event_name, handler)
        self._subscriptions[name] = subscriptions

    def _unwire(self, name: str, conn: ServerConnection) -> None:
        for event_name, handler in self._subscriptions.pop(name, []):
            conn.events.unsubscribe(event_name, handler)

    def on_status_changed(self, callback: StatusCallback) -> None:
        """Subscribe to `(server_name, state)` updates."""
        if callback not in self._status_callbacks:
            self._status_callbacks.append(callback)

    def off_status_changed(self, callback: StatusCallback) -> None:
        if callback in self._status_callbacks:
            self._status_callbacks.remove(callback)

    # ------------------------------------------------------------------
    # Configuration changes
    # ------------------------------------------------------------------

    def _on_config_changed(self, key: str, value: Any) -> None:
        if key == "tool_states" or key.startswith("tool_states."):
            server = key.split(".", 1)[1] if "." in key else None
            self.refresh_registrations(server)
            return
        self._schedule_reload()

    def refresh_registrations(self, server_name: Optional[str] = None) -> None:
        """Re-apply capability state to connected servers without reconnecting."""
        for name, conn in list(self._connections.items()):
            if server_name is not None and name != server_name:
                continue
            if conn.state is ConnectionState.CONNECTED:
                self.registry.register_all(name, conn.capabilities, conn)

    def _schedule_reload(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Configuration changed outside the event loop; reload skipped")
            return
        self._reload_requested = True
        if self._reload_task is not None and not self._reload_task.done():
            return
        self._reload_task = loop.create_task(self._reload_loop(), name="mcp-reload")

    async def _reload_loop(self) -> None:
        # Coalesces bursts of changes; a change made during a reload triggers one more
        while self._reload_requested:
            self._reload_requested = False
            try:
                await self.reload_all()
            except Exception as e:
                logger.error(f"Reload of MCP servers failed: {e}")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_aggregated_status(self) -> List[ServerStatus]:
        """Status of every configured or live server, computed on demand."""
        statuses: List[ServerStatus] = []
        seen = set()
        for descriptor in self.config.list_server_descriptors():
            if descriptor.name in seen:
                continue
            seen.add(descriptor.name)
            conn = self._connections.get(descriptor.name)
            if conn is None:
                statuses.append(
                    ServerStatus(name=descriptor.name, state=ConnectionState.DISCONNECTED, enabled=descriptor.enabled)
                )
            else:
                statuses.append(self._status_of(conn, enabled=descriptor.enabled))
        for name in sorted(self._connections.keys()):
            if name not in seen:
                statuses.append(self._status_of(self._connections[name], enabled=True))
        return statuses

    @staticmethod
    def _status_of(conn: ServerConnection, *, enabled: bool) -> ServerStatus:
        error = conn.last_error if conn.state is ConnectionState.ERROR else None
        return ServerStatus(
            name=conn.name,
            state=conn.state,
            enabled=enabled,
            capabilities=conn.capabilities,
            last_error=str(error) if error is not None else None,
            last_connected=conn.last_connected,
            reconnect_attempts=conn.reconnect_attempts,
        )
