"""
ServerConnection - lifecycle state machine for one MCP server.

Owns the transport handle, the discovered capability cache, the automatic
reconnect timer and the health-check loop. The reconnect timer only exists
while the state is not CONNECTED and the health loop only while it is, so at
most one of the two is ever alive.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from mcprelay.core.cancellation import CancellationSignal
from mcprelay.core.events import EventBus
from mcprelay.errors import (
    Cancelled,
    DiscoveryFailed,
    HealthCheckFailed,
    InvocationFailed,
    NotConnected,
    RelayError,
    TransportClosed,
    TransportOpenFailed,
)
from mcprelay.mcp.models import Capability, ConnectionDescriptor, ConnectionState
from mcprelay.mcp.transport import TransportFactory, TransportHandle, open_transport


@dataclass(frozen=True)
class ConnectionSettings:
    auto_reconnect: bool = True
    reconnect_delay_seconds: float = 5.0
    max_reconnect_attempts: int = 3
    health_check_interval_seconds: float = 30.0
    open_timeout_seconds: float = 30.0
    discovery_timeout_seconds: float = 30.0
    health_check_timeout_seconds: float = 10.0
    call_timeout_seconds: float = 300.0
    close_timeout_seconds: float = 5.0


class ServerConnection:
    """
    One server's connection state machine.

    Events (emitted synchronously on `self.events`):
    - status_changed:          {"server", "state", "previous"}
    - capabilities_discovered: {"server", "capabilities"}
    - error:                   {"server", "error", "code"}
    """

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        *,
        settings: Optional[ConnectionSettings] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self.descriptor = descriptor
        self.events = EventBus(max_history=100)
        self._settings = settings or ConnectionSettings()
        self._open_transport = transport_factory or open_transport

        self._state = ConnectionState.DISCONNECTED
        self._capabilities: List[Capability] = []
        self._handle: Optional[TransportHandle] = None
        # Bumped whenever the current attempt/transport becomes stale
        self._generation = 0
        self._reconnect_attempts = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None
        self._last_error: Optional[RelayError] = None
        self._last_connected: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def settings(self) -> ConnectionSettings:
        return self._settings

    @property
    def capabilities(self) -> List[Capability]:
        return list(self._capabilities)

    @property
    def last_error(self) -> Optional[RelayError]:
        return self._last_error

    @property
    def last_connected(self) -> Optional[datetime]:
        return self._last_connected

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def has_pending_reconnect(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def is_health_check_running(self) -> bool:
        return self._health_task is not None and not self._health_task.done()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        if self._state is state:
            return
        previous = self._state
        self._state = state
        if previous is ConnectionState.CONNECTED:
            self._stop_health_check()
        logger.info(f"MCP server '{self.name}' {previous.value} -> {state.value}")
        self.events.emit(
            "status_changed",
            {"server": self.name, "state": state, "previous": previous},
            source=self.name,
        )

    def _emit_error(self, error: RelayError) -> None:
        self.events.emit(
            "error",
            {"server": self.name, "error": error, "code": error.code},
            source=self.name,
        )

    def _handle_failure(self, error: RelayError) -> None:
        """Transition to ERROR, surface the failure, maybe schedule a retry."""
        self._generation += 1
        self._last_error = error
        logger.warning(f"MCP server '{self.name}' failed: {error}")
        self._set_state(ConnectionState.ERROR)
        self._emit_error(error)
        self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Open the transport and discover capabilities.

        A no-op while already CONNECTING or CONNECTED. Raises
        TransportOpenFailed or DiscoveryFailed after the failure has been
        handled (state ERROR, retry scheduled under the reconnect budget).
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return

        self._cancel_reconnect()
        self._generation += 1
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)

        # A handle left behind by a failed attempt is replaced, never reused
        await self._teardown_transport()
        if generation != self._generation:
            return

        try:
            handle = await asyncio.wait_for(
                self._open_transport(
                    self.descriptor,
                    on_error=lambda exc: self._on_transport_error(generation, exc),
                    on_close=lambda: self._on_transport_closed(generation),
                ),
                timeout=float(self._settings.open_timeout_seconds),
            )
        except asyncio.TimeoutError as e:
            if generation != self._generation:
                return
            error = TransportOpenFailed(
                f"timeout after {self._settings.open_timeout_seconds}s opening transport", server=self.name
            )
            self._handle_failure(error)
            raise error from e
        except Exception as e:
            if generation != self._generation:
                return
            error = e if isinstance(e, TransportOpenFailed) else TransportOpenFailed(str(e), server=self.name)
            self._handle_failure(error)
            if error is e:
                raise
            raise error from e

        if generation != self._generation:
            await self._close_quietly(handle, reason="stale open")
            return
        self._handle = handle

        try:
            capabilities = await asyncio.wait_for(
                handle.list_capabilities(),
                timeout=float(self._settings.discovery_timeout_seconds),
            )
        except asyncio.TimeoutError as e:
            if generation != self._generation:
                return
            error = DiscoveryFailed(
                f"timeout after {self._settings.discovery_timeout_seconds}s discovering capabilities",
                server=self.name,
            )
            self._handle_failure(error)
            raise error from e
        except Exception as e:
            if generation != self._generation:
                return
            error = DiscoveryFailed(f"Failed to discover capabilities: {e}", server=self.name)
            self._handle_failure(error)
            raise error from e

        if generation != self._generation:
            return

        self._capabilities = list(capabilities)
        logger.info(f"Discovered {len(self._capabilities)} capabilities from MCP server '{self.name}'")
        self.events.emit(
            "capabilities_discovered",
            {"server": self.name, "capabilities": list(self._capabilities)},
            source=self.name,
        )
        if generation != self._generation:
            # a subscriber disconnected us
            return

        self._reconnect_attempts = 0
        self._last_error = None
        self._last_connected = datetime.now()
        self._set_state(ConnectionState.CONNECTED)
        self._start_health_check(generation)

    async def disconnect(self) -> None:
        """Tear everything down; always ends DISCONNECTED with no live timers."""
        self._generation += 1
        self._cancel_reconnect()
        self._stop_health_check()
        handle, self._handle = self._handle, None
        self._capabilities = []
        self._set_state(ConnectionState.DISCONNECTED)
        if handle is not None:
            await self._close_quietly(handle, reason="disconnect")

    async def reconnect(self) -> None:
        """Manual reconnect: resets the attempt budget and tries exactly once."""
        logger.info(f"Manually reconnecting to MCP server '{self.name}'")
        self._reconnect_attempts = 0
        await self.disconnect()
        await self.connect()

    async def _teardown_transport(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            await self._close_quietly(handle, reason="teardown")

    async def _close_quietly(self, handle: TransportHandle, *, reason: str) -> None:
        try:
            await asyncio.wait_for(handle.close(), timeout=float(self._settings.close_timeout_seconds))
        except asyncio.TimeoutError:
            logger.debug(f"MCP close timed out ({self.name}) while handling {reason}")
        except Exception as e:
            logger.debug(f"MCP close failed ({self.name}) while handling {reason}: {e}")

    # ------------------------------------------------------------------
    # Transport notifications
    # ------------------------------------------------------------------

    def _on_transport_error(self, generation: int, exc: BaseException) -> None:
        if generation != self._generation:
            return
        if self._state not in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        self._handle_failure(TransportClosed(f"Transport error: {exc}", server=self.name))

    def _on_transport_closed(self, generation: int) -> None:
        if generation != self._generation:
            return
        if self._state is not ConnectionState.CONNECTED:
            return
        self._generation += 1
        logger.info(f"MCP server '{self.name}' closed the connection")
        self._set_state(ConnectionState.DISCONNECTED)
        self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        if not self._settings.auto_reconnect or self._reconnect_task is not None:
            return
        if self._reconnect_attempts >= self._settings.max_reconnect_attempts:
            logger.warning(
                f"MCP server '{self.name}' exhausted {self._settings.max_reconnect_attempts} "
                f"automatic reconnect attempts; manual reconnect required"
            )
            return
        self._reconnect_attempts += 1
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_after_delay(self._reconnect_attempts),
            name=f"mcp-reconnect:{self.name}",
        )

    async def _reconnect_after_delay(self, attempt: int) -> None:
        await asyncio.sleep(float(self._settings.reconnect_delay_seconds))
        self._reconnect_task = None
        logger.info(
            f"Reconnecting to MCP server '{self.name}' "
            f"(attempt {attempt}/{self._settings.max_reconnect_attempts})"
        )
        try:
            await self.connect()
        except RelayError as e:
            logger.debug(f"Automatic reconnect of '{self.name}' failed: {e}")

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _start_health_check(self, generation: int) -> None:
        self._stop_health_check()
        if self._settings.health_check_interval_seconds <= 0:
            return
        self._health_task = asyncio.get_running_loop().create_task(
            self._health_check_loop(generation),
            name=f"mcp-health:{self.name}",
        )

    def _stop_health_check(self) -> None:
        task, self._health_task = self._health_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _health_check_loop(self, generation: int) -> None:
        interval = float(self._settings.health_check_interval_seconds)
        while True:
            await asyncio.sleep(interval)
            if generation != self._generation or self._state is not ConnectionState.CONNECTED:
                return
            handle = self._handle
            try:
                if handle is None:
                    raise TransportClosed("no transport", server=self.name)
                await asyncio.wait_for(handle.ping(), timeout=float(self._settings.health_check_timeout_seconds))
            except Exception as e:
                if generation != self._generation:
                    return
                self._handle_failure(HealthCheckFailed(f"Health check failed: {e}", server=self.name))
                return

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    def find_capability(self, name: str) -> Optional[Capability]:
        for capability in self._capabilities:
            if capability.name == name:
                return capability
        return None

    async def invoke(
        self,
        capability_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        signal: Optional[CancellationSignal] = None,
    ) -> Any:
        """
        Forward a call to the server.

        Raises NotConnected (before any await) when not CONNECTED, Cancelled
        when the signal is set before the call or before its result arrives,
        InvocationFailed when the transport call fails.
        """
        handle = self._handle
        if self._state is not ConnectionState.CONNECTED or handle is None:
            raise NotConnected(f"Server {self.name} is not connected", server=self.name)
        if signal is not None and signal.cancelled:
            raise Cancelled("Operation cancelled", server=self.name)

        capability = self.find_capability(capability_name) or Capability(name=capability_name)
        try:
            result = await asyncio.wait_for(
                handle.call(capability, dict(arguments or {})),
                timeout=float(self._settings.call_timeout_seconds),
            )
        except asyncio.TimeoutError as e:
            error = InvocationFailed(
                f"timeout after {self._settings.call_timeout_seconds}s calling '{capability_name}'",
                server=self.name,
            )
            self._emit_error(error)
            raise error from e
        except Exception as e:
            error = InvocationFailed(f"Call to '{capability_name}' failed: {e}", server=self.name)
            self._emit_error(error)
            raise error from e

        if signal is not None and signal.cancelled:
            logger.debug(f"Discarding result of '{self.name}/{capability_name}': cancelled")
            raise Cancelled("Operation cancelled", server=self.name)
        return result
