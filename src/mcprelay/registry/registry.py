"""
Capability Registry - host-visible mapping from host id to server capability.

Registers discovered MCP capabilities with the host under unique, server-
namespaced host ids, honors per-capability enable/disable state, and routes
host invocations back to the owning server connection.
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, TYPE_CHECKING

from loguru import logger

from mcprelay.core.cancellation import CancellationSignal
from mcprelay.errors import DuplicateName, NotFound
from mcprelay.mcp.models import Capability
from mcprelay.registry.base import CapabilityDefinition, InvocationResult
from mcprelay.registry.host import CapabilityHost, Registration
from mcprelay.registry.results import failure_result, to_invocation_result

if TYPE_CHECKING:
    from mcprelay.config.models import CapabilityState
    from mcprelay.mcp.connection import ServerConnection


HOST_ID_SEPARATOR = "::"


class CapabilityStateProvider(Protocol):
    def get_capability_state(self, server_name: str, capability_name: str) -> "CapabilityState": ...


def make_host_id(server_name: str, capability_name: str, custom_id: Optional[str] = None) -> str:
    custom = (custom_id or "").strip()
    if custom:
        return custom
    return f"{server_name}{HOST_ID_SEPARATOR}{capability_name}"


@dataclass
class RegisteredEntry:
    host_id: str
    server_name: str
    capability: Capability
    registration: Registration
    connection: "ServerConnection"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host_id": self.host_id,
            "server": self.server_name,
            "capability": self.capability.name,
            "kind": self.capability.kind.value,
        }


class CapabilityRegistry:
    """
    Central registry of relayed capabilities.

    Invariant: host ids of all current entries are pairwise distinct.
    `register_all` and `unregister_all` never await, so concurrent `invoke`
    calls on the event loop never observe a half-updated map.
    """

    def __init__(self, config: CapabilityStateProvider, host: CapabilityHost):
        """
        Initialize capability registry.

        Args:
            config: Source of per-capability enable/custom-id state
            host: Host capability API to register with
        """
        self.config = config
        self.host = host
        self._entries: Dict[str, RegisteredEntry] = {}

        logger.debug("CapabilityRegistry created")

    def register_all(
        self,
        server_name: str,
        capabilities: Iterable[Capability],
        connection: "ServerConnection",
    ) -> List[str]:
        """
        Replace every registration of `server_name` with `capabilities`.

        Disabled capabilities are skipped. A failure for one capability is
        logged and the rest of the batch still registers.

        Returns:
            Host ids registered in this batch
        """
        self.unregister_all(server_name)

        caps = list(capabilities)
        logger.info(f"Registering {len(caps)} capabilities from server: {server_name}")

        registered: List[str] = []
        for capability in caps:
            try:
                host_id = self._register_one(server_name, capability, connection)
            except Exception as e:
                logger.warning(f"Failed to register capability {server_name}/{capability.name}: {e}")
                continue
            if host_id:
                registered.append(host_id)
        return registered

    def _register_one(
        self,
        server_name: str,
        capability: Capability,
        connection: "ServerConnection",
    ) -> Optional[str]:
        state = self.config.get_capability_state(server_name, capability.name)
        if not state.enabled:
            logger.info(f"Capability {server_name}/{capability.name} is disabled, skipping registration")
            return None

        host_id = make_host_id(server_name, capability.name, state.custom_id)
        existing = self._entries.get(host_id)
        if existing is not None:
            raise DuplicateName(
                f"host id '{host_id}' already used by {existing.server_name}/{existing.capability.name}",
                server=server_name,
            )

        definition = CapabilityDefinition(
            host_id=host_id,
            description=capability.description or f"MCP {capability.kind.value} '{capability.name}' from {server_name}",
            parameters=capability.input_schema,
            kind=capability.kind,
            server=server_name,
            original_name=capability.name,
        )

        async def invoke_fn(arguments: Dict[str, Any], signal: Optional[CancellationSignal]) -> InvocationResult:
            return await self.invoke(host_id, arguments, signal)

        registration = self.host.register(host_id, definition, invoke_fn)
        self._entries[host_id] = RegisteredEntry(
            host_id=host_id,
            server_name=server_name,
            capability=capability,
            registration=registration,
            connection=connection,
        )
        logger.debug(f"Registered capability: {host_id}")
        return host_id

    def unregister_all(self, server_name: str) -> int:
        """Release every entry owned by `server_name`. Safe to call repeatedly."""
        host_ids = [h for h, e in self._entries.items() if e.server_name == server_name]
        for host_id in host_ids:
            self._unregister(host_id)
        if host_ids:
            logger.info(f"Unregistered {len(host_ids)} capabilities from server: {server_name}")
        return len(host_ids)

    def _unregister(self, host_id: str) -> None:
        entry = self._entries.pop(host_id, None)
        if entry is None:
            return
        try:
            entry.registration.dispose()
        except Exception as e:
            logger.warning(f"Failed to release host registration {host_id}: {e}")

    def dispose(self) -> None:
        """Release all registrations."""
        for host_id in list(self._entries.keys()):
            self._unregister(host_id)
        logger.info("Unregistered all capabilities")

    def get_entry(self, host_id: str) -> Optional[RegisteredEntry]:
        return self._entries.get(host_id)

    def list_entries(self) -> List[RegisteredEntry]:
        return [self._entries[k] for k in sorted(self._entries.keys())]

    def host_ids_for(self, server_name: str) -> List[str]:
        return sorted(h for h, e in self._entries.items() if e.server_name == server_name)

    def is_registered(self, server_name: str, capability_name: str) -> bool:
        return any(
            e.server_name == server_name and e.capability.name == capability_name
            for e in self._entries.values()
        )

    async def invoke(
        self,
        host_id: str,
        arguments: Optional[Dict[str, Any]] = None,
        signal: Optional[CancellationSignal] = None,
    ) -> InvocationResult:
        """
        Invoke a registered capability.

        Never raises for relay failures: unknown ids, disconnected servers,
        cancellation and transport failures all come back as a failed
        InvocationResult with an `error_code`.
        """
        start_time = time.time()
        entry = self._entries.get(host_id)
        if entry is None:
            result = failure_result(NotFound(f"Capability not found: {host_id}"), metadata={"host_id": host_id})
            result.execution_time_ms = (time.time() - start_time) * 1000
            return result

        metadata = {
            "host_id": host_id,
            "server": entry.server_name,
            "capability": entry.capability.name,
            "kind": entry.capability.kind.value,
        }
        args = dict(arguments or {})
        logger.info(f"Invoking {entry.server_name}/{entry.capability.name} with args: {json.dumps(args, default=str)}")

        try:
            raw = await entry.connection.invoke(entry.capability.name, args, signal)
        except Exception as e:
            logger.warning(f"Capability {entry.server_name}/{entry.capability.name} failed: {e}")
            result = failure_result(e, metadata=metadata)
        else:
            result = to_invocation_result(raw, metadata=metadata)
            if result.success:
                logger.info(f"Capability {entry.server_name}/{entry.capability.name} completed successfully")

        result.execution_time_ms = (time.time() - start_time) * 1000
        return result
