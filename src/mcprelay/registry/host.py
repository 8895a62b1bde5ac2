"""
Host capability API.

`CapabilityHost` is the boundary the registry registers against (an IDE's
language-model tool API, an agent runtime, ...). `LocalCapabilityHost` is the
in-process implementation used by the CLI and tests.
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from loguru import logger

from mcprelay.core.cancellation import CancellationSignal
from mcprelay.errors import DuplicateName, NotFound
from mcprelay.registry.base import CapabilityDefinition, InvocationResult
from mcprelay.registry.results import failure_result

InvokeFn = Callable[[Dict[str, Any], Optional[CancellationSignal]], Awaitable[InvocationResult]]


class Registration:
    """
    Owned handle for one host registration.

    Released exactly once: `dispose()` runs the release callback the first
    time and is a no-op afterwards. Usable as a context manager.
    """

    def __init__(self, host_id: str, release: Callable[[], None]) -> None:
        self.host_id = host_id
        self._release = release
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._release()

    def __enter__(self) -> "Registration":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    def __repr__(self) -> str:
        return f"Registration({self.host_id!r}, disposed={self._disposed})"


class CapabilityHost(Protocol):
    def register(
        self,
        host_id: str,
        definition: CapabilityDefinition,
        invoke_fn: InvokeFn,
    ) -> Registration: ...


class LocalCapabilityHost:
    """In-process host registry keyed by host id."""

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[CapabilityDefinition, InvokeFn]] = {}

    def register(
        self,
        host_id: str,
        definition: CapabilityDefinition,
        invoke_fn: InvokeFn,
    ) -> Registration:
        if host_id in self._entries:
            raise DuplicateName(f"Capability already registered with host: {host_id}")
        self._entries[host_id] = (definition, invoke_fn)
        logger.debug(f"Host registered capability: {host_id}")
        return Registration(host_id, lambda: self._release(host_id))

    def _release(self, host_id: str) -> None:
        if self._entries.pop(host_id, None) is not None:
            logger.debug(f"Host released capability: {host_id}")

    def has(self, host_id: str) -> bool:
        return host_id in self._entries

    def host_ids(self) -> List[str]:
        return sorted(self._entries.keys())

    def get_definition(self, host_id: str) -> Optional[CapabilityDefinition]:
        entry = self._entries.get(host_id)
        return entry[0] if entry else None

    def list_definitions(self) -> List[CapabilityDefinition]:
        return [self._entries[k][0] for k in sorted(self._entries.keys())]

    async def invoke(
        self,
        host_id: str,
        arguments: Optional[Dict[str, Any]] = None,
        signal: Optional[CancellationSignal] = None,
    ) -> InvocationResult:
        start_time = time.time()
        entry = self._entries.get(host_id)
        if entry is None:
            result = failure_result(NotFound(f"Capability not found: {host_id}"), metadata={"host_id": host_id})
            result.execution_time_ms = (time.time() - start_time) * 1000
            return result
        _, invoke_fn = entry
        return await invoke_fn(dict(arguments or {}), signal)

    def to_openai_tools(self) -> List[Dict[str, Any]]:
        """Export registered capabilities as OpenAI function-tool schemas."""
        tools = []
        for definition in self.list_definitions():
            params = definition.parameters or {}
            if not isinstance(params, dict) or params.get("type") != "object":
                params = {"type": "object", "properties": {}}
            tools.append(
                {
                    "type": "function",
                    "function": {
                        "name": definition.host_id,
                        "description": definition.description,
                        "parameters": params,
                    },
                }
            )
        return tools
