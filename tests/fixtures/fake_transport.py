"""
In-process transport fakes for state-machine tests.

`FakeTransportFactory` is passed as `transport_factory=` to ServerConnection or
ConnectionSupervisor. Every knob is a plain attribute so tests can flip
behavior between attempts.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

from mcprelay.mcp.models import Capability, ConnectionDescriptor


class FakeHandle:
    def __init__(self, factory: "FakeTransportFactory", descriptor: ConnectionDescriptor, on_error, on_close) -> None:
        self.factory = factory
        self.descriptor = descriptor
        self.on_error = on_error
        self.on_close = on_close
        self.closed = False

    async def list_capabilities(self) -> List[Capability]:
        self.factory.list_count += 1
        if self.factory.list_gate is not None:
            await self.factory.list_gate.wait()
        if self.factory.list_error is not None:
            raise self.factory.list_error
        return list(self.factory.capabilities.get(self.descriptor.name, self.factory.default_capabilities))

    async def call(self, capability: Capability, arguments: Dict[str, Any]) -> Any:
        self.factory.calls.append((self.descriptor.name, capability.name, dict(arguments)))
        if self.factory.call_gate is not None:
            await self.factory.call_gate.wait()
        if self.factory.call_error is not None:
            raise self.factory.call_error
        result = self.factory.call_result
        if callable(result):
            return result(capability, arguments)
        return result

    async def ping(self) -> None:
        self.factory.ping_count += 1
        if self.factory.ping_error is not None:
            raise self.factory.ping_error

    async def close(self) -> None:
        self.closed = True
        if self.factory.close_error is not None:
            raise self.factory.close_error

    # Server-side events
    def fail(self, error: Optional[BaseException] = None) -> None:
        if self.on_error is not None:
            self.on_error(error or ConnectionResetError("connection reset"))

    def drop(self) -> None:
        if self.on_close is not None:
            self.on_close()


class FakeTransportFactory:
    def __init__(
        self,
        capabilities: Optional[Dict[str, List[Capability]]] = None,
        *,
        default_capabilities: Optional[List[Capability]] = None,
    ) -> None:
        self.capabilities: Dict[str, List[Capability]] = dict(capabilities or {})
        self.default_capabilities: List[Capability] = list(default_capabilities or [])
        self.handles: List[FakeHandle] = []
        self.calls: List[tuple] = []

        self.open_count = 0
        self.list_count = 0
        self.ping_count = 0

        # Number of upcoming opens that fail
        self.open_failures = 0
        self.open_gate: Optional[asyncio.Event] = None
        self.list_gate: Optional[asyncio.Event] = None
        self.list_error: Optional[BaseException] = None
        self.call_gate: Optional[asyncio.Event] = None
        self.call_error: Optional[BaseException] = None
        self.call_result: Any = {"ok": True}
        self.ping_error: Optional[BaseException] = None
        self.close_error: Optional[BaseException] = None

    async def __call__(self, descriptor: ConnectionDescriptor, *, on_error=None, on_close=None) -> FakeHandle:
        self.open_count += 1
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.open_failures > 0:
            self.open_failures -= 1
            raise ConnectionRefusedError(f"cannot start {descriptor.name}")
        handle = FakeHandle(self, descriptor, on_error, on_close)
        self.handles.append(handle)
        return handle

    @property
    def last_handle(self) -> FakeHandle:
        return self.handles[-1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)
