"""
MCPTransportHandle - one bidirectional channel to an MCP server.

Uses the official `mcp` Python client for the wire protocol: stdio for local
processes, streamable HTTP and SSE for remote servers. The SDK contexts are
entered and exited by a single runner task owned by the handle, so `close()`
may be awaited from any task.
"""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from loguru import logger
from mcp import ClientSession, StdioServerParameters, stdio_client
from mcp.client.sse import sse_client
from mcp.client.stdio import get_default_environment
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import Implementation
from pydantic import AnyUrl

from mcprelay import __version__
from mcprelay.errors import ConfigError, TransportClosed, TransportOpenFailed
from mcprelay.mcp.models import Capability, CapabilityKind, ConnectionDescriptor, TransportKind

ErrorCallback = Callable[[BaseException], None]
CloseCallback = Callable[[], None]


class TransportHandle(Protocol):
    """What the connection state machine needs from a transport."""

    async def list_capabilities(self) -> List[Capability]: ...

    async def call(self, capability: Capability, arguments: Dict[str, Any]) -> Any: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


class TransportFactory(Protocol):
    def __call__(
        self,
        descriptor: ConnectionDescriptor,
        *,
        on_error: Optional[ErrorCallback] = None,
        on_close: Optional[CloseCallback] = None,
    ) -> Awaitable[TransportHandle]: ...


def _prompt_schema(prompt: Any) -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for arg in list(getattr(prompt, "arguments", None) or []):
        name = str(getattr(arg, "name", "") or "")
        if not name:
            continue
        prop: Dict[str, Any] = {"type": "string"}
        if getattr(arg, "description", None):
            prop["description"] = str(arg.description)
        properties[name] = prop
        if getattr(arg, "required", False):
            required.append(name)
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


class MCPTransportHandle:
    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        *,
        on_error: Optional[ErrorCallback] = None,
        on_close: Optional[CloseCallback] = None,
        close_timeout_seconds: float = 5.0,
    ) -> None:
        self.descriptor = descriptor
        self._on_error = on_error
        self._on_close = on_close
        self._close_timeout_seconds = close_timeout_seconds

        self._session: Optional[ClientSession] = None
        self._server_capabilities: Any = None
        self._runner: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self._close_requested = asyncio.Event()
        self._open_error: Optional[BaseException] = None

    @property
    def is_open(self) -> bool:
        return self._session is not None and not self._close_requested.is_set()

    async def _enter_session(self, stack: AsyncExitStack) -> ClientSession:
        d = self.descriptor
        if d.transport == TransportKind.STDIO:
            if not d.command:
                raise ConfigError("Command is required for stdio transport", server=d.name)
            params = StdioServerParameters(
                command=d.command,
                args=list(d.args),
                env={**get_default_environment(), **d.env} if d.env else None,
                cwd=str(d.cwd) if d.cwd else None,
            )
            read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
        elif d.transport == TransportKind.HTTP:
            if not d.url:
                raise ConfigError("URL is required for HTTP transport", server=d.name)
            read_stream, write_stream, _ = await stack.enter_async_context(
                streamablehttp_client(d.url, headers=d.request_headers())
            )
        elif d.transport == TransportKind.SSE:
            if not d.url:
                raise ConfigError("URL is required for SSE transport", server=d.name)
            read_stream, write_stream = await stack.enter_async_context(
                sse_client(d.url, headers=d.request_headers())
            )
        else:
            raise ConfigError(f"Unsupported MCP transport: {d.transport}", server=d.name)

        client_info = Implementation(name=f"mcp-relay-{d.name}", version=__version__)
        return await stack.enter_async_context(
            ClientSession(read_stream, write_stream, client_info=client_info)
        )

    async def _run(self) -> None:
        try:
            async with AsyncExitStack() as stack:
                session = await self._enter_session(stack)
                init = await session.initialize()
                self._server_capabilities = getattr(init, "capabilities", None)
                self._session = session
                self._ready.set()
                await self._close_requested.wait()
        except asyncio.CancelledError:
            self._session = None
            if not self._ready.is_set():
                self._open_error = TransportClosed("Transport cancelled while opening", server=self.descriptor.name)
                self._ready.set()
            elif not self._close_requested.is_set():
                self._notify_close()
            raise
        except Exception as e:
            self._session = None
            if not self._ready.is_set():
                self._open_error = e
                self._ready.set()
                return
            if not self._close_requested.is_set():
                logger.debug(f"MCP transport for '{self.descriptor.name}' failed: {e}")
                self._notify_error(e)
            return

        self._session = None

    def _notify_error(self, error: BaseException) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception as e:
            logger.error(f"Transport error callback failed ({self.descriptor.name}): {e}")

    def _notify_close(self) -> None:
        if self._on_close is None:
            return
        try:
            self._on_close()
        except Exception as e:
            logger.error(f"Transport close callback failed ({self.descriptor.name}): {e}")

    async def open(self) -> None:
        if self._runner is not None:
            return
        d = self.descriptor
        target = d.command if d.transport == TransportKind.STDIO else d.url
        logger.info(f"Opening {d.transport.value} transport for MCP server '{d.name}': {target} {' '.join(d.args)}".rstrip())

        self._runner = asyncio.create_task(self._run(), name=f"mcp-transport:{d.name}")
        try:
            await self._ready.wait()
        except asyncio.CancelledError:
            # open() timed out or was abandoned; the runner must not outlive it
            self._close_requested.set()
            self._runner.cancel()
            raise

        if self._open_error is not None:
            error = self._open_error
            if isinstance(error, TransportOpenFailed):
                raise error
            raise TransportOpenFailed(f"Failed to open transport: {error}", server=d.name) from error

    def _require_session(self) -> ClientSession:
        if self._session is None or self._close_requested.is_set():
            raise TransportClosed(f"Transport for '{self.descriptor.name}' is closed", server=self.descriptor.name)
        return self._session

    async def list_capabilities(self) -> List[Capability]:
        session = self._require_session()
        caps = self._server_capabilities

        out: List[Capability] = []
        res = await session.list_tools()
        for tool in list(getattr(res, "tools", None) or []):
            out.append(
                Capability(
                    name=str(tool.name),
                    description=str(getattr(tool, "description", None) or ""),
                    input_schema=dict(getattr(tool, "inputSchema", None) or {}),
                    kind=CapabilityKind.TOOL,
                )
            )

        if caps is not None and getattr(caps, "prompts", None) is not None:
            res = await session.list_prompts()
            for prompt in list(getattr(res, "prompts", None) or []):
                out.append(
                    Capability(
                        name=str(prompt.name),
                        description=str(getattr(prompt, "description", None) or ""),
                        input_schema=_prompt_schema(prompt),
                        kind=CapabilityKind.PROMPT,
                    )
                )

        if caps is not None and getattr(caps, "resources", None) is not None:
            res = await session.list_resources()
            for resource in list(getattr(res, "resources", None) or []):
                out.append(
                    Capability(
                        name=str(resource.name),
                        description=str(getattr(resource, "description", None) or ""),
                        input_schema={"type": "object", "properties": {}},
                        kind=CapabilityKind.RESOURCE,
                        uri=str(resource.uri),
                    )
                )

        return out

    async def call(self, capability: Capability, arguments: Dict[str, Any]) -> Any:
        session = self._require_session()
        if capability.kind == CapabilityKind.PROMPT:
            prompt_args = {str(k): str(v) for k, v in (arguments or {}).items()}
            return await session.get_prompt(capability.name, arguments=prompt_args)
        if capability.kind == CapabilityKind.RESOURCE:
            if not capability.uri:
                raise ValueError(f"Resource '{capability.name}' has no URI")
            return await session.read_resource(AnyUrl(capability.uri))
        return await session.call_tool(name=capability.name, arguments=arguments or {})

    async def ping(self) -> None:
        session = self._require_session()
        await session.send_ping()

    async def close(self) -> None:
        self._close_requested.set()
        runner = self._runner
        if runner is None or runner.done():
            self._session = None
            return
        try:
            await asyncio.wait_for(runner, timeout=float(self._close_timeout_seconds))
        except asyncio.TimeoutError:
            logger.debug(f"MCP transport close timed out ({self.descriptor.name})")
        except Exception as e:
            logger.debug(f"MCP transport close failed ({self.descriptor.name}): {e}")
        finally:
            self._session = None


async def open_transport(
    descriptor: ConnectionDescriptor,
    *,
    on_error: Optional[ErrorCallback] = None,
    on_close: Optional[CloseCallback] = None,
) -> MCPTransportHandle:
    """Open a transport for `descriptor`; raises TransportOpenFailed."""
    handle = MCPTransportHandle(descriptor, on_error=on_error, on_close=on_close)
    await handle.open()
    return handle
