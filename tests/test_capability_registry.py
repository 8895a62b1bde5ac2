import pytest
from mcp.types import CallToolResult, GetPromptResult, PromptMessage, ReadResourceResult, TextContent, TextResourceContents

from fixtures.fake_transport import FakeTransportFactory
from mcprelay.config.models import CapabilityState
from mcprelay.core.cancellation import CancellationSignal
from mcprelay.errors import DuplicateName, InvocationFailed
from mcprelay.mcp.connection import ServerConnection
from mcprelay.mcp.models import Capability, CapabilityKind, ConnectionDescriptor
from mcprelay.registry.host import LocalCapabilityHost, Registration
from mcprelay.registry.registry import CapabilityRegistry, make_host_id


class DummyConfig:
    def __init__(self):
        self.states = {}

    def get_capability_state(self, server_name, capability_name):
        return CapabilityState(**self.states.get((server_name, capability_name), {}))


class DummyConnection:
    def __init__(self, name, result=None, error=None):
        self.name = name
        self.result = result
        self.error = error
        self.calls = []

    async def invoke(self, capability_name, arguments=None, signal=None):
        self.calls.append((capability_name, arguments, signal))
        if self.error is not None:
            raise self.error
        return self.result


def _cap(name, **kwargs):
    return Capability(name=name, description=f"{name} capability", **kwargs)


def _registry():
    config = DummyConfig()
    host = LocalCapabilityHost()
    return config, host, CapabilityRegistry(config, host)


def test_make_host_id_namespaces_by_server_unless_custom():
    assert make_host_id("docs", "search") == "docs::search"
    assert make_host_id("docs", "search", "find") == "find"
    assert make_host_id("docs", "search", "   ") == "docs::search"


def test_same_capability_name_on_two_servers_registers_twice():
    _, host, registry = _registry()

    a = registry.register_all("serverA", [_cap("search")], DummyConnection("serverA"))
    b = registry.register_all("serverB", [_cap("search")], DummyConnection("serverB"))

    assert a == ["serverA::search"]
    assert b == ["serverB::search"]
    assert host.host_ids() == ["serverA::search", "serverB::search"]
    assert registry.get_entry("serverB::search").server_name == "serverB"


def test_register_all_is_a_full_replace():
    _, host, registry = _registry()
    conn = DummyConnection("docs")

    registry.register_all("docs", [_cap("search"), _cap("fetch")], conn)
    old = registry.get_entry("docs::fetch").registration
    registry.register_all("docs", [_cap("search")], conn)

    assert registry.host_ids_for("docs") == ["docs::search"]
    assert host.host_ids() == ["docs::search"]
    assert old.disposed


def test_disabled_capability_is_skipped_and_restored_with_same_host_id():
    config, host, registry = _registry()
    conn = DummyConnection("docs")
    caps = [_cap("search"), _cap("fetch")]

    registry.register_all("docs", caps, conn)
    assert registry.is_registered("docs", "fetch")

    config.states[("docs", "fetch")] = {"enabled": False}
    registry.register_all("docs", caps, conn)
    assert not registry.is_registered("docs", "fetch")
    assert not host.has("docs::fetch")

    config.states[("docs", "fetch")] = {"enabled": True}
    registry.register_all("docs", caps, conn)
    assert registry.get_entry("docs::fetch").capability.name == "fetch"
    assert host.has("docs::fetch")


def test_custom_id_collision_is_rejected_and_batch_continues():
    config, host, registry = _registry()
    config.states[("a", "search")] = {"custom_id": "search"}
    config.states[("b", "lookup")] = {"custom_id": "search"}

    registry.register_all("a", [_cap("search")], DummyConnection("a"))
    registered = registry.register_all("b", [_cap("lookup"), _cap("fetch")], DummyConnection("b"))

    assert registered == ["b::fetch"]
    assert registry.get_entry("search").server_name == "a"
    assert host.host_ids() == ["b::fetch", "search"]


def test_host_rejects_duplicate_ids():
    _, host, registry = _registry()
    registry.register_all("docs", [_cap("search")], DummyConnection("docs"))

    with pytest.raises(DuplicateName):
        host.register("docs::search", host.get_definition("docs::search"), None)


def test_unregister_all_is_idempotent():
    _, host, registry = _registry()
    registry.register_all("docs", [_cap("search")], DummyConnection("docs"))

    assert registry.unregister_all("docs") == 1
    assert registry.unregister_all("docs") == 0
    assert registry.unregister_all("never-registered") == 0
    assert host.host_ids() == []


def test_registration_is_released_exactly_once():
    released = []
    registration = Registration("x", lambda: released.append("x"))

    with registration:
        pass
    registration.dispose()

    assert released == ["x"]
    assert registration.disposed


def test_dispose_releases_everything():
    _, host, registry = _registry()
    registry.register_all("a", [_cap("one")], DummyConnection("a"))
    registry.register_all("b", [_cap("two")], DummyConnection("b"))

    registry.dispose()

    assert registry.list_entries() == []
    assert host.host_ids() == []


def test_openai_export_uses_host_ids():
    _, host, registry = _registry()
    schema = {"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]}
    registry.register_all("docs", [_cap("search", input_schema=schema)], DummyConnection("docs"))

    tools = host.to_openai_tools()

    assert tools == [
        {
            "type": "function",
            "function": {"name": "docs::search", "description": "search capability", "parameters": schema},
        }
    ]


@pytest.mark.asyncio
async def test_invoke_unknown_host_id_returns_not_found():
    _, host, registry = _registry()

    result = await registry.invoke("nope::search", {})
    via_host = await host.invoke("nope::search", {})

    assert result.success is False
    assert result.error_code == "not_found"
    assert via_host.error_code == "not_found"


@pytest.mark.asyncio
async def test_invoke_routes_to_owning_server_with_original_name():
    config, host, registry = _registry()
    config.states[("docs", "search")] = {"custom_id": "find"}
    result = CallToolResult(
        content=[TextContent(type="text", text='{"hits": 2}')],
        structuredContent={"hits": 2},
    )
    conn = DummyConnection("docs", result=result)
    registry.register_all("docs", [_cap("search")], conn)

    out = await host.invoke("find", {"q": "mcp"})

    assert out.success is True
    assert out.data == {"hits": 2}
    assert out.metadata["server"] == "docs"
    assert out.metadata["capability"] == "search"
    assert conn.calls[0][0] == "search"
    assert conn.calls[0][1] == {"q": "mcp"}


@pytest.mark.asyncio
async def test_invoke_flattens_text_content_and_tool_errors():
    _, _, registry = _registry()
    conn = DummyConnection("docs")
    registry.register_all("docs", [_cap("search")], conn)

    conn.result = CallToolResult(content=[TextContent(type="text", text="plain answer")])
    ok = await registry.invoke("docs::search", {})
    assert ok.success is True
    assert ok.data == "plain answer"

    conn.result = CallToolResult(content=[TextContent(type="text", text="bad query")], isError=True)
    failed = await registry.invoke("docs::search", {})
    assert failed.success is False
    assert failed.error == "bad query"
    assert failed.error_code == "tool_error"

    conn.result = {"success": False, "message": "quota exceeded"}
    payload = await registry.invoke("docs::search", {})
    assert payload.success is False
    assert payload.error == "quota exceeded"


@pytest.mark.asyncio
async def test_invoke_prompt_and_resource_results():
    _, _, registry = _registry()
    conn = DummyConnection("docs")
    registry.register_all(
        "docs",
        [_cap("greet", kind=CapabilityKind.PROMPT), _cap("settings", kind=CapabilityKind.RESOURCE, uri="config://relay")],
        conn,
    )

    conn.result = GetPromptResult(
        description="greeting",
        messages=[PromptMessage(role="user", content=TextContent(type="text", text="Say hi"))],
    )
    prompt = await registry.invoke("docs::greet", {"name": "Ada"})
    assert prompt.success is True
    assert prompt.data["messages"] == [{"role": "user", "content": "Say hi"}]
    assert prompt.metadata["kind"] == "prompt"

    conn.result = ReadResourceResult(
        contents=[TextResourceContents(uri="config://relay", mimeType="application/json", text='{"mode": "test"}')]
    )
    resource = await registry.invoke("docs::settings", {})
    assert resource.success is True
    assert resource.data[0]["text"] == '{"mode": "test"}'
    assert resource.data[0]["mime_type"] == "application/json"


@pytest.mark.asyncio
async def test_invoke_converts_relay_errors_into_results():
    _, _, registry = _registry()
    conn = DummyConnection("docs", error=InvocationFailed("Call to 'search' failed: boom", server="docs"))
    registry.register_all("docs", [_cap("search")], conn)

    result = await registry.invoke("docs::search", {})

    assert result.success is False
    assert result.error_code == "invocation_failed"
    assert "boom" in result.error
    assert result.execution_time_ms >= 0


@pytest.mark.asyncio
async def test_invoke_on_disconnected_server_returns_not_connected():
    _, _, registry = _registry()
    factory = FakeTransportFactory()
    conn = ServerConnection(ConnectionDescriptor(name="docs", command="docs-server"), transport_factory=factory)
    registry.register_all("docs", [_cap("search")], conn)

    result = await registry.invoke("docs::search", {"q": "x"})

    assert result.success is False
    assert result.error_code == "not_connected"
    assert factory.calls == []


@pytest.mark.asyncio
async def test_invoke_with_cancelled_signal_returns_cancelled():
    _, _, registry = _registry()
    factory = FakeTransportFactory(default_capabilities=[_cap("search")])
    conn = ServerConnection(ConnectionDescriptor(name="docs", command="docs-server"), transport_factory=factory)
    await conn.connect()
    try:
        registry.register_all("docs", conn.capabilities, conn)
        signal = CancellationSignal()
        signal.cancel()

        result = await registry.invoke("docs::search", {"q": "x"}, signal)

        assert result.success is False
        assert result.error_code == "cancelled"
        assert factory.calls == []
    finally:
        await conn.disconnect()
