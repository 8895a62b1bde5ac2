from mcprelay.errors import NotConnected
from mcprelay.registry.results import failure_result, flatten_mcp_content, payload_indicates_failure, to_invocation_result


class _FakeRes:
    def __init__(self, *, is_error: bool = False, structured=None, content=None):
        self.isError = is_error
        self.structuredContent = structured
        self.content = content


class _Text:
    def __init__(self, text):
        self.text = text


def test_structured_payload_success_false_becomes_failure():
    res = to_invocation_result(_FakeRes(structured={"success": False, "message": "boom"}), metadata={"server": "wa"})

    assert res.success is False
    assert res.error == "boom"
    assert res.error_code == "tool_error"
    assert res.metadata == {"server": "wa"}


def test_structured_content_is_preferred_over_text():
    res = to_invocation_result(_FakeRes(structured={"sum": 5}, content=[_Text('{"sum": 5}')]))

    assert res.success is True
    assert res.data == {"sum": 5}


def test_flatten_joins_text_blocks_and_dicts():
    blocks = [_Text(" first "), {"type": "text", "text": "second"}, _Text("   ")]

    flat = flatten_mcp_content(blocks)

    assert flat.splitlines()[:2] == ["first", "second"]
    assert flatten_mcp_content(None) == ""


def test_payload_indicates_failure_only_for_explicit_false():
    assert payload_indicates_failure({"success": False, "error": "quota"}) == "quota"
    assert payload_indicates_failure({"success": True}) is None
    assert payload_indicates_failure("success: false") is None


def test_failure_result_keeps_relay_error_code():
    assert failure_result(NotConnected("Server docs is not connected")).error_code == "not_connected"
    assert failure_result(RuntimeError("boom")).error_code == "invocation_failed"


def test_to_text_renders_json():
    ok = to_invocation_result("plain answer")
    failed = failure_result(NotConnected("down"))

    assert '"result": "plain answer"' in ok.to_text()
    assert '"code": "not_connected"' in failed.to_text()
