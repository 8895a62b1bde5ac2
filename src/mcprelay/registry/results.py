"""
Convert raw MCP SDK results (tool calls, prompts, resource reads) into
InvocationResult values.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from mcprelay.errors import RelayError
from mcprelay.registry.base import InvocationResult


def flatten_mcp_content(content: Any) -> str:
    if not content:
        return ""
    parts = []
    for block in list(content):
        # Pydantic models (mcp.types.*)
        text = getattr(block, "text", None)
        if isinstance(text, str) and text.strip():
            parts.append(text.strip())
            continue

        # dict-like
        if isinstance(block, dict):
            if isinstance(block.get("text"), str) and block["text"].strip():
                parts.append(block["text"].strip())
                continue

        parts.append(str(block))
    return "\n".join([p for p in parts if p])


def payload_indicates_failure(data: Any) -> Optional[str]:
    """
    Some MCP servers return {success: false, message: "..."} without marking the
    call as isError. Treat those as failures.
    """
    if not isinstance(data, dict):
        return None
    if data.get("success") is False:
        msg = data.get("message") or data.get("error") or "MCP tool reported success=false"
        return str(msg)
    return None


def _prompt_data(res: Any) -> Dict[str, Any]:
    messages: List[Dict[str, Any]] = []
    for message in list(getattr(res, "messages", None) or []):
        content = getattr(message, "content", None)
        messages.append(
            {
                "role": str(getattr(message, "role", "") or ""),
                "content": flatten_mcp_content([content]) if content is not None else "",
            }
        )
    return {"description": getattr(res, "description", None), "messages": messages}


def _resource_data(res: Any) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for item in list(getattr(res, "contents", None) or []):
        entry: Dict[str, Any] = {
            "uri": str(getattr(item, "uri", "") or ""),
            "mime_type": getattr(item, "mimeType", None),
        }
        if getattr(item, "text", None) is not None:
            entry["text"] = item.text
        elif getattr(item, "blob", None) is not None:
            entry["blob"] = item.blob
        out.append(entry)
    return out


def to_invocation_result(res: Any, *, metadata: Optional[Dict[str, Any]] = None) -> InvocationResult:
    meta = dict(metadata or {})

    if hasattr(res, "messages"):
        return InvocationResult(success=True, data=_prompt_data(res), metadata=meta)
    if hasattr(res, "contents"):
        return InvocationResult(success=True, data=_resource_data(res), metadata=meta)

    if not any(hasattr(res, attr) for attr in ("isError", "structuredContent", "content")):
        # Plain python value (fake transports, custom hosts)
        error = payload_indicates_failure(res)
        if error:
            return InvocationResult(success=False, error=error, error_code="tool_error", metadata=meta)
        return InvocationResult(success=True, data=res, metadata=meta)

    is_error = bool(getattr(res, "isError", False))
    structured = getattr(res, "structuredContent", None)
    content = getattr(res, "content", None)

    if is_error:
        msg = flatten_mcp_content(content) or "MCP tool returned an error"
        return InvocationResult(success=False, error=msg, error_code="tool_error", metadata=meta)

    data: Any = structured if structured is not None else flatten_mcp_content(content)

    payload_error = payload_indicates_failure(data)
    if payload_error:
        return InvocationResult(success=False, error=payload_error, error_code="tool_error", metadata=meta)

    return InvocationResult(success=True, data=data, metadata=meta)


def failure_result(error: BaseException, *, metadata: Optional[Dict[str, Any]] = None) -> InvocationResult:
    code = error.code if isinstance(error, RelayError) else "invocation_failed"
    return InvocationResult(success=False, error=str(error), error_code=code, metadata=dict(metadata or {}))
