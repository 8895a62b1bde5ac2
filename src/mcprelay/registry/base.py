"""
Host-facing shapes: capability definitions and invocation results.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from mcprelay.mcp.models import CapabilityKind


@dataclass
class InvocationResult:
    """Result of a host invocation. Failures are values, never exceptions."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    execution_time_ms: float = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "error_code": self.error_code,
            "execution_time_ms": self.execution_time_ms,
            "metadata": self.metadata,
        }

    def to_text(self) -> str:
        """Render as a JSON text part, the way chat hosts display tool output."""
        if self.success:
            payload = self.data if not isinstance(self.data, str) else {"result": self.data}
        else:
            payload = {"error": self.error, "code": self.error_code}
        return json.dumps(payload, indent=2, default=str)


class CapabilityDefinition(BaseModel):
    """Definition handed to the host when a capability is registered."""

    host_id: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)  # JSON Schema, passed through
    kind: CapabilityKind = CapabilityKind.TOOL
    server: str
    original_name: str
