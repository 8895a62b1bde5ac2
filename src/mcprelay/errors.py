"""
Relay error taxonomy.

Lifecycle failures (open, discovery, health) are raised inside the connection
state machine and recovered there. Invocation failures are converted into
structured results by the capability registry before they reach the host.
"""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for all relay errors."""

    code = "relay_error"

    def __init__(self, message: str, *, server: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.server = server

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "server": self.server}


class TransportOpenFailed(RelayError):
    code = "transport_open_failed"


class DiscoveryFailed(RelayError):
    code = "discovery_failed"


class TransportClosed(RelayError):
    code = "transport_closed"


class HealthCheckFailed(RelayError):
    code = "health_check_failed"


class NotConnected(RelayError):
    """Invocation attempted while the server is not connected."""

    code = "not_connected"


class Cancelled(RelayError):
    code = "cancelled"


class InvocationFailed(RelayError):
    """The underlying transport call failed or timed out."""

    code = "invocation_failed"


class DuplicateName(RelayError):
    """Server name or host id collision."""

    code = "duplicate_name"


class NotFound(RelayError):
    """Unknown server name or host id."""

    code = "not_found"


class ConfigError(RelayError):
    code = "config_error"
