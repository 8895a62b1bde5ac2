"""
Cooperative cancellation signal passed into capability invocations.
"""

from __future__ import annotations

from typing import Optional


class CancellationSignal:
    """
    A one-way flag set by the host when the user or assistant abandons a call.

    The MCP transport cannot abort a request mid-flight, so the signal is
    checked before the call is issued and again when the result arrives.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason

    def __repr__(self) -> str:
        return f"CancellationSignal(cancelled={self._cancelled})"
