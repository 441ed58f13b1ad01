"""Error taxonomy shared by the cqws subsystems."""

from __future__ import annotations

from typing import Any, Dict, Optional


class CQWSError(RuntimeError):
    """Base class for every error raised by cqws."""


class ValidationError(CQWSError, ValueError):
    """Raised when a tag is built with a missing or malformed attribute."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


class TransportError(CQWSError):
    """Raised when the connection cannot complete an operation."""


class NotConnected(TransportError):
    """Raised when a frame is submitted while the connection is not open."""


class Timeout(CQWSError, TimeoutError):
    """No matching response arrived before the call's deadline."""

    def __init__(self, echo: str, method: str, timeout: float) -> None:
        super().__init__(f"{method} (echo={echo}) timed out after {timeout:.2f}s")
        self.echo = echo
        self.method = method
        self.timeout = timeout


class ConnectionLost(CQWSError):
    """The connection closed while the call was still pending."""

    def __init__(self, echo: str, method: str, reason: Optional[str] = None) -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(f"{method} (echo={echo}) lost with the connection{detail}")
        self.echo = echo
        self.method = method


class APIError(CQWSError):
    """The remote side answered with a failure status."""

    def __init__(self, method: str, response: Dict[str, Any]) -> None:
        self.method = method
        self.response = response
        self.status = response.get("status")
        self.retcode = response.get("retcode")
        self.message = response.get("msg") or ""
        self.wording = response.get("wording") or ""
        detail = self.wording or self.message
        text = f"{method} failed: status={self.status} retcode={self.retcode}"
        if detail:
            text += f" ({detail})"
        super().__init__(text)
