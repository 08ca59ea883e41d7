"""
Exception hierarchy for the chat engine.

Gateway and completion failures are terminal for a chat turn; tool failures
are caught per call and converted to data by the tool executor.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all engine errors."""


# ── Tool Gateway ──

class GatewayError(RelayError):
    """Tool gateway could not be started, connected or used."""


class GatewayStartError(GatewayError):
    """Gateway process exited during startup or never signalled readiness."""

    def __init__(self, message: str, stderr: str = "", exit_code: Optional[int] = None):
        super().__init__(message)
        self.stderr = stderr
        self.exit_code = exit_code


class GatewayConnectError(GatewayError):
    """JSON-RPC handshake with a ready gateway failed."""


class GatewayToolError(GatewayError):
    """A JSON-RPC request to the gateway returned an error or timed out."""


# ── Completion Endpoint ──

class CompletionError(RelayError):
    """The inference endpoint request failed."""


class CompletionHTTPError(CompletionError):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"Model API error: {status_code} - {body}")
        self.status_code = status_code
        self.body = body


class CompletionTransportError(CompletionError):
    pass


class CompletionTimeoutError(CompletionError):
    pass


# ── Cancellation ──

class RequestCancelled(RelayError):
    """The request was aborted through the cancellation registry."""
