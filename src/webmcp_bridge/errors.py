"""Error taxonomy for the WebMCP bridge.

Every error carries an ``ErrorKind`` so callers can branch on the kind
instead of inspecting message text.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Machine-checkable error categories."""

    ALREADY_STARTING = "already_starting"
    NOT_STARTED = "not_started"
    TRANSPORT_CLOSED = "transport_closed"
    HANDSHAKE_TIMEOUT = "handshake_timeout"
    BRIDGE_NOT_FOUND = "bridge_not_found"
    BRIDGE_INJECTION_FAILED = "bridge_injection_failed"
    WEBMCP_NOT_DETECTED = "webmcp_not_detected"
    SERVER_STOPPED = "server_stopped"
    PARSE_ERROR = "parse_error"
    PAGE_GONE = "page_gone"
    TOOL_NOT_FOUND = "tool_not_found"
    ARGUMENT_VALIDATION_FAILED = "argument_validation_failed"
    NO_TOOLS_AVAILABLE = "no_tools_available"
    PAGE_NOT_FOUND = "page_not_found"
    INITIALIZE_FAILED = "initialize_failed"


class WebMCPError(Exception):
    """Base class for all bridge errors."""

    kind: ErrorKind = ErrorKind.PAGE_GONE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def recoverable(self) -> bool:
        return self.kind in _RECOVERABLE


class AlreadyStartingError(WebMCPError):
    kind = ErrorKind.ALREADY_STARTING


class TransportNotStartedError(WebMCPError):
    kind = ErrorKind.NOT_STARTED


class TransportClosedError(WebMCPError):
    kind = ErrorKind.TRANSPORT_CLOSED


class HandshakeTimeoutError(WebMCPError):
    kind = ErrorKind.HANDSHAKE_TIMEOUT


class BridgeNotFoundError(WebMCPError):
    """The injected page-side relay is missing (page reloaded or disposed)."""

    kind = ErrorKind.BRIDGE_NOT_FOUND


class BridgeInjectionError(WebMCPError):
    kind = ErrorKind.BRIDGE_INJECTION_FAILED


class WebMCPNotDetectedError(WebMCPError):
    kind = ErrorKind.WEBMCP_NOT_DETECTED


class ServerStoppedError(WebMCPError):
    """The page's registry announced it stopped. The connection stays open."""

    kind = ErrorKind.SERVER_STOPPED


class PayloadParseError(WebMCPError):
    kind = ErrorKind.PARSE_ERROR


class PageGoneError(WebMCPError):
    """The debug channel failed: the page or its execution context is gone."""

    kind = ErrorKind.PAGE_GONE


class ToolNotFoundError(WebMCPError):
    kind = ErrorKind.TOOL_NOT_FOUND


class ArgumentValidationError(WebMCPError):
    kind = ErrorKind.ARGUMENT_VALIDATION_FAILED


class NoToolsAvailableError(WebMCPError):
    kind = ErrorKind.NO_TOOLS_AVAILABLE


class PageNotFoundError(WebMCPError):
    kind = ErrorKind.PAGE_NOT_FOUND


class SessionInitializeError(WebMCPError):
    """The bridge came up but the MCP initialize exchange failed."""

    kind = ErrorKind.INITIALIZE_FAILED


_RECOVERABLE = frozenset(
    {
        ErrorKind.HANDSHAKE_TIMEOUT,
        ErrorKind.BRIDGE_NOT_FOUND,
        ErrorKind.SERVER_STOPPED,
        ErrorKind.NO_TOOLS_AVAILABLE,
    }
)
