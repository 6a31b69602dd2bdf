"""
Affinity MCP Error Taxonomy.

Every failure the server can report is one of these exceptions.  Each class
carries a stable ``kind`` (what clients switch on) and a JSON-RPC ``code``,
and converts itself into ``mcp.types.ErrorData`` for the wire:

    {"code": -32013, "message": "...", "data": {"type": "UnsupportedFormat", ...}}

Families:
  - ProtocolError  - malformed messages, handshake state, unknown methods
  - ToolError      - unknown tool names, schema-invalid arguments
  - BridgeError    - failures reported by the automation bridge
  - RemoteApiError - failures reported by the remote design API
"""

from typing import Any

from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND, ErrorData

# Server-defined JSON-RPC codes (reserved range -32000..-32099)
NOT_READY = -32002
SHUTTING_DOWN = -32003
BRIDGE_ERROR = -32010
APP_NOT_RUNNING = -32011
INVALID_PATH = -32012
UNSUPPORTED_FORMAT = -32013
BRIDGE_TIMEOUT = -32014
AUTOMATION_FAILURE = -32015
REMOTE_API_ERROR = -32020


class AffinityMCPError(Exception):
    """Base class for every typed failure."""

    code: int = INTERNAL_ERROR
    kind: str = "InternalError"

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        """Structured form used in error responses and batch outcomes."""
        return {"type": self.kind, "message": self.message, **self.detail}

    def to_error_data(self) -> ErrorData:
        return ErrorData(code=self.code, message=self.message, data=self.to_dict())


# ---------------------------------------------------------------------------
# Protocol errors
# ---------------------------------------------------------------------------

class ProtocolError(AffinityMCPError):
    code = INVALID_REQUEST
    kind = "ProtocolError"


class MalformedMessage(ProtocolError):
    kind = "MalformedMessage"


class MethodNotFound(ProtocolError):
    code = METHOD_NOT_FOUND
    kind = "MethodNotFound"

    def __init__(self, method: str):
        super().__init__(f"Method not found: {method}", method=method)


class InvalidParams(ProtocolError):
    code = INVALID_PARAMS
    kind = "InvalidParams"


class NotReady(ProtocolError):
    code = NOT_READY
    kind = "NotReady"

    def __init__(self, method: str):
        super().__init__(
            f"Server not initialized; '{method}' requires a completed initialize handshake.",
            method=method,
        )


class ShuttingDown(ProtocolError):
    code = SHUTTING_DOWN
    kind = "ShuttingDown"

    def __init__(self, method: str):
        super().__init__(f"Server is shutting down; '{method}' was not accepted.", method=method)


class AlreadyInitialized(ProtocolError):
    kind = "AlreadyInitialized"

    def __init__(self):
        super().__init__("Server is already initialized.")


# ---------------------------------------------------------------------------
# Tool errors
# ---------------------------------------------------------------------------

class ToolError(AffinityMCPError):
    code = INVALID_PARAMS
    kind = "ToolError"


class UnknownTool(ToolError):
    kind = "UnknownTool"

    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}", tool=name)


class InvalidArguments(ToolError):
    kind = "InvalidArguments"

    def __init__(self, tool: str, description: str, errors: list[dict] | None = None):
        super().__init__(
            f"Invalid arguments for '{tool}': {description}",
            tool=tool,
            errors=errors or [],
        )


class DuplicateToolError(ToolError):
    """Raised at start-up when two tools claim the same name.  Fatal."""

    kind = "DuplicateTool"

    def __init__(self, name: str):
        super().__init__(f"Tool already registered: {name}", tool=name)


# ---------------------------------------------------------------------------
# Bridge errors
# ---------------------------------------------------------------------------

class BridgeError(AffinityMCPError):
    code = BRIDGE_ERROR
    kind = "BridgeError"


class AppNotRunning(BridgeError):
    code = APP_NOT_RUNNING
    kind = "AppNotRunning"

    def __init__(self, app: str, message: str | None = None):
        super().__init__(message or f"{app} is not running.", app=app)


class InvalidPath(BridgeError):
    code = INVALID_PATH
    kind = "InvalidPath"

    def __init__(self, path: str, reason: str = "file does not exist"):
        super().__init__(f"Invalid path '{path}': {reason}", path=path)


class UnsupportedFormat(BridgeError):
    code = UNSUPPORTED_FORMAT
    kind = "UnsupportedFormat"

    def __init__(self, fmt: str, supported: tuple[str, ...]):
        super().__init__(
            f"Unsupported export format '{fmt}'. Supported: {', '.join(supported)}",
            format=fmt,
            supported=list(supported),
        )


class BridgeTimeout(BridgeError):
    code = BRIDGE_TIMEOUT
    kind = "Timeout"

    def __init__(self, operation: str, seconds: float):
        super().__init__(
            f"{operation} did not complete within {seconds:g}s",
            operation=operation,
            timeout_s=seconds,
        )


class AutomationFailure(BridgeError):
    code = AUTOMATION_FAILURE
    kind = "AutomationFailure"

    def __init__(self, detail: str, **extra: Any):
        super().__init__(f"Automation failed: {detail}", detail=detail, **extra)


# ---------------------------------------------------------------------------
# Remote API errors
# ---------------------------------------------------------------------------

class RemoteApiError(AffinityMCPError):
    code = REMOTE_API_ERROR
    kind = "RemoteApiError"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, status_code=status_code)
        self.status_code = status_code
