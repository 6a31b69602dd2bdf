"""
MCP Protocol Engine.

Speaks newline-delimited JSON-RPC 2.0 over a pair of anyio streams and
dispatches tool calls to a sealed ToolRegistry.

Lifecycle:
    UNINITIALIZED --initialize--> INITIALIZING --response sent--> READY
    READY --request_shutdown() / end of input--> SHUTTING_DOWN --drained--> TERMINATED

Rules:
- Before READY every method except ``initialize`` and ``ping`` fails with
  NotReady and has no side effects.
- In SHUTTING_DOWN new requests fail with ShuttingDown; requests already
  admitted run to completion (no bridge call is ever cancelled).
- Every admitted request runs in its own task, so responses leave in
  completion order; each one carries its request's id.
- Notifications never get a response.
"""

import enum
import json
import logging
from typing import Any

import anyio
from anyio.abc import ObjectSendStream, TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    INTERNAL_ERROR,
    LATEST_PROTOCOL_VERSION,
    CallToolRequestParams,
    CallToolResult,
    ErrorData,
    Implementation,
    InitializeRequestParams,
    InitializeResult,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    ListToolsResult,
    ServerCapabilities,
    TextContent,
    ToolsCapability,
)
from pydantic import BaseModel, ValidationError

from errors import (
    AffinityMCPError,
    AlreadyInitialized,
    InvalidParams,
    MalformedMessage,
    MethodNotFound,
    NotReady,
    ShuttingDown,
)
from registry import ToolRegistry

log = logging.getLogger("affinity_mcp.protocol")

RequestId = str | int


class ServerState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


def _fmt(obj) -> str:
    """Format a tool result as readable JSON text."""
    return json.dumps(obj, indent=2, ensure_ascii=False)


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _recover_id(raw: dict) -> RequestId | None:
    """Return the message id for an error reply, or None if there is none.

    Ids that are present but neither a string nor an integer (``1.5``,
    ``true``, objects) are echoed back in their JSON text form.
    """
    value = raw.get("id")
    if value is None:
        return None
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return value
    return json.dumps(value)


class ProtocolEngine:
    """JSON-RPC session state machine for one client connection."""

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        server_name: str = "affinity-mcp",
        server_version: str = "0.1.0",
        instructions: str | None = None,
    ):
        self.registry = registry
        self.server_name = server_name
        self.server_version = server_version
        self.instructions = instructions
        self.state = ServerState.UNINITIALIZED
        self.protocol_version: str | None = None
        self._in_flight: set[RequestId] = set()
        self._idle: anyio.Event | None = None
        self._shutdown_requested: anyio.Event | None = None
        self._task_group: TaskGroup | None = None
        self._out: ObjectSendStream[str] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def request_shutdown(self, reason: str = "requested") -> None:
        """Stop accepting requests; admitted ones are left to finish.

        Must be called from the event loop running ``run``.
        """
        if self.state in (ServerState.SHUTTING_DOWN, ServerState.TERMINATED):
            return
        log.info("Shutting down (%s); %d request(s) in flight", reason, len(self._in_flight))
        self.state = ServerState.SHUTTING_DOWN
        if self._shutdown_requested is not None:
            self._shutdown_requested.set()

    async def run(self, read_stream: MemoryObjectReceiveStream[str], write_stream: ObjectSendStream[str]) -> None:
        """Serve one session until shutdown or end of input.

        ``read_stream`` yields one JSON message per item; one JSON line per
        response is sent to ``write_stream``, which is closed on return.
        Requests still buffered in ``read_stream`` when reading stops are
        answered with ShuttingDown.
        """
        self._out = write_stream
        self._shutdown_requested = anyio.Event()
        if self.state is ServerState.SHUTTING_DOWN:
            self._shutdown_requested.set()

        try:
            async with anyio.create_task_group() as tg:
                self._task_group = tg
                reader_scope = anyio.CancelScope()
                tg.start_soon(self._stop_reading_when_drained, reader_scope)
                with reader_scope:
                    async for line in read_stream:
                        # A reply being written is never cut short by the reader stopping
                        with anyio.CancelScope(shield=True):
                            await self._handle_line(line)
                self.request_shutdown("end of input")
            await self._reject_buffered(read_stream)
        finally:
            self._task_group = None
            self.state = ServerState.TERMINATED
            log.info("Session terminated")
            await write_stream.aclose()

    async def _stop_reading_when_drained(self, reader_scope: anyio.CancelScope) -> None:
        await self._shutdown_requested.wait()
        while self._in_flight:
            self._idle = anyio.Event()
            await self._idle.wait()
        log.debug("No requests in flight; closing input")
        reader_scope.cancel()

    async def _reject_buffered(self, read_stream: MemoryObjectReceiveStream[str]) -> None:
        """Answer messages that arrived but were never read.

        The engine is SHUTTING_DOWN here, so every request among them gets a
        ShuttingDown error and notifications are dropped as usual.
        """
        while True:
            try:
                line = read_stream.receive_nowait()
            except (anyio.WouldBlock, anyio.EndOfStream, anyio.ClosedResourceError):
                return
            await self._handle_line(line)

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    async def _handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        log.debug("<- %s", line)
        try:
            raw = json.loads(line)
        except json.JSONDecodeError as e:
            log.warning("Dropping unparseable message: %s", e)
            return
        if not isinstance(raw, dict):
            log.warning("Dropping non-object message of type %s", type(raw).__name__)
            return

        msg_id = _recover_id(raw)
        if "method" not in raw:
            if "result" in raw or "error" in raw:
                log.debug("Ignoring client response for id %r", raw.get("id"))
            elif msg_id is not None:
                await self._send_error(msg_id, MalformedMessage("Message has no method").to_error_data())
            else:
                log.warning("Dropping message without method or id")
            return

        if "id" not in raw:
            try:
                notification = JSONRPCNotification.model_validate(raw)
            except ValidationError:
                log.warning("Dropping malformed notification")
                return
            self._handle_notification(notification)
            return

        try:
            request = JSONRPCRequest.model_validate(raw)
        except ValidationError as e:
            if msg_id is None:
                log.warning("Dropping malformed request with null id")
                return
            detail = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '<message>'}: {err['msg']}" for err in e.errors()
            )
            await self._send_error(msg_id, MalformedMessage(f"Invalid request: {detail}").to_error_data())
            return

        await self._admit(request)

    def _handle_notification(self, notification: JSONRPCNotification) -> None:
        if notification.method == "notifications/initialized":
            log.debug("Client confirmed initialization")
        elif notification.method == "notifications/cancelled":
            # Admitted bridge calls always run to completion.
            log.info("Ignoring cancellation for %s", (notification.params or {}).get("requestId"))
        else:
            log.debug("Ignoring notification %s", notification.method)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def _admit(self, request: JSONRPCRequest) -> None:
        method = request.method
        if method == "ping":
            await self._send_result(request.id, {})
            return
        if self.state in (ServerState.SHUTTING_DOWN, ServerState.TERMINATED):
            await self._send_error(request.id, ShuttingDown(method).to_error_data())
            return
        if method == "initialize":
            await self._initialize(request)
            return
        if self.state is not ServerState.READY:
            await self._send_error(request.id, NotReady(method).to_error_data())
            return
        if request.id in self._in_flight:
            await self._send_error(
                request.id,
                MalformedMessage(f"Request id {request.id!r} is already in flight").to_error_data(),
            )
            return

        self._in_flight.add(request.id)
        self._task_group.start_soon(self._dispatch, request, name=f"request {request.id}")

    async def _initialize(self, request: JSONRPCRequest) -> None:
        if self.state is not ServerState.UNINITIALIZED:
            await self._send_error(request.id, AlreadyInitialized().to_error_data())
            return
        try:
            params = InitializeRequestParams.model_validate(request.params or {})
        except ValidationError as e:
            error = InvalidParams(f"Invalid initialize params: {e.error_count()} validation error(s)")
            await self._send_error(request.id, error.to_error_data())
            return

        self.state = ServerState.INITIALIZING
        requested = str(params.protocolVersion)
        version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else LATEST_PROTOCOL_VERSION
        result = InitializeResult(
            protocolVersion=version,
            capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
            serverInfo=Implementation(name=self.server_name, version=self.server_version),
            instructions=self.instructions,
        )
        await self._send_result(request.id, _dump(result))
        self.protocol_version = version
        if self.state is ServerState.INITIALIZING:
            self.state = ServerState.READY
        log.info(
            "Initialized by %s %s (protocol %s)",
            params.clientInfo.name,
            params.clientInfo.version,
            version,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, request: JSONRPCRequest) -> None:
        try:
            result = await self._call(request.method, request.params or {})
        except AffinityMCPError as e:
            log.info("%s (id %r) failed: %s", request.method, request.id, e.message)
            await self._send_error(request.id, e.to_error_data())
        except Exception as e:
            log.exception("%s (id %r) raised unexpectedly", request.method, request.id)
            message = str(e) or type(e).__name__
            await self._send_error(
                request.id,
                ErrorData(
                    code=INTERNAL_ERROR,
                    message=f"Internal error: {message}",
                    data={"type": "InternalError", "message": message},
                ),
            )
        else:
            await self._send_result(request.id, result)
        finally:
            self._in_flight.discard(request.id)
            if not self._in_flight and self._idle is not None:
                self._idle.set()

    async def _call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        if method == "tools/list":
            return _dump(ListToolsResult(tools=self.registry.list_tools()))

        if method == "tools/call":
            try:
                call = CallToolRequestParams.model_validate(params)
            except ValidationError as e:
                raise InvalidParams(f"Invalid tools/call params: {e.error_count()} validation error(s)") from None
            output = await self.registry.invoke(call.name, call.arguments)
            result = CallToolResult(
                content=[TextContent(type="text", text=_fmt(output))],
                structuredContent=output if isinstance(output, dict) else None,
            )
            return _dump(result)

        if method in self.registry:
            arguments = {k: v for k, v in params.items() if k != "_meta"}
            output = await self.registry.invoke(method, arguments)
            return output if isinstance(output, dict) else {"result": output}

        raise MethodNotFound(method)

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    async def _send_result(self, request_id: RequestId, result: dict[str, Any]) -> None:
        await self._write(JSONRPCResponse(jsonrpc="2.0", id=request_id, result=result))

    async def _send_error(self, request_id: RequestId, error: ErrorData) -> None:
        await self._write(JSONRPCError(jsonrpc="2.0", id=request_id, error=error))

    async def _write(self, message: JSONRPCResponse | JSONRPCError) -> None:
        line = JSONRPCMessage(message).model_dump_json(by_alias=True, exclude_none=True)
        log.debug("-> %s", line)
        try:
            await self._out.send(line)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            log.warning("Output closed; dropping response for id %r", message.id)
