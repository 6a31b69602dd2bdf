"""Shared fixtures: an instrumented fake bridge and an in-memory engine harness."""

import json
from contextlib import asynccontextmanager

import anyio
import pytest

from bridge import (
    ActiveDocumentInfo,
    ApplyFilterResult,
    AutomationBridge,
    CloseDocumentResult,
    CreateNewResult,
    ExportResult,
    OpenFileResult,
    check_export_format,
    resolve_app,
)
from canva import CanvaClient
from errors import AppNotRunning, AutomationFailure, InvalidPath
from protocol import ProtocolEngine
from tools import build_registry

INIT_PARAMS = {
    "protocolVersion": "2024-11-05",
    "capabilities": {},
    "clientInfo": {"name": "pytest", "version": "1.0"},
}


class FakeBridge(AutomationBridge):
    """In-memory bridge that records calls and tracks concurrency.

    ``gates`` maps a path to an ``anyio.Event``; ``open`` on that path waits
    for the event.  Create events inside the running test.
    """

    platform = "fake"

    def __init__(self, existing=(), *, delay: float = 0.0, running: bool = True, document=None):
        self.existing = set(existing)
        self.delay = delay
        self.running = running
        self.document = document or ActiveDocumentInfo(is_open=False)
        self.gates: dict[str, anyio.Event] = {}
        self.failing_apps: set[str] = set()
        self.calls: list[tuple] = []
        self.active = 0
        self.peak = 0

    @asynccontextmanager
    async def _track(self, op: str, *args):
        self.calls.append((op, *args))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await anyio.sleep(self.delay)
            yield
        finally:
            self.active -= 1

    def _require_running(self):
        if not self.running:
            raise AppNotRunning("Affinity Photo")

    async def open(self, path, app=None):
        async with self._track("open", path, app):
            gate = self.gates.get(path)
            if gate is not None:
                await gate.wait()
            if app in self.failing_apps:
                raise AutomationFailure(f"{app} refused the file")
            if path not in self.existing:
                raise InvalidPath(path)
            return OpenFileResult(opened=True, app=resolve_app(app, path), path=path)

    async def create(self, app, width=None, height=None):
        async with self._track("create", app, width, height):
            return CreateNewResult(created=True, app=resolve_app(app))

    async def export(self, path, format, quality=None):
        async with self._track("export", path, format, quality):
            check_export_format(format)
            self._require_running()
            return ExportResult(exported=True, path=path)

    async def apply_filter(self, name, intensity=None):
        async with self._track("apply_filter", name, intensity):
            self._require_running()
            return ApplyFilterResult(applied=True, filter_name=name)

    async def get_active(self):
        async with self._track("get_active"):
            self._require_running()
            return self.document

    async def close(self):
        async with self._track("close"):
            self._require_running()
            closed = self.document.is_open
            self.document = ActiveDocumentInfo(is_open=False)
            return CloseDocumentResult(closed=closed)


class EngineClient:
    """Test-side end of an in-memory JSON-RPC session."""

    def __init__(self, engine: ProtocolEngine, send_stream, receive_stream):
        self.engine = engine
        self._send = send_stream
        self._receive = receive_stream

    async def send(self, message) -> None:
        await self._send.send(message if isinstance(message, str) else json.dumps(message))

    def queue(self, message: dict) -> None:
        """Buffer ``message`` without giving the engine a chance to read it."""
        self._send.send_nowait(json.dumps(message))

    async def request(self, request_id, method: str, params=None) -> None:
        message = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        await self.send(message)

    async def notify(self, method: str, params=None) -> None:
        message = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self.send(message)

    async def recv(self, timeout: float = 5.0) -> dict:
        with anyio.fail_after(timeout):
            return json.loads(await self._receive.receive())

    async def call(self, request_id, method: str, params=None) -> dict:
        await self.request(request_id, method, params)
        return await self.recv()

    async def initialize(self) -> dict:
        response = await self.call("init", "initialize", INIT_PARAMS)
        await self.notify("notifications/initialized")
        return response

    def close_input(self) -> None:
        self._send.close()

    async def remaining(self, timeout: float = 5.0) -> list[dict]:
        """Collect responses until the engine closes its output."""
        messages = []
        with anyio.fail_after(timeout):
            async for line in self._receive:
                messages.append(json.loads(line))
        return messages


@asynccontextmanager
async def running_engine(registry, **kwargs):
    """Run a ProtocolEngine on memory streams for the duration of the block."""
    in_send, in_receive = anyio.create_memory_object_stream(100)
    out_send, out_receive = anyio.create_memory_object_stream(100)
    engine = ProtocolEngine(registry, **kwargs)
    async with anyio.create_task_group() as tg:
        tg.start_soon(engine.run, in_receive, out_send)
        try:
            yield EngineClient(engine, in_send, out_receive)
        except BaseException:
            tg.cancel_scope.cancel()
            raise
        finally:
            in_send.close()


@pytest.fixture
def fake_bridge():
    return FakeBridge(existing={"/a.jpg", "/b.jpg"})


@pytest.fixture
def offline_canva():
    return CanvaClient(api_key="")


@pytest.fixture
def registry(fake_bridge, offline_canva):
    return build_registry(fake_bridge, offline_canva)
