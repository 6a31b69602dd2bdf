# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "mcp>=1.10.0",
#     "anyio>=4.4",
#     "pydantic>=2.7",
#     "httpx>=0.27",
# ]
# ///
"""
Affinity MCP Server.

Stdio entry point: reads JSON-RPC messages line by line from stdin and
writes responses to stdout.  Tools are defined in ``tools``; the session
state machine lives in ``protocol``.

Configuration (environment):
  MCP_NAME                   Server name reported on initialize (default: affinity-mcp)
  AFFINITY_MCP_LOG_LEVEL     Log level (falls back to LOG_LEVEL, default: WARNING)
  AFFINITY_MCP_TIMEOUT       Seconds per AppleScript call (default: 30)
  AFFINITY_MCP_DEFAULT_APP   App for document-scoped tools (default: Photo)
  AFFINITY_MCP_API_KEY       Canva API key (falls back to CANVA_API_KEY)
"""

import logging
import os
import signal
import sys
import threading
from pathlib import Path

# Add script directory to sys.path so sibling modules can be imported
sys.path.insert(0, str(Path(__file__).parent))

import anyio
from anyio.abc import ObjectReceiveStream, ObjectSendStream
from anyio.from_thread import BlockingPortal

from bridge import select_bridge
from canva import CanvaClient
from errors import DuplicateToolError
from protocol import ProtocolEngine
from tools import INSTRUCTIONS, build_registry

__version__ = "0.1.0"

SERVER_NAME = os.environ.get("MCP_NAME", "affinity-mcp")
LOG_LEVEL = os.environ.get("AFFINITY_MCP_LOG_LEVEL", os.environ.get("LOG_LEVEL", "WARNING")).upper()

log = logging.getLogger("affinity_mcp.server")


def configure_logging(level: str = LOG_LEVEL):
    """Send all logging to stderr; stdout carries the protocol."""
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# stdio transport
# ---------------------------------------------------------------------------

def _read_lines(fd: int):
    """Yield decoded lines read straight from ``fd``.

    ``sys.stdin``'s buffer is bypassed: a daemon thread blocked inside it
    holds its lock, and interpreter shutdown would abort on that lock after
    a signal-driven exit.
    """
    pending = b""
    while True:
        chunk = os.read(fd, 65536)
        if not chunk:
            break
        *lines, pending = (pending + chunk).split(b"\n")
        for line in lines:
            yield line.decode("utf-8", errors="replace")
    if pending:
        yield pending.decode("utf-8", errors="replace")


def _pump_stdin(portal: BlockingPortal, send_stream: ObjectSendStream[str]):
    """Feed stdin lines into the event loop from a daemon thread.

    Reading happens off the loop so that a shutdown signal is never stuck
    behind a blocking read.
    """
    try:
        for line in _read_lines(sys.stdin.fileno()):
            portal.call(send_stream.send, line)
        portal.call(send_stream.aclose)
    except (anyio.BrokenResourceError, anyio.ClosedResourceError):
        log.debug("Input stream closed by the engine")
    except RuntimeError:
        # Portal already stopped: the event loop has finished.
        log.debug("Event loop finished before stdin was exhausted")


async def _write_stdout(receive_stream: ObjectReceiveStream[str]):
    stdout = anyio.wrap_file(sys.stdout)
    async with receive_stream:
        async for line in receive_stream:
            await stdout.write(line + "\n")
            await stdout.flush()


async def _watch_signals(engine: ProtocolEngine, scope: anyio.CancelScope):
    with scope, anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            engine.request_shutdown(signal.Signals(signum).name)


async def serve(engine: ProtocolEngine):
    """Run ``engine`` over this process's stdin/stdout."""
    in_send, in_receive = anyio.create_memory_object_stream(64)
    out_send, out_receive = anyio.create_memory_object_stream(64)

    async with BlockingPortal() as portal, anyio.create_task_group() as tg:
        threading.Thread(
            target=_pump_stdin,
            args=(portal, in_send),
            name="stdin-reader",
            daemon=True,
        ).start()
        tg.start_soon(_write_stdout, out_receive)

        signal_scope = anyio.CancelScope()
        if sys.platform != "win32":
            tg.start_soon(_watch_signals, engine, signal_scope)

        async with in_receive:
            await engine.run(in_receive, out_send)
        signal_scope.cancel()


async def _serve_with_cleanup(engine: ProtocolEngine, design_client: CanvaClient):
    try:
        await serve(engine)
    finally:
        await design_client.aclose()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_engine(server_name: str = SERVER_NAME) -> tuple[ProtocolEngine, CanvaClient]:
    """Wire bridge, design client, registry and protocol engine together."""
    bridge = select_bridge()
    design_client = CanvaClient()
    registry = build_registry(bridge, design_client)
    log.info(
        "%s %s: %d tools, bridge=%s",
        server_name,
        __version__,
        len(registry),
        type(bridge).__name__,
    )
    engine = ProtocolEngine(
        registry,
        server_name=server_name,
        server_version=__version__,
        instructions=INSTRUCTIONS,
    )
    return engine, design_client


def main(server_name: str | None = None, log_level: str | None = None):
    """Run the MCP server via stdio transport."""
    configure_logging(log_level or LOG_LEVEL)
    try:
        engine, design_client = build_engine(server_name or SERVER_NAME)
    except DuplicateToolError as e:
        log.critical("Start-up aborted: %s", e.message)
        sys.exit(1)
    anyio.run(_serve_with_cleanup, engine, design_client)


if __name__ == "__main__":
    main()
