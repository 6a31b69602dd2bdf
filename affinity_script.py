"""
Affinity AppleScript Automation Layer.

Drives Affinity Photo / Designer / Publisher on macOS via ``osascript``:
- One ``osascript`` process per operation, script passed on stdin
- Bounded wall-clock time per call (``AFFINITY_MCP_TIMEOUT``)
- AppleScript error numbers mapped to typed bridge errors
- Document-scoped operations never launch the application

Safety patterns:
- All interpolated values are escaped as AppleScript string literals
- Paths are resolved before any script runs (missing file -> InvalidPath)
- A timed-out ``osascript`` process is killed; the application itself is
  never touched, so a half-finished operation stays visible to the user
"""

import logging
import os
import re
import time

import anyio

from bridge import (
    APP_NAMES,
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
from errors import AppNotRunning, AutomationFailure, BridgeError, BridgeTimeout, InvalidPath

log = logging.getLogger("affinity_mcp.applescript")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

OSASCRIPT = "osascript"

DEFAULT_TIMEOUT = float(os.environ.get("AFFINITY_MCP_TIMEOUT", "30"))
DEFAULT_APP = os.environ.get("AFFINITY_MCP_DEFAULT_APP", "Photo")

DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1080
DEFAULT_QUALITY = 90

# AppleScript / Launch Services error numbers
ERR_APP_NOT_RUNNING = {-600, -609, -10810, -10814}
ERR_EVENT_TIMED_OUT = -1712
ERR_FILE_NOT_FOUND = -43

_ERROR_NUMBER_RE = re.compile(r"\((-?\d+)\)\s*$")

# Separator for get_active's "name|path" answer
_FIELD_SEP = "|"


# ---------------------------------------------------------------------------
# Script builders
# ---------------------------------------------------------------------------

def _quote(value: str) -> str:
    """Render ``value`` as an AppleScript string literal."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _tell(app_name: str, body: str) -> str:
    return f"tell application {_quote(app_name)}\n{body}\nend tell\n"


_REQUIRE_DOCUMENT = '    if (count of documents) is 0 then error "No document is open."'


def build_open_script(app_name: str, path: str) -> str:
    return _tell(app_name, f"    activate\n    open POSIX file {_quote(path)}")


def build_create_script(app_name: str, width: int, height: int) -> str:
    return _tell(
        app_name,
        "    activate\n"
        f"    make new document with properties {{width:{width}, height:{height}}}",
    )


def build_export_script(app_name: str, path: str, fmt: str, quality: int) -> str:
    return _tell(
        app_name,
        _REQUIRE_DOCUMENT + "\n"
        "    tell front document\n"
        f"        export in (POSIX file {_quote(path)}) as {_quote(fmt)} with options {{quality:{quality}}}\n"
        "    end tell",
    )


def build_filter_script(app_name: str, filter_name: str, intensity: int | None) -> str:
    # Filter support depends on the application's scripting dictionary;
    # an unknown command surfaces as AutomationFailure.
    options = f" with intensity {intensity}" if intensity is not None else ""
    return _tell(
        app_name,
        _REQUIRE_DOCUMENT + "\n"
        "    tell front document\n"
        f"        apply filter {_quote(filter_name)}{options}\n"
        "    end tell",
    )


def build_active_document_script(app_name: str) -> str:
    return _tell(
        app_name,
        f'    if (count of documents) is 0 then return "{_FIELD_SEP}{_FIELD_SEP}"\n'
        "    tell front document\n"
        "        set docName to name\n"
        '        set docPath to ""\n'
        "        try\n"
        "            set docPath to POSIX path of (path as text)\n"
        "        end try\n"
        f'        return docName & "{_FIELD_SEP}" & docPath\n'
        "    end tell",
    )


def build_close_script(app_name: str) -> str:
    return _tell(
        app_name,
        '    if (count of documents) is 0 then return "false"\n'
        "    close front document\n"
        '    return "true"',
    )


def build_is_running_script(app_name: str) -> str:
    return f"return application {_quote(app_name)} is running\n"


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

async def run_applescript(
    script: str,
    operation: str,
    timeout: float | None = None,
    app: str = "",
    path: str = "",
) -> str:
    """Run ``script`` through osascript and return its trimmed stdout.

    Raises BridgeTimeout when ``timeout`` elapses (the osascript process is
    killed), and a classified BridgeError when osascript exits non-zero.
    ``app`` and ``path`` only enrich the error that gets raised.
    """
    timeout = DEFAULT_TIMEOUT if timeout is None else timeout
    t0 = time.monotonic()
    try:
        with anyio.fail_after(timeout):
            result = await anyio.run_process(
                [OSASCRIPT, "-"],
                input=script.encode("utf-8"),
                check=False,
            )
    except TimeoutError:
        log.warning("%s: osascript exceeded %.1fs and was stopped", operation, timeout)
        raise BridgeTimeout(operation, timeout) from None
    except OSError as e:
        raise AutomationFailure(f"could not start {OSASCRIPT}: {e}", operation=operation) from e

    elapsed = time.monotonic() - t0
    log.debug("%s: osascript exited %s in %.2fs", operation, result.returncode, elapsed)

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        raise classify_failure(stderr, operation, app=app, path=path, timeout=timeout)
    return result.stdout.decode("utf-8", errors="replace").strip()


def classify_failure(
    stderr: str,
    operation: str,
    app: str = "",
    path: str = "",
    timeout: float = DEFAULT_TIMEOUT,
) -> BridgeError:
    """Map an osascript error message to a typed bridge error."""
    match = _ERROR_NUMBER_RE.search(stderr)
    number = int(match.group(1)) if match else None

    if number in ERR_APP_NOT_RUNNING:
        return AppNotRunning(app or "Affinity", message=stderr)
    if number == ERR_EVENT_TIMED_OUT:
        return BridgeTimeout(operation, timeout)
    if number == ERR_FILE_NOT_FOUND:
        return InvalidPath(path or "?", reason=stderr)
    return AutomationFailure(stderr or f"{operation} failed", operation=operation, error_number=number)


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------

class AppleScriptBridge(AutomationBridge):
    """AutomationBridge implementation for macOS."""

    platform = "darwin"

    def __init__(self, default_app: str = DEFAULT_APP, timeout: float = DEFAULT_TIMEOUT):
        if default_app not in APP_NAMES:
            raise ValueError(f"Unknown Affinity app '{default_app}'. Expected one of {sorted(APP_NAMES)}")
        self.default_app = default_app
        self.timeout = timeout

    async def _run(self, script: str, operation: str, app_name: str = "", path: str = "") -> str:
        return await run_applescript(script, operation, timeout=self.timeout, app=app_name, path=path)

    async def is_running(self, app_name: str) -> bool:
        answer = await run_applescript(build_is_running_script(app_name), "is_running", timeout=self.timeout)
        return answer == "true"

    async def _require_running(self) -> str:
        """Return the document app's name; AppNotRunning if it isn't up.

        Document-scoped operations use this instead of ``activate`` so that
        they never launch the application as a side effect.
        """
        app_name = APP_NAMES[self.default_app]
        if not await self.is_running(app_name):
            raise AppNotRunning(app_name)
        return app_name

    async def open(self, path: str, app: str | None = None) -> OpenFileResult:
        try:
            resolved = await anyio.Path(path).expanduser().resolve(strict=True)
        except (OSError, RuntimeError):
            raise InvalidPath(path) from None
        if not await resolved.is_file():
            raise InvalidPath(path, reason="not a file")

        app_name = resolve_app(app, path)
        log.debug("open: %s in %s", resolved, app_name)
        await self._run(build_open_script(app_name, str(resolved)), "open", app_name, path)
        return OpenFileResult(opened=True, app=app_name, path=path)

    async def create(self, app: str, width: int | None = None, height: int | None = None) -> CreateNewResult:
        app_name = resolve_app(app)
        script = build_create_script(app_name, width or DEFAULT_WIDTH, height or DEFAULT_HEIGHT)
        await self._run(script, "create", app_name)
        return CreateNewResult(created=True, app=app_name)

    async def export(self, path: str, format: str, quality: int | None = None) -> ExportResult:
        fmt = check_export_format(format)
        target = anyio.Path(path).expanduser()
        if not await target.parent.is_dir():
            raise InvalidPath(path, reason="parent directory does not exist")

        app_name = await self._require_running()
        resolved = await target.resolve()
        script = build_export_script(app_name, str(resolved), fmt, quality or DEFAULT_QUALITY)
        await self._run(script, "export", app_name, path)
        return ExportResult(exported=True, path=path)

    async def apply_filter(self, name: str, intensity: int | None = None) -> ApplyFilterResult:
        app_name = await self._require_running()
        await self._run(build_filter_script(app_name, name, intensity), "apply_filter", app_name)
        return ApplyFilterResult(applied=True, filter_name=name)

    async def get_active(self) -> ActiveDocumentInfo:
        app_name = await self._require_running()
        answer = await self._run(build_active_document_script(app_name), "get_active", app_name)
        return parse_active_document(answer)

    async def close(self) -> CloseDocumentResult:
        app_name = await self._require_running()
        answer = await self._run(build_close_script(app_name), "close", app_name)
        return CloseDocumentResult(closed=answer == "true")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def parse_active_document(answer: str) -> ActiveDocumentInfo:
    """Parse the ``name|path`` answer of the active-document script."""
    name, _, path = answer.partition(_FIELD_SEP)
    if not name and not path.strip(_FIELD_SEP):
        return ActiveDocumentInfo(is_open=False)
    path = path.strip()
    if path in ("", "missing value"):
        path = None
    return ActiveDocumentInfo(is_open=True, name=name or None, path=path)
