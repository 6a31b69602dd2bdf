"""
Affinity Automation Bridge interface.

The server core talks to the creative application only through
``AutomationBridge``.  A concrete bridge drives one platform's automation
mechanism (AppleScript on macOS, see ``affinity_script``); the core never
branches on platform, it just calls ``select_bridge()`` once at start-up.

Contract for every operation:
  - suspends only the calling task until the application answers or the
    bridge's own timeout elapses
  - one attempt, no internal retries
  - returns a typed result model, or raises one of AppNotRunning,
    InvalidPath, UnsupportedFormat, BridgeTimeout, AutomationFailure

Concurrency caveat:
  The bridge holds no mutable state shared between calls, but the
  application behind it does (front document, open windows).  Only
  read-only and file-scoped operations on distinct paths (open/export) are
  assumed safe to run concurrently.  Two structural operations at once
  (e.g. two ``create`` calls) have not been verified against Affinity and
  are NOT serialized here; callers that need ordering must sequence them.
"""

import abc
import sys
from pathlib import Path

from pydantic import BaseModel, Field

from errors import AutomationFailure, UnsupportedFormat

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EXPORT_FORMATS = ("pdf", "png", "jpg", "tiff", "svg")

APP_NAMES = {
    "Photo": "Affinity Photo",
    "Designer": "Affinity Designer",
    "Publisher": "Affinity Publisher",
}

_EXTENSION_APPS = {
    ".afphoto": "Photo",
    ".afdesign": "Designer",
    ".afpub": "Publisher",
}


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class OpenFileResult(BaseModel):
    opened: bool = Field(description="Whether the file was opened")
    app: str = Field(description="Application that opened the file")
    path: str = Field(description="Path of the opened file")


class CreateNewResult(BaseModel):
    created: bool
    app: str


class ExportResult(BaseModel):
    exported: bool
    path: str


class ApplyFilterResult(BaseModel):
    applied: bool
    filter_name: str


class ActiveDocumentInfo(BaseModel):
    is_open: bool = Field(description="Whether a document is open in the application")
    name: str | None = None
    path: str | None = Field(default=None, description="File path; null for unsaved documents")


class CloseDocumentResult(BaseModel):
    closed: bool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def check_export_format(fmt: str) -> str:
    """Normalise an export format name or raise UnsupportedFormat."""
    normalized = fmt.strip().lower()
    if normalized not in EXPORT_FORMATS:
        raise UnsupportedFormat(fmt, EXPORT_FORMATS)
    return normalized


def detect_app(path: str) -> str:
    """Pick the Affinity app for a file from its extension (default: Photo)."""
    return _EXTENSION_APPS.get(Path(path).suffix.lower(), "Photo")


def resolve_app(app: str | None, path: str | None = None) -> str:
    """Return the full application name for an app hint and/or file path."""
    if app is None:
        app = detect_app(path) if path else "Photo"
    return APP_NAMES[app]


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class AutomationBridge(abc.ABC):
    """Abstract capability interface over one running Affinity installation."""

    platform: str = "generic"

    @abc.abstractmethod
    async def open(self, path: str, app: str | None = None) -> OpenFileResult:
        """Open ``path``; ``app`` is a hint (Photo/Designer/Publisher)."""

    @abc.abstractmethod
    async def create(self, app: str, width: int | None = None, height: int | None = None) -> CreateNewResult:
        """Create a new document in ``app``."""

    @abc.abstractmethod
    async def export(self, path: str, format: str, quality: int | None = None) -> ExportResult:
        """Export the front document to ``path`` in ``format``."""

    @abc.abstractmethod
    async def apply_filter(self, name: str, intensity: int | None = None) -> ApplyFilterResult:
        """Apply a named filter to the front document."""

    @abc.abstractmethod
    async def get_active(self) -> ActiveDocumentInfo:
        """Query the application's front document.  Never cached."""

    @abc.abstractmethod
    async def close(self) -> CloseDocumentResult:
        """Close the front document, if any."""


class UnavailableBridge(AutomationBridge):
    """Bridge for platforms with no automation mechanism.

    Every call fails with AutomationFailure so clients get a typed error
    instead of a fake ``opened=false`` result.
    """

    def __init__(self, platform: str):
        self.platform = platform

    def _fail(self, operation: str):
        raise AutomationFailure(
            f"{operation} is not available on platform '{self.platform}' "
            "(Affinity automation requires macOS)",
            platform=self.platform,
        )

    async def open(self, path, app=None):
        self._fail("open")

    async def create(self, app, width=None, height=None):
        self._fail("create")

    async def export(self, path, format, quality=None):
        self._fail("export")

    async def apply_filter(self, name, intensity=None):
        self._fail("apply_filter")

    async def get_active(self):
        self._fail("get_active")

    async def close(self):
        self._fail("close")


def select_bridge(platform: str | None = None) -> AutomationBridge:
    """Return the automation bridge for ``platform`` (default: this host)."""
    platform = platform or sys.platform
    if platform == "darwin":
        from affinity_script import AppleScriptBridge

        return AppleScriptBridge()
    return UnavailableBridge(platform)
