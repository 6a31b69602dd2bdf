"""
Affinity MCP Tools.

Provides 10 tools for driving Affinity apps and the Canva API:
  1. open_file            - Open a file in Affinity Photo/Designer/Publisher
  2. create_new           - Create a new document
  3. export               - Export the front document (pdf/png/jpg/tiff/svg)
  4. apply_filter         - Apply a named filter to the front document
  5. get_active_document  - Query the front document
  6. close_document       - Close the front document
  7. batch_open_files     - Open many files, 16 at a time
  8. batch_export         - Run many exports, 16 at a time
  9. create_design        - Create a Canva design
 10. draw_pikachu         - Generate a Pikachu SVG and open it in Affinity

Every tool is validated against its pydantic input model before it runs.
Bridge failures surface as typed errors; inside batch tools they are
captured per item instead.
"""

import tempfile
from pathlib import Path
from typing import Literal

import anyio
from pydantic import BaseModel, ConfigDict, Field

from batch import BATCH_CONCURRENCY, BatchResult, run_batch
from bridge import (
    EXPORT_FORMATS,
    ActiveDocumentInfo,
    ApplyFilterResult,
    AutomationBridge,
    CloseDocumentResult,
    CreateNewResult,
    ExportResult,
    OpenFileResult,
    check_export_format,
)
from canva import CanvaClient, CreateDesignResult
from errors import AutomationFailure, InvalidPath
from registry import ToolRegistry

AffinityApp = Literal["Photo", "Designer", "Publisher"]

INSTRUCTIONS = (
    "This server drives Affinity Photo, Designer and Publisher running on this Mac "
    "and can create designs through the Canva API.\n\n"
    "Document tools (export, apply_filter, get_active_document, close_document) act on "
    "the FRONT document of the running app; they never launch it. Call "
    "get_active_document first if you are unsure what is open.\n\n"
    "For more than one file use batch_open_files / batch_export: they run up to "
    f"{BATCH_CONCURRENCY} operations concurrently and report one ordered result per "
    "item, so a single bad path does not fail the whole batch.\n\n"
    f"Export formats: {', '.join(EXPORT_FORMATS)}. Errors are typed "
    "(AppNotRunning, InvalidPath, UnsupportedFormat, Timeout, AutomationFailure); "
    "check error.data.type rather than the message text."
)


# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------

class _Params(BaseModel):
    model_config = ConfigDict(extra="forbid")


class OpenFileParams(_Params):
    path: str = Field(min_length=1, description="Path of the file to open (absolute or relative)")
    app: AffinityApp | None = Field(default=None, description="Affinity app to use (detected from the extension when omitted)")


class CreateNewParams(_Params):
    app: AffinityApp = Field(description="Affinity app to create the document in")
    width: int | None = Field(default=None, gt=0, description="Width in pixels (default 1920)")
    height: int | None = Field(default=None, gt=0, description="Height in pixels (default 1080)")


class ExportParams(_Params):
    path: str = Field(min_length=1, description="Destination file path")
    # Plain string so that an unknown format reaches check_export_format
    # and fails as UnsupportedFormat rather than a schema error.
    format: str = Field(description="Export format", json_schema_extra={"enum": list(EXPORT_FORMATS)})
    quality: int | None = Field(default=None, ge=1, le=100, description="Quality 1-100 (image formats)")


class ApplyFilterParams(_Params):
    filter_name: str = Field(min_length=1, description="Filter name, e.g. blur, sharpen, desaturate")
    intensity: int | None = Field(default=None, ge=0, le=100, description="Intensity 0-100")


class BatchOpenFilesParams(_Params):
    paths: list[str] = Field(description="Files to open; processed 16 at a time")
    app: AffinityApp | None = None


class BatchExportParams(_Params):
    exports: list[ExportParams] = Field(description="Export specifications; processed 16 at a time")


class CreateDesignParams(_Params):
    title: str = Field(min_length=1)
    template_id: str | None = None
    width: int | None = Field(default=None, gt=0)
    height: int | None = Field(default=None, gt=0)


class DrawPikachuParams(_Params):
    output_path: str | None = Field(default=None, description="Where to write the SVG (default: temp dir)")
    width: int = Field(default=800, ge=100, le=8000)
    height: int = Field(default=800, ge=100, le=8000)


class DrawPikachuResult(BaseModel):
    created: bool
    file_path: str
    app: str


# ---------------------------------------------------------------------------
# Pikachu artwork
# ---------------------------------------------------------------------------

_YELLOW = "#FFD700"
_BLACK = "#000000"
_WHITE = "#FFFFFF"
_PINK = "#FF69B4"


def pikachu_svg(width: int, height: int) -> str:
    """Return an SVG drawing of Pikachu centred on a ``width`` x ``height`` canvas."""
    cx, cy = width / 2, height / 2
    s = min(width, height) / 800
    sw = f'stroke="{_BLACK}" stroke-width="{3 * s:.1f}"'

    def pt(dx: float, dy: float) -> str:
        return f"{cx + dx * s:.1f},{cy + dy * s:.1f}"

    def ellipse(dx, dy, rx, ry, fill, outline=True):
        extra = f" {sw}" if outline else ""
        return (
            f'<ellipse cx="{cx + dx * s:.1f}" cy="{cy + dy * s:.1f}" '
            f'rx="{rx * s:.1f}" ry="{ry * s:.1f}" fill="{fill}"{extra}/>'
        )

    def polygon(points, fill, outline=True):
        extra = f" {sw}" if outline else ""
        return f'<polygon points="{" ".join(pt(*p) for p in points)}" fill="{fill}"{extra}/>'

    shapes = [
        f'<rect width="{width}" height="{height}" fill="{_WHITE}"/>',
        # tail
        f'<path d="M {pt(-180, 100)} Q {pt(-220, 50)} {pt(-200, -20)} Q {pt(-180, -50)} {pt(-150, -30)}" '
        f'fill="{_YELLOW}" {sw}/>',
        # body and head
        ellipse(0, 50, 180, 200, _YELLOW),
        ellipse(0, -80, 150, 150, _YELLOW),
        # ears with black tips
        polygon([(-120, -180), (-60, -250), (-10, -200)], _YELLOW),
        polygon([(-95, -210), (-60, -250), (-25, -210)], _BLACK, outline=False),
        polygon([(120, -180), (60, -250), (10, -200)], _YELLOW),
        polygon([(95, -210), (60, -250), (25, -210)], _BLACK, outline=False),
        # eyes
        ellipse(-50, -50, 40, 40, _WHITE),
        ellipse(-40, -50, 25, 25, _BLACK, outline=False),
        ellipse(50, -50, 40, 40, _WHITE),
        ellipse(40, -50, 25, 25, _BLACK, outline=False),
        # nose and mouth
        polygon([(0, -10), (-8, 5), (8, 5)], _BLACK, outline=False),
        f'<path d="M {pt(-30, 20)} Q {pt(0, 50)} {pt(30, 20)}" fill="none" {sw}/>',
        # cheeks
        ellipse(-130, 30, 25, 25, _PINK, outline=False).replace("/>", ' opacity="0.8"/>'),
        ellipse(130, 30, 25, 25, _PINK, outline=False).replace("/>", ' opacity="0.8"/>'),
        # arms and feet
        ellipse(-180, 80, 35, 50, _YELLOW),
        ellipse(180, 80, 35, 50, _YELLOW),
        ellipse(-80, 220, 40, 60, _YELLOW),
        ellipse(80, 220, 40, 60, _YELLOW),
    ]
    body = "\n  ".join(shapes)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<svg width="{width}" height="{height}" xmlns="http://www.w3.org/2000/svg">\n'
        f"  {body}\n"
        "</svg>\n"
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def build_registry(bridge: AutomationBridge, design_client: CanvaClient) -> ToolRegistry:
    """Register every tool against ``bridge`` / ``design_client`` and seal."""
    registry = ToolRegistry()

    async def _export_one(spec: ExportParams) -> ExportResult:
        fmt = check_export_format(spec.format)
        return await bridge.export(spec.path, fmt, spec.quality)

    # -----------------------------------------------------------------------
    # Tool 1: open_file
    # -----------------------------------------------------------------------

    @registry.tool()
    async def open_file(params: OpenFileParams) -> OpenFileResult:
        """Open a file in an Affinity application.

        The app is detected from the extension (.afphoto, .afdesign, .afpub)
        when not given; anything else opens in Affinity Photo.
        """
        return await bridge.open(params.path, params.app)

    # -----------------------------------------------------------------------
    # Tool 2: create_new
    # -----------------------------------------------------------------------

    @registry.tool()
    async def create_new(params: CreateNewParams) -> CreateNewResult:
        """Create a new Affinity document (default 1920x1080)."""
        return await bridge.create(params.app, params.width, params.height)

    # -----------------------------------------------------------------------
    # Tool 3: export
    # -----------------------------------------------------------------------

    @registry.tool()
    async def export(params: ExportParams) -> ExportResult:
        """Export the front Affinity document.

        Args:
            path: Destination file path
            format: One of pdf, png, jpg, tiff, svg
            quality: 1-100 for image formats (default 90)
        """
        return await _export_one(params)

    # -----------------------------------------------------------------------
    # Tool 4: apply_filter
    # -----------------------------------------------------------------------

    @registry.tool()
    async def apply_filter(params: ApplyFilterParams) -> ApplyFilterResult:
        """Apply a filter (e.g. blur, sharpen) to the front document."""
        return await bridge.apply_filter(params.filter_name, params.intensity)

    # -----------------------------------------------------------------------
    # Tool 5: get_active_document
    # -----------------------------------------------------------------------

    @registry.tool()
    async def get_active_document() -> ActiveDocumentInfo:
        """Get name and path of the front document. Read-only."""
        return await bridge.get_active()

    # -----------------------------------------------------------------------
    # Tool 6: close_document
    # -----------------------------------------------------------------------

    @registry.tool()
    async def close_document() -> CloseDocumentResult:
        """Close the front document. Returns closed=false when nothing was open."""
        return await bridge.close()

    # -----------------------------------------------------------------------
    # Tool 7: batch_open_files
    # -----------------------------------------------------------------------

    @registry.tool()
    async def batch_open_files(params: BatchOpenFilesParams) -> BatchResult:
        """Open several files concurrently (16 at a time).

        Returns success/failure counts and one result per path, in the
        order the paths were given. A failing path does not affect others.
        """
        return await run_batch(params.paths, lambda path: bridge.open(path, params.app))

    # -----------------------------------------------------------------------
    # Tool 8: batch_export
    # -----------------------------------------------------------------------

    @registry.tool()
    async def batch_export(params: BatchExportParams) -> BatchResult:
        """Run several exports concurrently (16 at a time).

        Each export is checked on its own, so one unsupported format only
        fails that item.
        """
        return await run_batch(params.exports, _export_one)

    # -----------------------------------------------------------------------
    # Tool 9: create_design
    # -----------------------------------------------------------------------

    @registry.tool()
    async def create_design(params: CreateDesignParams) -> CreateDesignResult:
        """Create a Canva design and return its id and edit URL."""
        return await design_client.create_design(
            params.title,
            template_id=params.template_id,
            width=params.width,
            height=params.height,
        )

    # -----------------------------------------------------------------------
    # Tool 10: draw_pikachu
    # -----------------------------------------------------------------------

    @registry.tool()
    async def draw_pikachu(params: DrawPikachuParams) -> DrawPikachuResult:
        """Draw Pikachu as an SVG and open it in Affinity.

        Tries Affinity Photo first and falls back to Designer.
        """
        target = Path(params.output_path) if params.output_path else Path(tempfile.gettempdir()) / "pikachu.svg"
        try:
            await anyio.Path(target).write_text(pikachu_svg(params.width, params.height), encoding="utf-8")
        except OSError as e:
            raise InvalidPath(str(target), reason=f"cannot write SVG ({e.strerror or e})") from e
        try:
            opened = await bridge.open(str(target), "Photo")
        except AutomationFailure:
            opened = await bridge.open(str(target), "Designer")
        return DrawPikachuResult(created=True, file_path=str(target), app=opened.app)

    return registry.seal()
