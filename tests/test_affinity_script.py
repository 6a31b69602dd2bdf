"""Tests for the AppleScript bridge with ``anyio.run_process`` patched out."""

import subprocess

import anyio
import pytest

import affinity_script
from affinity_script import (
    AppleScriptBridge,
    _quote,
    build_active_document_script,
    build_export_script,
    build_open_script,
    classify_failure,
    parse_active_document,
    run_applescript,
)
from errors import AppNotRunning, AutomationFailure, BridgeTimeout, InvalidPath, UnsupportedFormat


class FakeOsascript:
    """Stand-in for ``anyio.run_process`` answering scripts in order."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.scripts: list[str] = []

    async def __call__(self, command, *, input=None, check=True, **kwargs):
        assert command == ["osascript", "-"]
        self.scripts.append(input.decode("utf-8"))
        returncode, stdout, stderr = self.answers.pop(0)
        return subprocess.CompletedProcess(command, returncode, stdout.encode(), stderr.encode())


@pytest.fixture
def osascript(monkeypatch):
    def install(*answers):
        fake = FakeOsascript(*answers)
        monkeypatch.setattr(anyio, "run_process", fake)
        return fake

    return install


def test_quote_escapes_backslashes_and_quotes():
    assert _quote('a "b" \\c') == '"a \\"b\\" \\\\c"'


def test_open_script_targets_app_and_file():
    script = build_open_script("Affinity Photo", "/tmp/My Image.jpg")

    assert script.startswith('tell application "Affinity Photo"')
    assert 'open POSIX file "/tmp/My Image.jpg"' in script
    assert script.rstrip().endswith("end tell")


def test_export_script_requires_a_document():
    script = build_export_script("Affinity Designer", "/out/a.svg", "svg", 90)

    assert "count of documents" in script
    assert 'as "svg"' in script
    assert "quality:90" in script


def test_active_document_script_answers_a_posix_path():
    script = build_active_document_script("Affinity Photo")

    assert "set docPath to POSIX path of (path as text)" in script
    assert 'return docName & "|" & docPath' in script


@pytest.mark.parametrize(
    "stderr, expected",
    [
        ("execution error: Affinity Photo got an error: Application isn't running. (-600)", AppNotRunning),
        ("execution error: AppleEvent timed out. (-1712)", BridgeTimeout),
        ("execution error: File not found. (-43)", InvalidPath),
        ("execution error: Can't make filter. (-1708)", AutomationFailure),
        ("syntax error without a number", AutomationFailure),
    ],
)
def test_classify_failure(stderr, expected):
    error = classify_failure(stderr, "open", app="Affinity Photo", path="/x.jpg")

    assert isinstance(error, expected)


def test_classify_failure_keeps_error_number():
    error = classify_failure("execution error: nope (-1708)", "apply_filter")

    assert error.detail["error_number"] == -1708
    assert error.detail["operation"] == "apply_filter"


@pytest.mark.parametrize(
    "answer, expected",
    [
        ("||", {"is_open": False, "name": None, "path": None}),
        ("poster.afpub|/work/poster.afpub", {"is_open": True, "name": "poster.afpub", "path": "/work/poster.afpub"}),
        ("Untitled|missing value", {"is_open": True, "name": "Untitled", "path": None}),
        ("Untitled|", {"is_open": True, "name": "Untitled", "path": None}),
    ],
)
def test_parse_active_document(answer, expected):
    assert parse_active_document(answer).model_dump() == expected


@pytest.mark.asyncio
async def test_run_applescript_returns_stdout(osascript):
    fake = osascript((0, "hello\n", ""))

    assert await run_applescript('return "hello"', "test") == "hello"
    assert fake.scripts == ['return "hello"']


@pytest.mark.asyncio
async def test_run_applescript_times_out(monkeypatch):
    async def slow(command, **kwargs):
        await anyio.sleep(5)

    monkeypatch.setattr(anyio, "run_process", slow)

    with pytest.raises(BridgeTimeout) as exc:
        await run_applescript("delay 10", "export", timeout=0.05)
    assert exc.value.kind == "Timeout"


@pytest.mark.asyncio
async def test_run_applescript_missing_osascript(monkeypatch):
    async def missing(command, **kwargs):
        raise FileNotFoundError("osascript")

    monkeypatch.setattr(anyio, "run_process", missing)

    with pytest.raises(AutomationFailure):
        await run_applescript("return 1", "open")


@pytest.mark.asyncio
async def test_open_missing_file_never_runs_a_script(osascript, tmp_path):
    fake = osascript()
    bridge = AppleScriptBridge()

    with pytest.raises(InvalidPath):
        await bridge.open(str(tmp_path / "missing.jpg"))
    with pytest.raises(InvalidPath):
        await bridge.open(str(tmp_path))
    assert fake.scripts == []


@pytest.mark.asyncio
async def test_open_detects_app_from_extension(osascript, tmp_path):
    target = tmp_path / "logo.afdesign"
    target.write_bytes(b"")
    fake = osascript((0, "", ""))

    result = await AppleScriptBridge().open(str(target))

    assert result.app == "Affinity Designer"
    assert 'tell application "Affinity Designer"' in fake.scripts[0]
    assert str(target.resolve()) in fake.scripts[0]


@pytest.mark.asyncio
async def test_open_maps_launch_failure(osascript, tmp_path):
    target = tmp_path / "a.jpg"
    target.write_bytes(b"")
    osascript((1, "", "execution error: Application isn't running. (-600)"))

    with pytest.raises(AppNotRunning) as exc:
        await AppleScriptBridge().open(str(target))
    assert exc.value.detail["app"] == "Affinity Photo"


@pytest.mark.asyncio
async def test_export_does_not_launch_the_app(osascript, tmp_path):
    fake = osascript((0, "false", ""))

    with pytest.raises(AppNotRunning):
        await AppleScriptBridge().export(str(tmp_path / "out.png"), "png")
    assert len(fake.scripts) == 1
    assert "is running" in fake.scripts[0]


@pytest.mark.asyncio
async def test_export_checks_format_and_directory(osascript, tmp_path):
    fake = osascript()
    bridge = AppleScriptBridge()

    with pytest.raises(UnsupportedFormat):
        await bridge.export(str(tmp_path / "out.bmp"), "bmp")
    with pytest.raises(InvalidPath):
        await bridge.export(str(tmp_path / "nowhere" / "out.png"), "png")
    assert fake.scripts == []


@pytest.mark.asyncio
async def test_export_uses_default_quality(osascript, tmp_path):
    fake = osascript((0, "true", ""), (0, "", ""))

    result = await AppleScriptBridge().export(str(tmp_path / "out.jpg"), "JPG")

    assert result.exported is True
    assert 'as "jpg"' in fake.scripts[1]
    assert f"quality:{affinity_script.DEFAULT_QUALITY}" in fake.scripts[1]


@pytest.mark.asyncio
async def test_open_expands_home_directory(osascript, tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    (tmp_path / "shot.png").write_bytes(b"")
    fake = osascript((0, "", ""))

    result = await AppleScriptBridge().open("~/shot.png")

    assert result.path == "~/shot.png"
    assert f'POSIX file "{(tmp_path / "shot.png").resolve()}"' in fake.scripts[0]


@pytest.mark.asyncio
async def test_export_sends_resolved_target(osascript, tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    fake = osascript((0, "true", ""), (0, "", ""))

    await AppleScriptBridge().export("~/out.png", "png")

    assert f'POSIX file "{(tmp_path / "out.png").resolve()}"' in fake.scripts[1]


@pytest.mark.asyncio
async def test_get_active_and_close(osascript):
    osascript((0, "true", ""), (0, "||", ""), (0, "true", ""), (0, "false", ""))
    bridge = AppleScriptBridge(default_app="Designer")

    info = await bridge.get_active()
    closed = await bridge.close()

    assert info.is_open is False
    assert closed.closed is False


@pytest.mark.asyncio
async def test_create_uses_default_size(osascript):
    fake = osascript((0, "", ""))

    result = await AppleScriptBridge().create("Publisher")

    assert result.app == "Affinity Publisher"
    assert "width:1920, height:1080" in fake.scripts[0]


def test_unknown_default_app():
    with pytest.raises(ValueError):
        AppleScriptBridge(default_app="Illustrator")
