"""Tests for the management CLI and server wiring."""

import json

import pytest

import manage
import server
from bridge import UnavailableBridge


@pytest.fixture(autouse=True)
def offline(monkeypatch):
    monkeypatch.delenv("AFFINITY_MCP_API_KEY", raising=False)
    monkeypatch.delenv("CANVA_API_KEY", raising=False)
    monkeypatch.setattr(manage, "select_bridge", lambda: UnavailableBridge("testos"))


def test_no_command_prints_help(capsys):
    assert manage.main([]) == 1
    assert "Commands:" in capsys.readouterr().out


def test_tools_lists_every_tool(capsys):
    assert manage.main(["tools"]) == 0

    tools = json.loads(capsys.readouterr().out)
    assert len(tools) == 10
    export = next(tool for tool in tools if tool["name"] == "export")
    assert export["description"] == "Export the front Affinity document."
    assert "format" in export["inputSchema"]["properties"]


def test_call_prints_result(capsys):
    assert manage.main(["call", "create_design", "--args", '{"title": "Poster"}']) == 0

    result = json.loads(capsys.readouterr().out)
    assert result["design_id"].startswith("demo-")


def test_call_prints_typed_error(capsys):
    code = manage.main(["call", "export", "--args", '{"path": "/tmp/a.bmp", "format": "bmp"}'])

    assert code == 1
    assert json.loads(capsys.readouterr().out)["error"]["type"] == "UnsupportedFormat"


def test_call_reports_unavailable_bridge(capsys):
    assert manage.main(["call", "get_active_document"]) == 1

    error = json.loads(capsys.readouterr().out)["error"]
    assert error["type"] == "AutomationFailure"
    assert error["platform"] == "testos"


def test_call_rejects_bad_json(capsys):
    assert manage.main(["call", "open_file", "--args", "{nope"]) == 2
    assert "not valid JSON" in capsys.readouterr().err


def test_check_without_automation(capsys):
    assert manage.main(["check"]) == 1

    out = capsys.readouterr().out
    assert "UnavailableBridge" in out
    assert "AutomationFailure" in out


def test_build_engine(monkeypatch):
    monkeypatch.setattr(server, "select_bridge", lambda: UnavailableBridge("testos"))

    engine, design_client = server.build_engine("custom-name")

    assert engine.server_name == "custom-name"
    assert engine.server_version == server.__version__
    assert len(engine.registry) == 10
    assert engine.registry.sealed
    assert design_client.api_key is None
