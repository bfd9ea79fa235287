"""Tests for the command-line entry point."""

from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from notecanvas import app
from notecanvas.ai.errors import TransportError
from notecanvas.canvas.board_store import CachedBoardStore, InMemoryBoardStore, JsonFileBoardStore
from notecanvas.services.settings import Settings, SettingsStore

from tests.helpers import ScriptedTransport, sse, tool_call_frame


def _node_turn(title: str = "Photosynthesis") -> list[str]:
    return [
        tool_call_frame("call_1", "create_knowledge_node", {"title": title, "description": "Light to sugar"}),
        sse({"type": "chunk", "content": "Added a node."}),
        sse({"type": "complete", "response": "Added a node."}),
    ]


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app, "configure_logging", lambda debug=False, force=False: None)


# ---------------------------------------------------------------------------
# run_chat
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_chat_streams_text_and_persists_created_nodes() -> None:
    store = InMemoryBoardStore()
    transport = ScriptedTransport(_node_turn())
    out = io.StringIO()
    settings = Settings(frame_interval=0, save_debounce_seconds=0.5)

    summary = await app.run_chat(
        settings, "Explain photosynthesis", board_id="bio", out=out, transport=transport, store=store
    )

    assert summary.result.ok
    assert summary.tool_statuses == ['Created knowledge node: "Photosynthesis"']
    assert summary.saves == 1
    assert out.getvalue() == 'Added a node.\n- Created knowledge node: "Photosynthesis"\n'
    (node,) = await store.load_nodes("bio")
    assert node.data["title"] == "Photosynthesis"
    assert transport.requests[0].tools
    assert transport.closed is False


@pytest.mark.asyncio
async def test_run_chat_without_tools_sends_no_tool_specs() -> None:
    store = InMemoryBoardStore()
    transport = ScriptedTransport([sse({"type": "complete", "response": "Plain answer"})])
    out = io.StringIO()

    summary = await app.run_chat(
        Settings(frame_interval=0), "hi", use_tools=False, out=out, transport=transport, store=store
    )

    assert summary.result.text == "Plain answer"
    assert transport.requests[0].tools is None
    assert summary.saves == 0
    assert out.getvalue() == "Plain answer\n"


@pytest.mark.asyncio
async def test_run_chat_follows_the_tools_enabled_setting() -> None:
    transport = ScriptedTransport(
        [tool_call_frame("call_1", "create_flowchart", {"title": "Ignored", "description": "x"})]
        + [sse({"type": "complete", "response": "Text only"})]
    )
    store = InMemoryBoardStore()

    summary = await app.run_chat(
        Settings(tools_enabled=False, frame_interval=0), "hi", out=io.StringIO(), transport=transport, store=store
    )

    assert transport.requests[0].tools is None
    assert summary.tool_statuses == []
    assert await store.load_nodes("default") == []


def test_default_board_store_is_cached(tmp_path: Path) -> None:
    store = app._build_store(Settings(board_directory=str(tmp_path)))

    assert isinstance(store, CachedBoardStore)


@pytest.mark.asyncio
async def test_run_chat_reports_transport_failure() -> None:
    transport = ScriptedTransport(TransportError("unreachable"))

    summary = await app.run_chat(
        Settings(frame_interval=0), "hi", out=io.StringIO(), transport=transport, store=InMemoryBoardStore()
    )

    assert not summary.result.ok
    assert isinstance(summary.result.error, TransportError)


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


def test_cli_overrides_are_coerced_to_field_types() -> None:
    overrides = app._coerce_cli_overrides(
        [
            "streaming=off",
            "max_retries=5",
            "request_timeout=2.5",
            "endpoint=none",
            "model = gpt-x ",
            'default_headers={"X-Board": "1"}',
        ]
    )

    assert overrides == {
        "streaming": False,
        "max_retries": 5,
        "request_timeout": 2.5,
        "endpoint": None,
        "model": "gpt-x",
        "default_headers": {"X-Board": "1"},
    }


@pytest.mark.parametrize(
    "entry",
    ["no-equals-sign", "=value", "unknown_field=1", "streaming=maybe", "default_headers=[1]", "max_retries=two"],
)
def test_bad_cli_overrides_are_rejected(entry: str) -> None:
    with pytest.raises(ValueError):
        app._coerce_cli_overrides([entry])


def test_dump_settings_redacts_the_api_key(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json")
    stream = io.StringIO()

    app._dump_settings(Settings(api_key="sk-abcdef123"), store, overrides={"model": "m"}, stream=stream)

    payload = json.loads(stream.getvalue())
    assert payload["settings"]["api_key"] == "sk********23"
    assert payload["meta"]["cli_overrides"] == ["model"]
    assert payload["meta"]["secret_backend"] == "fernet"
    assert payload["meta"]["path"] == str(tmp_path / "settings.json")


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------


def test_main_dump_settings(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("NOTECANVAS_API_KEY", "sk-from-env-0001")
    path = tmp_path / "settings.json"

    code = app.main(["--settings-path", str(path), "--set", "model=gpt-cli", "--dump-settings"])

    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["settings"]["model"] == "gpt-cli"
    assert payload["settings"]["api_key"] == "sk************01"
    assert "NOTECANVAS_API_KEY" in payload["meta"]["environment_variables"]


def test_main_rejects_bad_override(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = app.main(["--settings-path", str(tmp_path / "s.json"), "--set", "bogus", "--dump-settings"])

    assert code == 2
    assert "Invalid --set override" in capsys.readouterr().err


def test_main_without_command_exits_with_usage_error(tmp_path: Path) -> None:
    assert app.main(["--settings-path", str(tmp_path / "s.json")]) == 2


def test_main_chat_writes_the_board_file(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    transport = ScriptedTransport(_node_turn("Mitochondria"))
    kinds: list[str] = []

    def fake_create_transport(client_settings, kind):
        kinds.append(kind)
        return transport

    monkeypatch.setattr(app, "create_transport", fake_create_transport)
    boards = tmp_path / "boards"

    code = app.main(
        [
            "--settings-path",
            str(tmp_path / "settings.json"),
            "--set",
            "frame_interval=0",
            "chat",
            "Tell me about cells",
            "--board-dir",
            str(boards),
            "--board-id",
            "cells",
        ]
    )

    assert code == 0
    assert kinds == ["http"]
    assert transport.closed is True
    assert 'Created knowledge node: "Mitochondria"' in capsys.readouterr().out
    document = json.loads(JsonFileBoardStore(boards).path_for("cells").read_text(encoding="utf-8"))
    assert [node["data"]["title"] for node in document["nodes"]] == ["Mitochondria"]


def test_main_chat_failure_exits_with_one(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    transport = ScriptedTransport([sse({"type": "error", "message": "model unavailable"})])
    monkeypatch.setattr(app, "create_transport", lambda client_settings, kind: transport)

    code = app.main(
        [
            "--settings-path",
            str(tmp_path / "settings.json"),
            "chat",
            "hello",
            "--board-dir",
            str(tmp_path / "boards"),
        ]
    )

    assert code == 1
    assert "model unavailable" in capsys.readouterr().err
