"""Command-line entry point: send a chat message and let the model draw on a board."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import StreamTransport, create_transport
from .ai.orchestration.controller import ChatSessionController
from .ai.orchestration.model_types import TurnResult
from .ai.orchestration.tool_executor import ToolExecutor
from .canvas.board_store import BoardStore, CachedBoardStore, DebouncedBoardWriter, JsonFileBoardStore, load_graph
from .events import BoardSaved, EventBus, ToolCallFinished
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure logging for the CLI."""

    level = logging.DEBUG if debug else logging.INFO
    log_path = logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s, file=%s)", logging.getLevelName(level), log_path)


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


@dataclass(slots=True)
class ChatSummary:
    """What one CLI chat run produced."""

    result: TurnResult
    tool_statuses: list[str] = field(default_factory=list)
    saves: int = 0


async def run_chat(
    settings: Settings,
    message: str,
    *,
    board_id: str | None = None,
    use_tools: bool | None = None,
    out: TextIO | None = None,
    transport: StreamTransport | None = None,
    store: BoardStore | None = None,
) -> ChatSummary:
    """Run one chat turn against ``board_id`` and persist whatever the tools created."""

    if use_tools is None:
        use_tools = settings.tools_enabled
    destination = out or sys.stdout
    bus: EventBus = EventBus()
    board = board_id or settings.default_board_id
    active_store = store or _build_store(settings)
    graph = await load_graph(active_store, board, event_bus=bus)
    writer = DebouncedBoardWriter(graph, active_store, delay=settings.save_debounce_seconds, event_bus=bus)
    executor = ToolExecutor(graph, writer=writer)

    owns_transport = transport is None
    active_transport = transport or create_transport(settings.to_client_settings(), settings.transport)
    controller = ChatSessionController(
        active_transport,
        tools=executor.tool_specs() if use_tools else None,
        model=settings.model,
        streaming=settings.streaming,
        event_bus=bus,
        frame_interval=settings.frame_interval,
        system_prompt=settings.system_prompt,
    )
    executor.bind_session(controller)

    summary_statuses: list[str] = []

    def on_tool_finished(event: ToolCallFinished) -> None:
        summary_statuses.append(event.result)

    def on_board_saved(event: BoardSaved) -> None:
        _LOGGER.info("Board %s saved (%d nodes, %d edges)", event.board_id, event.node_count, event.edge_count)

    bus.subscribe(ToolCallFinished, on_tool_finished)
    bus.subscribe(BoardSaved, on_board_saved)

    def on_chunk(text: str) -> None:
        destination.write(text)
        destination.flush()

    try:
        result = await controller.run(
            message,
            on_chunk=on_chunk,
            on_tool_call=executor.execute if use_tools else None,
            wait_for_tools=True,
        )
    finally:
        await controller.aclose()
        await writer.aclose()
        if owns_transport:
            await active_transport.aclose()

    destination.write("\n")
    for status in summary_statuses:
        destination.write(f"- {status}\n")
    destination.flush()
    return ChatSummary(result=result, tool_statuses=summary_statuses, saves=writer.saves)


def _build_store(settings: Settings) -> BoardStore:
    return CachedBoardStore(JsonFileBoardStore(settings.board_directory))


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `notecanvas` console script."""

    args = _parse_cli_args(argv)

    debug = bool(args.debug) or _env_flag("NOTECANVAS_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("NOTECANVAS_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)
    logging_utils.register_secret(settings.api_key)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if args.command != "chat":
        print("Nothing to do. Try `notecanvas chat \"...\"` or --dump-settings.", file=sys.stderr)
        return 2

    if args.no_stream:
        settings.streaming = False
    if args.board_dir:
        settings.board_directory = args.board_dir
    if args.no_tools:
        settings.tools_enabled = False

    try:
        summary = asyncio.run(
            run_chat(settings, args.message, board_id=args.board_id)
        )
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
        return 130

    if summary.result.error is not None:
        print(f"error: {summary.result.error}", file=sys.stderr)
        return 1
    return 0


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="notecanvas",
        description="Chat with a model that can add knowledge nodes to a canvas board.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.notecanvas/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")

    subcommands = parser.add_subparsers(dest="command")
    chat = subcommands.add_parser("chat", help="Send one message and stream the reply.")
    chat.add_argument("message", help="The user message.")
    chat.add_argument("--board-id", metavar="ID", help="Board to load and extend (defaults to settings).")
    chat.add_argument("--board-dir", metavar="PATH", help="Directory holding board JSON files.")
    chat.add_argument("--no-stream", action="store_true", help="Ask for the whole response in one reply.")
    chat.add_argument("--no-tools", action="store_true", help="Do not offer node tools to the model.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, fields[key].type), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if normalized.lower() in {"none", "null"} and _is_optional(annotation):
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is dict:
        try:
            value = json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
        if not isinstance(value, dict):
            raise ValueError("Dict overrides must be valid JSON objects")
        return value
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin is dict:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _is_optional(annotation: Any) -> bool:
    return type(None) in get_args(annotation)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(payload.get("api_key") or "")
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("NOTECANVAS_"))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
