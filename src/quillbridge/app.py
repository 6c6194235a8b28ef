"""Command-line entry point: stream one answer into a document file."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence, TextIO

from .bridge.errors import ProcessLaunchError
from .bridge.pipeline import StreamingPipeline
from .bridge.records import FINISHED_STATUS, RequestInfo
from .chat.message_model import ChatMessage
from .editor.document_model import TextBuffer
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_YES = frozenset({"1", "true", "yes", "on"})
_NO = frozenset({"0", "false", "no", "off"})
_NULL = frozenset({"none", "null"})
_OPTIONAL_FIELDS = frozenset({"prompt_template_path", "temp_dir"})


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    log_path = logging_utils.setup_logging(level, console=debug, force=force)
    _LOGGER.debug("Logging to %s at %s", log_path, logging.getLevelName(level))


def load_settings(store: SettingsStore, overrides: Mapping[str, Any] | None = None) -> Settings:
    """Load ``store``; an unreadable store yields defaults with the overrides applied."""

    try:
        return store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Using default settings, %s could not be loaded: %s", store.path, exc)
        return Settings(**dict(overrides or {}))


def read_conversation(path: Path) -> list[ChatMessage]:
    """Read a JSON array (or ``{"messages": [...]}``) of role/content objects."""

    document = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(document, Mapping):
        document = document.get("messages", [])
    if not isinstance(document, list):
        raise ValueError(f"{path} does not hold a list of messages")
    return [ChatMessage.from_dict(item) for item in document]


async def run_request(
    settings: Settings,
    messages: Sequence[ChatMessage],
    buffer: TextBuffer,
    *,
    in_place: bool = False,
    pipeline: StreamingPipeline | None = None,
) -> str:
    """Stream one response to the end of ``buffer`` and return its final status."""

    bridge = pipeline or StreamingPipeline(settings)
    info = RequestInfo(
        prompt=list(messages),
        buffer=buffer,
        position=buffer.create_marker(len(buffer)),
        in_place=in_place,
    )
    try:
        record = await bridge.submit(info)
        assert record.completion is not None
        return await record.completion
    finally:
        await bridge.shutdown()


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    debug = os.environ.get("QUILLBRIDGE_DEBUG", "").strip().lower() in _YES
    configure_logging(debug)

    location = args.settings_path or os.environ.get("QUILLBRIDGE_SETTINGS_PATH")
    store = SettingsStore(Path(location).expanduser() if location else None)
    try:
        overrides = parse_overrides(args.overrides)
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2
    settings = load_settings(store, overrides or None)

    if args.dump_settings:
        dump_settings(settings, store, overrides=overrides)
        return 0
    if not args.conversation:
        print("A conversation file is required.", file=sys.stderr)
        return 2
    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    try:
        messages = read_conversation(Path(args.conversation))
    except (OSError, ValueError) as exc:
        print(f"Unable to read conversation: {exc}", file=sys.stderr)
        return 2

    target = Path(args.document).expanduser() if args.document else None
    buffer = _open_document(target, args.mode)
    try:
        status = asyncio.run(run_request(settings, messages, buffer, in_place=args.in_place))
    except ProcessLaunchError as exc:
        print(exc, file=sys.stderr)
        return 1
    except KeyboardInterrupt:  # pragma: no cover - interactive only
        _LOGGER.info("Interrupted")
        return 130

    if target is None:
        sys.stdout.write(buffer.text)
    else:
        target.write_text(buffer.text, encoding="utf-8")
    if status == FINISHED_STATUS:
        return 0
    print(f"{settings.executable}: {status.strip()}", file=sys.stderr)
    return 1


def _open_document(path: Path | None, mode: str | None) -> TextBuffer:
    if path is None:
        return TextBuffer("*quillbridge*", mode=mode or "text")
    text = path.read_text(encoding="utf-8") if path.exists() else ""
    return TextBuffer(path.name, text, mode=mode or _mode_for_path(path))


def _mode_for_path(path: Path | None) -> str:
    if path is not None and path.suffix.lower() == ".org":
        return "org"
    return "text"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quillbridge",
        description="Ask the configured conversational CLI and stream its answer into a document.",
    )
    parser.add_argument(
        "conversation",
        nargs="?",
        help="JSON file holding the conversation as a list of {role, content} objects.",
    )
    parser.add_argument(
        "--document",
        metavar="PATH",
        help="Document that receives the answer; printed to stdout when omitted.",
    )
    parser.add_argument("--mode", help="Document mode such as 'org' or 'quillbridge-chat'.")
    parser.add_argument(
        "--in-place",
        action="store_true",
        help="Insert the response without a leading paragraph break.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Settings file to use instead of ~/.quillbridge/settings.json.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override one setting for this run; may be repeated.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings as JSON with the API key masked, then exit.",
    )
    return parser


def parse_overrides(entries: Sequence[str]) -> Dict[str, Any]:
    """Turn ``KEY=VALUE`` strings into typed setting values."""

    defaults = Settings()
    known = {item.name for item in fields(Settings)}
    parsed: Dict[str, Any] = {}
    for entry in entries:
        name, sep, raw = entry.partition("=")
        name = name.strip()
        if not sep:
            raise ValueError(f"{entry!r} is not in KEY=VALUE form")
        if not name:
            raise ValueError(f"{entry!r} has no setting name")
        if name not in known:
            raise ValueError(f"Unknown setting {name!r}")
        parsed[name] = _convert(name, getattr(defaults, name), raw.strip())
    return parsed


def _convert(name: str, default: Any, raw: str) -> Any:
    """Parse ``raw`` into the type of the setting's default value."""

    if name in _OPTIONAL_FIELDS:
        return None if raw.lower() in _NULL else raw
    if isinstance(default, bool):
        return _flag(raw)
    if isinstance(default, int):
        return int(raw, 10)
    if isinstance(default, str):
        return raw
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{name} expects JSON: {exc.msg}") from exc
    if is_dataclass(default):
        if not isinstance(value, Mapping):
            raise ValueError(f"{name} expects a JSON object")
        return type(default)(**value)
    if not isinstance(value, type(default)):
        raise ValueError(f"{name} expects a JSON {type(default).__name__}")
    return value


def _flag(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _YES:
        return True
    if lowered in _NO:
        return False
    raise ValueError(f"{raw!r} is not a boolean")


def dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    out = stream or sys.stdout
    values = asdict(settings)
    values["api_key"] = redact_secret(settings.api_key)
    meta = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides),
        "environment_variables": sorted(key for key in os.environ if key.startswith("QUILLBRIDGE_")),
    }
    json.dump({"settings": values, "meta": meta}, out, indent=2)
    out.write("\n")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
