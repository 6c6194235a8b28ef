"""Logging setup and request-scoped loggers."""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Any, MutableMapping

__all__ = ["RequestLogAdapter", "get_log_path", "request_logger", "setup_logging"]

_LOG_FILE = "quillbridge.log"
_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
_QUIET = ("asyncio", "markdown_it")
_active_path: Path | None = None


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Route the root logger to a rotating file and, optionally, stderr.

    Repeated calls are no-ops unless ``force`` is set. ``QUILLBRIDGE_LOG_DIR``
    overrides the default ``~/.quillbridge/logs`` directory.
    """

    global _active_path
    if _active_path is not None and not force:
        return _active_path

    directory = Path(
        log_dir or os.environ.get("QUILLBRIDGE_LOG_DIR") or Path.home() / ".quillbridge" / "logs"
    ).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / _LOG_FILE

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(_FORMAT)
    outputs: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        outputs.append(logging.StreamHandler(sys.stderr))
    for handler in outputs:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        root.addHandler(handler)
    root.setLevel(level)
    logging.captureWarnings(True)
    for name in _QUIET:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _active_path = path
    return path


def get_log_path() -> Path | None:
    return _active_path


class RequestLogAdapter(logging.LoggerAdapter):
    """Prefixes every record with the short id of the request it concerns."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = self.extra or {}
        return f"[{extra.get('request', '-')}] {msg}", kwargs


def request_logger(logger: logging.Logger, token: str) -> RequestLogAdapter:
    return RequestLogAdapter(logger, {"request": token[:8]})
