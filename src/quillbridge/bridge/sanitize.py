"""Sanitization of raw process output before it reaches a document."""

from __future__ import annotations

import re
from typing import Mapping

__all__ = [
    "DEFAULT_CHARACTER_REMAP",
    "OutputSanitizer",
    "remap_characters",
    "sanitize_chunk",
    "strip_control_sequences",
]

_CONTROL_SEQUENCE_PATTERN = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"  # CSI: colors, cursor movement, erase
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)?"  # OSC, terminated by BEL or ST or cut short
    r"|\x1b[@-Z\\^_]"  # two-byte escapes other than OSC
    r"|\x1b"  # stray ESC
)
_PARTIAL_SEQUENCE_PATTERN = re.compile(r"\x1b(?:\[[0-?]*[ -/]*|\][^\x07\x1b]*\x1b?)?\Z")
_MAX_CARRY = 256

DEFAULT_CHARACTER_REMAP: Mapping[str, str] = {"\r": ""}


def strip_control_sequences(text: str) -> str:
    """Remove terminal control and color sequences from ``text``.

    Every ESC character is consumed, so the result never contains one and
    applying the function twice is a no-op.
    """

    if "\x1b" not in text:
        return text
    return _CONTROL_SEQUENCE_PATTERN.sub("", text)


def remap_characters(text: str, table: Mapping[str, str] | None = None) -> str:
    """Apply single-character substitutions; an empty replacement deletes."""

    mapping = DEFAULT_CHARACTER_REMAP if table is None else table
    if not mapping:
        return text
    return text.translate(str.maketrans(dict(mapping)))


def sanitize_chunk(text: str, table: Mapping[str, str] | None = None) -> str:
    return remap_characters(strip_control_sequences(text), table)


class OutputSanitizer:
    """Stateful sanitizer that holds back escape sequences split across chunks."""

    def __init__(self, table: Mapping[str, str] | None = None) -> None:
        self._table = DEFAULT_CHARACTER_REMAP if table is None else dict(table)
        self._carry = ""

    @property
    def pending(self) -> str:
        return self._carry

    def feed(self, text: str) -> str:
        data = f"{self._carry}{text}"
        self._carry = ""
        partial = _PARTIAL_SEQUENCE_PATTERN.search(data)
        if partial is not None and len(data) - partial.start() <= _MAX_CARRY:
            self._carry = data[partial.start() :]
            data = data[: partial.start()]
        return sanitize_chunk(data, self._table)

    def flush(self) -> str:
        remainder, self._carry = self._carry, ""
        return sanitize_chunk(remainder, self._table)
