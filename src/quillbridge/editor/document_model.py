"""Document buffers and position markers used as streaming targets."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterator, Protocol, runtime_checkable

__all__ = [
    "BufferReadOnlyError",
    "DocumentBuffer",
    "HighlightListener",
    "Marker",
    "MarkerTable",
    "TextBuffer",
]


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


class BufferReadOnlyError(RuntimeError):
    """Raised when text is inserted into a read-only buffer or span."""


@dataclass(slots=True, eq=False)
class Marker:
    """A position inside a buffer that follows insertions.

    When text is inserted strictly before the marker it shifts right. When
    text is inserted exactly at the marker, ``advance`` decides: advancing
    markers move past the new text, the others stay in front of it.
    """

    position: int
    advance: bool = False
    buffer_name: str = ""


HighlightListener = Callable[[str, int, int], None]


class MarkerTable:
    """Bookkeeping for the live markers of one buffer."""

    def __init__(self, owner: str) -> None:
        self._owner = owner
        self._markers: list[Marker] = []

    def create(self, position: int, *, advance: bool = False) -> Marker:
        marker = Marker(position=position, advance=advance, buffer_name=self._owner)
        self._markers.append(marker)
        return marker

    def discard(self, marker: Marker) -> None:
        try:
            self._markers.remove(marker)
        except ValueError:
            pass

    def owns(self, marker: Marker) -> bool:
        return any(candidate is marker for candidate in self._markers)

    def shift(self, position: int, length: int) -> None:
        if length <= 0:
            return
        for marker in self._markers:
            if marker.position > position or (marker.position == position and marker.advance):
                marker.position += length

    def __iter__(self) -> Iterator[Marker]:
        return iter(list(self._markers))

    def __len__(self) -> int:
        return len(self._markers)


@runtime_checkable
class DocumentBuffer(Protocol):
    """Surface the streaming pipeline needs from a host document."""

    name: str
    mode: str
    read_only: bool
    point: int

    @property
    def text(self) -> str:
        ...

    def __len__(self) -> int:
        ...

    def insert(self, position: int, text: str) -> int:
        ...

    def create_marker(self, position: int, *, advance: bool = False) -> Marker:
        ...

    def delete_marker(self, marker: Marker) -> None:
        ...

    def is_read_only_at(self, position: int) -> bool:
        ...

    def flash_region(self, start: int, end: int) -> None:
        ...


class TextBuffer:
    """In-memory document buffer used headless and for scratch output."""

    def __init__(
        self,
        name: str = "*scratch*",
        text: str = "",
        *,
        mode: str = "text",
        read_only: bool = False,
    ) -> None:
        self.name = name
        self.mode = mode
        self.read_only = read_only
        self.point = len(text)
        self.read_only_spans: list[tuple[int, int]] = []
        self.highlights: list[tuple[int, int]] = []
        self.updated_at = _utcnow()
        self._text = text
        self._markers = MarkerTable(name)
        self._highlight_listeners: list[HighlightListener] = []

    def __len__(self) -> int:
        return len(self._text)

    def __repr__(self) -> str:
        return f"TextBuffer(name={self.name!r}, length={len(self._text)}, mode={self.mode!r})"

    @property
    def text(self) -> str:
        return self._text

    @property
    def markers(self) -> MarkerTable:
        return self._markers

    def content_hash(self) -> str:
        return hashlib.sha1(self._text.encode("utf-8")).hexdigest()

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------
    def insert(self, position: int, text: str) -> int:
        """Insert ``text`` at ``position`` and return the position after it."""

        self._check_position(position)
        if self.read_only or self.is_read_only_at(position):
            raise BufferReadOnlyError(f"Buffer {self.name} is read-only at {position}")
        if not text:
            return position
        length = len(text)
        self._text = f"{self._text[:position]}{text}{self._text[position:]}"
        self._markers.shift(position, length)
        self.read_only_spans = [
            _shift_span(span, position, length) for span in self.read_only_spans
        ]
        if self.point > position:
            self.point += length
        self.updated_at = _utcnow()
        return position + length

    def append(self, text: str) -> int:
        """Insert ``text`` at the end of the buffer, ignoring the read-only flag."""

        end = len(self._text)
        if not text:
            return end
        self._text = f"{self._text}{text}"
        self._markers.shift(end, len(text))
        self.updated_at = _utcnow()
        return end + len(text)

    def char_before(self, position: int) -> str:
        self._check_position(position)
        return self._text[position - 1] if position > 0 else ""

    # ------------------------------------------------------------------
    # Markers & properties
    # ------------------------------------------------------------------
    def create_marker(self, position: int, *, advance: bool = False) -> Marker:
        self._check_position(position)
        return self._markers.create(position, advance=advance)

    def delete_marker(self, marker: Marker) -> None:
        self._markers.discard(marker)

    def mark_read_only(self, start: int, end: int) -> None:
        """Protect ``[start, end)``; insertion is refused inside it and at its end."""

        self._check_position(start)
        self._check_position(end)
        self.read_only_spans.append((min(start, end), max(start, end)))

    def is_read_only_at(self, position: int) -> bool:
        return any(start < position <= end for start, end in self.read_only_spans)

    def flash_region(self, start: int, end: int) -> None:
        """Record a momentary highlight over ``[start, end)``."""

        self.highlights.append((start, end))
        for listener in list(self._highlight_listeners):
            listener(self.name, start, end)

    def add_highlight_listener(self, listener: HighlightListener) -> None:
        self._highlight_listeners.append(listener)

    def _check_position(self, position: int) -> None:
        if position < 0 or position > len(self._text):
            raise ValueError(
                f"Position {position} outside buffer {self.name} (length {len(self._text)})"
            )


def _shift_span(span: tuple[int, int], position: int, length: int) -> tuple[int, int]:
    start, end = span
    if start >= position:
        start += length
    if end >= position:
        end += length
    return (start, end)
