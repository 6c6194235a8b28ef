"""``QTextDocument``-backed buffer so responses can stream into a Qt editor."""

from __future__ import annotations

from typing import Any

from PySide6.QtGui import QTextCursor, QTextDocument

from .document_model import BufferReadOnlyError, HighlightListener, Marker, MarkerTable

__all__ = ["QtTextBuffer"]


class QtTextBuffer:
    """Adapter exposing a ``QTextDocument`` through the document buffer surface.

    Markers are tracked in Python rather than with ``QTextCursor`` instances so
    that the advance-on-insert rule is identical to :class:`TextBuffer`. All
    edits made by the pipeline go through :meth:`insert`.
    """

    def __init__(
        self,
        document: Any | None = None,
        *,
        name: str = "*qt*",
        mode: str = "text",
        read_only: bool = False,
    ) -> None:
        self.document = document if document is not None else QTextDocument()
        self.name = name
        self.mode = mode
        self.read_only = read_only
        self.point = len(self)
        self.highlights: list[tuple[int, int]] = []
        self._markers = MarkerTable(name)
        self._highlight_listeners: list[HighlightListener] = []

    def __len__(self) -> int:
        # characterCount() includes the trailing paragraph separator
        return max(0, self.document.characterCount() - 1)

    @property
    def text(self) -> str:
        return self.document.toPlainText()

    @property
    def markers(self) -> MarkerTable:
        return self._markers

    def insert(self, position: int, text: str) -> int:
        if position < 0 or position > len(self):
            raise ValueError(f"Position {position} outside buffer {self.name}")
        if self.read_only or self.is_read_only_at(position):
            raise BufferReadOnlyError(f"Buffer {self.name} is read-only at {position}")
        if not text:
            return position
        cursor = QTextCursor(self.document)
        cursor.setPosition(position)
        cursor.insertText(text)
        self._markers.shift(position, len(text))
        if self.point > position:
            self.point += len(text)
        return position + len(text)

    def create_marker(self, position: int, *, advance: bool = False) -> Marker:
        return self._markers.create(position, advance=advance)

    def delete_marker(self, marker: Marker) -> None:
        self._markers.discard(marker)

    def is_read_only_at(self, position: int) -> bool:
        del position
        return False

    def flash_region(self, start: int, end: int) -> None:
        self.highlights.append((start, end))
        for listener in list(self._highlight_listeners):
            listener(self.name, start, end)

    def add_highlight_listener(self, listener: HighlightListener) -> None:
        self._highlight_listeners.append(listener)
