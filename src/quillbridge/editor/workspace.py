"""Registry of named buffers shared by the streaming pipeline."""

from __future__ import annotations

import logging
from typing import Dict, Iterator, Optional

from .document_model import TextBuffer

__all__ = ["BufferRegistry"]

LOGGER = logging.getLogger(__name__)


class BufferRegistry:
    """Owns scratch buffers (process output, fallback display, debug capture)."""

    def __init__(self) -> None:
        self._buffers: Dict[str, TextBuffer] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._buffers

    def __iter__(self) -> Iterator[TextBuffer]:
        return iter(list(self._buffers.values()))

    def __len__(self) -> int:
        return len(self._buffers)

    def get(self, name: str) -> Optional[TextBuffer]:
        return self._buffers.get(name)

    def get_or_create(self, name: str, *, mode: str = "text") -> TextBuffer:
        """Return the buffer called ``name``, creating it on first use."""

        buffer = self._buffers.get(name)
        if buffer is None:
            buffer = TextBuffer(name, mode=mode)
            self._buffers[name] = buffer
            LOGGER.debug("Created buffer %s", name)
        return buffer

    def create(self, name: str, *, mode: str = "text") -> TextBuffer:
        """Create a fresh buffer, suffixing ``<n>`` when ``name`` is taken."""

        candidate = name
        counter = 2
        while candidate in self._buffers:
            candidate = f"{name}<{counter}>"
            counter += 1
        buffer = TextBuffer(candidate, mode=mode)
        self._buffers[candidate] = buffer
        return buffer

    def kill(self, buffer: TextBuffer | str) -> bool:
        """Destroy ``buffer``; returns ``False`` when it was already gone."""

        name = buffer if isinstance(buffer, str) else buffer.name
        removed = self._buffers.pop(name, None)
        if removed is None:
            return False
        LOGGER.debug("Killed buffer %s", name)
        return True
