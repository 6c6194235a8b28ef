"""Default response callback: stream sanitized text into the target buffer."""

from __future__ import annotations

import logging

from ..services.settings import ResponseMarkup
from ..utils.logging import request_logger
from ..widgets.status_bar import AIState, StatusBar
from .records import RequestRecord

__all__ = ["ResponseRenderer"]

LOGGER = logging.getLogger(__name__)


class ResponseRenderer:
    """Inserts each chunk at the record's tracking marker.

    The first chunk opens the response: it inserts a paragraph break (unless
    the request starts at the top of the document or edits in place) and the
    opening delimiter, then drops two markers right after it.
    ``response_start`` stays put and bounds the highlighted region later;
    ``tracking_marker`` advances over every insertion made at it, so each new
    chunk lands after the previous ones.
    """

    def __init__(self, status_bar: StatusBar, markup: ResponseMarkup | None = None) -> None:
        self._status_bar = status_bar
        self._markup = markup or ResponseMarkup()

    @property
    def markup(self) -> ResponseMarkup:
        return self._markup

    def __call__(self, text: str, record: RequestRecord) -> None:
        if record.tracking_marker is None:
            self.begin(record)
        if record.transformer is not None:
            text = record.transformer(text)
        self._insert(record, text)

    def begin(self, record: RequestRecord) -> None:
        buffer = record.buffer
        self._status_bar.set_ai_state(AIState.WORKING, document=buffer.name, request=record.token)
        point = record.position.position
        if point > 0 and not record.in_place:
            point = buffer.insert(point, self._markup.paragraph_break)
        point = buffer.insert(point, self._markup.opening_delimiter)
        record.response_start = buffer.create_marker(point)
        record.tracking_marker = buffer.create_marker(point, advance=True)
        buffer.point = point
        request_logger(LOGGER, record.token).debug("opened response in %s at %d", buffer.name, point)

    def flush(self, record: RequestRecord) -> None:
        """Insert whatever the transformer still holds back."""

        if record.transformer is None or record.tracking_marker is None:
            return
        self._insert(record, record.transformer.flush())

    def finish(self, record: RequestRecord, *, conversation: bool) -> None:
        """Close a successful response and prepare the next turn."""

        if record.tracking_marker is None:
            self.begin(record)
        self.flush(record)
        assert record.tracking_marker is not None and record.response_start is not None
        buffer = record.buffer
        buffer.flash_region(record.response_start.position, record.tracking_marker.position)
        self._insert(record, self._markup.closing_delimiter)
        if conversation:
            self._insert(record, f"{self._markup.paragraph_break}{self._markup.prompt_marker}")
        else:
            self._insert(record, "\n")
        self.release(record)

    def abort(self, record: RequestRecord) -> None:
        """Keep what was streamed so far; no closing delimiter."""

        self.flush(record)
        self.release(record)

    def release(self, record: RequestRecord) -> None:
        for marker in (record.response_start, record.tracking_marker):
            if marker is not None:
                record.buffer.delete_marker(marker)

    def _insert(self, record: RequestRecord, text: str) -> None:
        if not text:
            return
        marker = record.tracking_marker
        assert marker is not None
        record.buffer.insert(marker.position, text)
        record.buffer.point = marker.position
