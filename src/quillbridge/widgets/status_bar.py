"""Status indicator for streaming requests, with optional Qt widgets."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

try:  # pragma: no cover - Qt widgets need a display-capable PySide6 build
    from PySide6.QtWidgets import QApplication, QLabel, QStatusBar
except ImportError:  # pragma: no cover - headless installs
    QApplication = None  # type: ignore[assignment]
    QLabel = None  # type: ignore[assignment]
    QStatusBar = None  # type: ignore[assignment]

__all__ = ["AIState", "StatusBar"]

LOGGER = logging.getLogger(__name__)


class AIState(str, Enum):
    """States surfaced while a response streams into a document."""

    READY = "Ready"
    WORKING = "Working"
    ERROR = "Error"


class StatusBar:
    """Notices and request state, mirrored into a ``QStatusBar`` when Qt runs.

    The Qt side is only created when a ``QApplication`` already exists, so
    the command line and the tests use the same object without a display.

    States reported with a ``request`` id are tracked per document: the
    indicator stays ``Working`` while any request is still streaming, and
    :meth:`state_for` answers for a single document.
    """

    def __init__(self, parent: Any | None = None) -> None:
        self._notice = ""
        self._notice_timeout: Optional[int] = None
        self._history: list[str] = []
        self._state = AIState.READY
        self._detail = ""
        self._working: dict[str, str] = {}
        self._documents: dict[str, tuple[AIState, str]] = {}
        self._bar: Any = None
        self._state_label: Any = None
        if QApplication is not None and isinstance(QApplication.instance(), QApplication):
            self._attach_qt(parent)

    def set_message(self, message: str, *, timeout_ms: Optional[int] = None) -> None:
        """Show a transient notice; ``timeout_ms`` of ``None`` keeps it until replaced."""

        self._notice = message
        self._notice_timeout = timeout_ms
        self._history.append(message)
        LOGGER.info("%s", message)
        if self._bar is not None:
            self._bar.showMessage(message, timeout_ms or 0)

    def clear_message(self) -> None:
        self._notice = ""
        self._notice_timeout = None
        if self._bar is not None:
            self._bar.clearMessage()

    def set_ai_state(
        self,
        state: AIState | str,
        *,
        detail: str | None = None,
        document: str | None = None,
        request: str | None = None,
    ) -> None:
        state = AIState(state)
        detail = detail or ""
        if request is not None:
            if state is AIState.WORKING:
                # a redirected request moves to its new document
                self._working[request] = document or ""
            else:
                self._working.pop(request, None)
        if document is not None and state is not AIState.WORKING:
            self._documents[document] = (state, detail)
        if request is None or state is not AIState.WORKING:
            self._state = state
            self._detail = detail
        if self._state_label is not None:
            self._state_label.setText(self.ai_text)
            self._state_label.setToolTip(self.ai_detail)

    def state_for(self, document: str) -> AIState:
        if document in self._working.values():
            return AIState.WORKING
        return self._documents.get(document, (AIState.READY, ""))[0]

    def detail_for(self, document: str) -> str:
        if document in self._working.values():
            return ""
        return self._documents.get(document, (AIState.READY, ""))[1]

    def widget(self) -> Any | None:
        return self._bar

    @property
    def message(self) -> str:
        return self._notice

    @property
    def message_timeout(self) -> Optional[int]:
        return self._notice_timeout

    @property
    def messages(self) -> tuple[str, ...]:
        return tuple(self._history)

    @property
    def ai_state(self) -> AIState:
        return AIState.WORKING if self._working else self._state

    @property
    def ai_detail(self) -> str:
        return "" if self._working else self._detail

    @property
    def active_documents(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(self._working.values()))

    @property
    def ai_text(self) -> str:
        """Label text, e.g. ``AI: Error (killed)``."""

        state, detail = self.ai_state, self.ai_detail.strip()
        if state is AIState.ERROR and detail:
            return f"AI: {state.value} ({detail})"
        return f"AI: {state.value}"

    def _attach_qt(self, parent: Any | None) -> None:
        bar = QStatusBar(parent)
        bar.setObjectName("qb-status-bar")
        bar.messageChanged.connect(self._on_bar_message)
        label = QLabel(self.ai_text)
        label.setObjectName("qb-status-ai")
        label.setContentsMargins(8, 0, 8, 0)
        bar.addPermanentWidget(label)
        self._bar = bar
        self._state_label = label

    def _on_bar_message(self, text: str) -> None:
        # Qt clears timed-out messages itself
        self._notice = text
        if not text:
            self._notice_timeout = None
