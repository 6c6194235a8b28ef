"""Per-request bookkeeping for in-flight external processes."""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from ..chat.message_model import ChatMessage
from ..editor.document_model import DocumentBuffer, Marker
from .errors import InvalidTransitionError

__all__ = [
    "FINISHED_STATUS",
    "ChunkTransformer",
    "RequestInfo",
    "RequestRecord",
    "RequestState",
    "ResponseCallback",
    "describe_exit",
]

FINISHED_STATUS = "finished\n"
_SIGNAL_STATUS = {
    "SIGKILL": "killed",
    "SIGTERM": "terminated",
    "SIGINT": "interrupt",
    "SIGHUP": "hangup",
}


class RequestState(str, Enum):
    """Lifecycle of a request: launched, streaming, then completed or failed."""

    LAUNCHED = "launched"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RequestState.COMPLETED, RequestState.FAILED)


_TRANSITIONS: Mapping[RequestState, frozenset[RequestState]] = {
    RequestState.LAUNCHED: frozenset(
        {RequestState.STREAMING, RequestState.COMPLETED, RequestState.FAILED}
    ),
    RequestState.STREAMING: frozenset(
        {RequestState.STREAMING, RequestState.COMPLETED, RequestState.FAILED}
    ),
    RequestState.COMPLETED: frozenset(),
    RequestState.FAILED: frozenset(),
}


class ChunkTransformer(Protocol):
    """Markup transform applied to each sanitized chunk before insertion."""

    def __call__(self, text: str) -> str:
        ...

    def flush(self) -> str:
        ...


ResponseCallback = Callable[[str, "RequestRecord"], None]


@dataclass(slots=True)
class RequestInfo:
    """What to ask and where to put the answer."""

    prompt: Sequence[ChatMessage | Mapping[str, Any]]
    buffer: DocumentBuffer
    position: Marker
    in_place: bool = False

    @classmethod
    def from_value(cls, value: "RequestInfo | Mapping[str, Any]") -> "RequestInfo":
        if isinstance(value, RequestInfo):
            return value
        try:
            return cls(
                prompt=list(value["prompt"]),
                buffer=value["buffer"],
                position=value["position"],
                in_place=bool(value.get("in_place", False)),
            )
        except KeyError as exc:
            raise ValueError(f"Request info is missing {exc.args[0]!r}") from exc


@dataclass(slots=True, eq=False)
class RequestRecord:
    """Mutable state shared by the streaming, rendering and completion stages."""

    token: str
    callback: ResponseCallback
    buffer: DocumentBuffer
    position: Marker
    transformer: Optional[ChunkTransformer] = None
    tracking_marker: Optional[Marker] = None
    response_start: Optional[Marker] = None
    in_place: bool = False
    redirected: bool = False
    state: RequestState = RequestState.LAUNCHED
    temp_files: tuple[Path, ...] = ()
    completion: Optional["asyncio.Future[str]"] = field(default=None, repr=False)

    def advance(self, state: RequestState) -> None:
        """Move to ``state``; terminal states accept no further transition."""

        if state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Request {self.token[:8]} cannot move from {self.state.value} to {state.value}"
            )
        self.state = state

    @property
    def started(self) -> bool:
        return self.tracking_marker is not None


def describe_exit(returncode: int | None) -> str:
    """Translate a process return code into the status string handlers compare."""

    if returncode is None:
        return "running\n"
    if returncode == 0:
        return FINISHED_STATUS
    if returncode > 0:
        return f"exited abnormally with code {returncode}\n"
    signum = -returncode
    try:
        sig = signal.Signals(signum)
    except ValueError:
        return f"signal {signum}\n"
    label = _SIGNAL_STATUS.get(sig.name, sig.name.lower())
    return f"{label}\n"
