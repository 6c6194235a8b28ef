"""Serialize a conversation into the external CLI's on-disk input format.

The CLI reads three things: an optional context file holding prior
question/answer pairs (``-c``), a file with the question to answer now
(``-f``) and a prompt template (``-p``). The context file starts with a fixed
JSON header followed by one compact JSON object per line::

    {"context_format":"1.0","session_id":"..."}
    {"question":"Be terse","answer":"OK"}
    {"question":"Hi","answer":"Hello"}
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from ..chat.message_model import ChatMessage, coerce_message

__all__ = [
    "CONTEXT_FORMAT_KEY",
    "CONTEXT_FORMAT_VERSION",
    "DEFAULT_PROMPT_TEMPLATE",
    "SESSION_ID",
    "SYSTEM_ACKNOWLEDGEMENT",
    "PromptArguments",
    "PromptBundle",
    "build_arguments",
    "context_header",
    "parse_messages",
    "serialize_pair",
]

LOGGER = logging.getLogger(__name__)

CONTEXT_FORMAT_KEY = "context_format"
CONTEXT_FORMAT_VERSION = "1.0"
SESSION_ID = "5b0c7a3e-8d1f-4e62-9a57-2f4c1d6e8b90"
SYSTEM_ACKNOWLEDGEMENT = "OK"
DEFAULT_PROMPT_TEMPLATE = Path(__file__).with_name("prompt_template.txt")


@dataclass(slots=True, frozen=True)
class PromptBundle:
    """Prior turns serialized as ``context`` plus the question still ``pending``."""

    context: str
    pending: Optional[str]

    @property
    def has_context(self) -> bool:
        return bool(self.context)

    @property
    def pair_count(self) -> int:
        return self.context.count("\n")


@dataclass(slots=True, frozen=True)
class PromptArguments:
    """CLI arguments plus the temp files written to back them."""

    args: tuple[str, ...]
    files: tuple[Path, ...]
    context_path: Optional[Path] = None
    pending_path: Optional[Path] = None


def serialize_pair(question: str, answer: str) -> str:
    payload = {"question": question, "answer": answer}
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n"


def context_header() -> str:
    payload = {CONTEXT_FORMAT_KEY: CONTEXT_FORMAT_VERSION, "session_id": SESSION_ID}
    return json.dumps(payload, separators=(",", ":"))


def parse_messages(messages: Iterable[ChatMessage | Mapping[str, Any]]) -> PromptBundle:
    """Split a conversation into serialized context and the pending question.

    System messages are paired with a synthetic ``"OK"`` answer. The last
    question pushed is the pending one; the remaining questions and answers
    are zipped in order.
    """

    questions: list[str] = []
    answers: list[str] = []
    for raw in messages:
        message = coerce_message(raw)
        if message.role == "system":
            questions.append(message.content)
            answers.append(SYSTEM_ACKNOWLEDGEMENT)
        elif message.role == "user":
            questions.append(message.content)
        else:
            answers.append(message.content)

    pending = questions.pop() if questions else None
    if len(questions) != len(answers):
        LOGGER.debug(
            "Unbalanced conversation: %d question(s) vs %d answer(s); extra turns are dropped",
            len(questions),
            len(answers),
        )
    context = "".join(serialize_pair(q, a) for q, a in zip(questions, answers))
    return PromptBundle(context=context, pending=pending)


def build_arguments(
    bundle: PromptBundle,
    *,
    template_path: Path | str | None = None,
    temp_dir: Path | str | None = None,
) -> PromptArguments:
    """Write the bundle to temp files and return the matching CLI arguments."""

    args: list[str] = []
    files: list[Path] = []
    context_path: Optional[Path] = None
    if bundle.has_context:
        context_path = _write_temp(
            f"{context_header()}\n{bundle.context}",
            prefix="quillbridge-context-",
            suffix=".jsonl",
            temp_dir=temp_dir,
        )
        files.append(context_path)
        args.extend(["-c", str(context_path)])

    pending_path = _write_temp(
        bundle.pending or "", prefix="quillbridge-pending-", suffix=".txt", temp_dir=temp_dir
    )
    files.append(pending_path)
    args.extend(["-f", str(pending_path)])

    template = Path(template_path).expanduser() if template_path else DEFAULT_PROMPT_TEMPLATE
    args.extend(["-p", str(template)])
    return PromptArguments(
        args=tuple(args),
        files=tuple(files),
        context_path=context_path,
        pending_path=pending_path,
    )


def _write_temp(body: str, *, prefix: str, suffix: str, temp_dir: Path | str | None) -> Path:
    directory = str(Path(temp_dir).expanduser()) if temp_dir else None
    if directory:
        os.makedirs(directory, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=directory)
    with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
        handle.write(body)
    return Path(name)
