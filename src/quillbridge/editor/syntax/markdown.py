"""Chunk-safe Markdown to Org conversion for streamed responses."""

from __future__ import annotations

import re
from typing import Any, Optional, Sequence

from markdown_it import MarkdownIt

__all__ = ["MarkdownToOrgConverter", "convert_inline"]

_FENCE_PATTERN = re.compile(r"^(?P<indent>[ ]{0,3})(?P<fence>`{3,}|~{3,})[ \t]*(?P<info>[^`\s]*)[^`]*$")
_HEADING_PATTERN = re.compile(r"^(?P<level>#{1,6})\s+(?P<title>.+?)(?:\s+#+)?\s*$")
_BULLET_PATTERN = re.compile(r"^(?P<indent>\s*)[*+]\s+(?P<body>.*)$")
_RULE_PATTERN = re.compile(r"^\s{0,3}([-*_])(?:\s*\1){2,}\s*$")
_INLINE_MARKUP_PATTERN = re.compile(r"[*_~`\[\]!<&\\]")
_LINE_START_MARKUP = frozenset(" \t#*+-_`~")
_EMPHASIS_MARKERS = {"strong": "*", "em": "/", "s": "+"}
_PARSER: MarkdownIt | None = None


def _default_parser() -> MarkdownIt:
    global _PARSER
    if _PARSER is None:
        _PARSER = MarkdownIt("commonmark").enable("strikethrough")
    return _PARSER


def convert_inline(text: str, parser: MarkdownIt | None = None) -> str:
    """Rewrite inline Markdown markup in ``text`` using Org syntax."""

    body = text.strip()
    if not body:
        return text
    leading = text[: len(text) - len(text.lstrip())]
    trailing = text[len(text.rstrip()) :]
    tokens = (parser or _default_parser()).parseInline(body)
    children: Sequence[Any] = tokens[0].children or [] if tokens else []
    return f"{leading}{_render_inline(children)}{trailing}"


def _render_inline(children: Sequence[Any]) -> str:
    parts: list[str] = []
    links: list[tuple[int, str]] = []
    for token in children:
        kind = token.type
        if kind in {"text", "html_inline", "text_special"}:
            parts.append(token.content)
        elif kind == "code_inline":
            parts.append(f"~{token.content}~")
        elif kind in {"softbreak", "hardbreak"}:
            parts.append("\n")
        elif kind == "link_open":
            links.append((len(parts), str(token.attrGet("href") or "")))
        elif kind == "link_close" and links:
            start, href = links.pop()
            label = "".join(parts[start:])
            del parts[start:]
            parts.append(f"[[{href}][{label}]]" if label and label != href else f"[[{href}]]")
        elif kind == "image":
            parts.append(f"[[{token.attrGet('src') or ''}]]")
        elif kind.endswith(("_open", "_close")):
            name = kind.rsplit("_", 1)[0]
            parts.append(_EMPHASIS_MARKERS.get(name, token.markup or ""))
        else:
            parts.append(token.content or "")
    return "".join(parts)


class MarkdownToOrgConverter:
    """Stateful Markdown→Org transformer fed with arbitrary output chunks.

    Plain text at the end of a chunk is passed through straight away. Only the
    part of a line that could still turn out to be markup is held back: a line
    whose first character may open a heading, bullet, rule or fence, or the
    rest of a line from its first inline markup character on. Held text is
    converted once its newline arrives or :meth:`flush` is called. Fenced code
    blocks become ``#+begin_src``/``#+end_src`` blocks and their bodies are
    left untouched.
    """

    def __init__(self, parser: MarkdownIt | None = None) -> None:
        self._parser = parser or _default_parser()
        self._pending = ""
        self._fence: Optional[str] = None
        self._line_open = False

    @property
    def pending(self) -> str:
        return self._pending

    @property
    def in_code_block(self) -> bool:
        return self._fence is not None

    def __call__(self, chunk: str) -> str:
        lines = f"{self._pending}{chunk}".split("\n")
        tail = lines.pop()
        parts = []
        for line in lines:
            parts.append(f"{self._convert_rest(line)}\n")
            self._line_open = False
        cut = self._passable_length(tail)
        self._pending = tail[cut:]
        if cut:
            self._line_open = True
            parts.append(tail[:cut])
        return "".join(parts)

    def flush(self) -> str:
        remainder, self._pending = self._pending, ""
        converted = self._convert_rest(remainder) if remainder else ""
        self._line_open = False
        return converted

    def convert_line(self, line: str) -> str:
        fence = _FENCE_PATTERN.match(line)
        if self._fence is not None:
            if fence and self._closes_fence(fence):
                self._fence = None
                return f"{fence.group('indent')}#+end_src"
            return line
        if fence:
            self._fence = fence.group("fence")
            return f"{fence.group('indent')}#+begin_src {fence.group('info')}".rstrip()
        heading = _HEADING_PATTERN.match(line)
        if heading:
            stars = "*" * len(heading.group("level"))
            return f"{stars} {convert_inline(heading.group('title'), self._parser)}"
        if _RULE_PATTERN.match(line):
            return "-----"
        bullet = _BULLET_PATTERN.match(line)
        if bullet:
            return f"{bullet.group('indent')}- {convert_inline(bullet.group('body'), self._parser)}"
        return convert_inline(line, self._parser)

    def _closes_fence(self, match: re.Match[str]) -> bool:
        assert self._fence is not None
        fence = match.group("fence")
        return fence[0] == self._fence[0] and len(fence) >= len(self._fence) and not match.group("info")

    def _convert_rest(self, text: str) -> str:
        # the start of an open line was plain text, so no block markup applies
        if not self._line_open:
            return self.convert_line(text)
        if self._fence is not None:
            return text
        return convert_inline(text, self._parser)

    def _passable_length(self, tail: str) -> int:
        if not tail:
            return 0
        if self._fence is not None:
            if self._line_open or tail.lstrip(" ")[:1] not in ("", "`", "~"):
                return len(tail)
            return 0
        if not self._line_open and tail[0] in _LINE_START_MARKUP:
            return 0
        markup = _INLINE_MARKUP_PATTERN.search(tail)
        return markup.start() if markup else len(tail)
