"""Markup transform strategies chosen once per request."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

from ..editor.syntax.markdown import MarkdownToOrgConverter
from .records import ChunkTransformer

__all__ = ["MarkupTransform", "select_markup_transform"]


class MarkupTransform(str, Enum):
    """Conversions applied to streamed text before it is inserted."""

    NONE = "none"
    MARKDOWN_TO_ORG = "markdown-to-org"

    def create(self) -> Optional[ChunkTransformer]:
        """Return a fresh transformer; converters keep per-request state."""

        if self is MarkupTransform.MARKDOWN_TO_ORG:
            return MarkdownToOrgConverter()
        return None


def select_markup_transform(mode: str | None, org_modes: Iterable[str]) -> MarkupTransform:
    normalized = (mode or "").strip().lower()
    if normalized and normalized in {candidate.lower() for candidate in org_modes}:
        return MarkupTransform.MARKDOWN_TO_ORG
    return MarkupTransform.NONE
