"""Chat message data models consumed by the prompt serializer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Mapping, get_args


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)

ChatRole = Literal["system", "user", "assistant"]
CHAT_ROLES: tuple[str, ...] = get_args(ChatRole)


@dataclass(slots=True)
class ChatMessage:
    """Represents a single turn inside the conversation history."""

    role: ChatRole
    content: str
    created_at: datetime = field(default_factory=_utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.role not in CHAT_ROLES:
            raise ValueError(f"Unsupported chat role: {self.role!r}")
        if self.content is None:
            self.content = ""

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for persistence."""

        return {
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChatMessage":
        role = str(payload.get("role", "")).strip().lower()
        content = payload.get("content")
        metadata = payload.get("metadata")
        return cls(
            role=role,  # type: ignore[arg-type]
            content="" if content is None else str(content),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )


def coerce_message(value: ChatMessage | Mapping[str, Any]) -> ChatMessage:
    """Return ``value`` as a :class:`ChatMessage`, accepting plain mappings."""

    if isinstance(value, ChatMessage):
        return value
    if isinstance(value, Mapping):
        return ChatMessage.from_dict(value)
    raise TypeError(f"Cannot interpret {type(value).__name__} as a chat message")
