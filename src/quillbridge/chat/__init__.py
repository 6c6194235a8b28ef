"""Conversation history models."""

from .message_model import CHAT_ROLES, ChatMessage, ChatRole, coerce_message

__all__ = ["CHAT_ROLES", "ChatMessage", "ChatRole", "coerce_message"]
