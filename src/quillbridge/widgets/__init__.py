"""Widgets surfaced by the bridge."""

from .status_bar import AIState, StatusBar

__all__ = ["AIState", "StatusBar"]
