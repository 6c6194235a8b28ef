"""Service layer helpers (settings persistence)."""

from .settings import DebugSettings, ResponseMarkup, SecretVault, Settings, SettingsStore

__all__ = ["DebugSettings", "ResponseMarkup", "SecretVault", "Settings", "SettingsStore"]
