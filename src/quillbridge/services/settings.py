"""Bridge settings and their JSON persistence."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "DebugSettings",
    "ResponseMarkup",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

_HOME = Path.home() / ".quillbridge"
_SCHEMA_VERSION = 1
_CIPHERTEXT_KEY = "api_key_ciphertext"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on", "debug"}


def _env_int(value: str) -> int:
    return int(value.strip(), 10)


# environment variable -> (settings field, parser)
_ENVIRONMENT: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "QUILLBRIDGE_EXECUTABLE": ("executable", str),
    "QUILLBRIDGE_PROMPT_TEMPLATE": ("prompt_template_path", str),
    "QUILLBRIDGE_TEMP_DIR": ("temp_dir", str),
    "QUILLBRIDGE_API_KEY": ("api_key", str),
    "QUILLBRIDGE_API_KEY_ENV": ("api_key_env", str),
    "QUILLBRIDGE_DEBUG_LOGGING": ("debug_logging", _env_bool),
    "QUILLBRIDGE_KEEP_TEMP_FILES": ("keep_temp_files", _env_bool),
    "QUILLBRIDGE_READ_CHUNK_SIZE": ("read_chunk_size", _env_int),
    "QUILLBRIDGE_NOTICE_TIMEOUT_MS": ("notice_timeout_ms", _env_int),
}


@dataclass(slots=True)
class DebugSettings:
    """Raw output capture for diagnosing the external CLI."""

    capture_output: bool = False
    buffer_name: str = "*quillbridge-debug*"


@dataclass(slots=True)
class ResponseMarkup:
    """Text inserted around a streamed response."""

    opening_delimiter: str = "[AI]: "
    closing_delimiter: str = "[/AI]"
    prompt_marker: str = "[ME]: "
    paragraph_break: str = "\n\n"


_SECTIONS: Mapping[str, type] = {"debug": DebugSettings, "markup": ResponseMarkup}


@dataclass(slots=True)
class Settings:
    """How to launch the external CLI and how to render what it prints."""

    executable: str = "chat-cli"
    extra_args: list[str] = field(default_factory=list)
    prompt_template_path: str | None = None
    temp_dir: str | None = None
    keep_temp_files: bool = False
    api_key: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    environment: dict[str, str] = field(default_factory=dict)
    read_chunk_size: int = 4_096
    notice_timeout_ms: int = 5_000
    conversation_modes: list[str] = field(default_factory=lambda: ["quillbridge-chat"])
    org_modes: list[str] = field(default_factory=lambda: ["org", "org-mode"])
    fallback_buffer_name: str = "*quillbridge-response*"
    debug_logging: bool = False
    debug: DebugSettings = field(default_factory=DebugSettings)
    markup: ResponseMarkup = field(default_factory=ResponseMarkup)

    @property
    def debug_capture_enabled(self) -> bool:
        return self.debug_logging or self.debug.capture_output


class SettingsStore:
    """Reads and writes :class:`Settings` as JSON, keeping the API key encrypted."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = Path(path) if path is not None else _HOME / "settings.json"
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Return stored settings with ``overrides`` and then the environment applied."""

        stored = self._read()
        settings = Settings()
        if stored:
            settings, rewrite = self._decode(stored)
            if rewrite or stored.get("version") != _SCHEMA_VERSION:
                try:
                    self.save(settings)
                except OSError as exc:  # pragma: no cover - depends on filesystem
                    LOGGER.warning("Could not rewrite %s: %s", self._path, exc)
        if overrides:
            settings = _merge(settings, overrides, origin="command line")
        return _merge(settings, _environment_values(), origin="environment")

    def save(self, settings: Settings) -> Path:
        """Write ``settings`` next to the target and atomically move it into place."""

        document = asdict(settings)
        secret = document.pop("api_key", "")
        if secret:
            document[_CIPHERTEXT_KEY] = self._vault.encrypt(secret)
        document["version"] = _SCHEMA_VERSION

        self._path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self._path.parent,
            prefix=f".{self._path.name}.",
            delete=False,
        ) as handle:
            json.dump(document, handle, indent=2, sort_keys=True)
        os.replace(handle.name, self._path)
        LOGGER.debug("Wrote settings to %s", self._path)
        return self._path

    def _read(self) -> Dict[str, Any]:
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring unreadable settings file %s: %s", self._path, exc)
            return {}
        if not isinstance(document, dict):
            LOGGER.warning("Ignoring settings file %s: expected a JSON object", self._path)
            return {}
        return document

    def _decode(self, stored: Mapping[str, Any]) -> tuple[Settings, bool]:
        """Build settings from a stored document; the flag asks for a rewrite."""

        known = {item.name for item in fields(Settings)} - {"api_key"}
        values = {key: value for key, value in stored.items() if key in known}
        for name, section in _SECTIONS.items():
            if name not in values:
                continue
            block = values[name]
            try:
                values[name] = section(**block) if isinstance(block, Mapping) else section()
            except TypeError:
                LOGGER.warning("Resetting malformed %r settings section", name)
                values[name] = section()
        try:
            settings = Settings(**values)
        except TypeError as exc:
            LOGGER.warning("Falling back to default settings: %s", exc)
            settings = Settings()

        ciphertext = stored.get(_CIPHERTEXT_KEY)
        plaintext = stored.get("api_key")
        if ciphertext:
            try:
                return replace(settings, api_key=self._vault.decrypt(ciphertext)), False
            except ValueError as exc:
                LOGGER.warning("Dropping API key that could not be decrypted: %s", exc)
                return settings, False
        if plaintext:
            LOGGER.info("Encrypting API key that was stored in plain text")
            return replace(settings, api_key=str(plaintext)), True
        return settings, False


def _environment_values() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for variable, (name, parse) in _ENVIRONMENT.items():
        raw = os.environ.get(variable)
        if raw is None:
            continue
        try:
            values[name] = parse(raw)
        except ValueError:
            LOGGER.warning("Ignoring %s=%r: not a valid %s", variable, raw, name)
    return values


def _merge(settings: Settings, values: Mapping[str, Any], *, origin: str) -> Settings:
    known = {item.name for item in fields(Settings)}
    changes = {key: value for key, value in values.items() if key in known and value is not None}
    if isinstance(changes.get("environment"), Mapping):
        changes["environment"] = {**settings.environment, **changes["environment"]}
    if not changes:
        return settings
    LOGGER.debug("Settings from %s: %s", origin, ", ".join(sorted(changes)))
    return replace(settings, **changes)


class SecretVault:
    """Fernet encryption for secrets kept in the settings file."""

    strategy = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or _HOME / "settings.key"
        self._cipher: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        sealed = self._fernet().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.strategy}:{sealed}"

    def decrypt(self, token: str | None) -> str:
        """Reverse :meth:`encrypt`; raises ``ValueError`` for foreign or corrupt tokens."""

        if not token:
            return ""
        scheme, sep, sealed = token.partition(":")
        if scheme != self.strategy or not sep or not sealed:
            raise ValueError(f"Unsupported secret encoding {scheme!r}")
        try:
            return self._fernet().decrypt(sealed.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Secret could not be decrypted with the stored key") from exc

    def _fernet(self) -> Fernet:
        if self._cipher is None:
            self._cipher = Fernet(self._read_or_create_key())
        return self._cipher

    def _read_or_create_key(self) -> bytes:
        if self._key_path.exists():
            return self._key_path.read_bytes().strip()
        self._key_path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        # create with owner-only permissions before any key bytes are written
        descriptor = os.open(self._key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(descriptor, "wb") as handle:
            handle.write(key)
        return key


def redact_secret(value: str) -> str:
    """Mask all but the first and last two characters of ``value``."""

    secret = (value or "").strip()
    if len(secret) <= 4:
        return "*" * len(secret)
    hidden = len(secret) - 4
    return secret[:2] + "*" * hidden + secret[-2:]
