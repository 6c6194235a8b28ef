"""Tests covering the command-line entry point."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any

import pytest

from quillbridge import app
from quillbridge.services.settings import DebugSettings, redact_secret

FAKE_CLI = Path(__file__).with_name("fake_cli.py")


@pytest.fixture(autouse=True)
def _isolate(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls: list[Any] = []
    monkeypatch.setattr(app.logging_utils, "setup_logging", lambda *args, **kwargs: calls.append(args))
    for name in list(os.environ):
        if name.startswith("QUILLBRIDGE_"):
            monkeypatch.delenv(name)


def _write_conversation(tmp_path: Path, question: str = "Hi") -> Path:
    path = tmp_path / "conversation.json"
    path.write_text(json.dumps([{"role": "user", "content": question}]), encoding="utf-8")
    return path


def _fake_cli_args(tmp_path: Path) -> list[str]:
    return [
        "--settings-path",
        str(tmp_path / "settings.json"),
        "--set",
        f"executable={sys.executable}",
        "--set",
        f"extra_args={json.dumps([str(FAKE_CLI)])}",
        "--set",
        f"temp_dir={tmp_path / 'prompts'}",
    ]


def test_main_appends_answer_to_document(tmp_path: Path) -> None:
    conversation = _write_conversation(tmp_path)
    document = tmp_path / "notes.txt"
    document.write_text("Intro", encoding="utf-8")

    code = app.main([str(conversation), "--document", str(document), *_fake_cli_args(tmp_path)])

    assert code == 0
    assert document.read_text(encoding="utf-8") == "Intro\n\n[AI]: Answer to: Hi\n[/AI]\n"


def test_main_prints_answer_without_document(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    conversation = _write_conversation(tmp_path)

    code = app.main([str(conversation), *_fake_cli_args(tmp_path)])

    assert code == 0
    assert capsys.readouterr().out == "[AI]: Answer to: Hi\n[/AI]\n"


def test_main_reports_abnormal_exit(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    conversation = _write_conversation(tmp_path, "fail")

    code = app.main([str(conversation), *_fake_cli_args(tmp_path)])

    assert code == 1
    assert "exited abnormally with code 3" in capsys.readouterr().err


def test_main_reports_launch_failure(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    conversation = _write_conversation(tmp_path)
    missing = tmp_path / "missing-cli"

    code = app.main(
        [
            str(conversation),
            "--settings-path",
            str(tmp_path / "settings.json"),
            "--set",
            f"executable={missing}",
        ]
    )

    assert code == 1
    assert "Unable to start" in capsys.readouterr().err


def test_main_requires_conversation(tmp_path: Path) -> None:
    assert app.main(["--settings-path", str(tmp_path / "settings.json")]) == 2


def test_main_rejects_unknown_override(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    conversation = _write_conversation(tmp_path)

    code = app.main([str(conversation), "--set", "nope=1"])

    assert code == 2
    assert "Unknown setting 'nope'" in capsys.readouterr().err


def test_dump_settings_redacts_api_key(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = app.main(
        [
            "--dump-settings",
            "--settings-path",
            str(tmp_path / "settings.json"),
            "--set",
            "api_key=sk-abcdef123",
        ]
    )

    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["settings"]["api_key"] == redact_secret("sk-abcdef123")
    assert payload["meta"]["cli_overrides"] == ["api_key"]
    assert payload["meta"]["secret_backend"] == "fernet"
    assert not (tmp_path / "settings.json").exists()


def test_parse_overrides_uses_setting_types() -> None:
    overrides = app.parse_overrides(
        [
            "executable=my-cli",
            "keep_temp_files=yes",
            "read_chunk_size=128",
            'extra_args=["--fast"]',
            'environment={"A": "1"}',
            "prompt_template_path=none",
            'debug={"capture_output": true}',
        ]
    )

    assert overrides == {
        "executable": "my-cli",
        "keep_temp_files": True,
        "read_chunk_size": 128,
        "extra_args": ["--fast"],
        "environment": {"A": "1"},
        "prompt_template_path": None,
        "debug": DebugSettings(capture_output=True),
    }


@pytest.mark.parametrize("entry", ["missing-equals", "=value", "keep_temp_files=maybe", "extra_args=[oops", "extra_args={}"])
def test_parse_overrides_rejects_bad_entries(entry: str) -> None:
    with pytest.raises(ValueError):
        app.parse_overrides([entry])


def test_mode_for_path_detects_org_documents() -> None:
    assert app._mode_for_path(Path("notes.org")) == "org"
    assert app._mode_for_path(Path("notes.txt")) == "text"
    assert app._mode_for_path(None) == "text"
