"""Shared pytest fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

from quillbridge.bridge.pipeline import ProcessHandle, StreamingPipeline, generate_token
from quillbridge.bridge.records import RequestRecord, ResponseCallback
from quillbridge.bridge.transforms import select_markup_transform
from quillbridge.editor.document_model import DocumentBuffer
from quillbridge.services.settings import Settings

FAKE_CLI = Path(__file__).with_name("fake_cli.py")

AttachRequest = Callable[..., tuple[ProcessHandle, RequestRecord]]


@pytest.fixture
def fake_cli_settings(tmp_path: Path) -> Settings:
    """Settings that launch ``fake_cli.py`` through the current interpreter."""

    return Settings(
        executable=sys.executable,
        extra_args=[str(FAKE_CLI)],
        temp_dir=str(tmp_path / "prompts"),
        read_chunk_size=64,
    )


@pytest.fixture
def attach_request() -> AttachRequest:
    """Register a request on ``pipeline`` without spawning a process."""

    def _attach(
        pipeline: StreamingPipeline,
        buffer: DocumentBuffer,
        *,
        position: Optional[int] = None,
        callback: ResponseCallback | None = None,
        in_place: bool = False,
        temp_files: tuple[Path, ...] = (),
    ) -> tuple[ProcessHandle, RequestRecord]:
        handle = ProcessHandle(name="fake<1>", output=pipeline.buffers.create(" *fake-output*"))
        transform = select_markup_transform(buffer.mode, pipeline.settings.org_modes)
        record = RequestRecord(
            token=generate_token(),
            callback=callback or pipeline.renderer,
            buffer=buffer,
            position=buffer.create_marker(len(buffer) if position is None else position),
            transformer=transform.create(),
            in_place=in_place,
            temp_files=temp_files,
        )
        pipeline.register(handle, record)
        return handle, record

    return _attach
