"""Launch the external CLI and stream its output into documents.

One :class:`StreamingPipeline` owns the table of in-flight requests. Each
request gets its own subprocess, a private output buffer and a reader task
on the running event loop. The reader feeds :meth:`StreamingPipeline.handle_output`
once per chunk and :meth:`StreamingPipeline.handle_exit` exactly once when the
process is gone. Handlers run inline on the loop and never block.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import getpass
import hashlib
import itertools
import logging
import os
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from ..editor.document_model import DocumentBuffer, TextBuffer
from ..editor.workspace import BufferRegistry
from ..services.settings import Settings
from ..utils.logging import request_logger
from ..widgets.status_bar import AIState, StatusBar
from .errors import ProcessLaunchError
from .records import (
    FINISHED_STATUS,
    RequestInfo,
    RequestRecord,
    RequestState,
    ResponseCallback,
    describe_exit,
)
from .renderer import ResponseRenderer
from .sanitize import OutputSanitizer
from .serializer import build_arguments, parse_messages
from .transforms import select_markup_transform

__all__ = ["PostResponseHook", "ProcessHandle", "StreamingPipeline", "generate_token"]

LOGGER = logging.getLogger(__name__)
_OUTPUT_BUFFER_PREFIX = " *quillbridge-output-"

PostResponseHook = Callable[[DocumentBuffer], None]


def _utf8_decoder() -> codecs.IncrementalDecoder:
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


@dataclass(slots=True, eq=False)
class ProcessHandle:
    """Key of the request table; owns the subprocess and its raw output."""

    name: str
    output: TextBuffer
    process: Optional[asyncio.subprocess.Process] = None
    task: Optional["asyncio.Task[None]"] = None
    sanitizer: OutputSanitizer = field(default_factory=OutputSanitizer)
    decoder: codecs.IncrementalDecoder = field(default_factory=_utf8_decoder)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    def kill(self) -> None:
        process = self.process
        if process is None or process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.kill()


def generate_token(prompt: Sequence[Any] = ()) -> str:
    """Return a unique request id used to correlate log lines."""

    recent: Any = ""
    if prompt:
        last = prompt[-1]
        if isinstance(last, Mapping):
            recent = last.get("content", "")
        else:
            recent = getattr(last, "content", "")
    parts = (
        secrets.token_hex(16),
        str(os.getpid()),
        _current_user(),
        str(time.time_ns()),
        str(recent or ""),
    )
    digest = hashlib.sha1()
    for part in parts:
        digest.update(part.encode("utf-8", errors="replace"))
    return digest.hexdigest()


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


class StreamingPipeline:
    """Spawns one external process per request and renders its output."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        status_bar: StatusBar | None = None,
        buffers: BufferRegistry | None = None,
        renderer: ResponseRenderer | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._status_bar = status_bar or StatusBar()
        self._buffers = buffers or BufferRegistry()
        self._renderer = renderer or ResponseRenderer(self._status_bar, self._settings.markup)
        self._records: Dict[ProcessHandle, RequestRecord] = {}
        self._counter = itertools.count(1)
        self.post_response_hooks: list[PostResponseHook] = []

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def status_bar(self) -> StatusBar:
        return self._status_bar

    @property
    def buffers(self) -> BufferRegistry:
        return self._buffers

    @property
    def renderer(self) -> ResponseRenderer:
        return self._renderer

    @property
    def active_requests(self) -> tuple[RequestRecord, ...]:
        return tuple(self._records.values())

    def record_for(self, handle: ProcessHandle) -> Optional[RequestRecord]:
        return self._records.get(handle)

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------
    async def submit(
        self,
        info: RequestInfo | Mapping[str, Any],
        callback: ResponseCallback | None = None,
    ) -> RequestRecord:
        """Start the external CLI for ``info`` and return without waiting for output.

        The returned record's ``completion`` future resolves with the final
        status string once the completion handler has run.
        """

        request = RequestInfo.from_value(info)
        settings = self._settings
        loop = asyncio.get_running_loop()
        position = request.position
        if isinstance(position, int):
            position = request.buffer.create_marker(position)

        token = generate_token(request.prompt)
        bundle = parse_messages(request.prompt)
        arguments = build_arguments(
            bundle,
            template_path=settings.prompt_template_path,
            temp_dir=settings.temp_dir,
        )
        transform = select_markup_transform(request.buffer.mode, settings.org_modes)
        record = RequestRecord(
            token=token,
            callback=callback or self._renderer,
            buffer=request.buffer,
            position=position,
            transformer=transform.create(),
            in_place=request.in_place,
            temp_files=arguments.files,
            completion=loop.create_future(),
        )
        handle = ProcessHandle(
            name=f"quillbridge<{next(self._counter)}>",
            output=self._buffers.create(f"{_OUTPUT_BUFFER_PREFIX}{token[:8]}*"),
        )
        command = [settings.executable, *settings.extra_args, *arguments.args]
        log = request_logger(LOGGER, token)
        log.info(
            "starting %s (transform=%s, pairs=%d)",
            settings.executable,
            transform.value,
            bundle.pair_count,
        )
        log.debug("command line: %s", command)
        try:
            handle.process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self._build_environment(),
            )
        except OSError as exc:
            status = f"failed: {exc}\n"
            log.error("unable to start %s: %s", settings.executable, exc)
            record.advance(RequestState.FAILED)
            self._release(handle, record)
            self._status_bar.set_ai_state(
                AIState.ERROR, detail=status, document=request.buffer.name, request=token
            )
            self._status_bar.set_message(
                f"Unable to start {settings.executable}: {exc}",
                timeout_ms=settings.notice_timeout_ms,
            )
            self._resolve(record, status)
            raise ProcessLaunchError(settings.executable, str(exc)) from exc

        self.register(handle, record)
        handle.task = loop.create_task(self._pump(handle), name=f"{handle.name}:{token[:8]}")
        return record

    def register(self, handle: ProcessHandle, record: RequestRecord) -> None:
        if handle in self._records:
            raise ValueError(f"{handle.name} already has a request record")
        self._records[handle] = record

    async def shutdown(self) -> None:
        """Kill every live process without prompting and wait for completion."""

        handles = list(self._records)
        if not handles:
            return
        LOGGER.info("Killing %d running request(s)", len(handles))
        for handle in handles:
            handle.kill()
        tasks = [handle.task for handle in handles if handle.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    aclose = shutdown

    async def _pump(self, handle: ProcessHandle) -> None:
        process = handle.process
        assert process is not None and process.stdout is not None
        try:
            while True:
                chunk = await process.stdout.read(self._settings.read_chunk_size)
                if not chunk:
                    break
                self.handle_output(handle, chunk)
            status = describe_exit(await process.wait())
        except asyncio.CancelledError:
            handle.kill()
            self.handle_exit(handle, describe_exit(await process.wait()))
            raise
        except Exception as exc:
            LOGGER.exception("Reader for %s failed", handle.name)
            handle.kill()
            await process.wait()
            status = f"failed: {exc}\n"
        self.handle_exit(handle, status)

    # ------------------------------------------------------------------
    # Streaming output
    # ------------------------------------------------------------------
    def handle_output(self, handle: ProcessHandle, data: bytes | str) -> None:
        """Record, sanitize and dispatch one chunk of process output."""

        text = data if isinstance(data, str) else handle.decoder.decode(data)
        handle.output.append(text)
        record = self._records.get(handle)
        if record is None:
            LOGGER.warning("Dropping output from %s: no request record", handle.name)
            return
        if not record.redirected and self._target_is_read_only(record):
            self._redirect(record)
        sanitized = handle.sanitizer.feed(text)
        record.advance(RequestState.STREAMING)
        if sanitized:
            record.callback(sanitized, record)

    def _target_is_read_only(self, record: RequestRecord) -> bool:
        buffer = record.buffer
        marker = record.tracking_marker or record.position
        return bool(buffer.read_only) or buffer.is_read_only_at(marker.position)

    def _redirect(self, record: RequestRecord) -> None:
        original = record.buffer.name
        fallback = self._buffers.get_or_create(self._settings.fallback_buffer_name)
        self._renderer.release(record)
        record.buffer = fallback
        record.position = fallback.create_marker(len(fallback))
        record.tracking_marker = None
        record.response_start = None
        record.redirected = True
        request_logger(LOGGER, record.token).warning(
            "%s is read-only, using %s", original, fallback.name
        )
        self._status_bar.set_message(
            f"{original} is read-only; the response is shown in {fallback.name}",
            timeout_ms=self._settings.notice_timeout_ms,
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------
    def handle_exit(self, handle: ProcessHandle, status: str) -> None:
        """Finalize the request owned by ``handle``; runs once per process."""

        if self._settings.debug_capture_enabled:
            self._capture_debug(handle, status)

        record = self._records.pop(handle, None)
        if record is None:
            LOGGER.warning("%s exited (%s) without a request record", handle.name, status.strip())
            self._buffers.kill(handle.output)
            return

        try:
            self._drain(handle, record)
            if status == FINISHED_STATUS:
                self._complete(record)
            else:
                self._fail(record, status)
        except Exception as exc:
            request_logger(LOGGER, record.token).exception("completion failed")
            status = f"failed: {exc}\n"
            self._status_bar.set_ai_state(
                AIState.ERROR, detail=status, document=record.buffer.name, request=record.token
            )
        finally:
            self._run_post_response_hooks(record.buffer)
            self._release(handle, record)
            self._resolve(record, status)

    def _drain(self, handle: ProcessHandle, record: RequestRecord) -> None:
        # trailing partial UTF-8 bytes and an escape sequence that never completed
        remainder = handle.decoder.decode(b"", final=True)
        if remainder:
            handle.output.append(remainder)
        tail = handle.sanitizer.feed(remainder) + handle.sanitizer.flush()
        if tail:
            record.callback(tail, record)

    def _complete(self, record: RequestRecord) -> None:
        record.advance(RequestState.COMPLETED)
        if record.started or record.callback is self._renderer:
            if not record.started and not record.redirected and self._target_is_read_only(record):
                self._redirect(record)
            conversation = record.buffer.mode in self._settings.conversation_modes
            self._renderer.finish(record, conversation=conversation)
        self._status_bar.set_ai_state(AIState.READY, document=record.buffer.name, request=record.token)
        request_logger(LOGGER, record.token).info("finished")

    def _fail(self, record: RequestRecord, status: str) -> None:
        record.advance(RequestState.FAILED)
        self._renderer.abort(record)
        request_logger(LOGGER, record.token).warning("failed: %s", status.strip())
        self._status_bar.set_message(
            f"{self._settings.executable}: {status.strip()}",
            timeout_ms=self._settings.notice_timeout_ms,
        )
        self._status_bar.set_ai_state(
            AIState.ERROR, detail=status, document=record.buffer.name, request=record.token
        )

    def _capture_debug(self, handle: ProcessHandle, status: str) -> None:
        try:
            debug_buffer = self._buffers.get_or_create(self._settings.debug.buffer_name)
            debug_buffer.append(f"=== {handle.name} ({status.strip()}) ===\n{handle.output.text}\n")
        except Exception as exc:
            LOGGER.warning("Unable to capture debug output for %s: %s", handle.name, exc)

    def _run_post_response_hooks(self, buffer: DocumentBuffer) -> None:
        for hook in list(self.post_response_hooks):
            try:
                hook(buffer)
            except Exception:
                LOGGER.exception("Post-response hook %r failed", hook)

    def _release(self, handle: ProcessHandle, record: RequestRecord) -> None:
        self._buffers.kill(handle.output)
        if record.redirected:
            record.buffer.delete_marker(record.position)
        if self._settings.keep_temp_files:
            return
        for path in record.temp_files:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.warning("Unable to remove temp file %s: %s", path, exc)

    @staticmethod
    def _resolve(record: RequestRecord, status: str) -> None:
        if record.completion is not None and not record.completion.done():
            record.completion.set_result(status)

    def _build_environment(self) -> dict[str, str]:
        environment = dict(os.environ)
        environment.update(self._settings.environment or {})
        if self._settings.api_key and self._settings.api_key_env:
            environment[self._settings.api_key_env] = self._settings.api_key
        return environment
