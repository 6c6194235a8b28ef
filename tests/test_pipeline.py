"""Tests for the streaming pipeline's output and completion handlers."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from quillbridge.bridge.pipeline import ProcessHandle, StreamingPipeline, generate_token
from quillbridge.bridge.records import FINISHED_STATUS, RequestState
from quillbridge.editor.document_model import TextBuffer
from quillbridge.services.settings import DebugSettings, Settings
from quillbridge.widgets.status_bar import AIState


def _pipeline(**overrides) -> StreamingPipeline:
    return StreamingPipeline(Settings(**overrides))


def test_chunks_stream_into_document_and_response_is_closed(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("notes", "Question?")
    handle, record = attach_request(pipeline, buffer)

    pipeline.handle_output(handle, b"Hel")
    assert record.state is RequestState.STREAMING
    assert pipeline.status_bar.ai_state is AIState.WORKING
    pipeline.handle_output(handle, b"lo\r\n")
    pipeline.handle_exit(handle, FINISHED_STATUS)

    assert buffer.text == "Question?\n\n[AI]: Hello\n[/AI]\n"
    assert buffer.highlights == [(17, 23)]
    assert record.state is RequestState.COMPLETED
    assert pipeline.status_bar.ai_state is AIState.READY
    assert pipeline.active_requests == ()
    assert handle.output.name not in pipeline.buffers
    assert len(buffer.markers) == 1


def test_response_at_document_start_skips_paragraph_break(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("notes")
    handle, _ = attach_request(pipeline, buffer)

    pipeline.handle_output(handle, "Hi")
    pipeline.handle_exit(handle, FINISHED_STATUS)

    assert buffer.text == "[AI]: Hi[/AI]\n"


def test_in_place_request_inserts_directly_at_position(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("notes", "abc")
    handle, _ = attach_request(pipeline, buffer, in_place=True)

    pipeline.handle_output(handle, "x")
    pipeline.handle_exit(handle, FINISHED_STATUS)

    assert buffer.text == "abc[AI]: x[/AI]\n"


def test_killed_process_keeps_partial_text_without_closing_delimiter(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("notes")
    handle, record = attach_request(pipeline, buffer)

    pipeline.handle_output(handle, b"partial")
    pipeline.handle_exit(handle, "killed\n")

    assert buffer.text == "[AI]: partial"
    assert record.state is RequestState.FAILED
    assert pipeline.status_bar.ai_state is AIState.ERROR
    assert pipeline.status_bar.ai_detail == "killed\n"
    assert pipeline.status_bar.message == "chat-cli: killed"
    assert buffer.highlights == []


def test_abnormal_exit_without_output_leaves_document_untouched(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("notes", "Q")
    handle, _ = attach_request(pipeline, buffer)

    pipeline.handle_exit(handle, "exited abnormally with code 2\n")

    assert buffer.text == "Q"
    assert pipeline.status_bar.ai_detail == "exited abnormally with code 2\n"


def test_utf8_sequences_split_across_chunks_are_decoded(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("notes")
    handle, _ = attach_request(pipeline, buffer)

    pipeline.handle_output(handle, b"caf\xc3")
    pipeline.handle_output(handle, b"\xa9\n")
    pipeline.handle_exit(handle, FINISHED_STATUS)

    assert buffer.text == "[AI]: café\n[/AI]\n"


def test_escape_sequences_split_across_chunks_are_removed(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("notes")
    handle, _ = attach_request(pipeline, buffer)

    pipeline.handle_output(handle, b"\x1b[3")
    pipeline.handle_output(handle, b"2mgreen\x1b[0m\n")
    pipeline.handle_exit(handle, FINISHED_STATUS)

    assert buffer.text == "[AI]: green\n[/AI]\n"
    assert "\x1b" not in buffer.text


def test_org_documents_receive_converted_markup(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("notes.org", mode="org")
    handle, _ = attach_request(pipeline, buffer)

    for chunk in ("# Ti", "tle\n**bold** text\n", "tail"):
        pipeline.handle_output(handle, chunk)
    pipeline.handle_exit(handle, FINISHED_STATUS)

    assert buffer.text == "[AI]: * Title\n*bold* text\ntail[/AI]\n"


def test_conversation_mode_appends_prompt_marker(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("chat", "[ME]: Hi", mode="quillbridge-chat")
    handle, _ = attach_request(pipeline, buffer)

    pipeline.handle_output(handle, "Hello")
    pipeline.handle_exit(handle, FINISHED_STATUS)

    assert buffer.text == "[ME]: Hi\n\n[AI]: Hello[/AI]\n\n[ME]: "
    assert buffer.point == len(buffer)


def test_read_only_target_is_redirected_with_single_notice(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("notes", "abc", read_only=True)
    handle, record = attach_request(pipeline, buffer)

    pipeline.handle_output(handle, "Hi")
    pipeline.handle_output(handle, " there")
    pipeline.handle_exit(handle, FINISHED_STATUS)

    fallback = pipeline.buffers.get("*quillbridge-response*")
    assert fallback is not None
    assert fallback.text == "[AI]: Hi there[/AI]\n"
    assert buffer.text == "abc"
    assert record.redirected
    assert sum("read-only" in message for message in pipeline.status_bar.messages) == 1
    assert len(fallback.markers) == 0
    assert len(buffer.markers) == 1


def test_read_only_span_at_position_triggers_redirect(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("notes", "abcdef")
    buffer.mark_read_only(0, 6)
    handle, record = attach_request(pipeline, buffer)

    pipeline.handle_output(handle, "Hi")

    assert record.redirected
    assert record.buffer.name == "*quillbridge-response*"
    assert buffer.text == "abcdef"


def test_custom_callback_receives_sanitized_text(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("notes", "Q")
    chunks: list[str] = []
    handle, _ = attach_request(pipeline, buffer, callback=lambda text, record: chunks.append(text))

    pipeline.handle_output(handle, b"Hello\r\n")
    pipeline.handle_exit(handle, FINISHED_STATUS)

    assert chunks == ["Hello\n"]
    assert buffer.text == "Q"
    assert pipeline.status_bar.ai_state is AIState.READY


def test_post_response_hooks_run_even_if_one_fails(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("notes")
    seen: list[str] = []

    def broken(_buffer) -> None:
        raise RuntimeError("boom")

    pipeline.post_response_hooks.extend([broken, lambda target: seen.append(target.name)])
    handle, _ = attach_request(pipeline, buffer)

    pipeline.handle_exit(handle, "killed\n")

    assert seen == ["notes"]


def test_debug_capture_keeps_raw_output(attach_request) -> None:
    pipeline = _pipeline(debug=DebugSettings(capture_output=True))
    buffer = TextBuffer("notes")
    handle, _ = attach_request(pipeline, buffer)

    pipeline.handle_output(handle, b"raw \x1b[1mtext\x1b[0m")
    pipeline.handle_exit(handle, FINISHED_STATUS)

    debug_buffer = pipeline.buffers.get("*quillbridge-debug*")
    assert debug_buffer is not None
    assert "raw \x1b[1mtext" in debug_buffer.text
    assert "(finished)" in debug_buffer.text
    assert buffer.text == "[AI]: raw text[/AI]\n"


@pytest.mark.parametrize("keep", [False, True])
def test_temp_files_are_removed_unless_kept(attach_request, tmp_path: Path, keep: bool) -> None:
    pipeline = _pipeline(keep_temp_files=keep)
    temp_file = tmp_path / "context.jsonl"
    temp_file.write_text("{}\n", encoding="utf-8")
    handle, _ = attach_request(pipeline, TextBuffer("notes"), temp_files=(temp_file,))

    pipeline.handle_exit(handle, FINISHED_STATUS)

    assert temp_file.exists() is keep


def test_completion_errors_are_reported_on_status_bar(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("notes")
    handle, record = attach_request(pipeline, buffer)

    pipeline.handle_output(handle, "Hi")
    buffer.read_only = True
    pipeline.handle_exit(handle, FINISHED_STATUS)

    assert pipeline.status_bar.ai_state is AIState.ERROR
    assert pipeline.status_bar.ai_detail.startswith("failed: ")
    assert pipeline.active_requests == ()
    assert record.state is RequestState.COMPLETED


def test_exit_without_record_cleans_output_buffer() -> None:
    pipeline = _pipeline()
    handle = ProcessHandle(name="orphan", output=pipeline.buffers.create(" *orphan*"))

    pipeline.handle_output(handle, b"stray")
    assert handle.output.text == "stray"
    pipeline.handle_exit(handle, FINISHED_STATUS)

    assert " *orphan*" not in pipeline.buffers


def test_register_rejects_duplicate_handles(attach_request) -> None:
    pipeline = _pipeline()
    handle, record = attach_request(pipeline, TextBuffer("notes"))

    with pytest.raises(ValueError):
        pipeline.register(handle, record)


@pytest.mark.asyncio
async def test_completion_future_resolves_with_status(attach_request) -> None:
    pipeline = _pipeline()
    handle, record = attach_request(pipeline, TextBuffer("notes"))
    record.completion = asyncio.get_running_loop().create_future()

    pipeline.handle_exit(handle, "terminated\n")

    assert await record.completion == "terminated\n"


def test_generate_token_is_unique_hex() -> None:
    first = generate_token([{"role": "user", "content": "Hi"}])
    second = generate_token([{"role": "user", "content": "Hi"}])

    assert first != second
    assert len(first) == 40
    int(first, 16)


def test_read_only_target_without_output_is_redirected_on_success(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("ro", "Q", read_only=True)
    handle, record = attach_request(pipeline, buffer)

    pipeline.handle_exit(handle, FINISHED_STATUS)

    fallback = pipeline.buffers.get("*quillbridge-response*")
    assert fallback is not None
    assert fallback.text == "[AI]: [/AI]\n"
    assert buffer.text == "Q"
    assert record.redirected
    assert record.state is RequestState.COMPLETED
    assert pipeline.status_bar.ai_state is AIState.READY


def test_concurrent_requests_interleave_and_finish_independently(attach_request) -> None:
    pipeline = _pipeline()
    first_buffer, second_buffer = TextBuffer("a"), TextBuffer("b")
    first, first_record = attach_request(pipeline, first_buffer)
    second, second_record = attach_request(pipeline, second_buffer)

    pipeline.handle_output(first, b"one ")
    pipeline.handle_output(second, b"uno ")
    pipeline.handle_output(first, b"two\r\n")
    pipeline.handle_output(second, b"dos\r\n")
    pipeline.handle_exit(first, FINISHED_STATUS)

    assert first_buffer.text == "[AI]: one two\n[/AI]\n"
    assert second_buffer.text == "[AI]: uno dos\n"
    assert pipeline.active_requests == (second_record,)
    assert pipeline.status_bar.ai_state is AIState.WORKING
    assert pipeline.status_bar.state_for("a") is AIState.READY
    assert pipeline.status_bar.state_for("b") is AIState.WORKING

    pipeline.handle_exit(second, "killed\n")

    assert second_buffer.text == "[AI]: uno dos\n"
    assert first_record.state is RequestState.COMPLETED
    assert second_record.state is RequestState.FAILED
    assert pipeline.active_requests == ()
    assert pipeline.status_bar.ai_state is AIState.ERROR
    assert pipeline.status_bar.state_for("a") is AIState.READY
    assert pipeline.status_bar.detail_for("b") == "killed\n"


def test_failure_without_output_keeps_other_document_working(attach_request) -> None:
    pipeline = _pipeline()
    streaming, _ = attach_request(pipeline, TextBuffer("a"))
    silent, _ = attach_request(pipeline, TextBuffer("b"))

    pipeline.handle_output(streaming, "Hi")
    pipeline.handle_exit(silent, "exited abnormally with code 1\n")

    assert pipeline.status_bar.ai_state is AIState.WORKING
    assert pipeline.status_bar.state_for("a") is AIState.WORKING
    assert pipeline.status_bar.state_for("b") is AIState.ERROR


@pytest.mark.asyncio
async def test_completion_error_resolves_future_with_failure_status(attach_request) -> None:
    pipeline = _pipeline()
    buffer = TextBuffer("notes")
    handle, record = attach_request(pipeline, buffer)
    record.completion = asyncio.get_running_loop().create_future()

    pipeline.handle_output(handle, "Hi")
    buffer.read_only = True
    pipeline.handle_exit(handle, FINISHED_STATUS)
    status = await record.completion

    assert status.startswith("failed: ")
    assert "read-only" in status
    assert pipeline.status_bar.ai_detail == status
