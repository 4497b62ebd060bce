import json

import httpx
import pytest

from pipes.joycaption.joycaption_pipe import (
    ChunkTranslator,
    InvalidRequestError,
    JobRequest,
    UploadedAsset,
    UpstreamEvent,
    caption_delta,
    decode_data_uri,
    decode_events,
    encode_multipart_image,
    extract_caption_request,
)


async def _chunks(*parts, error=None, reads=None):
    for part in parts:
        if reads is not None:
            reads.append(part)
        yield part
    if error is not None:
        raise error


def _frame(msg, text):
    return f"data: {json.dumps({'msg': msg, 'output': {'data': [text, None]}})}\n\n".encode()


async def _collect(chunks):
    return [event async for event in decode_events(chunks)]


@pytest.mark.asyncio
async def test_decode_events_reassembles_frames_split_across_reads():
    raw = _frame("process_generating", "A") + _frame("process_completed", "AB")
    parts = [raw[:7], raw[7:31], raw[31:60], raw[60:]]

    events = await _collect(_chunks(*parts))

    assert [(e.kind, e.text) for e in events] == [("generating", "A"), ("completed", "AB")]


@pytest.mark.asyncio
async def test_decode_events_skips_heartbeats_and_malformed_frames():
    events = await _collect(
        _chunks(
            b": keep-alive\n\n",
            b"data: not-json\n\n",
            b"data: [1, 2]\n\n",
            b"data:\n\n",
            b'data: {"msg": "heartbeat"}\n\n',
            _frame("process_generating", "Hi"),
        )
    )

    assert [(e.kind, e.text) for e in events] == [("other", ""), ("generating", "Hi")]


@pytest.mark.asyncio
async def test_decode_events_handles_crlf_and_split_multibyte_characters():
    first = b'data: {"msg": "process_completed", "output": {"data": ["caf\xc3'
    second = b'\xa9"]}}\r\n\r\n'

    events = await _collect(_chunks(first, second))

    assert len(events) == 1
    assert events[0].kind == "completed"
    assert events[0].text == "café"


@pytest.mark.asyncio
async def test_decode_events_stops_reading_after_terminal_event():
    reads = []
    events = await _collect(
        _chunks(
            _frame("process_completed", "done"),
            _frame("process_generating", "late"),
            reads=reads,
        )
    )

    assert [e.kind for e in events] == ["completed"]
    assert len(reads) == 1


@pytest.mark.asyncio
async def test_decode_events_parses_final_frame_without_trailing_newline():
    events = await _collect(_chunks(_frame("process_generating", "A").rstrip(b"\n")))

    assert [(e.kind, e.text) for e in events] == [("generating", "A")]


@pytest.mark.asyncio
async def test_decode_events_turns_read_failure_into_terminal_error_event():
    events = await _collect(
        _chunks(_frame("process_generating", "Par"), error=httpx.ReadError("connection reset"))
    )

    assert [e.kind for e in events] == ["generating", "error"]
    assert events[-1].is_terminal
    assert "connection reset" in events[-1].message


def test_upstream_event_normalises_missing_and_non_string_snapshots():
    assert UpstreamEvent.from_payload({"msg": "process_generating", "output": {"data": [None]}}).text == ""
    assert UpstreamEvent.from_payload({"msg": "process_generating", "output": None}).text == ""
    assert UpstreamEvent.from_payload({"msg": "process_generating", "output": {"data": [{"x": 1}]}}).text == ""
    assert UpstreamEvent.from_payload({"msg": "process_generating"}).text == ""


def test_upstream_event_maps_failed_completion_to_error():
    event = UpstreamEvent.from_payload(
        {"msg": "process_completed", "success": False, "output": {"error": "GPU quota exceeded"}}
    )

    assert event.kind == "error"
    assert event.message == "GPU quota exceeded"
    assert event.is_terminal


@pytest.mark.parametrize(
    "snapshots",
    [
        ["A", "AB", "ABC", "ABC"],
        ["", None, "The cat", "The cat sits", "The cat sits."],
        ["one shot"],
    ],
)
def test_caption_deltas_concatenate_to_final_snapshot(snapshots):
    emitted = 0
    pieces = []
    for snapshot in snapshots:
        delta = caption_delta(emitted, snapshot)
        emitted += len(delta)
        pieces.append(delta)

    assert "".join(pieces) == snapshots[-1]


def test_caption_delta_is_null_safe_and_ignores_shrinking_snapshots():
    assert caption_delta(0, None) == ""
    assert caption_delta(3, 12345) == ""
    assert caption_delta(5, "abc") == ""
    assert caption_delta(3, "abc") == ""
    assert caption_delta(3, "abcdef") == "def"


def test_translator_content_and_stop_chunks():
    translator = ChunkTranslator("joy-caption-beta", stream_id="chatcmpl-test")

    content = translator.content_chunk("Hello")
    stop = translator.stop_chunk()

    assert content.startswith("data: ") and content.endswith("\n\n")
    payload = json.loads(content[len("data: "):])
    assert payload["id"] == "chatcmpl-test"
    assert payload["object"] == "chat.completion.chunk"
    assert payload["model"] == "joy-caption-beta"
    assert isinstance(payload["created"], int)
    assert payload["choices"] == [{"index": 0, "delta": {"content": "Hello"}, "finish_reason": None}]

    stop_payload = json.loads(stop[len("data: "):])
    assert stop_payload["choices"] == [{"index": 0, "delta": {}, "finish_reason": "stop"}]
    assert translator.done() == "data: [DONE]\n\n"


def test_translator_error_chunk_carries_inline_message():
    translator = ChunkTranslator("gpt-4o")

    payload = json.loads(translator.error_chunk("Upload failed: HTTP 500")[len("data: "):])

    assert payload["id"].startswith("chatcmpl-")
    assert payload["choices"][0]["finish_reason"] == "error"
    assert payload["choices"][0]["delta"]["content"] == "\n\n[Error: Upload failed: HTTP 500]"


def test_encode_multipart_image_wraps_bytes_unchanged():
    image = b"\x89PNG\r\n\x1a\n\x00\xffgarbage"

    body = encode_multipart_image(image, "image.png", "----WebKitFormBoundaryabc")

    assert body == (
        b"------WebKitFormBoundaryabc\r\n"
        b'Content-Disposition: form-data; name="files"; filename="image.png"\r\n'
        b"Content-Type: image/png\r\n\r\n"
        + image
        + b"\r\n------WebKitFormBoundaryabc--\r\n"
    )


def test_job_request_serialises_positional_payload():
    request = JobRequest(
        asset=UploadedAsset(path="/tmp/gradio/abc/image.png"),
        prompt="describe",
        temperature=0.6,
        top_p=0.9,
        max_tokens=512,
        log_prompt=True,
        fn_index=5,
    )

    assert request.to_payload("sess123") == {
        "data": [
            {"path": "/tmp/gradio/abc/image.png", "meta": {"_type": "gradio.FileData"}},
            "describe",
            0.6,
            0.9,
            512,
            True,
        ],
        "event_data": None,
        "fn_index": 5,
        "trigger_id": None,
        "session_hash": "sess123",
    }


def test_extract_caption_request_uses_latest_user_turn_parts():
    messages = [
        {"role": "user", "content": "old https://example.test/old.png"},
        {"role": "assistant", "content": "An old caption"},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "Describe "},
                {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
                {"type": "text", "text": "briefly"},
            ],
        },
    ]

    prompt, reference = extract_caption_request(messages)

    assert prompt == "Describe briefly"
    assert reference == "data:image/png;base64,AAAA"


def test_extract_caption_request_scans_plain_text_for_image_tokens():
    prompt, reference = extract_caption_request(
        [{"role": "user", "content": "What is in ![photo](data:image/jpeg;base64,QUJD) here?"}]
    )

    assert reference == "data:image/jpeg;base64,QUJD"
    assert prompt == "What is in  here?"

    prompt, reference = extract_caption_request(
        [{"role": "user", "content": "https://example.test/cat.png caption this"}]
    )

    assert reference == "https://example.test/cat.png"
    assert prompt == "caption this"


def test_extract_caption_request_handles_markdown_wrapped_remote_url():
    prompt, reference = extract_caption_request(
        [{"role": "user", "content": "What is in ![photo](https://example.test/cat.png) here?"}]
    )

    assert reference == "https://example.test/cat.png"
    assert prompt == "What is in  here?"


def test_extract_caption_request_rejects_missing_user_or_image():
    with pytest.raises(InvalidRequestError):
        extract_caption_request([{"role": "system", "content": "hi"}])
    with pytest.raises(InvalidRequestError):
        extract_caption_request([{"role": "user", "content": "no image here"}])


def test_decode_data_uri_validates_base64():
    assert decode_data_uri("data:image/png;base64,QUJD") == (b"ABC", "image/png")
    with pytest.raises(InvalidRequestError):
        decode_data_uri("data:image/png;base64,abcde")
    with pytest.raises(InvalidRequestError):
        decode_data_uri("data:image/png,plain")
