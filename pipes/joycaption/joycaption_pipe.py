"""
title: JoyCaption Vision Caption Pipe
description: Streams JoyCaption Beta One image captions as OpenAI-compatible chat completions
id: joy-caption-beta
author: rbb-dev
author_url: https://github.com/rbb-dev/
version: 0.3.0
features:
  - Bridges chat completions to the JoyCaption Beta One Gradio Space (upload -> queue/join -> queue/data).
  - Accepts OpenAI vision content parts, inline base64 data URIs, and image URLs embedded in plain text.
  - Builds the multipart upload body straight from image bytes; no temp files or file readers.
  - Decodes the Gradio event stream incrementally and turns cumulative caption snapshots into deltas.
  - Streams chat.completion.chunk frames and always closes with a stop chunk and [DONE].
  - Failures before streaming return a structured JSON error; failures mid-stream become an inline error chunk.
  - Configurable via valves (Space origin, fn_index, sampling parameters, default prompt, logging).
"""

import base64
import binascii
import codecs
import io
import json
import logging
import re
import time
import uuid
from contextlib import aclosing
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Dict, List, Literal, Optional, Tuple, Union

import httpx
from PIL import Image
from fastapi import Request
from pydantic import BaseModel, ConfigDict, Field
from starlette.responses import JSONResponse, StreamingResponse

logger = logging.getLogger(__name__)
# Avoid 'No handler could be found' warnings; rely on host/root handlers.
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

UPLOAD_PATH = "/gradio_api/upload"
QUEUE_JOIN_PATH = "/gradio_api/queue/join"
QUEUE_DATA_PATH = "/gradio_api/queue/data"
FILE_DATA_TYPE = "gradio.FileData"
UPLOAD_FILENAME = "image.png"
STREAM_DONE = "data: [DONE]\n\n"

# Plain-text messages may carry either a remote URL or an inline data URI.
_IMAGE_REFERENCE_PATTERN = re.compile(r"https?://[^\s)]+|data:image/[a-zA-Z0-9.+-]+;base64,[A-Za-z0-9+/=]+")
_EMPTY_MARKDOWN_IMAGE_PATTERN = re.compile(r"!\[[^\]]*\]\(\s*\)")

JobState = Literal["resolving_image", "uploading", "enqueuing", "streaming", "completed", "failed"]
EventKind = Literal["generating", "completed", "error", "other"]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class BridgeError(RuntimeError):
    """Failure that is reported back to the chat client."""

    status_code = 502
    code = "upstream_error"


class InvalidRequestError(BridgeError):
    status_code = 400
    code = "invalid_request"


class ImageFetchError(BridgeError):
    code = "image_fetch_failed"


class UploadError(BridgeError):
    code = "upload_failed"


class EnqueueError(BridgeError):
    code = "enqueue_failed"


class StreamConnectError(BridgeError):
    code = "stream_connect_failed"


class StreamDecodeError(ValueError):
    """A single event frame could not be decoded. Never leaves the decoder."""


class PipelineFailure(BridgeError):
    """Wraps whatever stopped the pipeline, remembering the stage it happened in."""

    def __init__(self, stage: str, cause: Union[BaseException, str]):
        super().__init__(str(cause))
        self.stage = stage
        self.cause = cause if isinstance(cause, BaseException) else None
        if isinstance(cause, BridgeError):
            self.status_code = cause.status_code
            self.code = cause.code


# ---------------------------------------------------------------------------
# Configuration and wire models
# ---------------------------------------------------------------------------


class BridgeConfig(BaseModel):
    """Per-request snapshot of the valves; never mutated once built."""

    model_config = ConfigDict(frozen=True)

    upstream_origin: str
    fn_index: int
    temperature: float
    top_p: float
    max_tokens: int
    log_prompt: bool
    default_model: str
    default_prompt: str
    user_agent: str
    request_timeout: Optional[float] = None


class UploadedAsset(BaseModel):
    path: str

    def to_file_data(self) -> Dict[str, Any]:
        return {"path": self.path, "meta": {"_type": FILE_DATA_TYPE}}


class JobRequest(BaseModel):
    """Typed job description; `to_payload` is the only place the positional array exists."""

    asset: UploadedAsset
    prompt: str
    temperature: float
    top_p: float
    max_tokens: int
    log_prompt: bool
    fn_index: int

    def to_payload(self, session_hash: str) -> Dict[str, Any]:
        return {
            "data": [
                self.asset.to_file_data(),
                self.prompt,
                self.temperature,
                self.top_p,
                self.max_tokens,
                self.log_prompt,
            ],
            "event_data": None,
            "fn_index": self.fn_index,
            "trigger_id": None,
            "session_hash": session_hash,
        }


class UpstreamEvent(BaseModel):
    kind: EventKind
    text: str = ""
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in ("completed", "error")

    @classmethod
    def from_payload(cls, payload: Any) -> "UpstreamEvent":
        """Map one decoded queue message onto an event; non-string snapshots become ''."""
        if not isinstance(payload, dict):
            raise StreamDecodeError(f"expected an object, got {type(payload).__name__}")
        msg = payload.get("msg")
        output = payload.get("output")
        if not isinstance(output, dict):
            output = {}
        data = output.get("data")
        first = data[0] if isinstance(data, list) and data else None
        text = first if isinstance(first, str) else ""
        if msg == "process_generating":
            return cls(kind="generating", text=text)
        if msg == "process_completed":
            if payload.get("success") is False:
                reason = output.get("error") or "JoyCaption reported a failed job"
                return cls(kind="error", message=str(reason))
            return cls(kind="completed", text=text)
        return cls(kind="other")


class Job(BaseModel):
    session_hash: str
    prompt: str
    image: bytes = b""
    mime_type: str = "image/png"
    state: JobState = "resolving_image"


# ---------------------------------------------------------------------------
# Binary encoder
# ---------------------------------------------------------------------------


def new_boundary() -> str:
    return "----WebKitFormBoundary" + uuid.uuid4().hex[:16]


def new_session_hash() -> str:
    return uuid.uuid4().hex


def encode_multipart_image(image: bytes, filename: str, boundary: str) -> bytes:
    """Wrap raw image bytes in a single-part multipart/form-data body."""
    head = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="files"; filename="{filename}"\r\n'
        "Content-Type: image/png\r\n\r\n"
    ).encode("utf-8")
    tail = f"\r\n--{boundary}--\r\n".encode("utf-8")
    return head + bytes(image) + tail


# ---------------------------------------------------------------------------
# Diff engine
# ---------------------------------------------------------------------------


def caption_delta(previous_length: int, snapshot: Any) -> str:
    """Return the part of a cumulative snapshot beyond `previous_length`.

    Non-string snapshots count as empty. A snapshot that is not strictly longer
    than what was already emitted yields no delta; shrinking snapshots are not
    reconciled.
    """
    current = snapshot if isinstance(snapshot, str) else ""
    if len(current) > previous_length:
        return current[previous_length:]
    return ""


# ---------------------------------------------------------------------------
# Event stream decoder
# ---------------------------------------------------------------------------


def _parse_event_line(line: str) -> Optional[UpstreamEvent]:
    """Decode one SSE line; returns None for anything that is not a usable data frame."""
    line = line.rstrip("\r")
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload:
        return None
    try:
        return UpstreamEvent.from_payload(json.loads(payload))
    except (json.JSONDecodeError, StreamDecodeError) as exc:
        # Heartbeats and keep-alives land here.
        logger.debug("Discarding undecodable event frame: %s", exc)
        return None


async def decode_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[UpstreamEvent]:
    """Reassemble newline-delimited frames from raw reads and yield events in order.

    Stops after the first terminal event. A failed read yields a terminal
    `error` event instead of ending the sequence silently.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    iterator = chunks.__aiter__()
    while True:
        try:
            chunk = await iterator.__anext__()
        except StopAsyncIteration:
            break
        except (httpx.HTTPError, httpx.StreamError) as exc:
            logger.error("Event stream read failed: %s", exc)
            yield UpstreamEvent(kind="error", message=f"Upstream stream interrupted: {exc}")
            return
        if not chunk:
            continue
        buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            event = _parse_event_line(line)
            if event is None:
                continue
            yield event
            if event.is_terminal:
                return
    buffer += decoder.decode(b"", final=True)
    event = _parse_event_line(buffer)
    if event is not None:
        yield event


# ---------------------------------------------------------------------------
# Gradio client (job submitter + event channel)
# ---------------------------------------------------------------------------


class GradioClient:
    """Talks to the JoyCaption Space for a single job, correlated by one session hash."""

    def __init__(self, config: BridgeConfig, session_hash: Optional[str] = None):
        self.config = config
        self.session_hash = session_hash or new_session_hash()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.upstream_origin,
            headers={"User-Agent": self.config.user_agent},
            timeout=self.config.request_timeout,
        )

    async def upload(self, image: bytes, filename: str = UPLOAD_FILENAME) -> UploadedAsset:
        boundary = new_boundary()
        body = encode_multipart_image(image, filename, boundary)
        try:
            async with self._client() as client:
                response = await client.post(
                    UPLOAD_PATH,
                    content=body,
                    headers={"Content-Type": f"multipart/form-data; boundary={boundary}"},
                )
        except httpx.HTTPError as exc:
            raise UploadError(f"Upload failed: {exc}") from exc
        if not response.is_success:
            raise UploadError(f"Upload failed: HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise UploadError("Upload failed: response was not valid JSON") from exc
        if not isinstance(data, list) or not data or not isinstance(data[0], str):
            raise UploadError("Upload failed: response did not contain a file reference")
        logger.info("Uploaded %s bytes as %s", len(image), data[0])
        return UploadedAsset(path=data[0])

    async def enqueue(self, asset: UploadedAsset, prompt: str) -> None:
        job_request = JobRequest(
            asset=asset,
            prompt=prompt,
            temperature=self.config.temperature,
            top_p=self.config.top_p,
            max_tokens=self.config.max_tokens,
            log_prompt=self.config.log_prompt,
            fn_index=self.config.fn_index,
        )
        try:
            async with self._client() as client:
                response = await client.post(
                    QUEUE_JOIN_PATH,
                    json=job_request.to_payload(self.session_hash),
                )
        except httpx.HTTPError as exc:
            raise EnqueueError(f"Join queue failed: {exc}") from exc
        if not response.is_success:
            raise EnqueueError(f"Join queue failed: HTTP {response.status_code}")
        event_id = None
        try:
            ack = response.json()
            if isinstance(ack, dict):
                event_id = ack.get("event_id")
        except ValueError:
            pass
        logger.info("Queued job session=%s event_id=%s", self.session_hash, event_id)

    async def stream_events(self) -> AsyncIterator[UpstreamEvent]:
        """Open the per-session event channel and yield decoded events until terminal."""
        try:
            async with self._client() as client:
                async with client.stream(
                    "GET",
                    QUEUE_DATA_PATH,
                    params={"session_hash": self.session_hash},
                    headers={"Accept": "text/event-stream"},
                ) as response:
                    if not response.is_success:
                        raise StreamConnectError(f"Event stream connection failed: HTTP {response.status_code}")
                    async with aclosing(decode_events(response.aiter_bytes())) as events:
                        async for event in events:
                            yield event
        except httpx.HTTPError as exc:
            raise StreamConnectError(f"Event stream connection failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Response translator
# ---------------------------------------------------------------------------


class ChunkTranslator:
    """Re-frames caption deltas as OpenAI chat.completion.chunk SSE frames."""

    def __init__(self, model: str, stream_id: Optional[str] = None):
        self.model = model
        self.stream_id = stream_id or f"chatcmpl-{uuid.uuid4().hex}"

    def _frame(self, delta: Dict[str, Any], finish_reason: Optional[str]) -> str:
        data = {
            "id": self.stream_id,
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        return f"data: {json.dumps(data)}\n\n"

    def content_chunk(self, text: str) -> str:
        return self._frame({"content": text}, None)

    def stop_chunk(self) -> str:
        return self._frame({}, "stop")

    def error_chunk(self, message: str) -> str:
        return self._frame({"content": f"\n\n[Error: {message}]"}, "error")

    @staticmethod
    def done() -> str:
        return STREAM_DONE

    def completion(self, text: str) -> Dict[str, Any]:
        """Non-streaming equivalent for `stream: false` requests."""
        return {
            "id": self.stream_id,
            "object": "chat.completion",
            "created": int(time.time()),
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": text},
                    "finish_reason": "stop",
                }
            ],
        }


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------


def extract_caption_request(messages: List[Dict[str, Any]]) -> Tuple[str, str]:
    """Pull (prompt, image reference) out of the most recent user turn."""
    last_user = next(
        (m for m in reversed(messages or []) if isinstance(m, dict) and m.get("role") == "user"),
        None,
    )
    if last_user is None:
        raise InvalidRequestError("No user message found")

    content = last_user.get("content")
    image_reference: Optional[str] = None
    prompt = ""
    if isinstance(content, list):
        text_parts: List[str] = []
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "image_url":
                image_url = part.get("image_url")
                url = image_url.get("url") if isinstance(image_url, dict) else image_url
                if isinstance(url, str) and url.strip():
                    image_reference = url.strip()
            elif part.get("type") == "text":
                text_parts.append(str(part.get("text") or ""))
        prompt = "".join(text_parts).strip()
    elif isinstance(content, str):
        match = _IMAGE_REFERENCE_PATTERN.search(content)
        if match:
            image_reference = match.group(0)
            content = content[: match.start()] + content[match.end():]
            content = _EMPTY_MARKDOWN_IMAGE_PATTERN.sub("", content)
        prompt = content.strip()

    if not image_reference:
        raise InvalidRequestError("Please provide an image in the message (base64 data URI or URL)")
    return prompt, image_reference


def decode_data_uri(reference: str) -> Tuple[bytes, str]:
    header, sep, data = reference.partition(";base64,")
    if not sep:
        raise InvalidRequestError("Inline image must be a base64 data URI")
    mime_type = header[len("data:"):].lower() or "image/png"
    try:
        return base64.b64decode(data.strip()), mime_type
    except (binascii.Error, ValueError) as exc:
        raise InvalidRequestError(f"Inline image is not valid base64: {exc}") from exc


def _sniff_image_mime(data: bytes) -> Optional[str]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return Image.MIME.get(img.format or "")
    except Exception as e:
        logger.debug(f"Unable to identify image bytes: {e}")
        return None


# ---------------------------------------------------------------------------
# Pipeline orchestrator
# ---------------------------------------------------------------------------


class CaptionPipeline:
    """Runs one chat request through resolve -> upload -> enqueue -> stream."""

    def __init__(
        self,
        config: BridgeConfig,
        emitter: Optional[Callable[[dict], Awaitable[None]]] = None,
    ):
        self.config = config
        self.emitter = emitter

    async def _status(self, message: str, done: bool = False) -> None:
        if self.emitter:
            await self.emitter({"type": "status", "data": {"description": message, "done": done}})

    async def resolve_image(self, reference: str) -> Tuple[bytes, str]:
        reference = reference.strip()
        if reference.startswith("data:"):
            return decode_data_uri(reference)
        try:
            async with httpx.AsyncClient(
                headers={"User-Agent": self.config.user_agent},
                timeout=self.config.request_timeout,
                follow_redirects=True,
            ) as client:
                response = await client.get(reference)
        except httpx.HTTPError as exc:
            raise ImageFetchError(f"Unable to download image: {exc}") from exc
        if not response.is_success:
            raise ImageFetchError(f"Unable to download image: HTTP {response.status_code}")
        mime_type = (response.headers.get("content-type") or "").split(";")[0].strip().lower()
        if not mime_type.startswith("image/"):
            mime_type = _sniff_image_mime(response.content) or "image/png"
        return response.content, mime_type

    async def prepare(self, prompt: str, reference: str) -> Job:
        """Resolve the image, upload it and enqueue the job; nothing is streamed yet."""
        gradio = GradioClient(self.config)
        job = Job(session_hash=gradio.session_hash, prompt=prompt or self.config.default_prompt)
        try:
            await self._status("Loading image...")
            job.image, job.mime_type = await self.resolve_image(reference)
            logger.info("Resolved image (%s, %s bytes)", job.mime_type, len(job.image))

            job.state = "uploading"
            await self._status("Uploading image to JoyCaption...")
            asset = await gradio.upload(job.image)

            job.state = "enqueuing"
            await self._status("Queueing caption job...")
            await gradio.enqueue(asset, job.prompt)
        except BridgeError as exc:
            stage = job.state
            job.state = "failed"
            logger.error("Caption pipeline failed while %s: %s", stage, exc)
            await self._status(f"Failed: {exc}", done=True)
            raise PipelineFailure(stage, exc) from exc
        return job

    async def deltas(
        self,
        job: Job,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        """Yield caption deltas in decode order until the job finishes or the caller leaves.

        `is_disconnected` is polled once per decoded event, including Gradio's
        JSON heartbeat frames. Gaps with no frames at all rely on Starlette
        cancelling the response task, which closes the event channel.
        """
        job.state = "streaming"
        await self._status("Generating caption...")
        emitted = 0
        gradio = GradioClient(self.config, session_hash=job.session_hash)
        async with aclosing(gradio.stream_events()) as events:
            async for event in events:
                if is_disconnected is not None and await is_disconnected():
                    logger.info("Client disconnected; abandoning session %s", job.session_hash)
                    return
                if event.kind == "error":
                    raise PipelineFailure("streaming", event.message or "JoyCaption job failed")
                if event.kind not in ("generating", "completed"):
                    continue
                delta = caption_delta(emitted, event.text)
                if delta:
                    emitted += len(delta)
                    yield delta
                if event.kind == "completed":
                    break
            else:
                logger.debug("Event stream for %s closed without completion; forcing stop", job.session_hash)
        job.state = "completed"
        logger.info("Caption complete for session %s (%s chars)", job.session_hash, emitted)
        await self._status("Caption complete", done=True)

    async def stream(
        self,
        job: Job,
        translator: ChunkTranslator,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        """SSE frames for the job; always ends with a stop or error chunk and [DONE]."""
        try:
            async with aclosing(self.deltas(job, is_disconnected)) as deltas:
                async for delta in deltas:
                    yield translator.content_chunk(delta)
        except Exception as e:
            job.state = "failed"
            logger.error(f"Caption stream failed: {str(e)}")
            await self._status("An error occurred while generating the caption", done=True)
            yield translator.error_chunk(str(e))
            yield translator.done()
            return
        if job.state != "completed":
            return
        yield translator.stop_chunk()
        yield translator.done()

    async def complete(self, job: Job, translator: ChunkTranslator) -> Dict[str, Any]:
        parts: List[str] = []
        try:
            async with aclosing(self.deltas(job)) as deltas:
                async for delta in deltas:
                    parts.append(delta)
        except BridgeError as exc:
            job.state = "failed"
            raise PipelineFailure("streaming", exc) from exc
        return translator.completion("".join(parts))


# ---------------------------------------------------------------------------
# Open WebUI entrypoint
# ---------------------------------------------------------------------------


class Pipe:
    class Valves(BaseModel):
        # Upstream Space
        UPSTREAM_ORIGIN: str = Field(
            default="https://fancyfeast-joy-caption-beta-one.hf.space",
            description="Origin of the JoyCaption Gradio Space",
        )
        FN_INDEX: int = Field(default=5, description="Gradio fn_index of the chat_joycaption function")
        USER_AGENT: str = Field(
            default=(
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36"
            ),
            description="User-Agent sent to the Space and to remote image hosts",
        )
        # Logging
        ENABLE_LOGGING: bool = Field(default=False, description="Enable info/debug logs for this plugin. When False, only errors are logged.")
        # Model and sampling
        DEFAULT_MODEL: str = Field(default="joy-caption-beta", description="Model name echoed when the request omits one")
        DEFAULT_PROMPT: str = Field(
            default="Write a long detailed description for this image.",
            description="Prompt used when the user message carries only an image",
        )
        TEMPERATURE: float = Field(default=0.6, description="Sampling temperature")
        TOP_P: float = Field(default=0.9, description="Nucleus sampling top-p")
        MAX_NEW_TOKENS: int = Field(default=512, description="Maximum caption length in tokens")
        LOG_PROMPT: bool = Field(default=True, description="Value of the Space's 'log prompt' flag")
        # HTTP client
        REQUEST_TIMEOUT: Optional[float] = Field(
            default=None,
            description="Request timeout in seconds for upstream calls. Empty means no timeout.",
        )

    def __init__(self):
        self.valves = self.Valves()
        self._apply_logging_valve()

    def _apply_logging_valve(self) -> None:
        """Set logger level based on ENABLE_LOGGING valve.
        OFF  -> ERROR only
        ON   -> INFO and above
        """
        enabled = bool(getattr(self.valves, "ENABLE_LOGGING", False))
        logger.setLevel(logging.INFO if enabled else logging.ERROR)
        logger.propagate = True

    def _build_config(self) -> BridgeConfig:
        return BridgeConfig(
            upstream_origin=self.valves.UPSTREAM_ORIGIN.rstrip("/"),
            fn_index=self.valves.FN_INDEX,
            temperature=self.valves.TEMPERATURE,
            top_p=self.valves.TOP_P,
            max_tokens=self.valves.MAX_NEW_TOKENS,
            log_prompt=self.valves.LOG_PROMPT,
            default_model=self.valves.DEFAULT_MODEL,
            default_prompt=self.valves.DEFAULT_PROMPT,
            user_agent=self.valves.USER_AGENT,
            request_timeout=self.valves.REQUEST_TIMEOUT,
        )

    @staticmethod
    def _error_response(exc: BridgeError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"message": str(exc), "type": "api_error", "code": exc.code}},
        )

    async def pipe(
        self,
        body: dict,
        __request__: Optional[Request] = None,
        __event_emitter__: Optional[Callable[[dict], Awaitable[None]]] = None,
    ) -> Union[StreamingResponse, JSONResponse]:
        """Main entrypoint invoked by Open WebUI for each caption request."""
        # Re-apply in case valves changed at runtime
        self._apply_logging_valve()
        config = self._build_config()
        model = body.get("model") or config.default_model
        pipeline = CaptionPipeline(config, emitter=__event_emitter__)
        try:
            prompt, reference = extract_caption_request(body.get("messages", []))
            job = await pipeline.prepare(prompt, reference)
        except BridgeError as exc:
            logger.error(f"Error processing request: {str(exc)}")
            return self._error_response(exc)

        translator = ChunkTranslator(model)
        if not body.get("stream", True):
            try:
                return JSONResponse(content=await pipeline.complete(job, translator))
            except BridgeError as exc:
                logger.error(f"Error processing request: {str(exc)}")
                return self._error_response(exc)

        is_disconnected = __request__.is_disconnected if __request__ is not None else None
        return StreamingResponse(
            pipeline.stream(job, translator, is_disconnected),
            media_type="text/event-stream",
        )
