"""
Speech-generation engine shared by all TTS adapters.

Vendors return audio in three shapes: one HTTP body, a chunked HTTP body, or a
job that has to be polled and then downloaded. The helpers here turn each shape
into the same caller contract:

- ``run_generate`` wraps one logical synthesis call. On success it emits a
  single ``SPEECH`` event and returns a ``SpeechResult``. On failure it emits
  ``ERROR`` with the exception and raises that same exception. Never both.
- ``poll_until_complete`` is the bounded poll loop for job-style vendors.
- ``open_speech_stream`` / ``SpeechStream`` expose a chunked HTTP body as a lazy
  async iterator of ``SpeechChunk`` with an idempotent ``cancel()``.
"""

from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass
from logging import getLogger
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple

import httpx

from voice_ai.emitter import EventEmitter
from voice_ai.errors import (
    SynthesisTimeoutError,
    TransportError,
    UpstreamError,
    ValidationError,
    VoiceAIError,
)
from voice_ai.events import TTSEvents
from voice_ai.tts_provider import SpeechChunk, SpeechMetadata, SpeechRequest, SpeechResult

logger = getLogger(__name__)

# Terminal job statuses understood by poll_until_complete.
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


@dataclass(frozen=True)
class SynthesizedAudio:
    """What a vendor-specific synthesis coroutine hands back to run_generate."""
    audio_data: bytes
    format: str
    duration: Optional[float] = None


def validate_request(request: SpeechRequest) -> None:
    if not isinstance(request.text, str) or not request.text.strip():
        raise ValidationError("Text is required for speech generation")
    idx = request.response_index
    if idx is not None and (not isinstance(idx, int) or isinstance(idx, bool) or idx < 0):
        raise ValidationError(f"response_index must be a non-negative integer, got {idx!r}")


def pcm_duration_s(n_bytes: int, sample_rate: int, sample_width_bytes: int = 2, channels: int = 1) -> float:
    """Duration of headerless PCM / u-law audio."""
    return n_bytes / float(sample_rate * sample_width_bytes * channels)


def _as_voice_error(provider: str, exc: Exception) -> VoiceAIError:
    if isinstance(exc, VoiceAIError):
        return exc
    if isinstance(exc, (httpx.HTTPError, OSError)):
        err: VoiceAIError = TransportError(f"{provider}: {exc!r}")
    else:
        # malformed vendor payloads (missing keys, bad JSON, ...)
        err = UpstreamError(provider, f"unexpected response: {exc!r}")
    err.__cause__ = exc
    return err


def _report_failure(emitter: EventEmitter, provider: str, exc: Exception) -> VoiceAIError:
    """Normalize ``exc``, log it and emit ERROR. Returns the error the caller must raise."""
    err = _as_voice_error(provider, exc)
    logger.error("[TTS] %s: %s", provider, err)
    emitter.emit(TTSEvents.ERROR, err)
    return err


def _emit_speech(emitter: EventEmitter, response_index: int, audio: bytes, request: SpeechRequest) -> None:
    emitter.emit(
        TTSEvents.SPEECH,
        response_index,
        base64.b64encode(audio).decode("ascii"),
        request.text,
        request.interaction_count,
    )


async def read_error_detail(response: httpx.Response) -> str:
    """Best-effort human readable error from a vendor error body."""
    try:
        body = await response.aread()
    except httpx.HTTPError:
        return response.reason_phrase
    text = body.decode("utf-8", errors="replace").strip()
    try:
        data = json.loads(text)
    except ValueError:
        return text or response.reason_phrase
    if isinstance(data, dict):
        for key in ("detail", "message", "error", "err_msg"):
            value = data.get(key)
            if isinstance(value, dict):
                return str(value.get("message") or json.dumps(value))
            if value:
                return str(value)
    return text


async def run_generate(
        emitter: EventEmitter,
        provider: str,
        request: SpeechRequest,
        synthesize: Callable[[], Awaitable[SynthesizedAudio]],
) -> SpeechResult:
    """
    Run one logical synthesis operation with the generate() event contract.

    Args:
        emitter: The adapter; receives SPEECH or ERROR.
        provider: Vendor name for logs and errors.
        request: Validated here, before ``synthesize`` is called.
        synthesize: Vendor coroutine factory doing all I/O (may be several HTTP calls).

    Returns:
        SpeechResult whose metadata echoes the request text and response_index.

    Raises:
        ValidationError, UpstreamError, SynthesisTimeoutError, TransportError.
        The same object is emitted on ERROR before it is raised.
    """
    try:
        validate_request(request)
        audio = await synthesize()
    except Exception as e:
        raise _report_failure(emitter, provider, e)

    result = SpeechResult(
        audio_data=audio.audio_data,
        metadata=SpeechMetadata(
            text=request.text,
            format=audio.format,
            duration=audio.duration,
            response_index=request.response_index,
        ),
    )
    logger.debug("[TTS] %s: generated %d bytes for %r", provider, len(audio.audio_data), request.text[:50])
    index = request.response_index if request.response_index is not None else 0
    _emit_speech(emitter, index, audio.audio_data, request)
    return result


async def poll_until_complete(
        provider: str,
        fetch_status: Callable[[], Awaitable[Tuple[str, Optional[str]]]],
        *,
        max_attempts: int,
        interval_s: float,
) -> str:
    """
    Poll a synthesis job until it completes, fails or runs out of attempts.

    ``fetch_status`` returns ``(status, url)``. ``completed`` with a url ends the
    loop; ``failed`` raises UpstreamError; anything else is treated as pending.
    The delay is fixed and there is no sleep after the last attempt.

    Returns:
        The artifact URL of the completed job.

    Raises:
        UpstreamError: explicit failure status, or completed without a URL.
        SynthesisTimeoutError: still pending after ``max_attempts`` checks.
    """
    for attempt in range(1, max_attempts + 1):
        status, url = await fetch_status()
        logger.debug("[TTS] %s: job status %r (attempt %d/%d)", provider, status, attempt, max_attempts)

        if status == JOB_COMPLETED:
            if not url:
                raise UpstreamError(provider, "job completed without an audio url")
            return url
        if status == JOB_FAILED:
            raise UpstreamError(provider, "audio generation failed")

        if attempt < max_attempts:
            await asyncio.sleep(interval_s)

    raise SynthesisTimeoutError(
        f"{provider}: timeout waiting for audio generation after {max_attempts} attempts"
    )


class SpeechStream:
    """
    Lazy, forward-only sequence of ``SpeechChunk`` pulled from a vendor byte stream.

    - One pull per ``__anext__``; chunks are passed on as the transport sized them.
    - ``response_index`` of chunks is 0, 1, 2, ... per stream.
    - A SPEECH event is emitted for each chunk just before it is returned.
    - ``cancel()`` stops pulling, unwinds an in-flight pull, closes the byte
      iterator and releases the transport. It is idempotent and safe after natural completion.
    - A read failure emits ERROR, releases the transport and raises TransportError.

    The transport is released exactly once: at natural end, on failure or on cancel.
    """

    def __init__(
            self,
            chunks: AsyncIterator[bytes],
            release: Callable[[], Awaitable[None]],
            *,
            emitter: EventEmitter,
            provider: str,
            request: SpeechRequest,
            format: str = "",
    ) -> None:
        self._chunks = chunks
        self._release_fn = release
        self._emitter = emitter
        self._provider = provider
        self._request = request
        self._format = format
        self._next_index = 0
        self._pull_task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._finished = False
        self._released = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def closed(self) -> bool:
        """True once the transport has been released."""
        return self._released

    @property
    def format(self) -> str:
        return self._format

    def __aiter__(self) -> "SpeechStream":
        return self

    async def __aenter__(self) -> "SpeechStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()

    async def _pull(self) -> Optional[bytes]:
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            return None

    async def __anext__(self) -> SpeechChunk:
        while True:
            if self._finished or self._cancelled:
                raise StopAsyncIteration

            self._pull_task = asyncio.create_task(self._pull())
            try:
                data = await self._pull_task
            except asyncio.CancelledError:
                if self._cancelled:
                    # cancel() abandoned this pull; end quietly
                    raise StopAsyncIteration from None
                raise
            except Exception as e:
                self._finished = True
                err = _report_failure(self._emitter, self._provider, e)
                await self._release()
                raise err
            finally:
                self._pull_task = None

            if self._cancelled:
                raise StopAsyncIteration
            if data is None:
                self._finished = True
                logger.debug("[TTS] %s: stream finished after %d chunks", self._provider, self._next_index)
                await self._release()
                raise StopAsyncIteration
            if not data:
                continue

            chunk = SpeechChunk(audio_data=bytes(data), response_index=self._next_index, format=self._format)
            self._next_index += 1
            _emit_speech(self._emitter, chunk.response_index, chunk.audio_data, self._request)
            return chunk

    async def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        task = self._pull_task
        if task is not None and not task.done():
            task.cancel()
            # the pull must be unwound before the byte iterator can be closed
            await asyncio.wait({task})
        if not self._released:
            logger.debug("[TTS] %s: stream cancelled after %d chunks", self._provider, self._next_index)
        await self._release()

    async def aclose(self) -> None:
        await self.cancel()

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        aclose = getattr(self._chunks, "aclose", None)
        try:
            try:
                if aclose is not None:
                    await aclose()
            finally:
                await self._release_fn()
        except Exception as e:
            logger.warning("[TTS] %s: error while releasing stream: %r", self._provider, e)


async def open_speech_stream(
        emitter: EventEmitter,
        provider: str,
        request: SpeechRequest,
        *,
        client_factory: Callable[[], httpx.AsyncClient],
        build_request: Callable[[httpx.AsyncClient], httpx.Request],
        format: str,
) -> SpeechStream:
    """
    Validate ``request``, start a streaming HTTP request and wrap its body.

    The client and response are owned by the returned SpeechStream and closed
    when it is released. A non-success status is read, closed and raised as
    UpstreamError (after emitting ERROR), so no stream is returned.
    """
    try:
        validate_request(request)
        client = client_factory()
        try:
            response = await client.send(build_request(client), stream=True)
        except BaseException:
            await client.aclose()
            raise

        if response.is_error:
            detail = await read_error_detail(response)
            await response.aclose()
            await client.aclose()
            raise UpstreamError(provider, "failed to get stream", status_code=response.status_code, detail=detail)
    except Exception as e:
        raise _report_failure(emitter, provider, e)

    async def release() -> None:
        try:
            await response.aclose()
        finally:
            await client.aclose()

    logger.debug("[TTS] %s: stream opened for %r", provider, request.text[:50])
    return SpeechStream(
        response.aiter_bytes(),
        release,
        emitter=emitter,
        provider=provider,
        request=request,
        format=format,
    )
