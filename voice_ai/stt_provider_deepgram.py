from __future__ import annotations

import asyncio
import base64
import binascii
import json
from dataclasses import dataclass
from logging import getLogger
from typing import Any, Dict, Optional, Tuple, Union
from urllib.parse import urlencode

from websockets import connect, ConnectionClosedOK, ConnectionClosed
from websockets.exceptions import WebSocketException

from config import (
    AUDIO_CHANNELS,
    AUDIO_ENCODING,
    AUDIO_SAMPLE_RATE,
    DEEPGRAM_STT_ENDPOINTING_MS,
    DEEPGRAM_STT_LANGUAGE,
    DEEPGRAM_STT_MODEL,
    DEEPGRAM_STT_URL,
    DEEPGRAM_STT_UTTERANCE_END_MS,
)
from voice_ai.emitter import EventEmitter
from voice_ai.errors import ConfigurationError, TransportError, UpstreamError, ValidationError
from voice_ai.events import STTEvents
from voice_ai.stt import SessionLifecycle, UtteranceAccumulator
from voice_ai.stt_provider import (
    ReadyState,
    SpeechStartedResult,
    TranscriptionMetadata,
    TranscriptionResult,
    TranscriptionWord,
    UtteranceEndResult,
)

logger = getLogger(__name__)

PROVIDER = "Deepgram"

# Deepgram message types
DG_MSG_RESULTS = "Results"
DG_MSG_UTTERANCE_END = "UtteranceEnd"
DG_MSG_SPEECH_STARTED = "SpeechStarted"
DG_MSG_METADATA = "Metadata"
DG_MSG_WARNING = "Warning"
DG_MSG_ERROR = "Error"

# Sample rates accepted per raw encoding; None = any rate in DG_PCM_RATE_RANGE.
# https://developers.deepgram.com/docs/encoding
DG_PCM_RATE_RANGE = (8000, 48000)
DEEPGRAM_STT_SAMPLE_RATES = {
    "linear16": None,
    "linear32": None,
    "flac": None,
    "mulaw": frozenset({8000, 16000}),
    "alaw": frozenset({8000, 16000}),
    "amr-nb": frozenset({8000}),
    "amr-wb": frozenset({16000}),
    "g729": frozenset({8000}),
    "speex": frozenset({8000, 16000, 32000}),
    "opus": frozenset({8000, 12000, 16000, 24000, 48000}),
    "ogg-opus": frozenset({8000, 12000, 16000, 24000, 48000}),
}

# Deepgram requires utterance_end_ms of at least 1000 ms.
DG_MIN_UTTERANCE_END_MS = 1000


@dataclass(frozen=True)
class DeepgramSttConfig:
    """
    Configuration for Deepgram live transcription.

    Universal audio settings default to values from config.py.
    """

    api_key: str
    # Deepgram Live Audio endpoint
    base_url: str = DEEPGRAM_STT_URL

    model: str = DEEPGRAM_STT_MODEL
    language: str = DEEPGRAM_STT_LANGUAGE
    punctuate: bool = True
    smart_format: bool = False
    interim_results: bool = True

    # Raw audio settings (headerless frames)
    encoding: str = AUDIO_ENCODING
    sample_rate: int = AUDIO_SAMPLE_RATE
    channels: int = AUDIO_CHANNELS

    # Endpointing: ms of silence before speech_final; None disables it.
    endpointing_ms: Optional[int] = DEEPGRAM_STT_ENDPOINTING_MS
    # UtteranceEnd messages (needs interim_results); None disables them.
    utterance_end_ms: Optional[int] = DEEPGRAM_STT_UTTERANCE_END_MS
    vad_events: bool = True  # SpeechStarted messages

    # Interim text as bare-text UTTERANCE events instead of TRANSCRIPTION(is_final=False).
    interim_as_utterance: bool = False

    connect_timeout_s: float = 15.0
    # How long close() waits for Deepgram to flush results after CloseStream.
    close_timeout_s: float = 5.0


def _validate(cfg: DeepgramSttConfig) -> None:
    if not cfg.api_key:
        raise ConfigurationError("Deepgram API key is required")
    if cfg.encoding not in DEEPGRAM_STT_SAMPLE_RATES:
        raise ConfigurationError(f"Unsupported Deepgram encoding: {cfg.encoding}")
    rates = DEEPGRAM_STT_SAMPLE_RATES[cfg.encoding]
    if rates is None:
        lo, hi = DG_PCM_RATE_RANGE
        if not lo <= cfg.sample_rate <= hi:
            raise ConfigurationError(f"Sample rate for {cfg.encoding} must be between {lo} and {hi}, got {cfg.sample_rate}")
    elif cfg.sample_rate not in rates:
        raise ConfigurationError(
            f"Deepgram encoding {cfg.encoding} does not support sample rate {cfg.sample_rate} (allowed: {sorted(rates)})"
        )
    if cfg.channels < 1:
        raise ConfigurationError(f"channels must be at least 1, got {cfg.channels}")
    if cfg.endpointing_ms is not None and cfg.endpointing_ms < 0:
        raise ConfigurationError(f"endpointing_ms must not be negative, got {cfg.endpointing_ms}")
    if cfg.utterance_end_ms is not None:
        if cfg.utterance_end_ms < DG_MIN_UTTERANCE_END_MS:
            raise ConfigurationError(f"utterance_end_ms must be at least {DG_MIN_UTTERANCE_END_MS}")
        if not cfg.interim_results:
            raise ConfigurationError("utterance_end_ms requires interim_results=True")
    if cfg.connect_timeout_s <= 0 or cfg.close_timeout_s < 0:
        raise ConfigurationError("connect/close timeouts must be positive")


def _channel(value: Any) -> Tuple[int, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(int(v) for v in value)
    return (int(value),)


def _words(raw_words: Any) -> Tuple[TranscriptionWord, ...]:
    words = []
    for w in raw_words or ():
        words.append(TranscriptionWord(
            word=w.get("word", ""),
            start=float(w.get("start", 0.0)),
            end=w.get("end"),
            confidence=w.get("confidence"),
            punctuated_word=w.get("punctuated_word"),
            speaker=w.get("speaker"),
        ))
    return tuple(words)


class DeepgramRealtimeProvider(EventEmitter):
    """
    Deepgram Live Audio WebSocket session.

    - Sends binary audio frames (raw audio, per config encoding).
    - Normalizes Results / UtteranceEnd / SpeechStarted / Metadata messages
      into STTEvents, with one terminal (speech_final) transcription per utterance.
    - Sends {"type":"CloseStream"} on close so Deepgram flushes final results.
    """

    def __init__(self, cfg: DeepgramSttConfig) -> None:
        super().__init__()
        _validate(cfg)
        self._cfg = cfg
        self._ws = None
        self._rx_task: Optional[asyncio.Task] = None
        self._lifecycle = SessionLifecycle(self, PROVIDER)
        self._utterances = UtteranceAccumulator()
        self._closed = asyncio.Event()
        self._created: Optional[str] = None

    def _build_url(self) -> str:
        params: Dict[str, str] = {
            "model": self._cfg.model,
            "language": self._cfg.language,
            "encoding": self._cfg.encoding,
            "sample_rate": str(self._cfg.sample_rate),
            "channels": str(self._cfg.channels),
            "punctuate": str(self._cfg.punctuate).lower(),
            "smart_format": str(self._cfg.smart_format).lower(),
            "interim_results": str(self._cfg.interim_results).lower(),
            "endpointing": "false" if self._cfg.endpointing_ms is None else str(self._cfg.endpointing_ms),
            "vad_events": str(self._cfg.vad_events).lower(),
        }
        if self._cfg.utterance_end_ms is not None:
            params["utterance_end_ms"] = str(self._cfg.utterance_end_ms)
        return f"{self._cfg.base_url}?{urlencode(params)}"

    # -- lifecycle ---------------------------------------------------------

    async def __aenter__(self) -> "DeepgramRealtimeProvider":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def get_ready_state(self) -> ReadyState:
        return self._lifecycle.state

    async def connect(self) -> None:
        """
        Open the WebSocket and start the receiver.

        Raises:
            TransportError: the session was already started/closed, or the
                connection failed (ERROR and CLOSE are emitted as well).
        """
        if self._lifecycle.state != ReadyState.CONNECTING or self._ws is not None:
            raise TransportError(f"{PROVIDER}: session already started or closed")

        url = self._build_url()
        logger.debug("[STT] Deepgram: connecting to %s", url)

        # Connect with timeout to avoid hanging indefinitely
        try:
            ws = await asyncio.wait_for(
                connect(
                    url,
                    additional_headers={"Authorization": f"token {self._cfg.api_key}"},
                    open_timeout=10,
                    ping_interval=10,
                    ping_timeout=10,
                    close_timeout=5,
                    max_queue=32,
                ),
                timeout=self._cfg.connect_timeout_s,
            )
        except (asyncio.TimeoutError, OSError, WebSocketException) as e:
            err = TransportError(f"{PROVIDER}: WebSocket connection failed: {e!r}")
            logger.error("[STT] Deepgram: %s", err)
            self.emit(STTEvents.ERROR, err)
            if self._lifecycle.mark_closing():
                self._finish()
            raise err from e

        if self._lifecycle.state != ReadyState.CONNECTING:
            # close() was called while we were connecting
            logger.info("[STT] Deepgram: closed during connect, dropping connection.")
            await ws.close()
            return

        self._ws = ws
        self._utterances.reset()
        self._rx_task = asyncio.create_task(self._recv_loop(ws))
        self._lifecycle.mark_open()

    async def close(self) -> None:
        """Close the session from any state. Idempotent; CLOSE is emitted once."""
        current = asyncio.current_task()
        if not self._lifecycle.mark_closing():
            if self._lifecycle.state == ReadyState.CLOSING and current is not self._rx_task:
                # another close() or the receiver is already finishing the session
                await self._closed.wait()
            return

        ws = self._ws
        rx = self._rx_task
        try:
            if ws is not None:
                try:
                    await ws.send(json.dumps({"type": "CloseStream"}))
                    flushing = True
                except (ConnectionClosed, OSError) as e:
                    logger.debug("[STT] Deepgram: CloseStream not sent: %r", e)
                    flushing = False

                # let Deepgram flush pending results and close from its side
                if flushing and rx is not None and rx is not current:
                    done, _ = await asyncio.wait({rx}, timeout=self._cfg.close_timeout_s)
                    if not done:
                        logger.warning("[STT] Deepgram: no close from server after %.1fs, cancelling receiver.",
                                       self._cfg.close_timeout_s)

                try:
                    await ws.close()
                except (ConnectionClosed, OSError) as e:
                    logger.debug("[STT] Deepgram: error while closing socket: %r", e)
        finally:
            if rx is not None and rx is not current and not rx.done():
                rx.cancel()
                await asyncio.wait({rx})
            self._finish()

    async def wait_closed(self) -> None:
        """Wait until the session reaches CLOSED (by close() or because the vendor hung up)."""
        await self._closed.wait()

    def _finish(self) -> None:
        self._utterances.reset()
        self._ws = None
        self._rx_task = None
        self._lifecycle.mark_closed()
        self._closed.set()

    # -- outbound ----------------------------------------------------------

    async def send(self, payload: Union[bytes, str]) -> None:
        """
        Send audio. ``payload`` is raw bytes or a base64 string.

        Silently ignored unless the session is OPEN.

        Raises:
            ValidationError: ``payload`` is a string that is not valid base64.
        """
        if self._lifecycle.state != ReadyState.OPEN or self._ws is None:
            return
        if isinstance(payload, str):
            try:
                data = base64.b64decode(payload, validate=True)
            except binascii.Error as e:
                raise ValidationError(f"audio payload is not valid base64: {e}") from e
        else:
            data = bytes(payload)
        if not data:
            # an empty frame would make Deepgram close the stream
            return
        try:
            await self._ws.send(data)
        except ConnectionClosed:
            # the receiver sees the same closure and finishes the session
            logger.warning("[STT] Deepgram: connection closed while sending audio")

    async def _send_control(self, message_type: str) -> None:
        if self._lifecycle.state != ReadyState.OPEN or self._ws is None:
            return
        try:
            await self._ws.send(json.dumps({"type": message_type}))
        except ConnectionClosed:
            logger.warning("[STT] Deepgram: connection closed while sending %s", message_type)

    async def finalize(self) -> None:
        """Ask Deepgram to flush the audio received so far into final results."""
        await self._send_control("Finalize")

    async def keep_alive(self) -> None:
        """Keep the session open during silence (Deepgram closes after ~10 s without data)."""
        await self._send_control("KeepAlive")

    # -- inbound -----------------------------------------------------------

    def _on_results(self, data: Dict[str, Any]) -> None:
        channel = data.get("channel") or {}
        alts = channel.get("alternatives") or []
        if not alts:
            return
        alt = alts[0]

        meta = data.get("metadata") or {}
        model_info = meta.get("model_info") or {}
        result = TranscriptionResult(
            text=(alt.get("transcript") or "").strip(),
            is_final=bool(data.get("is_final", False)),
            speech_final=bool(data.get("speech_final", False)),
            confidence=alt.get("confidence"),
            start=data.get("start"),
            duration=data.get("duration"),
            words=_words(alt.get("words")),
            metadata=TranscriptionMetadata(
                request_id=meta.get("request_id"),
                model_version=model_info.get("version"),
                created=self._created,
            ),
        )

        out = self._utterances.on_result(result)
        if out is None:
            return
        if not out.is_final and self._cfg.interim_as_utterance:
            self.emit(STTEvents.UTTERANCE, out.text)
            return
        if out.speech_final:
            logger.debug("[STT] Deepgram: utterance: %s", out.text[:50])
        self.emit(STTEvents.TRANSCRIPTION, out)

    def _on_utterance_end(self, data: Dict[str, Any]) -> None:
        emit_end, terminal = self._utterances.on_utterance_end(
            TranscriptionMetadata(created=self._created) if self._created else None
        )
        if not emit_end:
            logger.debug("[STT] Deepgram: UtteranceEnd after speech_final suppressed.")
            return
        if terminal is not None:
            logger.debug("[STT] Deepgram: utterance (from UtteranceEnd): %s", terminal.text[:50])
            self.emit(STTEvents.TRANSCRIPTION, terminal)
        self.emit(STTEvents.UTTERANCE_END, UtteranceEndResult(
            last_word_end=float(data.get("last_word_end") or 0.0),
            channel=_channel(data.get("channel")),
        ))

    def _on_metadata(self, data: Dict[str, Any]) -> None:
        self._created = data.get("created")
        model_info = data.get("model_info") or {}
        # model_info is keyed by model uuid
        versions = [m.get("version") for m in model_info.values() if isinstance(m, dict)]
        self.emit(STTEvents.METADATA, TranscriptionMetadata(
            request_id=data.get("request_id"),
            model_version=versions[0] if versions else None,
            created=self._created,
        ))

    def _dispatch(self, data: Dict[str, Any]) -> None:
        typ = data.get("type")

        if typ == DG_MSG_RESULTS:
            self._on_results(data)
        elif typ == DG_MSG_UTTERANCE_END:
            self._on_utterance_end(data)
        elif typ == DG_MSG_SPEECH_STARTED:
            self.emit(STTEvents.SPEECH_STARTED, SpeechStartedResult(
                channel=_channel(data.get("channel")),
                timestamp=data.get("timestamp"),
            ))
        elif typ == DG_MSG_METADATA:
            self._on_metadata(data)
        elif typ == DG_MSG_WARNING:
            message = data.get("description") or data.get("message") or str(data)
            logger.warning("[STT] Deepgram: vendor warning: %s", message)
            self.emit(STTEvents.WARNING, message)
        elif typ == DG_MSG_ERROR or "error" in data:
            # Deepgram errors come as {"type":"Error", ...} or {"error": "..."}
            message = data.get("description") or data.get("message") or data.get("error") or str(data)
            err = UpstreamError(PROVIDER, "STT error", detail=str(message))
            logger.error("[STT] Deepgram: %s", err)
            self.emit(STTEvents.ERROR, err)
        else:
            logger.warning("[STT] Deepgram: unexpected message type %r", typ)
            self.emit(STTEvents.WARNING, f"unexpected message type: {typ}")

    async def _recv_loop(self, ws) -> None:
        """Receives Deepgram JSON messages until the socket closes."""
        logger.debug("[STT] Deepgram: _recv_loop started, waiting for messages...")
        try:
            while True:
                msg = await ws.recv()

                if isinstance(msg, (bytes, bytearray)):
                    # Deepgram sends JSON text; ignore unexpected bytes.
                    logger.warning("[STT] Deepgram: received unexpected binary message (%d bytes)", len(msg))
                    self.emit(STTEvents.WARNING, "unexpected binary message")
                    continue

                try:
                    data = json.loads(msg)
                except ValueError:
                    logger.warning("[STT] Deepgram: received non-JSON message %r", msg[:100])
                    self.emit(STTEvents.WARNING, "non-JSON message")
                    continue

                if not isinstance(data, dict):
                    logger.warning("[STT] Deepgram: received non-object message %r", msg[:100])
                    self.emit(STTEvents.WARNING, "non-object message")
                    continue

                # one malformed message must not end the session
                try:
                    self._dispatch(data)
                except (AttributeError, TypeError, ValueError) as e:
                    logger.warning("[STT] Deepgram: malformed %r message: %r", data.get("type"), e)
                    self.emit(STTEvents.WARNING, f"malformed {data.get('type')} message: {e}")

        except ConnectionClosedOK:
            logger.debug("[STT] Deepgram: session closed cleanly.")
        except ConnectionClosed as e:
            # Close code 1000 is normal closure.
            code = e.rcvd.code if e.rcvd is not None else None
            is_clean = code == 1000 or (e.rcvd is None and e.sent is not None)
            if is_clean:
                logger.debug("[STT] Deepgram: session closed (code=%s).", code)
            else:
                err = TransportError(f"{PROVIDER}: connection closed unexpectedly: {e}")
                logger.warning("[STT] Deepgram: %s", err)
                self.emit(STTEvents.ERROR, err)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[STT] Deepgram receiver crashed: %r", e)
            err = TransportError(f"{PROVIDER}: receiver crashed: {e!r}")
            err.__cause__ = e
            self.emit(STTEvents.ERROR, err)
        finally:
            if self._lifecycle.state == ReadyState.OPEN:
                # vendor hung up (or we crashed): this session is over
                self._lifecycle.mark_closing()
                try:
                    await ws.close()
                except (ConnectionClosed, OSError):
                    pass
                self._finish()
