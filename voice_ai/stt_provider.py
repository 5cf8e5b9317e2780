"""
STT Provider Protocol — the interface every live transcription adapter implements.

Adapters conform structurally to ``RealtimeSttProvider`` (typing.Protocol), so
they do not need to inherit from it.

Lifecycle
---------
A provider instance is one live session and goes through the ready states
``CONNECTING(0) -> OPEN(1) -> CLOSING(2) -> CLOSED(3)``:

1. **Construction** — frozen dataclass config, validated in ``__init__``
   (``ConfigurationError``). No network calls. State is CONNECTING.

2. **Connect** — ``await provider.connect()`` or ``async with provider:``
   opens the connection (typically a WebSocket) and emits ``OPEN``.

3. **Streaming** — ``await provider.send(chunk)`` forwards audio; calls made
   while not OPEN are silently ignored. Results arrive as events
   (``TRANSCRIPTION``, ``UTTERANCE_END``, ``SPEECH_STARTED``, ...), see
   ``voice_ai.events``.

4. **Close** — ``await provider.close()`` from any state, any number of
   times. ``CLOSE`` is emitted exactly once, also when the vendor drops the
   connection on its own. CLOSED is terminal; a new session needs a new
   provider instance.

Transport errors during streaming are emitted as ``ERROR``, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Optional, Protocol, Tuple, Union, runtime_checkable


class ReadyState(IntEnum):
    CONNECTING = 0
    OPEN = 1
    CLOSING = 2
    CLOSED = 3


@dataclass(frozen=True)
class TranscriptionWord:
    word: str
    start: float
    end: Optional[float] = None
    confidence: Optional[float] = None
    punctuated_word: Optional[str] = None
    speaker: Optional[int] = None

    def __post_init__(self) -> None:
        if self.end is not None and self.start > self.end:
            raise ValueError(f"word {self.word!r} ends before it starts ({self.start} > {self.end})")


@dataclass(frozen=True)
class TranscriptionMetadata:
    request_id: Optional[str] = None
    model_version: Optional[str] = None
    created: Optional[str] = None


@dataclass(frozen=True)
class TranscriptionResult:
    """
    One transcription event.

    Attributes:
        text: The transcribed text.
        is_final: This result will not be revised.
        speech_final: The vendor reports the utterance ended. At most one
            result per utterance carries True, and it holds the whole utterance text.
        confidence: 0..1, when the vendor reports it.
        start, duration: Seconds from stream start, when reported.
        words: Word timings in spoken order.
    """
    text: str
    is_final: bool
    speech_final: bool = False
    confidence: Optional[float] = None
    start: Optional[float] = None
    duration: Optional[float] = None
    words: Tuple[TranscriptionWord, ...] = field(default_factory=tuple)
    metadata: Optional[TranscriptionMetadata] = None

    def __post_init__(self) -> None:
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")


@dataclass(frozen=True)
class UtteranceEndResult:
    last_word_end: float
    channel: Tuple[int, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SpeechStartedResult:
    channel: Tuple[int, ...] = field(default_factory=tuple)
    timestamp: Optional[float] = None


@runtime_checkable
class RealtimeSttProvider(Protocol):
    """Structural protocol for live transcription sessions. See the module docstring."""

    async def __aenter__(self) -> "RealtimeSttProvider": ...
    async def __aexit__(self, exc_type, exc, tb) -> None: ...

    async def connect(self) -> None: ...
    async def send(self, payload: Union[bytes, str]) -> None: ...
    def get_ready_state(self) -> ReadyState: ...
    async def close(self) -> None: ...

    def on(self, event: Any, listener: Callable[..., Any]) -> Any: ...
    def once(self, event: Any, listener: Callable[..., Any]) -> Any: ...
    def off(self, event: Any, listener: Callable[..., Any]) -> Any: ...
