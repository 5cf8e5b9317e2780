"""
TTS Provider Protocol — the interface every speech synthesis vendor adapter implements.

Adapters (Deepgram, ElevenLabs, PlayHT) conform structurally to ``TtsProvider``
(typing.Protocol); nothing needs to inherit from it. Streaming is an optional
capability: adapters that support it also conform to ``StreamingTtsProvider``
and set ``supports_streaming = True`` when constructed.

Lifecycle
---------
1. **Construction** — instantiate with a vendor-specific frozen dataclass
   config. Options are validated here and bad values raise
   ``ConfigurationError``. No network calls happen here.

2. **Whole-file synthesis** — ``await provider.generate(SpeechRequest(...))``
   returns one ``SpeechResult``. Vendors that work as jobs (submit, poll,
   download) still look like a single call.

3. **Streaming synthesis** — ``stream = await provider.generate_stream(req)``
   returns a ``SpeechStream``; iterate it with ``async for chunk in stream``.
   Call ``await stream.cancel()`` (or leave an ``async with stream:`` block)
   to stop early and release the HTTP body.

Both paths also emit ``TTSEvents.SPEECH`` (per result / per chunk) and
``TTSEvents.ERROR`` (with the same exception that is raised).

Implementing a new provider
----------------------------
1. Create ``voice_ai/tts_provider_<name>.py`` with a frozen ``@dataclass``
   config (API key plus vendor options, defaults from ``config.py``).
2. Subclass ``EventEmitter`` for ``on``/``once``/``off`` and validate the
   config in ``__init__``.
3. Implement ``generate`` on top of ``voice_ai.tts.run_generate`` and, if the
   vendor can stream, ``generate_stream`` returning ``voice_ai.tts.SpeechStream``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from voice_ai.tts import SpeechStream


@dataclass(frozen=True)
class SpeechRequest:
    """
    One piece of text to synthesize.

    Attributes:
        text: Text to speak; must be non-empty.
        response_index: Optional caller ordering tag for multi-utterance pipelines.
            Passed through to the result metadata and the SPEECH event.
        interaction_count: Optional conversation turn counter, passed through unchanged.
    """
    text: str
    response_index: Optional[int] = None
    interaction_count: Optional[int] = None


@dataclass(frozen=True)
class SpeechMetadata:
    text: str
    format: str
    duration: Optional[float] = None  # seconds, when it can be derived from the payload
    response_index: Optional[int] = None


@dataclass(frozen=True)
class SpeechResult:
    audio_data: bytes
    metadata: SpeechMetadata


@dataclass(frozen=True)
class SpeechChunk:
    """One transport-sized piece of streamed audio. ``response_index`` counts chunks from 0."""
    audio_data: bytes
    response_index: int
    format: str = ""


@runtime_checkable
class TtsProvider(Protocol):
    """Whole-file synthesis capability plus event subscription."""

    supports_streaming: bool

    async def generate(self, request: SpeechRequest) -> SpeechResult: ...

    def on(self, event: Any, listener: Callable[..., Any]) -> Any: ...
    def once(self, event: Any, listener: Callable[..., Any]) -> Any: ...
    def off(self, event: Any, listener: Callable[..., Any]) -> Any: ...


@runtime_checkable
class StreamingTtsProvider(TtsProvider, Protocol):
    """Adds chunked streaming synthesis."""

    async def generate_stream(self, request: SpeechRequest) -> "SpeechStream": ...


def supports_streaming(provider: TtsProvider) -> bool:
    """Capability query, answered from what the adapter declared at construction."""
    return bool(getattr(provider, "supports_streaming", False)) and callable(getattr(provider, "generate_stream", None))
