"""
Live transcription session engine shared by STT adapters.

- ``SessionLifecycle`` owns the ready state and emits OPEN / CLOSE exactly once.
- ``UtteranceAccumulator`` turns the vendor's interim / final / utterance-end
  stream into at most one terminal (``speech_final=True``) result per utterance.
- ``pump_audio``, ``collect_utterances``, ``drain_transcript_queue`` and
  ``run_live_session`` wire a provider into queue based pipelines.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from logging import getLogger
from typing import Callable, List, Optional, Tuple

from voice_ai.emitter import EventEmitter
from voice_ai.events import STTEvents
from voice_ai.stt_provider import (
    ReadyState,
    RealtimeSttProvider,
    TranscriptionMetadata,
    TranscriptionResult,
)

logger = getLogger(__name__)


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


class SessionLifecycle:
    """
    Ready state of one session: CONNECTING -> OPEN -> CLOSING -> CLOSED.

    Each ``mark_*`` returns True only when it actually changed the state, so
    callers can use it as a once-only guard. CLOSED is terminal.
    """

    def __init__(self, emitter: EventEmitter, name: str) -> None:
        self._emitter = emitter
        self._name = name
        self._state = ReadyState.CONNECTING

    @property
    def state(self) -> ReadyState:
        return self._state

    def mark_open(self) -> bool:
        if self._state != ReadyState.CONNECTING:
            return False
        self._state = ReadyState.OPEN
        logger.info("[STT] %s: session open.", self._name)
        self._emitter.emit(STTEvents.OPEN)
        return True

    def mark_closing(self) -> bool:
        if self._state in (ReadyState.CLOSING, ReadyState.CLOSED):
            return False
        self._state = ReadyState.CLOSING
        return True

    def mark_closed(self) -> bool:
        if self._state == ReadyState.CLOSED:
            return False
        self._state = ReadyState.CLOSED
        logger.info("[STT] %s: session closed.", self._name)
        self._emitter.emit(STTEvents.CLOSE)
        return True


class UtteranceAccumulator:
    """
    Per-session buffer of final text for the utterance currently being spoken.

    Rules:
      - interim results pass through (empty ones are dropped);
      - final results without speech_final are passed through and their text
        is appended to the buffer;
      - a final result with speech_final closes the utterance: it is emitted
        with the whole buffered text and the buffer is cleared;
      - an utterance-end signal closes a still-open utterance by synthesizing
        the terminal result from the buffer. If the utterance was already
        closed, the signal is suppressed.
    """

    def __init__(self) -> None:
        self._parts: List[str] = []
        # True when there is no open utterance (nothing heard yet, or the last one was terminated)
        self._closed = True

    @property
    def text(self) -> str:
        return " ".join(self._parts).strip()

    @property
    def utterance_open(self) -> bool:
        return not self._closed

    def reset(self) -> None:
        self._parts.clear()
        self._closed = True

    def on_result(self, result: TranscriptionResult) -> Optional[TranscriptionResult]:
        """Return the result to emit for ``result``, or None when nothing should be emitted."""
        text = result.text.strip()

        if not result.is_final:
            if not text:
                return None
            self._closed = False
            return result

        if not result.speech_final:
            if not text:
                return None
            self._parts.append(text)
            self._closed = False
            return result

        if text:
            self._parts.append(text)
        combined = self.text
        if not combined:
            # endpoint on silence, nothing to terminate
            return None
        self._parts.clear()
        self._closed = True
        return replace(result, text=combined, is_final=True, speech_final=True)

    def on_utterance_end(
            self,
            metadata: Optional[TranscriptionMetadata] = None,
    ) -> Tuple[bool, Optional[TranscriptionResult]]:
        """
        Handle a vendor utterance-end signal.

        Returns:
            (emit_utterance_end, synthesized_terminal_result). The first is False
            when the utterance was already closed (duplicate signal).
        """
        if self._closed:
            return False, None

        combined = self.text
        self._parts.clear()
        self._closed = True
        if not combined:
            return True, None
        return True, TranscriptionResult(text=combined, is_final=True, speech_final=True, metadata=metadata)


# ---------------------------------------------------------------------------
# Pipeline helpers
# ---------------------------------------------------------------------------


async def pump_audio(
        provider: RealtimeSttProvider,
        audio_queue: asyncio.Queue[Optional[bytes]],
        running: asyncio.Event,
) -> int:
    """Forward chunks from ``audio_queue`` to the provider until a None sentinel. Returns chunks sent."""
    sent = 0
    while running.is_set():
        chunk = await audio_queue.get()
        if chunk is None:
            break
        await provider.send(chunk)
        sent += 1
    logger.debug("[STT] pump_audio finished after %d chunks.", sent)
    return sent


def collect_utterances(
        provider: RealtimeSttProvider,
        transcript_queue: asyncio.Queue[Optional[str]],
) -> Callable[[], None]:
    """
    Push the text of every terminal transcription into ``transcript_queue``
    and a None sentinel when the session closes.

    The queue should be unbounded; listeners cannot wait for space.

    Returns:
        A callable that removes the listeners again.
    """

    def _on_transcription(result: TranscriptionResult) -> None:
        text = result.text.strip()
        if result.speech_final and text:
            transcript_queue.put_nowait(text)

    def _on_close() -> None:
        transcript_queue.put_nowait(None)

    provider.on(STTEvents.TRANSCRIPTION, _on_transcription)
    provider.on(STTEvents.CLOSE, _on_close)

    def unsubscribe() -> None:
        provider.off(STTEvents.TRANSCRIPTION, _on_transcription)
        provider.off(STTEvents.CLOSE, _on_close)

    return unsubscribe


async def drain_transcript_queue(queue: asyncio.Queue[Optional[str]]) -> Optional[str]:
    """
    Wait for one transcript, then drain everything else already queued.

    Returns:
        - None: Stop signal received
        - "": Only whitespace was queued
        - str: Combined transcript text (newline separated)
    """
    texts = []
    first = await queue.get()
    if first is None:
        return None  # Stop signal
    texts.append(first)
    try:
        while True:
            item = queue.get_nowait()
            if item is None:
                queue.put_nowait(None)  # keep the stop signal for the next call
                break
            texts.append(item)
    except asyncio.QueueEmpty:
        pass  # Drained all available

    result = "\n".join(texts).strip()
    logger.debug("[INGEST] Drained %d items: %r", len(texts), result[:100])
    return result


async def run_live_session(
        provider: RealtimeSttProvider,
        audio_queue: asyncio.Queue[Optional[bytes]],
        transcript_queue: asyncio.Queue[Optional[str]],
        running: asyncio.Event,
) -> None:
    """
    Provider-agnostic live session:
      - opens the provider
      - forwards audio from audio_queue until None
      - pushes terminal transcripts into transcript_queue (None when closed)
      - closes the provider, which flushes pending results first
    """
    unsubscribe = collect_utterances(provider, transcript_queue)
    try:
        async with provider:
            await pump_audio(provider, audio_queue, running)
    finally:
        unsubscribe()
        if provider.get_ready_state() != ReadyState.CLOSED:
            logger.warning("[STT] run_live_session: provider not closed on exit.")
