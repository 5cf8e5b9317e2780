"""
Tests for the speech-generation engine (voice_ai/tts.py).

Covers the generate() event contract, the bounded job poll loop and the
cancellable chunk stream, using in-memory byte sources only.

    pytest tests/test_tts_engine.py -v
"""
from __future__ import annotations

import asyncio
import base64
import unittest
from typing import AsyncIterator, List, Optional, Tuple

import httpx

from voice_ai.emitter import EventEmitter
from voice_ai.errors import SynthesisTimeoutError, TransportError, UpstreamError, ValidationError
from voice_ai.events import TTSEvents
from voice_ai.tts import (
    JOB_COMPLETED,
    JOB_FAILED,
    SpeechStream,
    SynthesizedAudio,
    pcm_duration_s,
    poll_until_complete,
    run_generate,
)
from voice_ai.tts_provider import SpeechRequest


class _Recorder:
    """Subscribes to both TTS events of an emitter and records what arrives."""

    def __init__(self, emitter: EventEmitter) -> None:
        self.speech: List[tuple] = []
        self.errors: List[Exception] = []
        emitter.on(TTSEvents.SPEECH, lambda *args: self.speech.append(args))
        emitter.on(TTSEvents.ERROR, self.errors.append)


async def _chunks(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


class TestRunGenerate(unittest.IsolatedAsyncioTestCase):

    def setUp(self) -> None:
        self.emitter = EventEmitter()
        self.rec = _Recorder(self.emitter)

    async def test_success_emits_single_speech(self) -> None:
        async def synthesize() -> SynthesizedAudio:
            return SynthesizedAudio(audio_data=b"\x01\x02", format="audio/wav", duration=0.5)

        request = SpeechRequest(text="Hello", response_index=3, interaction_count=7)
        result = await run_generate(self.emitter, "Test", request, synthesize)

        self.assertEqual(result.audio_data, b"\x01\x02")
        self.assertEqual(result.metadata.text, "Hello")
        self.assertEqual(result.metadata.format, "audio/wav")
        self.assertEqual(result.metadata.duration, 0.5)
        self.assertEqual(result.metadata.response_index, 3)
        self.assertEqual(self.rec.speech, [(3, base64.b64encode(b"\x01\x02").decode("ascii"), "Hello", 7)])
        self.assertEqual(self.rec.errors, [])

    async def test_missing_response_index_emits_zero(self) -> None:
        async def synthesize() -> SynthesizedAudio:
            return SynthesizedAudio(audio_data=b"x", format="audio/mpeg")

        result = await run_generate(self.emitter, "Test", SpeechRequest(text="Hi"), synthesize)

        self.assertIsNone(result.metadata.response_index)
        self.assertEqual(self.rec.speech[0][0], 0)
        self.assertIsNone(self.rec.speech[0][3])

    async def test_empty_text_fails_before_io(self) -> None:
        called = []

        async def synthesize() -> SynthesizedAudio:
            called.append(True)
            return SynthesizedAudio(audio_data=b"x", format="audio/wav")

        for text in ("", "   "):
            with self.subTest(text=text):
                with self.assertRaises(ValidationError):
                    await run_generate(self.emitter, "Test", SpeechRequest(text=text), synthesize)

        self.assertEqual(called, [])
        self.assertEqual(len(self.rec.errors), 2)
        self.assertEqual(self.rec.speech, [])

    async def test_invalid_response_index_rejected(self) -> None:
        called = []

        async def synthesize() -> SynthesizedAudio:
            called.append(True)
            return SynthesizedAudio(audio_data=b"x", format="audio/wav")

        for index in (-1, "1", 1.0, True):
            with self.subTest(index=index):
                with self.assertRaises(ValidationError):
                    await run_generate(self.emitter, "Test", SpeechRequest(text="Hi", response_index=index), synthesize)

        self.assertEqual(called, [])
        self.assertEqual(len(self.rec.errors), 4)
        self.assertEqual(self.rec.speech, [])

    async def test_failure_emits_error_and_raises_same_object(self) -> None:
        upstream = UpstreamError("Test", "speech request failed", status_code=401, detail="bad key")

        async def synthesize() -> SynthesizedAudio:
            raise upstream

        with self.assertRaises(UpstreamError) as ctx:
            await run_generate(self.emitter, "Test", SpeechRequest(text="Hi"), synthesize)

        self.assertIs(ctx.exception, upstream)
        self.assertEqual(self.rec.errors, [upstream])
        self.assertEqual(self.rec.speech, [])
        self.assertIn("401", str(upstream))
        self.assertIn("bad key", str(upstream))

    async def test_transport_and_payload_errors_are_normalized(self) -> None:
        cases = [
            (httpx.ConnectError("refused"), TransportError),
            (KeyError("id"), UpstreamError),
        ]
        for raised, expected in cases:
            with self.subTest(raised=type(raised).__name__):
                async def synthesize() -> SynthesizedAudio:
                    raise raised

                with self.assertRaises(expected) as ctx:
                    await run_generate(self.emitter, "Test", SpeechRequest(text="Hi"), synthesize)
                self.assertIs(ctx.exception.__cause__, raised)
                self.assertIs(self.rec.errors[-1], ctx.exception)

    def test_pcm_duration(self) -> None:
        self.assertAlmostEqual(pcm_duration_s(32000, 16000), 1.0)
        self.assertAlmostEqual(pcm_duration_s(8000, 8000, sample_width_bytes=1), 1.0)


class TestPollUntilComplete(unittest.IsolatedAsyncioTestCase):

    @staticmethod
    def _statuses(*items: Tuple[str, Optional[str]]):
        seen = []
        it = iter(items)

        async def fetch_status() -> Tuple[str, Optional[str]]:
            value = next(it)
            seen.append(value)
            return value

        return fetch_status, seen

    async def test_resolves_when_completed_on_last_attempt(self) -> None:
        fetch, seen = self._statuses(("pending", None), ("pending", None), (JOB_COMPLETED, "https://cdn/audio.mp3"))

        url = await poll_until_complete("Test", fetch, max_attempts=3, interval_s=0)

        self.assertEqual(url, "https://cdn/audio.mp3")
        self.assertEqual(len(seen), 3)

    async def test_times_out_after_max_attempts(self) -> None:
        fetch, seen = self._statuses(("pending", None), ("pending", None), ("pending", None), ("pending", None))

        with self.assertRaises(SynthesisTimeoutError) as ctx:
            await poll_until_complete("Test", fetch, max_attempts=3, interval_s=0)

        self.assertEqual(len(seen), 3)
        self.assertIsInstance(ctx.exception, TimeoutError)

    async def test_failed_status_raises_upstream_error(self) -> None:
        fetch, seen = self._statuses(("pending", None), (JOB_FAILED, None), ("pending", None))

        with self.assertRaises(UpstreamError):
            await poll_until_complete("Test", fetch, max_attempts=5, interval_s=0)
        self.assertEqual(len(seen), 2)

    async def test_completed_without_url_is_upstream_error(self) -> None:
        fetch, _ = self._statuses((JOB_COMPLETED, None))

        with self.assertRaises(UpstreamError):
            await poll_until_complete("Test", fetch, max_attempts=3, interval_s=0)


class TestSpeechStream(unittest.IsolatedAsyncioTestCase):

    def setUp(self) -> None:
        self.emitter = EventEmitter()
        self.rec = _Recorder(self.emitter)
        self.released = 0

    async def _release(self) -> None:
        self.released += 1

    def _stream(self, chunks: AsyncIterator[bytes], text: str = "Hello") -> SpeechStream:
        return SpeechStream(
            chunks,
            self._release,
            emitter=self.emitter,
            provider="Test",
            request=SpeechRequest(text=text, interaction_count=2),
            format="audio/pcm",
        )

    async def test_chunks_are_indexed_in_order(self) -> None:
        stream = self._stream(_chunks(b"a", b"bb", b"", b"ccc"))

        chunks = [chunk async for chunk in stream]

        self.assertEqual([c.response_index for c in chunks], [0, 1, 2])
        self.assertEqual([c.audio_data for c in chunks], [b"a", b"bb", b"ccc"])
        self.assertTrue(all(c.format == "audio/pcm" for c in chunks))
        self.assertEqual([s[0] for s in self.rec.speech], [0, 1, 2])
        self.assertEqual(self.rec.speech[1][1], base64.b64encode(b"bb").decode("ascii"))
        self.assertEqual(self.released, 1)
        self.assertTrue(stream.closed)

    async def test_cancel_is_idempotent_and_releases_once(self) -> None:
        stream = self._stream(_chunks(b"a", b"b", b"c"))

        first = await stream.__anext__()
        await stream.cancel()
        await stream.cancel()

        self.assertEqual(first.response_index, 0)
        self.assertTrue(stream.cancelled)
        self.assertEqual(self.released, 1)
        self.assertEqual([c async for c in stream], [])
        self.assertEqual(len(self.rec.speech), 1)

    async def test_cancel_after_natural_end_is_noop(self) -> None:
        stream = self._stream(_chunks(b"a"))
        self.assertEqual(len([c async for c in stream]), 1)

        await stream.cancel()

        self.assertEqual(self.released, 1)

    async def test_cancel_during_in_flight_pull(self) -> None:
        gate = asyncio.Event()

        async def slow() -> AsyncIterator[bytes]:
            yield b"first"
            await gate.wait()  # never set
            yield b"never"

        stream = self._stream(slow())
        received = []

        async def consume() -> None:
            async for chunk in stream:
                received.append(chunk)

        consumer = asyncio.create_task(consume())
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertFalse(consumer.done())

        await stream.cancel()
        await asyncio.wait_for(consumer, timeout=1.0)

        self.assertIsNone(consumer.exception())
        self.assertEqual([c.audio_data for c in received], [b"first"])
        self.assertEqual(self.released, 1)
        self.assertEqual(self.rec.errors, [])

    async def test_cancel_closes_byte_iterator(self) -> None:
        cleaned_up = []

        async def body() -> AsyncIterator[bytes]:
            try:
                yield b"a"
                yield b"b"
            finally:
                cleaned_up.append(True)

        stream = self._stream(body())
        first = await stream.__anext__()
        await stream.cancel()

        self.assertEqual(first.audio_data, b"a")
        self.assertEqual(cleaned_up, [True])
        self.assertEqual(self.released, 1)

    async def test_cancel_during_pull_closes_byte_iterator(self) -> None:
        gate = asyncio.Event()
        cleaned_up = []

        async def body() -> AsyncIterator[bytes]:
            try:
                await gate.wait()  # never set
                yield b"never"
            finally:
                cleaned_up.append(True)

        stream = self._stream(body())
        consumer = asyncio.create_task(stream.__anext__())
        for _ in range(5):
            await asyncio.sleep(0)

        await stream.cancel()

        self.assertEqual(cleaned_up, [True])
        self.assertEqual(self.released, 1)
        with self.assertRaises(StopAsyncIteration):
            await asyncio.wait_for(consumer, timeout=1.0)

    async def test_read_failure_emits_error_and_releases(self) -> None:
        async def broken() -> AsyncIterator[bytes]:
            yield b"a"
            raise httpx.ReadError("connection reset")

        stream = self._stream(broken())
        received = []

        with self.assertRaises(TransportError) as ctx:
            async for chunk in stream:
                received.append(chunk)

        self.assertEqual(len(received), 1)
        self.assertEqual(self.rec.errors, [ctx.exception])
        self.assertEqual(self.released, 1)

        await stream.cancel()
        self.assertEqual(self.released, 1)

    async def test_context_manager_releases_on_early_exit(self) -> None:
        stream = self._stream(_chunks(b"a", b"b"))

        async with stream:
            async for _ in stream:
                break

        self.assertEqual(self.released, 1)
        self.assertTrue(stream.cancelled)


if __name__ == "__main__":
    unittest.main()
