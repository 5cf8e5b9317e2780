"""
Tests for the Deepgram live transcription session.

The WebSocket is replaced with an in-memory fake (``connect`` is patched in
the adapter module), so these run offline. The fake plays Deepgram's side:
queued JSON messages are delivered in order, and CloseStream makes it close
the connection after everything queued so far.

    pytest tests/test_stt_provider_deepgram.py -v
"""
from __future__ import annotations

import asyncio
import base64
import json
import unittest
import wave
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any, List, Optional, Union
from unittest.mock import AsyncMock, patch

from websockets import ConnectionClosedOK
from websockets.exceptions import ConnectionClosedError
from websockets.frames import Close

from voice_ai.errors import ConfigurationError, TransportError, UpstreamError, ValidationError
from voice_ai.events import STTEvents
from voice_ai.stt import drain_transcript_queue, run_live_session
from voice_ai.stt_provider import ReadyState, RealtimeSttProvider
from voice_ai.stt_provider_deepgram import DeepgramRealtimeProvider, DeepgramSttConfig
from transcribe import transcribe_wav

CONNECT = "voice_ai.stt_provider_deepgram.connect"


class FakeDeepgramSocket:
    def __init__(self) -> None:
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[Union[bytes, str]] = []
        self.closed = False
        self.send_error: Optional[Exception] = None

    def push(self, message: Union[dict, str, bytes]) -> None:
        self.incoming.put_nowait(json.dumps(message) if isinstance(message, dict) else message)

    def hang_up(self, code: int = 1000, reason: str = "") -> None:
        close = Close(code, reason)
        if code == 1000:
            self.incoming.put_nowait(ConnectionClosedOK(close, close, True))
        else:
            self.incoming.put_nowait(ConnectionClosedError(close, None))

    async def recv(self) -> Union[str, bytes]:
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def send(self, data: Union[bytes, str]) -> None:
        if self.closed:
            raise ConnectionClosedOK(Close(1000, ""), Close(1000, ""), True)
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(data)
        if isinstance(data, str) and json.loads(data).get("type") == "CloseStream":
            self.hang_up()

    async def close(self) -> None:
        self.closed = True

    def control_messages(self) -> List[str]:
        return [json.loads(m)["type"] for m in self.sent if isinstance(m, str)]

    def audio(self) -> List[bytes]:
        return [m for m in self.sent if isinstance(m, bytes)]


def results(text: str, *, is_final: bool = False, speech_final: bool = False) -> dict:
    words = [
        {"word": w.lower(), "start": 0.1 * i, "end": 0.1 * i + 0.08, "confidence": 0.9, "punctuated_word": w}
        for i, w in enumerate(text.split())
    ]
    return {
        "type": "Results",
        "channel_index": [0, 1],
        "duration": 1.0,
        "start": 0.0,
        "is_final": is_final,
        "speech_final": speech_final,
        "channel": {"alternatives": [{"transcript": text, "confidence": 0.93, "words": words}]},
        "metadata": {"request_id": "req-1", "model_info": {"name": "2-general-nova", "version": "2024-01-09"}},
    }


class _EventLog:
    """Ordered (event, payload) log of everything a provider emits."""

    def __init__(self, provider: DeepgramRealtimeProvider) -> None:
        self.items: List[tuple] = []
        for event in STTEvents:
            provider.on(event, self._recorder(event))

    def _recorder(self, event: STTEvents):
        def record(*args: Any) -> None:
            self.items.append((event, args[0] if args else None))
        return record

    def names(self) -> List[STTEvents]:
        return [event for event, _ in self.items]

    def payloads(self, event: STTEvents) -> List[Any]:
        return [payload for e, payload in self.items if e == event]


class DeepgramSessionTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self) -> None:
        self.ws = FakeDeepgramSocket()
        self.connect_mock = AsyncMock(return_value=self.ws)
        patcher = patch(CONNECT, self.connect_mock)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _provider(self, **kwargs) -> DeepgramRealtimeProvider:
        cfg = DeepgramSttConfig(api_key="dg-key", close_timeout_s=1.0, **kwargs)
        provider = DeepgramRealtimeProvider(cfg)
        self.log = _EventLog(provider)
        return provider

    async def _next(self, provider: DeepgramRealtimeProvider, event: STTEvents, timeout: float = 1.0) -> Optional[Any]:
        fut = asyncio.get_running_loop().create_future()
        provider.once(event, lambda *args: fut.done() or fut.set_result(args[0] if args else None))
        return await asyncio.wait_for(fut, timeout)


class TestDeepgramSession(DeepgramSessionTestCase):

    async def test_connect_and_close(self) -> None:
        provider = self._provider()
        self.assertIsInstance(provider, RealtimeSttProvider)
        self.assertEqual(provider.get_ready_state(), ReadyState.CONNECTING)

        await provider.connect()
        self.assertEqual(provider.get_ready_state(), ReadyState.OPEN)

        await provider.close()
        await provider.close()
        await asyncio.wait_for(provider.wait_closed(), 1.0)

        self.assertEqual(provider.get_ready_state(), ReadyState.CLOSED)
        self.assertEqual(self.log.names(), [STTEvents.OPEN, STTEvents.CLOSE])
        self.assertEqual(self.ws.control_messages(), ["CloseStream"])
        self.assertTrue(self.ws.closed)

        url = self.connect_mock.call_args.args[0]
        self.assertTrue(url.startswith("wss://api.deepgram.com/v1/listen?"))
        for param in ("model=nova-2", "encoding=linear16", "sample_rate=16000", "interim_results=true",
                      "endpointing=200", "utterance_end_ms=1000", "vad_events=true"):
            self.assertIn(param, url)
        headers = self.connect_mock.call_args.kwargs["additional_headers"]
        self.assertEqual(headers, {"Authorization": "token dg-key"})

    async def test_close_before_connect(self) -> None:
        provider = self._provider()

        await provider.close()
        await provider.close()

        self.assertEqual(provider.get_ready_state(), ReadyState.CLOSED)
        self.assertEqual(self.log.names(), [STTEvents.CLOSE])
        with self.assertRaises(TransportError):
            await provider.connect()
        self.connect_mock.assert_not_called()

    async def test_connect_failure(self) -> None:
        self.connect_mock.side_effect = OSError("connection refused")
        provider = self._provider()

        with self.assertRaises(TransportError):
            await provider.connect()

        self.assertEqual(provider.get_ready_state(), ReadyState.CLOSED)
        self.assertEqual(self.log.names(), [STTEvents.ERROR, STTEvents.CLOSE])
        self.assertIsInstance(self.log.payloads(STTEvents.ERROR)[0], TransportError)

    async def test_send_audio(self) -> None:
        provider = self._provider()
        await provider.send(b"ignored before open")

        async with provider:
            await provider.send(b"\x01\x02")
            await provider.send(base64.b64encode(b"\x03\x04").decode("ascii"))
            await provider.send(b"")
            with self.assertRaises(ValidationError):
                await provider.send("not base64!")
            await provider.finalize()
            await provider.keep_alive()

        await provider.send(b"ignored after close")

        self.assertEqual(self.ws.audio(), [b"\x01\x02", b"\x03\x04"])
        self.assertEqual(self.ws.control_messages(), ["Finalize", "KeepAlive", "CloseStream"])

    async def test_one_terminal_result_per_utterance(self) -> None:
        provider = self._provider()
        await provider.connect()

        self.ws.push(results("hel"))
        self.ws.push(results("hello"))
        self.ws.push(results("hello world", is_final=True))
        self.ws.push(results("", is_final=True, speech_final=True))
        self.ws.push({"type": "UtteranceEnd", "channel": [0, 1], "last_word_end": 1.2})
        await provider.close()

        transcriptions = self.log.payloads(STTEvents.TRANSCRIPTION)
        self.assertEqual([t.text for t in transcriptions], ["hel", "hello", "hello world", "hello world"])
        self.assertEqual([t.speech_final for t in transcriptions], [False, False, False, True])
        self.assertEqual(self.log.payloads(STTEvents.UTTERANCE_END), [])

        partial = transcriptions[2]
        self.assertTrue(partial.is_final)
        self.assertEqual(partial.confidence, 0.93)
        self.assertEqual([w.punctuated_word for w in partial.words], ["hello", "world"])
        self.assertEqual(partial.metadata.request_id, "req-1")
        self.assertEqual(partial.metadata.model_version, "2024-01-09")

    async def test_utterance_end_closes_open_utterance(self) -> None:
        provider = self._provider()
        await provider.connect()

        self.ws.push(results("good"))
        self.ws.push(results("good morning", is_final=True))
        self.ws.push({"type": "UtteranceEnd", "channel": [0, 1], "last_word_end": 2.1})
        self.ws.push({"type": "UtteranceEnd", "channel": [0, 1], "last_word_end": 2.1})
        await provider.close()

        names = [n for n in self.log.names() if n in (STTEvents.TRANSCRIPTION, STTEvents.UTTERANCE_END)]
        self.assertEqual(names, [STTEvents.TRANSCRIPTION] * 3 + [STTEvents.UTTERANCE_END])

        terminal = self.log.payloads(STTEvents.TRANSCRIPTION)[-1]
        self.assertEqual(terminal.text, "good morning")
        self.assertTrue(terminal.speech_final)

        end = self.log.payloads(STTEvents.UTTERANCE_END)[0]
        self.assertEqual(end.last_word_end, 2.1)
        self.assertEqual(end.channel, (0, 1))

    async def test_speech_started_and_metadata(self) -> None:
        provider = self._provider()
        await provider.connect()

        self.ws.push({"type": "SpeechStarted", "channel": [0], "timestamp": 0.72})
        self.ws.push({
            "type": "Metadata",
            "request_id": "req-1",
            "created": "2024-05-01T10:00:00.000Z",
            "model_info": {"c0d1a568-ce81-4fea-97e7-bd45cb1fdf3c": {"name": "2-general-nova", "version": "v7"}},
        })
        self.ws.push(results("after metadata", is_final=True, speech_final=True))
        await provider.close()

        started = self.log.payloads(STTEvents.SPEECH_STARTED)[0]
        self.assertEqual(started.channel, (0,))
        self.assertEqual(started.timestamp, 0.72)

        meta = self.log.payloads(STTEvents.METADATA)[0]
        self.assertEqual(meta.request_id, "req-1")
        self.assertEqual(meta.model_version, "v7")
        self.assertEqual(meta.created, "2024-05-01T10:00:00.000Z")

        result = self.log.payloads(STTEvents.TRANSCRIPTION)[0]
        self.assertEqual(result.metadata.created, "2024-05-01T10:00:00.000Z")

    async def test_interim_as_utterance(self) -> None:
        provider = self._provider(interim_as_utterance=True)
        await provider.connect()

        self.ws.push(results("hel"))
        self.ws.push(results("hello", is_final=True, speech_final=True))
        await provider.close()

        self.assertEqual(self.log.payloads(STTEvents.UTTERANCE), ["hel"])
        self.assertEqual([t.text for t in self.log.payloads(STTEvents.TRANSCRIPTION)], ["hello"])

    async def test_vendor_error_keeps_session_open(self) -> None:
        provider = self._provider()
        await provider.connect()

        self.ws.push({"type": "Error", "description": "bad audio frame"})
        err = await self._next(provider, STTEvents.ERROR)

        self.assertIsInstance(err, UpstreamError)
        self.assertIn("bad audio frame", str(err))
        self.assertEqual(provider.get_ready_state(), ReadyState.OPEN)
        await provider.close()

    async def test_unexpected_messages_become_warnings(self) -> None:
        provider = self._provider()
        await provider.connect()

        self.ws.push({"type": "Warning", "description": "deprecated param"})
        self.ws.push({"type": "Surprise"})
        self.ws.push("not json")
        self.ws.push(b"\x00\x01")
        await provider.close()

        warnings = self.log.payloads(STTEvents.WARNING)
        self.assertEqual(len(warnings), 4)
        self.assertEqual(warnings[0], "deprecated param")
        self.assertEqual(self.log.payloads(STTEvents.ERROR), [])

    async def test_vendor_hangs_up(self) -> None:
        provider = self._provider()
        await provider.connect()

        self.ws.hang_up()
        await asyncio.wait_for(provider.wait_closed(), 1.0)
        await provider.close()

        self.assertEqual(provider.get_ready_state(), ReadyState.CLOSED)
        self.assertEqual(self.log.names(), [STTEvents.OPEN, STTEvents.CLOSE])

    async def test_abnormal_close_emits_error_then_close(self) -> None:
        provider = self._provider()
        await provider.connect()

        self.ws.hang_up(1011, "internal error")
        await asyncio.wait_for(provider.wait_closed(), 1.0)

        self.assertEqual(self.log.names(), [STTEvents.OPEN, STTEvents.ERROR, STTEvents.CLOSE])
        self.assertIsInstance(self.log.payloads(STTEvents.ERROR)[0], TransportError)

    async def test_malformed_messages_keep_session_open(self) -> None:
        provider = self._provider()
        await provider.connect()

        bad_word = results("two words", is_final=True)
        bad_word["channel"]["alternatives"][0]["words"][1]["end"] = -1.0
        bad_confidence = results("sure", is_final=True)
        bad_confidence["channel"]["alternatives"][0]["confidence"] = 1.5

        self.ws.push("[]")
        self.ws.push("42")
        self.ws.push(bad_word)
        self.ws.push(bad_confidence)
        self.ws.push(results("still here", is_final=True, speech_final=True))
        await provider.close()

        self.assertEqual([t.text for t in self.log.payloads(STTEvents.TRANSCRIPTION)], ["still here"])
        self.assertEqual(len(self.log.payloads(STTEvents.WARNING)), 4)
        self.assertEqual(self.log.payloads(STTEvents.ERROR), [])
        self.assertEqual(self.log.names().count(STTEvents.CLOSE), 1)
        self.assertEqual(self.log.names()[-1], STTEvents.CLOSE)

    async def test_close_survives_broken_socket(self) -> None:
        provider = self._provider()
        await provider.connect()

        self.ws.send_error = OSError("broken pipe")
        await asyncio.wait_for(provider.close(), 1.0)

        self.assertEqual(provider.get_ready_state(), ReadyState.CLOSED)
        self.assertEqual(self.log.names(), [STTEvents.OPEN, STTEvents.CLOSE])
        self.assertTrue(self.ws.closed)

    async def test_concurrent_close(self) -> None:
        provider = self._provider()
        await provider.connect()

        await asyncio.wait_for(asyncio.gather(provider.close(), provider.close()), 1.0)

        self.assertEqual(provider.get_ready_state(), ReadyState.CLOSED)
        self.assertEqual(self.log.names(), [STTEvents.OPEN, STTEvents.CLOSE])
        self.assertEqual(self.ws.control_messages(), ["CloseStream"])

    async def test_close_while_vendor_hangs_up(self) -> None:
        provider = self._provider()
        await provider.connect()

        self.ws.hang_up()
        await asyncio.wait_for(provider.close(), 1.0)

        self.assertEqual(provider.get_ready_state(), ReadyState.CLOSED)
        self.assertEqual(self.log.names(), [STTEvents.OPEN, STTEvents.CLOSE])

    def test_configuration_validation(self) -> None:
        bad = [
            dict(api_key=""),
            dict(encoding="wav"),
            dict(encoding="mulaw", sample_rate=44100),
            dict(sample_rate=96000),
            dict(channels=0),
            dict(utterance_end_ms=500),
            dict(interim_results=False),  # utterance_end_ms needs interim results
        ]
        for kwargs in bad:
            with self.subTest(**kwargs):
                cfg = dict(api_key="dg-key")
                cfg.update(kwargs)
                with self.assertRaises(ConfigurationError):
                    DeepgramRealtimeProvider(DeepgramSttConfig(**cfg))

        DeepgramRealtimeProvider(DeepgramSttConfig(api_key="dg-key", interim_results=False, utterance_end_ms=None))


class TestLiveSessionPipeline(DeepgramSessionTestCase):

    async def test_run_live_session(self) -> None:
        provider = self._provider()
        self.ws.push(results("hi", is_final=False))
        self.ws.push(results("hi there", is_final=True, speech_final=True))

        audio_queue: asyncio.Queue = asyncio.Queue()
        transcript_queue: asyncio.Queue = asyncio.Queue()
        for chunk in (b"\x01" * 320, b"\x02" * 320, None):
            audio_queue.put_nowait(chunk)
        running = asyncio.Event()
        running.set()

        await asyncio.wait_for(run_live_session(provider, audio_queue, transcript_queue, running), 2.0)

        self.assertEqual(self.ws.audio(), [b"\x01" * 320, b"\x02" * 320])
        self.assertEqual(await drain_transcript_queue(transcript_queue), "hi there")
        self.assertIsNone(await drain_transcript_queue(transcript_queue))
        self.assertEqual(provider.get_ready_state(), ReadyState.CLOSED)

    async def test_transcribe_wav(self) -> None:
        with TemporaryDirectory() as tmp:
            wav_path = Path(tmp) / "hello.wav"
            with wave.open(str(wav_path), "wb") as wf:
                wf.setnchannels(1)
                wf.setsampwidth(2)
                wf.setframerate(16000)
                wf.writeframes(b"\x00\x01" * 4800)

            self.ws.push(results("hello", is_final=True, speech_final=True))
            self.ws.push(results("world", is_final=True))
            self.ws.push({"type": "UtteranceEnd", "channel": [0, 1], "last_word_end": 0.9})

            utterances = await asyncio.wait_for(
                transcribe_wav(self._provider(), wav_path, chunk_ms=100, realtime_factor=0.0, silence_s=0.1), 2.0)

        self.assertEqual(utterances, ["hello", "world"])
        self.assertEqual(len(self.ws.audio()), 4)  # 3 chunks of speech + 1 of silence


if __name__ == "__main__":
    unittest.main()
