"""
Stream a WAV file through Deepgram live transcription and print each utterance.

The file must be uncompressed PCM, 16-bit, mono, at AUDIO_SAMPLE_RATE (no
resampling is done). Audio is paced at REALTIME_FACTOR.

Usage
-----
    python transcribe.py path/to/audio.wav
"""
from __future__ import annotations

import asyncio
import sys
from logging import getLogger
from pathlib import Path
from typing import List, Optional

from config import AUDIO_SAMPLE_RATE, CHUNK_MS, DEEPGRAM_API_KEY, FINAL_SILENCE_S, REALTIME_FACTOR
from voice_ai.events import STTEvents
from voice_ai.stt import drain_transcript_queue, run_live_session
from voice_ai.stt_provider import RealtimeSttProvider
from voice_ai.stt_provider_deepgram import DeepgramRealtimeProvider, DeepgramSttConfig
from voice_ai.wav_stream import iter_wav_pcm_chunks, stream_pcm_to_queue_realtime

logger = getLogger(__name__)


async def transcribe_wav(
        provider: RealtimeSttProvider,
        wav_path: Path,
        *,
        chunk_ms: int = CHUNK_MS,
        realtime_factor: float = REALTIME_FACTOR,
        silence_s: float = FINAL_SILENCE_S,
) -> List[str]:
    """
    Feed ``wav_path`` to ``provider`` and return the utterances in order.

    The session closes once all audio (plus trailing silence) was sent; the
    provider flushes its final results before CLOSE.
    """
    audio_queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
    transcript_queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
    running = asyncio.Event()
    running.set()

    provider.on(STTEvents.ERROR, lambda err: logger.error("[STT] %s", err))

    session = asyncio.create_task(run_live_session(provider, audio_queue, transcript_queue, running))
    # stop feeding audio as soon as the session ends (e.g. failed to connect)
    session.add_done_callback(lambda _: running.clear())
    chunks = iter_wav_pcm_chunks(wav_path, chunk_ms=chunk_ms, expected_sample_rate=AUDIO_SAMPLE_RATE)
    try:
        await stream_pcm_to_queue_realtime(
            chunks,
            audio_queue,
            chunk_ms=chunk_ms,
            realtime_factor=realtime_factor,
            post_roll_silence_s=silence_s,
            running=running,
        )
        await session
    finally:
        running.clear()
        if not session.done():
            session.cancel()

    utterances: List[str] = []
    while True:
        text = await drain_transcript_queue(transcript_queue)
        if text is None:
            break
        if text:
            utterances.extend(text.split("\n"))
    return utterances


async def main(argv: List[str]) -> int:
    if len(argv) != 2:
        print(__doc__)
        return 2
    if not DEEPGRAM_API_KEY:
        logger.error("DEEPGRAM_API_KEY not set.")
        return 1

    provider = DeepgramRealtimeProvider(DeepgramSttConfig(api_key=DEEPGRAM_API_KEY))
    for text in await transcribe_wav(provider, Path(argv[1])):
        print(text)
    return 0


if __name__ == "__main__":
    from voice_ai.utils import setup_logging

    setup_logging()
    sys.exit(asyncio.run(main(sys.argv)))
