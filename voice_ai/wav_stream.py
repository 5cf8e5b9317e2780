"""
WAV file input for live transcription.

Reads headerless PCM frames out of a WAV container and feeds them to an audio
queue at (roughly) the speed a microphone would, so vendor endpointing sees
realistic timing. No decoding or resampling: the file must already match the
session's audio settings.
"""
from __future__ import annotations

import asyncio
import wave
from dataclasses import dataclass
from logging import getLogger
from pathlib import Path
from typing import Iterator, List, Optional

from config import AUDIO_SAMPLE_RATE

logger = getLogger(__name__)


def make_silence_chunk(sample_rate: int, duration_s: float = 0.1, sample_width_bytes: int = 2) -> bytes:
    """Digital silence (zero samples) of the given duration, mono."""
    return b"\x00" * sample_width_bytes * int(sample_rate * duration_s)


@dataclass(frozen=True)
class WavFormat:
    channels: int
    sample_width_bytes: int
    sample_rate: int
    n_frames: int
    comptype: str
    compname: str

    @property
    def duration_s(self) -> float:
        return self.n_frames / float(self.sample_rate) if self.sample_rate else 0.0


def inspect_wav(path: Path) -> WavFormat:
    with wave.open(str(path.resolve()), "rb") as wf:
        return WavFormat(
            channels=wf.getnchannels(),
            sample_width_bytes=wf.getsampwidth(),
            sample_rate=wf.getframerate(),
            n_frames=wf.getnframes(),
            comptype=wf.getcomptype(),
            compname=wf.getcompname(),
        )


def _format_mismatches(fmt: WavFormat, sample_rate: int, channels: int, sample_width_bytes: int) -> List[str]:
    problems = []
    if fmt.comptype != "NONE":
        problems.append(f"compressed WAV not supported (comptype={fmt.comptype} {fmt.compname})")
    if fmt.sample_rate != sample_rate:
        problems.append(f"sample_rate={fmt.sample_rate} expected={sample_rate}")
    if fmt.channels != channels:
        problems.append(f"channels={fmt.channels} expected={channels}")
    if fmt.sample_width_bytes != sample_width_bytes:
        problems.append(f"sample_width_bytes={fmt.sample_width_bytes} expected={sample_width_bytes}")
    return problems


def iter_wav_pcm_chunks(
        path: Path,
        *,
        chunk_ms: int,
        expected_sample_rate: int,
        expected_channels: int = 1,
        expected_sample_width_bytes: int = 2,
) -> Iterator[bytes]:
    """
    Yield raw PCM frames from a WAV file, ``chunk_ms`` of audio per chunk
    (the last one may be shorter).

    Raises:
        ValueError: the file is not uncompressed PCM in the expected format,
            or ``chunk_ms`` is smaller than one frame.
    """
    fmt = inspect_wav(path)
    problems = _format_mismatches(fmt, expected_sample_rate, expected_channels, expected_sample_width_bytes)
    if problems:
        raise ValueError(f"{path.name}: " + "; ".join(problems))

    frames_per_chunk = int(expected_sample_rate * chunk_ms / 1000)
    if frames_per_chunk <= 0:
        raise ValueError(f"chunk_ms={chunk_ms} is shorter than one frame")

    logger.debug("[WAV] %s: %.2fs, %d frames per chunk", path.name, fmt.duration_s, frames_per_chunk)
    with wave.open(str(path), "rb") as wf:
        while data := wf.readframes(frames_per_chunk):
            yield data


async def stream_pcm_to_queue_realtime(
        pcm_chunks: Iterator[bytes],
        audio_queue: asyncio.Queue,
        *,
        chunk_ms: int,
        realtime_factor: float = 1.0,
        post_roll_silence_s: float = 2.0,
        sample_rate: int = AUDIO_SAMPLE_RATE,
        running: Optional[asyncio.Event] = None,
) -> int:
    """
    Queue ``pcm_chunks`` paced like a live source, then ``post_roll_silence_s``
    of silence (lets endpointing close the last utterance), then None.

    Pacing is against a fixed schedule, so slow consumers do not accumulate
    drift. ``realtime_factor`` scales it: 1.0 realtime, 0.5 twice as fast,
    0.0 no sleeping at all. Stops early (still sending None) when ``running``
    is cleared.

    Returns:
        Number of audio chunks queued, silence excluded.
    """
    loop = asyncio.get_running_loop()
    step_s = chunk_ms / 1000.0 * realtime_factor
    deadline = loop.time()

    def keep_going() -> bool:
        return running is None or running.is_set()

    async def put_paced(chunk: bytes) -> None:
        nonlocal deadline
        await audio_queue.put(chunk)
        deadline += step_s
        await asyncio.sleep(max(0.0, deadline - loop.time()))

    sent = 0
    for chunk in pcm_chunks:
        if not keep_going():
            break
        await put_paced(chunk)
        sent += 1
        if sent % 50 == 0:
            logger.debug("[WAV] queued chunk %d", sent)

    silence = make_silence_chunk(sample_rate, chunk_ms / 1000.0)
    for _ in range(round(post_roll_silence_s * 1000 / chunk_ms)):
        if not keep_going():
            break
        await put_paced(silence)

    # end of input; the pump closes the session on this
    await audio_queue.put(None)
    return sent
