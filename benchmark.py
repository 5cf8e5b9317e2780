"""
TTS Provider Benchmark
======================

Runs every configured speech synthesis vendor in parallel on the same
sentences and writes a TSV latency summary.

Architecture
------------
1. **Provider registry** — a list of ``ProviderSpec`` built from environment
   variables. Vendors whose credentials are missing are skipped with a warning.

2. **Parallel execution** — each provider gets its own async task via
   asyncio.gather. Within a provider task, sentences are processed
   sequentially through ``generate_stream`` so time-to-first-chunk is
   meaningful. One provider failing does not affect the others.

3. **Result collation** — every (provider, sentence) pair produces a
   ``BenchmarkResult``; results are sorted and written as TSV into ``out/``:
   provider, sentence, first_chunk_ms, total_ms, chunks, bytes, error.

Audio itself is discarded; only sizes and timings are kept.

Usage
-----
    source .venv/bin/activate
    python benchmark.py
"""
from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from datetime import datetime
from logging import getLogger, INFO
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, List, Optional

from config import (
    DEEPGRAM_API_KEY,
    ELEVENLABS_API_KEY,
    ELEVENLABS_TTS_VOICE_ID,
    OUT_PATH,
    PLAYHT_API_KEY,
    PLAYHT_TTS_VOICE_ID,
    PLAYHT_USER_ID,
)
from voice_ai.tts_provider import SpeechRequest, StreamingTtsProvider
from voice_ai.tts_provider_deepgram import DeepgramTtsConfig, DeepgramTtsProvider
from voice_ai.tts_provider_elevenlabs import ElevenLabsTtsConfig, ElevenLabsTtsProvider
from voice_ai.tts_provider_playht import PlayHtTtsConfig, PlayHtTtsProvider

logger = getLogger(__name__)

SENTENCES = [
    "Hello, thanks for calling. How can I help you today?",
    "Your appointment is confirmed for Tuesday at three thirty in the afternoon.",
    "I'm sorry, I didn't catch that. Could you repeat the last part?",
]


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BenchmarkResult:
    provider_name: str
    sentence_index: int
    first_chunk_ms: Optional[float]  # None when the run failed or produced no audio
    total_ms: Optional[float]
    chunks: int
    bytes: int
    error: Optional[str]  # error message if failed


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderSpec:
    """Everything needed to instantiate and run one provider."""
    name: str
    factory: Callable[[], Any]


def build_provider_specs(
        deepgram_key: Optional[str] = DEEPGRAM_API_KEY,
        elevenlabs_key: Optional[str] = ELEVENLABS_API_KEY,
        playht_key: Optional[str] = PLAYHT_API_KEY,
        playht_user: Optional[str] = PLAYHT_USER_ID,
) -> list[ProviderSpec]:
    """Build list of providers that have valid credentials configured."""
    specs: list[ProviderSpec] = []

    if deepgram_key:
        specs.append(ProviderSpec("Deepgram", lambda: DeepgramTtsProvider(DeepgramTtsConfig(api_key=deepgram_key))))
    else:
        logger.warning("DEEPGRAM_API_KEY not set, skipping Deepgram.")

    if elevenlabs_key:
        specs.append(ProviderSpec("ElevenLabs", lambda: ElevenLabsTtsProvider(
            ElevenLabsTtsConfig(api_key=elevenlabs_key, voice_id=ELEVENLABS_TTS_VOICE_ID))))
    else:
        logger.warning("ELEVENLABS_API_KEY not set, skipping ElevenLabs.")

    if playht_key and playht_user and PLAYHT_TTS_VOICE_ID:
        specs.append(ProviderSpec("PlayHT", lambda: PlayHtTtsProvider(
            PlayHtTtsConfig(api_key=playht_key, user_id=playht_user, voice_id=PLAYHT_TTS_VOICE_ID))))
    else:
        logger.warning("PLAYHT_API_KEY / PLAYHT_USER_ID / PLAYHT_TTS_VOICE_ID not set, skipping PlayHT.")

    return specs


# ---------------------------------------------------------------------------
# Per-provider runner (processes all sentences sequentially)
# ---------------------------------------------------------------------------

async def measure_stream(provider: StreamingTtsProvider, request: SpeechRequest) -> tuple[Optional[float], float, int, int]:
    """Stream one request and return (first_chunk_ms, total_ms, chunks, bytes)."""
    start = perf_counter()
    first_chunk_ms = None
    chunks = 0
    total_bytes = 0
    stream = await provider.generate_stream(request)
    async with stream:
        async for chunk in stream:
            if first_chunk_ms is None:
                first_chunk_ms = (perf_counter() - start) * 1000.0
            chunks += 1
            total_bytes += len(chunk.audio_data)
    return first_chunk_ms, (perf_counter() - start) * 1000.0, chunks, total_bytes


async def run_provider(spec: ProviderSpec, sentences: List[str]) -> list[BenchmarkResult]:
    """Run one provider against all sentences. Returns one result per sentence."""
    results: list[BenchmarkResult] = []
    try:
        provider = spec.factory()
    except Exception as exc:
        logger.error("[%s] construction FAILED: %s", spec.name, exc)
        return [BenchmarkResult(spec.name, i, None, None, 0, 0, str(exc)) for i in range(len(sentences))]

    for i, text in enumerate(sentences):
        logger.info("[%s] Sentence %d ...", spec.name, i)
        try:
            first_ms, total_ms, chunks, n_bytes = await measure_stream(provider, SpeechRequest(text=text, response_index=i))
            logger.info("[%s] #%d: first chunk %.0f ms, total %.0f ms, %d chunks", spec.name, i,
                        first_ms or -1, total_ms, chunks)
            results.append(BenchmarkResult(spec.name, i, first_ms, total_ms, chunks, n_bytes, None))
        except Exception as exc:
            logger.error("[%s] #%d: FAILED: %s", spec.name, i, exc)
            results.append(BenchmarkResult(spec.name, i, None, None, 0, 0, str(exc)))

    return results


# ---------------------------------------------------------------------------
# TSV report writer
# ---------------------------------------------------------------------------

def _fmt_ms(value: Optional[float]) -> str:
    return "" if value is None else f"{value:.1f}"


def write_tsv(results: list[BenchmarkResult], ts: str, out_path: Path = OUT_PATH) -> Path:
    """Write benchmark results to TSV, sorted by provider then sentence."""
    results_sorted = sorted(results, key=lambda r: (r.provider_name, r.sentence_index))

    header = ["provider", "sentence", "first_chunk_ms", "total_ms", "chunks", "bytes", "error"]
    rows = ["\t".join(header)]
    for r in results_sorted:
        rows.append("\t".join([
            r.provider_name,
            str(r.sentence_index),
            _fmt_ms(r.first_chunk_ms),
            _fmt_ms(r.total_ms),
            str(r.chunks),
            str(r.bytes),
            r.error or "",
        ]))

    out_path.mkdir(parents=True, exist_ok=True)
    tsv_path = out_path / f"{ts}_tts_benchmark.tsv"
    tsv_path.write_text("\n".join(rows) + "\n", encoding="utf-8")
    return tsv_path


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

async def main() -> None:
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")

    specs = build_provider_specs()
    if not specs:
        logger.error("No providers configured. Set API keys in .env and retry.")
        sys.exit(1)

    logger.info("Benchmark starting: %d provider(s), %d sentence(s).", len(specs), len(SENTENCES))

    # Run all providers in parallel
    nested = await asyncio.gather(*(run_provider(spec, SENTENCES) for spec in specs))
    all_results: List[BenchmarkResult] = [r for provider_results in nested for r in provider_results]

    tsv_path = write_tsv(all_results, ts)
    logger.info("Benchmark complete. TSV report: %s", tsv_path)

    width = 64
    print(f"\n{'=' * width}")
    print(f"TTS BENCHMARK RESULTS — {ts}")
    print(f"{'=' * width}")
    print(f"{'Provider':<14} {'#':>2} {'First ms':>9} {'Total ms':>9} {'Chunks':>7} {'Bytes':>9}")
    print(f"{'-' * width}")
    for r in sorted(all_results, key=lambda x: (x.provider_name, x.sentence_index)):
        if r.error is None:
            print(f"{r.provider_name:<14} {r.sentence_index:>2} {_fmt_ms(r.first_chunk_ms):>9} "
                  f"{_fmt_ms(r.total_ms):>9} {r.chunks:>7} {r.bytes:>9}")
        else:
            print(f"{r.provider_name:<14} {r.sentence_index:>2} {'FAILED':>9}  {r.error}")
    print(f"{'=' * width}")
    print(f"TSV: {tsv_path}")


if __name__ == "__main__":
    from voice_ai.utils import setup_logging

    setup_logging(INFO)
    asyncio.run(main())
