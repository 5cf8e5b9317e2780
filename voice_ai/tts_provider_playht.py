from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from typing import Any, Dict, Optional, Tuple

import httpx

from config import (
    HTTP_TIMEOUT_S,
    PLAYHT_POLL_INTERVAL_S,
    PLAYHT_POLL_MAX_ATTEMPTS,
    PLAYHT_TTS_MODEL,
    PLAYHT_TTS_URL,
)
from voice_ai.emitter import EventEmitter
from voice_ai.errors import ConfigurationError, UpstreamError
from voice_ai.tts import (
    SpeechStream,
    SynthesizedAudio,
    open_speech_stream,
    poll_until_complete,
    read_error_detail,
    run_generate,
)
from voice_ai.tts_provider import SpeechRequest, SpeechResult

logger = getLogger(__name__)

PROVIDER = "PlayHT"

PLAYHT_QUALITIES = frozenset({"draft", "low", "medium", "high", "premium"})

PLAYHT_MIME_TYPES = {
    "mp3": "audio/mpeg",
    "mulaw": "audio/basic",
    "raw": "audio/pcm",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "flac": "audio/flac",
}


@dataclass(frozen=True)
class PlayHtTtsConfig:
    """
    Configuration for PlayHT text-to-speech.

    Whole-file synthesis is asynchronous on PlayHT's side: a job is submitted,
    its status polled every ``poll_interval_s`` for at most ``poll_max_attempts``
    checks, then the finished file is downloaded.
    """
    api_key: str
    user_id: str
    voice_id: str
    base_url: str = PLAYHT_TTS_URL
    model: str = PLAYHT_TTS_MODEL
    quality: str = "premium"
    speed: float = 1.0           # 0.1 .. 5.0
    encoding: str = "mp3"
    sample_rate: int = 24000
    text_guidance: float = 1.0
    language: str = "english"

    poll_max_attempts: int = PLAYHT_POLL_MAX_ATTEMPTS
    poll_interval_s: float = PLAYHT_POLL_INTERVAL_S
    timeout_s: float = HTTP_TIMEOUT_S


class PlayHtTtsProvider(EventEmitter):
    """
    PlayHT text-to-speech over HTTP.

    Endpoints:
      - POST {base_url}/tts          submit job -> {"id": ...}
      - GET  {base_url}/tts/{id}     job status -> {"status": ..., "url": ...}
      - GET  url                     download finished audio
      - POST {base_url}/tts/stream   chunked body
    """

    supports_streaming = True

    def __init__(self, cfg: PlayHtTtsConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__()
        if not cfg.api_key or not cfg.user_id:
            raise ConfigurationError("PlayHT API key and User ID are required")
        if not cfg.voice_id:
            raise ConfigurationError("Voice ID is required")
        if not 0.1 <= cfg.speed <= 5.0:
            raise ConfigurationError(f"Speed must be between 0.1 and 5.0, got {cfg.speed}")
        if cfg.quality not in PLAYHT_QUALITIES:
            raise ConfigurationError(f"Quality must be one of {sorted(PLAYHT_QUALITIES)}, got {cfg.quality!r}")
        if cfg.encoding not in PLAYHT_MIME_TYPES:
            raise ConfigurationError(f"Unsupported PlayHT encoding: {cfg.encoding}")
        if cfg.sample_rate <= 0:
            raise ConfigurationError(f"Sample rate must be positive, got {cfg.sample_rate}")
        if cfg.poll_max_attempts < 1:
            raise ConfigurationError("poll_max_attempts must be at least 1")
        if cfg.poll_interval_s < 0:
            raise ConfigurationError("poll_interval_s must not be negative")

        self._cfg = cfg
        self._transport = transport
        self._format = PLAYHT_MIME_TYPES[cfg.encoding]

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._cfg.timeout_s, transport=self._transport)

    def _headers(self) -> Dict[str, str]:
        return {"AUTHORIZATION": self._cfg.api_key, "X-USER-ID": self._cfg.user_id}

    def _payload(self, text: str) -> Dict[str, Any]:
        return {
            "model": self._cfg.model,
            "text": text,
            "voice": self._cfg.voice_id,
            "quality": self._cfg.quality,
            "speed": self._cfg.speed,
            "outputFormat": self._cfg.encoding,
            "sampleRate": self._cfg.sample_rate,
            "textGuidance": self._cfg.text_guidance,
            "language": self._cfg.language,
        }

    async def _submit(self, client: httpx.AsyncClient, text: str) -> str:
        response = await client.post(f"{self._cfg.base_url}/tts", headers=self._headers(), json=self._payload(text))
        if response.is_error:
            detail = await read_error_detail(response)
            logger.error("[TTS] PlayHT: submit failed %s: %s", response.status_code, detail)
            raise UpstreamError(PROVIDER, "conversion request failed", status_code=response.status_code,
                                detail=detail)
        job_id = response.json().get("id")
        if not job_id:
            raise UpstreamError(PROVIDER, "conversion response has no job id")
        logger.debug("[TTS] PlayHT: submitted job %s", job_id)
        return job_id

    async def _status(self, client: httpx.AsyncClient, job_id: str) -> Tuple[str, Optional[str]]:
        response = await client.get(f"{self._cfg.base_url}/tts/{job_id}", headers=self._headers())
        if response.is_error:
            detail = await read_error_detail(response)
            raise UpstreamError(PROVIDER, "failed to check job status", status_code=response.status_code,
                                detail=detail)
        data = response.json()
        return str(data.get("status", "")), data.get("url")

    async def _download(self, client: httpx.AsyncClient, url: str) -> bytes:
        response = await client.get(url)
        if response.is_error:
            raise UpstreamError(PROVIDER, "failed to download audio file", status_code=response.status_code)
        return response.content

    async def generate(self, request: SpeechRequest) -> SpeechResult:
        async def _synthesize() -> SynthesizedAudio:
            async with self._client() as client:
                job_id = await self._submit(client, request.text)
                url = await poll_until_complete(
                    PROVIDER,
                    lambda: self._status(client, job_id),
                    max_attempts=self._cfg.poll_max_attempts,
                    interval_s=self._cfg.poll_interval_s,
                )
                audio = await self._download(client, url)
            return SynthesizedAudio(audio_data=audio, format=self._format)

        return await run_generate(self, PROVIDER, request, _synthesize)

    async def generate_stream(self, request: SpeechRequest) -> SpeechStream:
        return await open_speech_stream(
            self,
            PROVIDER,
            request,
            client_factory=self._client,
            build_request=lambda client: client.build_request(
                "POST",
                f"{self._cfg.base_url}/tts/stream",
                headers=self._headers(),
                json=self._payload(request.text),
            ),
            format=self._format,
        )
