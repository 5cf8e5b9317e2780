from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from typing import Dict, FrozenSet, Optional

import httpx

from config import DEEPGRAM_TTS_MODEL, DEEPGRAM_TTS_URL, HTTP_TIMEOUT_S
from voice_ai.emitter import EventEmitter
from voice_ai.errors import ConfigurationError, UpstreamError
from voice_ai.tts import SpeechStream, SynthesizedAudio, open_speech_stream, read_error_detail, run_generate
from voice_ai.tts_provider import SpeechRequest, SpeechResult

logger = getLogger(__name__)

PROVIDER = "Deepgram"

# Allowed sample rates per encoding (None = vendor fixed, sample_rate must not be sent).
# https://developers.deepgram.com/docs/tts-media-output-settings
DEEPGRAM_TTS_SAMPLE_RATES: Dict[str, Optional[FrozenSet[int]]] = {
    "linear16": frozenset({8000, 16000, 24000, 32000, 48000}),
    "mulaw": frozenset({8000, 16000}),
    "alaw": frozenset({8000, 16000}),
    "flac": frozenset({8000, 16000, 22050, 32000, 48000}),
    "mp3": None,
    "opus": None,
    "aac": None,
}

DEEPGRAM_TTS_FORMATS = {
    "linear16": "audio/wav",
    "mulaw": "audio/basic",
    "alaw": "audio/x-alaw-basic",
    "flac": "audio/flac",
    "mp3": "audio/mpeg",
    "opus": "audio/ogg",
    "aac": "audio/aac",
}


@dataclass(frozen=True)
class DeepgramTtsConfig:
    """
    Configuration for Deepgram Aura speech synthesis.

    Whole-file synthesis and streaming use the same endpoint; Deepgram sends
    the body chunked as soon as audio is ready.
    """
    api_key: str
    base_url: str = DEEPGRAM_TTS_URL
    model: str = DEEPGRAM_TTS_MODEL
    encoding: str = "linear16"
    sample_rate: Optional[int] = 24000  # must be None for mp3 / opus / aac
    speed: float = 1.0                  # 0.5 .. 2.0
    timeout_s: float = HTTP_TIMEOUT_S


class DeepgramTtsProvider(EventEmitter):
    """
    Deepgram text-to-speech over HTTP.

    - generate(): one POST, the whole body is the audio.
    - generate_stream(): same POST, body read chunk by chunk.
    """

    supports_streaming = True

    def __init__(self, cfg: DeepgramTtsConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__()
        if not cfg.api_key:
            raise ConfigurationError("Deepgram API key is required")
        if not 0.5 <= cfg.speed <= 2.0:
            raise ConfigurationError(f"Speaking rate must be between 0.5 and 2.0, got {cfg.speed}")
        if cfg.encoding not in DEEPGRAM_TTS_SAMPLE_RATES:
            raise ConfigurationError(f"Unsupported Deepgram encoding: {cfg.encoding}")
        rates = DEEPGRAM_TTS_SAMPLE_RATES[cfg.encoding]
        if rates is None and cfg.sample_rate is not None:
            raise ConfigurationError(f"Deepgram encoding {cfg.encoding} has a fixed sample rate; leave sample_rate unset")
        if rates is not None and cfg.sample_rate not in rates:
            raise ConfigurationError(
                f"Deepgram encoding {cfg.encoding} does not support sample rate {cfg.sample_rate} "
                f"(allowed: {sorted(rates)})"
            )

        self._cfg = cfg
        self._transport = transport
        self._format = DEEPGRAM_TTS_FORMATS[cfg.encoding]

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._cfg.timeout_s, transport=self._transport)

    def _params(self) -> Dict[str, str]:
        params = {"model": self._cfg.model, "encoding": self._cfg.encoding}
        if self._cfg.sample_rate is not None:
            params["sample_rate"] = str(self._cfg.sample_rate)
        if self._cfg.speed != 1.0:
            params["speed"] = str(self._cfg.speed)
        return params

    def _build_request(self, client: httpx.AsyncClient, text: str) -> httpx.Request:
        return client.build_request(
            "POST",
            self._cfg.base_url,
            params=self._params(),
            headers={
                "Authorization": f"Token {self._cfg.api_key}",
                "Content-Type": "application/json",
            },
            json={"text": text},
        )

    async def generate(self, request: SpeechRequest) -> SpeechResult:
        async def _synthesize() -> SynthesizedAudio:
            async with self._client() as client:
                response = await client.send(self._build_request(client, request.text))
                if response.is_error:
                    detail = await read_error_detail(response)
                    raise UpstreamError(PROVIDER, "speech request failed", status_code=response.status_code,
                                        detail=detail)
                audio = response.content
            return SynthesizedAudio(audio_data=audio, format=self._format)

        return await run_generate(self, PROVIDER, request, _synthesize)

    async def generate_stream(self, request: SpeechRequest) -> SpeechStream:
        return await open_speech_stream(
            self,
            PROVIDER,
            request,
            client_factory=self._client,
            build_request=lambda client: self._build_request(client, request.text),
            format=self._format,
        )
