from __future__ import annotations

from dataclasses import dataclass, field
from logging import getLogger
from typing import Any, Dict, Optional, Tuple

import httpx

from config import (
    ELEVENLABS_TTS_MODEL,
    ELEVENLABS_TTS_SIMILARITY_BOOST,
    ELEVENLABS_TTS_STABILITY,
    ELEVENLABS_TTS_URL,
    HTTP_TIMEOUT_S,
)
from voice_ai.emitter import EventEmitter
from voice_ai.errors import ConfigurationError, UpstreamError
from voice_ai.tts import (
    SpeechStream,
    SynthesizedAudio,
    open_speech_stream,
    pcm_duration_s,
    read_error_detail,
    run_generate,
)
from voice_ai.tts_provider import SpeechRequest, SpeechResult

logger = getLogger(__name__)

PROVIDER = "ElevenLabs"

MAX_SEED = 4294967295
MAX_PRONUNCIATION_DICTIONARIES = 3
TEXT_NORMALIZATION_MODES = frozenset({"auto", "on", "off"})

# (encoding, sample_rate, bit_rate) -> output_format. bit_rate only matters for mp3.
# https://elevenlabs.io/docs/api-reference/text-to-speech/convert#request.query.output_format
ELEVENLABS_OUTPUT_FORMATS: Dict[Tuple[str, int, Optional[int]], str] = {
    ("mp3", 22050, 32): "mp3_22050_32",
    ("mp3", 44100, 32): "mp3_44100_32",
    ("mp3", 44100, 64): "mp3_44100_64",
    ("mp3", 44100, 96): "mp3_44100_96",
    ("mp3", 44100, 128): "mp3_44100_128",
    ("mp3", 44100, 192): "mp3_44100_192",
    ("pcm", 16000, None): "pcm_16000",
    ("pcm", 22050, None): "pcm_22050",
    ("pcm", 24000, None): "pcm_24000",
    ("pcm", 44100, None): "pcm_44100",
    ("ulaw", 8000, None): "ulaw_8000",
}

ELEVENLABS_MIME_TYPES = {"mp3": "audio/mpeg", "pcm": "audio/pcm", "ulaw": "audio/basic"}


@dataclass(frozen=True)
class PronunciationDictionary:
    id: str
    version_id: Optional[str] = None


@dataclass(frozen=True)
class ElevenLabsTtsConfig:
    """
    Configuration for ElevenLabs text-to-speech.

    Voice tunables are validated against the documented ranges when the
    provider is constructed.
    """
    api_key: str
    voice_id: str
    base_url: str = ELEVENLABS_TTS_URL
    model_id: str = ELEVENLABS_TTS_MODEL

    # voice settings
    stability: float = ELEVENLABS_TTS_STABILITY                # 0..1
    similarity_boost: float = ELEVENLABS_TTS_SIMILARITY_BOOST  # 0..1
    speed: Optional[float] = None                              # 0.7..1.2, vendor default when None

    # output
    encoding: str = "mp3"       # mp3 | pcm | ulaw
    sample_rate: int = 44100
    bit_rate: int = 128         # mp3 only

    language_code: Optional[str] = None  # ISO 639-1
    text_normalization: str = "auto"
    streaming_latency: int = 0   # 0..4, stream endpoint only
    seed: Optional[int] = None
    enable_logging: bool = True
    pronunciation_dictionaries: Tuple[PronunciationDictionary, ...] = field(default_factory=tuple)

    timeout_s: float = HTTP_TIMEOUT_S


def determine_output_format(encoding: str, sample_rate: int, bit_rate: int) -> str:
    """Map encoding / sample rate / bit rate to an ElevenLabs output_format, or raise ConfigurationError."""
    key = (encoding, sample_rate, bit_rate if encoding == "mp3" else None)
    try:
        return ELEVENLABS_OUTPUT_FORMATS[key]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported ElevenLabs output: encoding={encoding} sample_rate={sample_rate}"
            + (f" bit_rate={bit_rate}" if encoding == "mp3" else "")
        ) from None


class ElevenLabsTtsProvider(EventEmitter):
    """
    ElevenLabs text-to-speech over HTTP.

    Endpoints:
      - POST {base_url}/text-to-speech/{voice_id}         whole file
      - POST {base_url}/text-to-speech/{voice_id}/stream  chunked body
    """

    supports_streaming = True

    def __init__(self, cfg: ElevenLabsTtsConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__()
        if not cfg.api_key:
            raise ConfigurationError("ElevenLabs API key is required")
        if not cfg.voice_id:
            raise ConfigurationError("Voice ID is required")
        if not 0.0 <= cfg.stability <= 1.0:
            raise ConfigurationError(f"Stability must be between 0 and 1, got {cfg.stability}")
        if not 0.0 <= cfg.similarity_boost <= 1.0:
            raise ConfigurationError(f"Similarity boost must be between 0 and 1, got {cfg.similarity_boost}")
        if cfg.speed is not None and not 0.7 <= cfg.speed <= 1.2:
            raise ConfigurationError(f"Speed must be between 0.7 and 1.2, got {cfg.speed}")
        if cfg.seed is not None and not 0 <= cfg.seed <= MAX_SEED:
            raise ConfigurationError(f"Seed must be between 0 and {MAX_SEED}")
        if len(cfg.pronunciation_dictionaries) > MAX_PRONUNCIATION_DICTIONARIES:
            raise ConfigurationError(f"Maximum of {MAX_PRONUNCIATION_DICTIONARIES} pronunciation dictionaries allowed")
        if cfg.text_normalization not in TEXT_NORMALIZATION_MODES:
            raise ConfigurationError(f"Text normalization must be one of {sorted(TEXT_NORMALIZATION_MODES)}")
        if cfg.streaming_latency not in range(0, 5):
            raise ConfigurationError(f"Streaming latency must be between 0 and 4, got {cfg.streaming_latency}")

        self._cfg = cfg
        self._transport = transport
        self._output_format = determine_output_format(cfg.encoding, cfg.sample_rate, cfg.bit_rate)
        self._format = ELEVENLABS_MIME_TYPES[cfg.encoding]

    @property
    def output_format(self) -> str:
        return self._output_format

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._cfg.timeout_s, transport=self._transport)

    def _payload(self, text: str) -> Dict[str, Any]:
        voice_settings: Dict[str, Any] = {
            "stability": self._cfg.stability,
            "similarity_boost": self._cfg.similarity_boost,
        }
        if self._cfg.speed is not None:
            voice_settings["speed"] = self._cfg.speed

        payload: Dict[str, Any] = {
            "text": text,
            "model_id": self._cfg.model_id,
            "voice_settings": voice_settings,
        }
        if self._cfg.language_code:
            payload["language_code"] = self._cfg.language_code
        if self._cfg.pronunciation_dictionaries:
            payload["pronunciation_dictionary_locators"] = [
                {"pronunciation_dictionary_id": d.id, **({"version_id": d.version_id} if d.version_id else {})}
                for d in self._cfg.pronunciation_dictionaries
            ]
        if self._cfg.seed is not None:
            payload["seed"] = self._cfg.seed
        if self._cfg.text_normalization != "auto":
            payload["apply_text_normalization"] = self._cfg.text_normalization
        return payload

    def _params(self, *, stream: bool) -> Dict[str, str]:
        params = {"output_format": self._output_format}
        if stream and self._cfg.streaming_latency > 0:
            params["optimize_streaming_latency"] = str(self._cfg.streaming_latency)
        if not self._cfg.enable_logging:
            params["enable_logging"] = "false"
        return params

    def _build_request(self, client: httpx.AsyncClient, text: str, *, stream: bool) -> httpx.Request:
        url = f"{self._cfg.base_url.rstrip('/')}/text-to-speech/{self._cfg.voice_id}"
        if stream:
            url += "/stream"
        return client.build_request(
            "POST",
            url,
            params=self._params(stream=stream),
            headers={"xi-api-key": self._cfg.api_key, "Content-Type": "application/json"},
            json=self._payload(text),
        )

    def _duration(self, n_bytes: int) -> Optional[float]:
        if self._cfg.encoding == "pcm":
            return pcm_duration_s(n_bytes, self._cfg.sample_rate, sample_width_bytes=2)
        if self._cfg.encoding == "ulaw":
            return pcm_duration_s(n_bytes, self._cfg.sample_rate, sample_width_bytes=1)
        return None

    async def generate(self, request: SpeechRequest) -> SpeechResult:
        async def _synthesize() -> SynthesizedAudio:
            async with self._client() as client:
                response = await client.send(self._build_request(client, request.text, stream=False))
                if response.is_error:
                    detail = await read_error_detail(response)
                    logger.error("[TTS] ElevenLabs: API error %s: %s", response.status_code, detail)
                    raise UpstreamError(PROVIDER, "speech request failed", status_code=response.status_code,
                                        detail=detail)
                audio = response.content
            return SynthesizedAudio(audio_data=audio, format=self._format, duration=self._duration(len(audio)))

        return await run_generate(self, PROVIDER, request, _synthesize)

    async def generate_stream(self, request: SpeechRequest) -> SpeechStream:
        return await open_speech_stream(
            self,
            PROVIDER,
            request,
            client_factory=self._client,
            build_request=lambda client: self._build_request(client, request.text, stream=True),
            format=self._format,
        )
