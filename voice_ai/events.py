"""
Event Taxonomy — the fixed set of events every provider emits.

TTS providers emit ``TTSEvents``; live STT providers emit ``STTEvents``.
Subscribe with ``provider.on(event, listener)`` (see ``voice_ai.emitter``).

Listener signatures
-------------------
TTSEvents.SPEECH          (response_index: int, audio_b64: str, text: str, interaction_count: int | None)
TTSEvents.ERROR           (error: Exception)

STTEvents.OPEN            ()
STTEvents.TRANSCRIPTION   (result: TranscriptionResult)
STTEvents.UTTERANCE       (text: str)              interim text, when the adapter uses that surface form
STTEvents.UTTERANCE_END   (result: UtteranceEndResult)
STTEvents.SPEECH_STARTED  (result: SpeechStartedResult)
STTEvents.METADATA        (metadata: TranscriptionMetadata)
STTEvents.WARNING         (message: str)
STTEvents.ERROR           (error: Exception)
STTEvents.CLOSE           ()
"""

from enum import Enum


class TTSEvents(str, Enum):
    SPEECH = "speech"
    ERROR = "error"


class STTEvents(str, Enum):
    OPEN = "open"
    TRANSCRIPTION = "transcription"
    UTTERANCE = "utterance"
    UTTERANCE_END = "utterance_end"
    SPEECH_STARTED = "speech_started"
    METADATA = "metadata"
    WARNING = "warning"
    ERROR = "error"
    CLOSE = "close"
