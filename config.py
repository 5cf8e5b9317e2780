import os
from dotenv import load_dotenv
from pathlib import Path

load_dotenv()

# credentials
DEEPGRAM_API_KEY = os.getenv("DEEPGRAM_API_KEY")
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY")
PLAYHT_API_KEY = os.getenv("PLAYHT_API_KEY")
PLAYHT_USER_ID = os.getenv("PLAYHT_USER_ID")

# logging config
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEV").upper()

# file config
BASE_PATH = Path(__file__).parent
LOG_PATH = BASE_PATH / "log"
OUT_PATH = BASE_PATH / "out"

# HTTP (synthesis, job polling, chunked streams)
HTTP_TIMEOUT_S = float(os.getenv("HTTP_TIMEOUT_S", "30.0"))

# audio
AUDIO_SAMPLE_RATE = 16000
AUDIO_CHANNELS = 1
AUDIO_ENCODING = "linear16"
CHUNK_MS = int(os.getenv("CHUNK_MS", "100"))
REALTIME_FACTOR = float(os.getenv("REALTIME_FACTOR", "1.0"))  # 1.0 = realtime, 0.0 = as fast as possible
FINAL_SILENCE_S = 2.0

# Deepgram live transcription
# https://developers.deepgram.com/docs/live-streaming-audio
DEEPGRAM_STT_URL = "wss://api.deepgram.com/v1/listen"
DEEPGRAM_STT_MODEL = "nova-2"
DEEPGRAM_STT_LANGUAGE = "en"
# Endpointing: how long silence is needed before Deepgram marks speech_final.
DEEPGRAM_STT_ENDPOINTING_MS = 200
# UtteranceEnd is sent after this long gap between words (Deepgram minimum is 1000).
DEEPGRAM_STT_UTTERANCE_END_MS = 1000

# Deepgram speech synthesis (Aura)
DEEPGRAM_TTS_URL = "https://api.deepgram.com/v1/speak"
DEEPGRAM_TTS_MODEL = "aura-asteria-en"

# ElevenLabs speech synthesis
ELEVENLABS_TTS_URL = "https://api.elevenlabs.io/v1"
ELEVENLABS_TTS_VOICE_ID = os.getenv("ELEVENLABS_TTS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM")
ELEVENLABS_TTS_MODEL = "eleven_monolingual_v1"
# How similar are different renderings.
# Too low stability tends to lead to some strange artifacts in the voice.
ELEVENLABS_TTS_STABILITY = 0.5
ELEVENLABS_TTS_SIMILARITY_BOOST = 0.75

# PlayHT speech synthesis
PLAYHT_TTS_URL = "https://api.play.ai/api/v1"
PLAYHT_TTS_MODEL = "Play3.0-mini"
PLAYHT_TTS_VOICE_ID = os.getenv("PLAYHT_TTS_VOICE_ID", "")
# PlayHT whole-file synthesis is a job: submit, poll status, download.
PLAYHT_POLL_MAX_ATTEMPTS = 30
PLAYHT_POLL_INTERVAL_S = 1.0
