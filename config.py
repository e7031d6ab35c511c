"""Configuration for meeting-recorder."""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


# API Keys (empty = transcription/summary disabled)
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")

# Endpoints
TRANSCRIPTION_URL = os.getenv("TRANSCRIPTION_URL", "https://api.openai.com/v1/audio/transcriptions")
SUMMARY_URL = os.getenv("SUMMARY_URL", "https://api.openai.com/v1/chat/completions")
TRANSCRIPTION_MODEL = os.getenv("TRANSCRIPTION_MODEL", "whisper-1")
SUMMARY_MODEL = os.getenv("SUMMARY_MODEL", "gpt-4")
LANGUAGE = os.getenv("LANGUAGE", "auto")
API_MAX_ATTEMPTS = int(os.getenv("API_MAX_ATTEMPTS", "3"))
API_BASE_DELAY_MS = int(os.getenv("API_BASE_DELAY_MS", "1000"))
API_TIMEOUT = float(os.getenv("API_TIMEOUT", "120"))

# Pipeline toggles
AUTO_TRANSCRIBE = _flag("AUTO_TRANSCRIBE", "true")
AUTO_SUMMARIZE = _flag("AUTO_SUMMARIZE", "true")
AUTO_SAVE = _flag("AUTO_SAVE", "false")

# Paths
DATA_DIR = Path(os.getenv("DATA_DIR", "~/meeting-recorder")).expanduser()
HISTORY_PATH = Path(os.getenv("HISTORY_PATH", str(DATA_DIR / "history.json"))).expanduser()
EXPORT_DIR = Path(os.getenv("EXPORT_DIR", str(DATA_DIR / "exports"))).expanduser()
HISTORY_LIMIT = 50

# Audio capture
SAMPLE_RATE = 44100
CHANNELS = 1
DTYPE = "int16"
BLOCK_DURATION_MS = 100  # Deliver audio to the loop every 100ms
CHUNK_INTERVAL_S = float(os.getenv("CHUNK_INTERVAL_S", "5"))
MIN_RECORDING_S = float(os.getenv("MIN_RECORDING_S", "3"))
MIC_GAIN = float(os.getenv("MIC_GAIN", "0.7"))
COUNTERPART_GAIN = float(os.getenv("COUNTERPART_GAIN", "1.0"))

# auto = echo-cancelled mic for single mode, raw mic for separate mode
ECHO_CANCELLATION = os.getenv("ECHO_CANCELLATION", "auto").lower()

# Shared window watch
WINDOW_POLL_INTERVAL = float(os.getenv("WINDOW_POLL_INTERVAL", "1.5"))

# System audio sidecar (ffmpeg)
FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
SYSTEM_AUDIO_INPUT = os.getenv("SYSTEM_AUDIO_INPUT", "")

# Control server
HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8910"))
