"""Configuration dataclass for the recorder and transcription pipeline."""

from dataclasses import dataclass
from config import (
    OPENAI_API_KEY,
    TRANSCRIPTION_URL,
    SUMMARY_URL,
    TRANSCRIPTION_MODEL,
    SUMMARY_MODEL,
    LANGUAGE,
    API_MAX_ATTEMPTS,
    API_BASE_DELAY_MS,
    AUTO_TRANSCRIBE,
    AUTO_SUMMARIZE,
    AUTO_SAVE,
    SAMPLE_RATE,
    CHANNELS,
    BLOCK_DURATION_MS,
    CHUNK_INTERVAL_S,
    MIN_RECORDING_S,
    MIC_GAIN,
    COUNTERPART_GAIN,
    ECHO_CANCELLATION,
    WINDOW_POLL_INTERVAL,
)

ECHO_MODES = ("auto", "on", "off")


@dataclass
class RecorderConfig:
    """Settings shared by the recorder, mixer and pipeline."""
    api_key: str = OPENAI_API_KEY
    transcription_url: str = TRANSCRIPTION_URL
    summary_url: str = SUMMARY_URL
    transcription_model: str = TRANSCRIPTION_MODEL
    summary_model: str = SUMMARY_MODEL
    language: str = LANGUAGE
    max_attempts: int = API_MAX_ATTEMPTS
    base_delay_ms: int = API_BASE_DELAY_MS
    auto_transcribe: bool = AUTO_TRANSCRIBE
    auto_summarize: bool = AUTO_SUMMARIZE
    auto_save: bool = AUTO_SAVE
    sample_rate: int = SAMPLE_RATE
    channels: int = CHANNELS
    block_duration_ms: int = BLOCK_DURATION_MS
    chunk_interval_s: float = CHUNK_INTERVAL_S
    min_recording_s: float = MIN_RECORDING_S
    mic_gain: float = MIC_GAIN
    counterpart_gain: float = COUNTERPART_GAIN
    echo_cancellation: str = ECHO_CANCELLATION
    poll_interval: float = WINDOW_POLL_INTERVAL

    def validate(self):
        """Raise ValueError for settings the recorder cannot run with."""
        if self.chunk_interval_s <= 0:
            raise ValueError("chunk_interval_s must be positive")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.sample_rate <= 0 or self.block_duration_ms <= 0:
            raise ValueError("sample_rate and block_duration_ms must be positive")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        for name in ("mic_gain", "counterpart_gain"):
            value = getattr(self, name)
            if not 0.0 <= value <= 4.0:
                raise ValueError(f"{name} must be between 0 and 4, got {value}")
        if self.echo_cancellation not in ECHO_MODES:
            raise ValueError(f"echo_cancellation must be one of {ECHO_MODES}")

    def mic_echo_cancellation(self, separate: bool) -> bool:
        """Whether to request echo cancellation for the microphone.

        In separate mode the counterpart is recorded on its own track, so the
        raw microphone is preferred unless explicitly overridden.
        """
        if self.echo_cancellation == "on":
            return True
        if self.echo_cancellation == "off":
            return False
        return not separate

    @property
    def block_frames(self) -> int:
        return max(1, int(self.sample_rate * self.block_duration_ms / 1000))

    @property
    def transcription_enabled(self) -> bool:
        return bool(self.api_key)
