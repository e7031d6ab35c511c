"""Finalized audio artifacts handed from the recorder to the pipeline."""

import io
import wave
from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    COMBINED = "combined"
    MICROPHONE = "microphone"
    COUNTERPART = "counterpart"


@dataclass(frozen=True)
class AudioArtifact:
    """An immutable block of recorded audio ready for transcription."""
    data: bytes
    mime_kind: str
    duration_ms: int
    role: Role

    @property
    def filename(self) -> str:
        ext = "wav" if self.mime_kind == "audio/wav" else "webm"
        return f"{self.role.value}.{ext}"

    @property
    def size(self) -> int:
        return len(self.data)


def encode_wav(chunks: list[bytes], sample_rate: int, channels: int = 1) -> bytes:
    """Wrap raw PCM16 chunks in a WAV container."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        for chunk in chunks:
            wf.writeframes(chunk)
    return buf.getvalue()


def pcm_duration_ms(num_bytes: int, sample_rate: int, channels: int = 1) -> int:
    """Duration of raw PCM16 audio in milliseconds."""
    frames = num_bytes // (2 * channels)
    return int(frames * 1000 / sample_rate)


def build_artifact(chunks: list[bytes], role: Role, sample_rate: int, channels: int = 1) -> AudioArtifact:
    pcm_bytes = sum(len(c) for c in chunks)
    return AudioArtifact(
        data=encode_wav(chunks, sample_rate, channels),
        mime_kind="audio/wav",
        duration_ms=pcm_duration_ms(pcm_bytes, sample_rate, channels),
        role=role,
    )
