"""Post-recording pipeline: sidecar read-back, transcription, summary, history, save."""

import asyncio
import inspect
from pathlib import Path

from artifacts import AudioArtifact, Role
from errors import ApiError
from file_writer import MarkdownExporter
from history import HistoryEntry, HistoryStore
from recorder import RecordingResult
from recorder_config import RecorderConfig
from transcriber import TranscriptionService

MIC_LABEL = "[Microphone]"
COUNTERPART_LABEL = "[Counterpart]"


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


def combine_transcripts(mic: str | None, counterpart: str | None) -> str:
    """Labeled sections, microphone first."""
    parts = []
    if mic:
        parts.append(f"{MIC_LABEL}\n{mic}")
    if counterpart:
        parts.append(f"{COUNTERPART_LABEL}\n{counterpart}")
    return "\n\n".join(parts)


class TranscriptionPipeline:
    """Turns a RecordingResult into a HistoryEntry.

    Args:
        saver: optional external store with save(entry) (may be async).
        exporter: Markdown fallback used when the external save fails or
            when auto-save is on without a saver.
    """

    def __init__(self, service: TranscriptionService, history: HistoryStore,
                 saver=None, exporter: MarkdownExporter | None = None,
                 config: RecorderConfig | None = None):
        self.service = service
        self.history = history
        self.saver = saver
        self.exporter = exporter
        self.config = config or service.config

    async def aclose(self):
        """Close the HTTP connection pool behind the transcription service."""
        await self.service.aclose()

    async def process(self, result: RecordingResult) -> HistoryEntry:
        artifacts = dict(result.artifacts)
        if result.sidecar_path is not None:
            sidecar = await self._read_sidecar(result.sidecar_path, result.sidecar_role, result.duration_ms)
            if sidecar is not None:
                artifacts[sidecar.role] = sidecar

        entry = HistoryEntry(id=result.id, date=result.date, duration_ms=result.duration_ms,
                             is_separate_recording=result.is_separate)
        if self.config.auto_transcribe and self.service.enabled:
            mic, counterpart = _split(artifacts)
            if result.is_separate or (mic is not None and counterpart is not None):
                await self._transcribe_sides(entry, mic, counterpart)
            else:
                single = mic or counterpart or artifacts.get(Role.COMBINED)
                if single is not None:
                    await self._transcribe_single(entry, single)
        elif self.config.auto_transcribe:
            print("  [pipeline] No API key configured; skipping transcription")

        self.history.append(entry)
        print(f"  [pipeline] Saved recording {entry.id} to history")
        if self.config.auto_save:
            await self._save(entry)
        return entry

    async def _read_sidecar(self, path: Path, role: Role | None, duration_ms: int) -> AudioArtifact | None:
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            print(f"  [pipeline] Could not read system audio {path}: {e}")
            return None
        path.unlink(missing_ok=True)
        print(f"  [pipeline] Read {len(data)} bytes of system audio")
        if not data:
            return None
        return AudioArtifact(data=data, mime_kind="audio/wav", duration_ms=duration_ms,
                             role=role or Role.COUNTERPART)

    async def _transcribe_single(self, entry: HistoryEntry, artifact: AudioArtifact):
        try:
            entry.transcription = await self.service.transcribe(artifact)
        except ApiError as e:
            print(f"  [pipeline] Transcription failed: {e}")
            return
        await self._summarize(entry)

    async def _transcribe_sides(self, entry: HistoryEntry, mic: AudioArtifact | None,
                                counterpart: AudioArtifact | None):
        entry.is_separate_recording = True
        sides = [
            (label, attr, artifact)
            for label, attr, artifact in (
                ("microphone", "mic_transcription", mic),
                ("counterpart", "counterpart_transcription", counterpart),
            )
            if artifact is not None
        ]
        if not sides:
            print("  [pipeline] No audio recorded on either side")
            return
        texts = await asyncio.gather(
            *(self.service.transcribe(artifact) for _, _, artifact in sides),
            return_exceptions=True,
        )
        for (label, attr, _), value in zip(sides, texts):
            if isinstance(value, BaseException):
                if not isinstance(value, Exception):
                    raise value
                print(f"  [pipeline] {label} transcription failed: {value}")
                continue
            setattr(entry, attr, value)
        combined = combine_transcripts(entry.mic_transcription, entry.counterpart_transcription)
        if combined:
            entry.transcription = combined
            await self._summarize(entry)

    async def _summarize(self, entry: HistoryEntry):
        if not self.config.auto_summarize or not entry.transcription:
            return
        try:
            entry.summary = await self.service.summarize(entry.transcription)
        except ApiError as e:
            print(f"  [pipeline] Summary failed: {e}")

    async def _save(self, entry: HistoryEntry):
        if self.saver is not None:
            try:
                await _resolve(self.saver.save(entry))
                return
            except Exception as e:
                print(f"  [pipeline] External save failed, exporting to file: {e}")
        if self.exporter is not None:
            try:
                self.exporter.export(entry)
            except OSError as e:
                print(f"  [pipeline] Export failed: {e}")


def _split(artifacts: dict) -> tuple[AudioArtifact | None, AudioArtifact | None]:
    """Pick the microphone and counterpart artifacts, ignoring empty ones.

    With a combined recording plus separate system audio, the combined
    artifact carries the microphone side.
    """
    def usable(role):
        artifact = artifacts.get(role)
        return artifact if artifact is not None and artifact.duration_ms > 0 else None

    counterpart = usable(Role.COUNTERPART)
    mic = usable(Role.MICROPHONE)
    if mic is None and counterpart is not None:
        mic = usable(Role.COMBINED)
    return mic, counterpart
