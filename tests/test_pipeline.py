"""Tests for the post-recording pipeline, history store and Markdown export."""

import sys
import os
import json

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


class FakeService:
    """Transcription service double: per-role transcripts or errors."""

    def __init__(self, config, texts=None, fail_roles=(), fail_summary=False):
        self.config = config
        self.texts = texts or {}
        self.fail_roles = set(fail_roles)
        self.fail_summary = fail_summary
        self.transcribed = []
        self.summarized = []

    @property
    def enabled(self):
        return bool(self.config.api_key)

    async def transcribe(self, artifact):
        from errors import ApiError
        self.transcribed.append(artifact)
        if artifact.role in self.fail_roles:
            raise ApiError(500, "upstream exploded")
        return self.texts.get(artifact.role, f"{artifact.role.value} text")

    async def summarize(self, text):
        from errors import ApiError
        self.summarized.append(text)
        if self.fail_summary:
            raise ApiError(429, "slow down")
        return "summary"


def _result(artifacts, mode="single", duration_ms=5000, **kwargs):
    from recorder import RecordingResult, RecordingMode
    return RecordingResult(id="1700000000000", date="2026-10-19T10:00:00", duration_ms=duration_ms,
                           mode=RecordingMode(mode), artifacts=artifacts, **kwargs)


def _artifact(role, frames=1000, rate=1000):
    from artifacts import build_artifact
    return build_artifact([b"\x01\x00" * frames], role, rate)


def _pipeline(config, service, **kwargs):
    from history import HistoryStore
    from pipeline import TranscriptionPipeline
    history = kwargs.pop("history", HistoryStore())
    return TranscriptionPipeline(service, history, config=config, **kwargs), history


# --- Pipeline ---

@pytest.mark.anyio
async def test_single_recording_transcribes_then_summarizes(config):
    from artifacts import Role
    service = FakeService(config, texts={Role.COMBINED: "we agreed on friday"})
    pipeline, history = _pipeline(config, service)

    entry = await pipeline.process(_result({Role.COMBINED: _artifact(Role.COMBINED)}))

    assert entry.transcription == "we agreed on friday"
    assert entry.summary == "summary"
    assert service.summarized == ["we agreed on friday"]
    assert not entry.is_separate_recording
    assert history.entries()[0] is entry


@pytest.mark.anyio
async def test_transcription_failure_skips_summary_but_keeps_history(config):
    from artifacts import Role
    service = FakeService(config, fail_roles={Role.COMBINED})
    pipeline, history = _pipeline(config, service)

    entry = await pipeline.process(_result({Role.COMBINED: _artifact(Role.COMBINED)}))

    assert entry.transcription is None
    assert entry.summary is None
    assert service.summarized == []
    assert len(history) == 1


@pytest.mark.anyio
async def test_summary_failure_keeps_transcription(config):
    from artifacts import Role
    service = FakeService(config, fail_summary=True)
    pipeline, _ = _pipeline(config, service)
    entry = await pipeline.process(_result({Role.COMBINED: _artifact(Role.COMBINED)}))
    assert entry.transcription == "combined text"
    assert entry.summary is None


@pytest.mark.anyio
async def test_separate_recording_labels_microphone_first(config):
    from artifacts import Role
    service = FakeService(config, texts={Role.MICROPHONE: "my side", Role.COUNTERPART: "their side"})
    pipeline, _ = _pipeline(config, service)

    entry = await pipeline.process(_result(
        {Role.MICROPHONE: _artifact(Role.MICROPHONE), Role.COUNTERPART: _artifact(Role.COUNTERPART)},
        mode="separate",
    ))

    assert entry.is_separate_recording
    assert entry.mic_transcription == "my side"
    assert entry.counterpart_transcription == "their side"
    assert entry.transcription == "[Microphone]\nmy side\n\n[Counterpart]\ntheir side"
    assert service.summarized == [entry.transcription], "Summarize once over the combined text"


@pytest.mark.anyio
async def test_separate_recording_survives_one_failed_side(config):
    from artifacts import Role
    service = FakeService(config, texts={Role.MICROPHONE: "my side"}, fail_roles={Role.COUNTERPART})
    pipeline, _ = _pipeline(config, service)

    entry = await pipeline.process(_result(
        {Role.MICROPHONE: _artifact(Role.MICROPHONE), Role.COUNTERPART: _artifact(Role.COUNTERPART)},
        mode="separate",
    ))

    assert entry.mic_transcription == "my side"
    assert entry.counterpart_transcription is None
    assert entry.transcription == "[Microphone]\nmy side"
    assert entry.summary == "summary"


@pytest.mark.anyio
async def test_separate_recording_with_silent_counterpart_keeps_sides(config):
    from artifacts import Role
    service = FakeService(config, texts={Role.MICROPHONE: "hi"})
    pipeline, _ = _pipeline(config, service)

    entry = await pipeline.process(_result(
        {Role.MICROPHONE: _artifact(Role.MICROPHONE), Role.COUNTERPART: _artifact(Role.COUNTERPART, frames=0)},
        mode="separate",
    ))

    assert entry.is_separate_recording
    assert entry.mic_transcription == "hi"
    assert entry.counterpart_transcription is None
    assert entry.transcription == "[Microphone]\nhi"
    assert [a.role for a in service.transcribed] == [Role.MICROPHONE]


@pytest.mark.anyio
async def test_separate_flag_kept_without_transcription(config):
    from artifacts import Role
    config.auto_transcribe = False
    pipeline, _ = _pipeline(config, FakeService(config))
    entry = await pipeline.process(_result({Role.MICROPHONE: _artifact(Role.MICROPHONE)}, mode="separate"))
    assert entry.is_separate_recording
    assert entry.transcription is None


@pytest.mark.anyio
async def test_sidecar_audio_replaces_counterpart_and_is_deleted(config, tmp_path):
    from artifacts import Role
    sidecar = tmp_path / "system_audio_1.wav"
    sidecar.write_bytes(b"RIFF-real-system-audio")
    service = FakeService(config)
    pipeline, _ = _pipeline(config, service)

    entry = await pipeline.process(_result(
        {Role.MICROPHONE: _artifact(Role.MICROPHONE), Role.COUNTERPART: _artifact(Role.COUNTERPART, frames=0)},
        mode="separate", sidecar_path=sidecar, sidecar_role=Role.COUNTERPART,
    ))

    assert not sidecar.exists()
    sent = {a.role: a for a in service.transcribed}
    assert sent[Role.COUNTERPART].data == b"RIFF-real-system-audio"
    assert entry.is_separate_recording


@pytest.mark.anyio
async def test_sidecar_deleted_even_when_transcription_fails(config, tmp_path):
    from artifacts import Role
    sidecar = tmp_path / "system_audio_2.wav"
    sidecar.write_bytes(b"RIFF")
    service = FakeService(config, fail_roles={Role.COMBINED})
    pipeline, _ = _pipeline(config, service)

    await pipeline.process(_result({Role.COMBINED: _artifact(Role.COMBINED, frames=0)},
                                   sidecar_path=sidecar, sidecar_role=Role.COMBINED))
    assert not sidecar.exists()
    assert service.transcribed[0].data == b"RIFF"


@pytest.mark.anyio
async def test_combined_plus_system_audio_is_transcribed_as_two_sides(config, tmp_path):
    from artifacts import Role
    sidecar = tmp_path / "system_audio_3.wav"
    sidecar.write_bytes(b"RIFF-other-side")
    service = FakeService(config)
    pipeline, _ = _pipeline(config, service)

    entry = await pipeline.process(_result({Role.COMBINED: _artifact(Role.COMBINED)},
                                           sidecar_path=sidecar, sidecar_role=Role.COUNTERPART))
    assert entry.is_separate_recording
    assert entry.mic_transcription == "combined text"
    assert entry.counterpart_transcription == "counterpart text"


@pytest.mark.anyio
async def test_auto_transcribe_off_records_history_only(config):
    from artifacts import Role
    config.auto_transcribe = False
    service = FakeService(config)
    pipeline, history = _pipeline(config, service)

    entry = await pipeline.process(_result({Role.COMBINED: _artifact(Role.COMBINED)}))
    assert entry.transcription is None
    assert service.transcribed == []
    assert len(history) == 1


@pytest.mark.anyio
async def test_missing_api_key_skips_transcription(config):
    from artifacts import Role
    config.api_key = ""
    service = FakeService(config)
    pipeline, history = _pipeline(config, service)
    await pipeline.process(_result({Role.COMBINED: _artifact(Role.COMBINED)}))
    assert service.transcribed == []
    assert len(history) == 1


@pytest.mark.anyio
async def test_save_failure_falls_back_to_markdown(config, tmp_path):
    from artifacts import Role
    from file_writer import MarkdownExporter

    class BrokenSaver:
        async def save(self, entry):
            raise ConnectionError("workspace unreachable")

    config.auto_save = True
    exporter = MarkdownExporter(tmp_path)
    pipeline, history = _pipeline(config, FakeService(config), saver=BrokenSaver(), exporter=exporter)

    entry = await pipeline.process(_result({Role.COMBINED: _artifact(Role.COMBINED)}))
    assert len(history) == 1, "History is appended before the external save"
    files = list(tmp_path.glob("*.md"))
    assert len(files) == 1
    assert entry.id in files[0].name


@pytest.mark.anyio
async def test_successful_save_skips_export(config, tmp_path):
    from artifacts import Role
    from file_writer import MarkdownExporter
    saved = []

    class Saver:
        def save(self, entry):
            saved.append(entry.id)

    config.auto_save = True
    pipeline, _ = _pipeline(config, FakeService(config), saver=Saver(), exporter=MarkdownExporter(tmp_path))
    await pipeline.process(_result({Role.COMBINED: _artifact(Role.COMBINED)}))
    assert saved == ["1700000000000"]
    assert list(tmp_path.glob("*.md")) == []


@pytest.mark.anyio
async def test_history_write_failure_still_exports(config, tmp_path):
    from artifacts import Role
    from file_writer import MarkdownExporter
    from history import HistoryStore
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    export_dir = tmp_path / "exports"

    config.auto_save = True
    pipeline, history = _pipeline(config, FakeService(config), history=HistoryStore(blocker / "history.json"),
                                  exporter=MarkdownExporter(export_dir))
    entry = await pipeline.process(_result({Role.COMBINED: _artifact(Role.COMBINED)}))

    assert history.get(entry.id) is entry
    assert len(list(export_dir.glob("*.md"))) == 1


@pytest.mark.anyio
async def test_aclose_closes_http_client(config):
    import httpx
    from api_client import ResilientClient
    from pipeline import TranscriptionPipeline
    from history import HistoryStore
    from transcriber import TranscriptionService
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    pipeline = TranscriptionPipeline(TranscriptionService(config, ResilientClient(http)), HistoryStore(),
                                     config=config)
    await pipeline.aclose()
    assert http.is_closed


# --- History ---

def test_history_evicts_oldest_after_limit():
    from history import HistoryStore, HistoryEntry
    store = HistoryStore(limit=50)
    for i in range(51):
        store.append(HistoryEntry(id=str(i), date="2026-10-19T10:00:00", duration_ms=1000))
    ids = [e.id for e in store.entries()]
    assert len(store) == 50
    assert ids[0] == "50", "Newest first"
    assert "0" not in ids, "Oldest insertion is evicted"
    assert store.get("0") is None
    assert store.get("1").id == "1"


def test_history_persists_to_json(tmp_path):
    from history import HistoryStore, HistoryEntry
    path = tmp_path / "history.json"
    store = HistoryStore(path)
    store.append(HistoryEntry(id="a", date="2026-10-19T10:00:00", duration_ms=4200,
                              transcription="hello", summary="- hi"))
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw[0]["id"] == "a"

    reloaded = HistoryStore(path)
    assert reloaded.get("a").summary == "- hi"
    assert reloaded.get("a").duration_ms == 4200


def test_history_keeps_entry_when_file_cannot_be_written(tmp_path):
    from history import HistoryStore, HistoryEntry
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = HistoryStore(blocker / "history.json")
    store.append(HistoryEntry(id="a", date="2026-10-19T10:00:00", duration_ms=1000))
    assert store.get("a") is not None


def test_history_ignores_corrupt_file(tmp_path):
    from history import HistoryStore
    path = tmp_path / "history.json"
    path.write_text("{not json", encoding="utf-8")
    assert len(HistoryStore(path)) == 0


def test_history_entry_ignores_unknown_keys():
    from history import HistoryEntry
    entry = HistoryEntry.from_dict({"id": "x", "date": "d", "duration_ms": 1, "blob": "ignored"})
    assert entry.to_dict()["id"] == "x"
    assert "blob" not in entry.to_dict()


# --- Markdown export ---

def test_markdown_puts_summary_before_transcription(tmp_path):
    from history import HistoryEntry
    from file_writer import MarkdownExporter
    exporter = MarkdownExporter(tmp_path)
    path = exporter.export(HistoryEntry(id="42", date="2026-10-19T10:00:00", duration_ms=3_725_000,
                                        transcription="full text", summary="- key point"))
    content = path.read_text(encoding="utf-8")
    assert content.startswith("# Meeting 2026-10-19 10:00")
    assert "Duration: 01:02:05" in content
    assert content.index("- key point") < content.index("full text")


def test_markdown_separate_sections(tmp_path):
    from history import HistoryEntry
    from file_writer import render_markdown
    text = render_markdown(HistoryEntry(id="7", date="not-a-date", duration_ms=0, is_separate_recording=True,
                                        mic_transcription="mine", counterpart_transcription="theirs"))
    assert "### Microphone\n\nmine" in text
    assert "### Counterpart\n\ntheirs" in text
    assert "_No summary_" in text


def test_save_file_never_overwrites(tmp_path):
    from file_writer import MarkdownExporter
    exporter = MarkdownExporter(tmp_path / "out")
    first = exporter.save_file("notes.md", "one")
    second = exporter.save_file("notes.md", "two")
    assert first != second
    assert first.read_text() == "one"
    assert second.name == "notes-1.md"
