"""Shared fakes for capture, sidecar and clock."""

import sys
import os
from pathlib import Path

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeBackend:
    """Stands in for sounddevice: tracks are fed by hand from the tests."""

    def __init__(self, microphone=True, loopbacks=None):
        self.microphone = microphone
        self.loopbacks = loopbacks or []
        self.opened = []

    def find_microphone(self):
        if not self.microphone:
            return None
        return {"index": 0, "name": "Test Mic", "channels": 1}

    def find_loopback_devices(self):
        return list(self.loopbacks)

    def open_track(self, device_index, label, sample_rate=44100, settings=None):
        from audio_capture import Track
        track = Track("audio", label=label, settings=settings)
        self.opened.append((device_index, track))
        return track


class FakeCatalog:
    def __init__(self, sources=None):
        self.sources = list(sources or [])

    def list_sources(self):
        return list(self.sources)

    def has_source(self, source_id):
        return any(s.id == source_id for s in self.sources)


class FakeRecording:
    def __init__(self, path: Path):
        self.path = path
        self.running = True
        self.stopped = 0

    async def stop(self, timeout=5.0):
        self.running = False
        self.stopped += 1
        return self.path


class FakeSidecar:
    """Factory matching SystemAudioSidecar(sample_rate=...)."""

    def __init__(self, tmp_path: Path, fail=None):
        self.tmp_path = tmp_path
        self.fail = fail
        self.started = []

    def __call__(self, sample_rate=44100):
        return self

    async def start(self):
        if self.fail is not None:
            raise self.fail
        path = self.tmp_path / f"system_audio_{len(self.started)}.wav"
        path.write_bytes(b"RIFF-sidecar-audio")
        recording = FakeRecording(path)
        self.started.append(recording)
        return recording


class FakeClock:
    def __init__(self, t: float = 0.0):
        self.t = t

    def __call__(self):
        return self.t


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    from recorder_config import RecorderConfig
    return RecorderConfig(
        api_key="test-key",
        sample_rate=1000,
        chunk_interval_s=0.5,
        min_recording_s=3,
        poll_interval=0.01,
        auto_save=False,
    )


@pytest.fixture
def screen_sources():
    from audio_capture import CaptureSource
    return [
        CaptureSource("screen:0", "Entire screen", kind="screen"),
        CaptureSource("device:5", "BlackHole 2ch", kind="device", device_index=5),
    ]


@pytest.fixture
def make_adapter(config, tmp_path, screen_sources):
    from audio_capture import CaptureAdapter

    def build(microphone=True, sources=None, sidecar_fail=None):
        backend = FakeBackend(microphone=microphone)
        catalog = FakeCatalog(screen_sources if sources is None else sources)
        sidecar = FakeSidecar(tmp_path, fail=sidecar_fail)
        return CaptureAdapter(config, backend=backend, catalog=catalog, sidecar_factory=sidecar)
    return build
