"""Audio capture from the microphone, shared screens/windows and system audio.

Every source is exposed as a LiveStream made of Tracks. Audio tracks are fed by
sounddevice callbacks on PortAudio threads; frames are handed to the event loop
with call_soon_threadsafe so consumers only ever await on the loop.
"""

import asyncio
import inspect
import itertools
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import numpy as np
import sounddevice as sd

from config import SAMPLE_RATE, CHANNELS, DTYPE, BLOCK_DURATION_MS
from errors import AcquisitionError, AcquisitionKind
from system_audio import SystemAudioSidecar, SidecarRecording

# Input devices that carry other participants' audio rather than a microphone
LOOPBACK_MARKERS = ("BlackHole", "Soundflower", "Loopback", "Monitor of", "Stereo Mix")
SCREEN_SOURCE_ID = "screen:0"


class SourceKind(str, Enum):
    MICROPHONE = "microphone"
    SCREEN = "screen"
    SYSTEM_AUDIO_SIDECAR = "system_audio"


@dataclass
class CaptureRequest:
    """One acquisition attempt. Not persisted."""
    source_kind: SourceKind
    source_id: str | None = None
    constraints: dict = field(default_factory=dict)


@dataclass
class CaptureSource:
    """A screen, window or loopback device offered in the selection step."""
    id: str
    name: str
    kind: str = "window"
    thumbnail: bytes | None = None
    device_index: int | None = None


class Track:
    """A single audio or video feed inside a LiveStream."""

    def __init__(self, kind: str = "audio", label: str = "", placeholder: bool = False,
                 settings: dict | None = None):
        self.id = uuid.uuid4().hex[:12]
        self.kind = kind
        self.label = label
        self.placeholder = placeholder
        self.settings = settings or {}
        self.ready_state = "live"
        self.end_reason: str | None = None
        self.peak = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._listeners: list[Callable] = []
        self._device = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closing = False

    def __repr__(self):
        return f"<Track {self.kind} {self.label!r} {self.ready_state}>"

    @property
    def live(self) -> bool:
        return self.ready_state == "live"

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def add_listener(self, listener: Callable):
        """listener(track, reason) is called once when the track ends."""
        self._listeners.append(listener)

    def attach_device(self, device, loop: asyncio.AbstractEventLoop):
        self._device = device
        self._loop = loop

    def feed(self, frames: np.ndarray):
        """Deliver a block of frames. Must be called on the event loop."""
        if not self.live:
            return
        if frames.size:
            self.peak = int(np.abs(frames.astype(np.int32)).max())
        self._queue.put_nowait(frames)

    def device_callback(self, indata, frames, time_info, status):
        if status:
            print(f"  [capture] {self.label}: {status}")
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.feed, indata.copy())

    def device_finished(self):
        if self._loop is not None and not self._closing:
            self._loop.call_soon_threadsafe(self._device_lost)

    def _device_lost(self):
        if self.live:
            self.stop("device-disconnected")

    async def read(self, timeout: float = 0.5) -> np.ndarray | None:
        """Wait for the next block; None on timeout or once the track has drained."""
        if not self.live and self._queue.empty():
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def read_nowait(self) -> np.ndarray | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def stop(self, reason: str = "stopped"):
        """End the track, release its device and notify listeners. Idempotent."""
        if not self.live:
            return
        self.ready_state = "ended"
        self.end_reason = reason
        self.peak = 0
        if self._device is not None:
            self._closing = True
            try:
                self._device.stop()
                self._device.close()
            except sd.PortAudioError as e:
                print(f"  [capture] Error closing {self.label}: {e}")
            self._device = None
        for listener in list(self._listeners):
            listener(self, reason)


class LiveStream:
    """An active feed owned by one acquisition; live while any track is live."""

    _ids = itertools.count(1)

    def __init__(self, tracks=(), label: str = "", source_id: str | None = None):
        self.id = f"stream-{next(self._ids)}"
        self.label = label
        self.source_id = source_id
        self._tracks: list[Track] = list(tracks)

    def __repr__(self):
        return f"<LiveStream {self.id} {self.label!r} tracks={self._tracks}>"

    def get_tracks(self) -> list[Track]:
        return list(self._tracks)

    def audio_tracks(self) -> list[Track]:
        return [t for t in self._tracks if t.kind == "audio"]

    def video_tracks(self) -> list[Track]:
        return [t for t in self._tracks if t.kind == "video"]

    def add_track(self, track: Track):
        self._tracks.append(track)

    @property
    def live(self) -> bool:
        return any(t.live for t in self._tracks)

    def stop(self, reason: str = "stopped"):
        for track in self._tracks:
            track.stop(reason)


def classify_portaudio_error(exc: Exception) -> AcquisitionError:
    """Map a PortAudio failure onto an acquisition error kind."""
    text = str(exc).lower()
    if "permission" in text or "not authorized" in text or "not permitted" in text:
        kind = AcquisitionKind.PERMISSION_DENIED
    elif "invalid device" in text or "no default" in text or "device unavailable" in text:
        kind = AcquisitionKind.DEVICE_NOT_FOUND
    elif "invalid sample rate" in text or "invalid number of channels" in text:
        kind = AcquisitionKind.UNSUPPORTED
    else:
        kind = AcquisitionKind.DEVICE_NOT_FOUND
    return AcquisitionError(kind, str(exc))


class SoundDeviceBackend:
    """Device discovery and track opening on top of sounddevice."""

    def find_microphone(self) -> dict | None:
        """Find the default microphone input device."""
        try:
            devices = sd.query_devices()
        except sd.PortAudioError as e:
            raise classify_portaudio_error(e)
        # Prefer the system default input
        try:
            default_idx = sd.default.device[0]
            if default_idx is not None and default_idx >= 0:
                d = devices[default_idx]
                if d["max_input_channels"] >= CHANNELS and not _is_loopback(d["name"]):
                    return {"index": default_idx, "name": d["name"], "channels": d["max_input_channels"]}
        except (IndexError, TypeError):
            pass
        # Fallback: any input that isn't a loopback device
        for i, d in enumerate(devices):
            if d["max_input_channels"] >= CHANNELS and not _is_loopback(d["name"]):
                return {"index": i, "name": d["name"], "channels": d["max_input_channels"]}
        return None

    def find_loopback_devices(self) -> list[dict]:
        """Find virtual devices (BlackHole etc.) that carry meeting audio."""
        devices = sd.query_devices()
        found = []
        for i, d in enumerate(devices):
            if _is_loopback(d["name"]) and d["max_input_channels"] >= CHANNELS:
                found.append({"index": i, "name": d["name"], "channels": d["max_input_channels"]})
        return found

    def open_track(self, device_index: int, label: str, sample_rate: int = SAMPLE_RATE,
                   settings: dict | None = None) -> Track:
        """Open and start an input stream on a device, returning its audio track."""
        loop = asyncio.get_running_loop()
        track = Track("audio", label=label, settings=settings)
        try:
            stream = sd.InputStream(
                samplerate=sample_rate,
                channels=CHANNELS,
                dtype=DTYPE,
                device=device_index,
                blocksize=int(sample_rate * BLOCK_DURATION_MS / 1000),
                callback=track.device_callback,
                finished_callback=track.device_finished,
            )
            track.attach_device(stream, loop)
            stream.start()
        except sd.PortAudioError as e:
            raise classify_portaudio_error(e)
        return track


def _is_loopback(name: str) -> bool:
    return any(marker in name for marker in LOOPBACK_MARKERS)


class DeviceSourceCatalog:
    """Lists capturable sources: the entire screen plus loopback devices."""

    def __init__(self, backend: SoundDeviceBackend | None = None):
        self._backend = backend or SoundDeviceBackend()

    def list_sources(self) -> list[CaptureSource]:
        sources = [CaptureSource(SCREEN_SOURCE_ID, "Entire screen", kind="screen")]
        for dev in self._backend.find_loopback_devices():
            sources.append(CaptureSource(
                f"device:{dev['index']}", dev["name"], kind="device", device_index=dev["index"],
            ))
        return sources

    def has_source(self, source_id: str) -> bool:
        return any(s.id == source_id for s in self.list_sources())


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


class CaptureAdapter:
    """Acquires live streams for a CaptureRequest and reports liveness changes."""

    def __init__(self, config, backend=None, catalog=None, sidecar_factory=None):
        self.config = config
        self.backend = backend or SoundDeviceBackend()
        self.catalog = catalog or DeviceSourceCatalog(self.backend)
        self._sidecar_factory = sidecar_factory or SystemAudioSidecar
        self._subscribers: list[Callable] = []
        self.sidecar: SidecarRecording | None = None

    def subscribe(self, listener: Callable) -> Callable:
        """listener(stream_id, reason) on track loss. Returns an unsubscribe function."""
        self._subscribers.append(listener)

        def unsubscribe():
            if listener in self._subscribers:
                self._subscribers.remove(listener)
        return unsubscribe

    async def acquire(self, request: CaptureRequest, select_source=None,
                      confirm_without_audio=None) -> LiveStream:
        """Acquire a stream for the request or raise AcquisitionError.

        Args:
            select_source: callback(list[CaptureSource]) -> CaptureSource | None,
                the source-selection step for screen capture (may be async).
            confirm_without_audio: callback(message) -> bool, asked when a
                screen source has no audio at all (may be async).
        """
        kind = SourceKind(request.source_kind)
        if kind == SourceKind.MICROPHONE:
            stream = self._acquire_microphone(request)
        elif kind == SourceKind.SCREEN:
            stream = await self._acquire_screen(request, select_source, confirm_without_audio)
        else:
            stream = await self._acquire_system_audio()
        self._register(stream)
        return stream

    def _acquire_microphone(self, request: CaptureRequest) -> LiveStream:
        settings = {
            "echo_cancellation": True,
            "noise_suppression": True,
            "sample_rate": self.config.sample_rate,
        }
        settings.update(request.constraints)
        mic = self.backend.find_microphone()
        if mic is None:
            raise AcquisitionError(AcquisitionKind.DEVICE_NOT_FOUND, "No microphone found")
        track = self.backend.open_track(
            mic["index"], label=mic["name"], sample_rate=settings["sample_rate"], settings=settings,
        )
        print(f"  [capture] Microphone: {mic['name']} (echo_cancellation={settings['echo_cancellation']})")
        return LiveStream([track], label="microphone")

    async def _acquire_screen(self, request, select_source, confirm_without_audio) -> LiveStream:
        if request.source_id:
            source = self._lookup(request.source_id)
        else:
            sources = self.catalog.list_sources()
            if not sources:
                raise AcquisitionError(AcquisitionKind.DEVICE_NOT_FOUND, "No capturable screens or windows")
            if select_source is None:
                raise AcquisitionError(AcquisitionKind.UNSUPPORTED, "Screen capture needs a source selection step")
            source = await _resolve(select_source(sources))
            if source is None:
                raise AcquisitionError(AcquisitionKind.USER_CANCELLED, "No source selected")

        print(f"  [capture] Selected source: {source.name}")
        stream = LiveStream([Track("video", label=source.name)], label=f"screen:{source.name}",
                            source_id=source.id)
        if source.device_index is not None:
            settings = {"echo_cancellation": False, "noise_suppression": False, "auto_gain_control": False}
            try:
                stream.add_track(self.backend.open_track(
                    source.device_index, label=source.name,
                    sample_rate=self.config.sample_rate, settings=settings,
                ))
            except AcquisitionError as e:
                print(f"  [capture] Audio for {source.name} failed, continuing video only: {e}")

        if not stream.audio_tracks():
            print(f"  [capture] No audio tracks on {source.name}; trying system audio...")
            try:
                system = await self._acquire_system_audio()
                for track in system.audio_tracks():
                    stream.add_track(track)
            except AcquisitionError as e:
                print(f"  [capture] System audio unavailable: {e}")

        if not stream.audio_tracks():
            message = (
                f"No audio could be captured from {source.name}. "
                "Continue recording without its audio?"
            )
            allowed = False
            if confirm_without_audio is not None:
                allowed = bool(await _resolve(confirm_without_audio(message)))
            if not allowed:
                stream.stop("cancelled")
                raise AcquisitionError(AcquisitionKind.USER_CANCELLED, "Declined to record without audio")
        return stream

    def _lookup(self, source_id: str) -> CaptureSource:
        for source in self.catalog.list_sources():
            if source.id == source_id:
                return source
        raise AcquisitionError(AcquisitionKind.DEVICE_NOT_FOUND, f"Source {source_id} is not available")

    async def _acquire_system_audio(self) -> LiveStream:
        if self.sidecar is not None and self.sidecar.running:
            raise AcquisitionError(AcquisitionKind.UNSUPPORTED, "System audio is already being captured")
        sidecar = self._sidecar_factory(sample_rate=self.config.sample_rate)
        self.sidecar = await sidecar.start()
        # Real audio goes to the sidecar file; the stream only holds a placeholder
        placeholder = Track("audio", label="system audio (sidecar)", placeholder=True)
        return LiveStream([placeholder], label="system-audio")

    async def stop_sidecar(self, recording: SidecarRecording | None = None) -> SidecarRecording | None:
        """Stop a system audio process, returning its recording (path kept for read-back).

        Defaults to the process this adapter started most recently.
        """
        if recording is None:
            recording = self.sidecar
        if recording is self.sidecar:
            self.sidecar = None
        if recording is not None and recording.running:
            await recording.stop()
        return recording

    def _register(self, stream: LiveStream):
        for track in stream.get_tracks():
            track.add_listener(lambda t, reason, s=stream: self._emit(s.id, t, reason))

    def _emit(self, stream_id: str, track: Track, reason: str):
        if reason in ("stopped", "cancelled"):
            return
        print(f"  [capture] {track.kind} track '{track.label}' on {stream_id} ended: {reason}")
        for listener in list(self._subscribers):
            listener(stream_id, reason)
