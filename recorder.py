"""Recording lifecycle — one session at a time, one or two sub-recorders.

Combined mode records a single (possibly mixed) stream. Separate mode records
the microphone and the counterpart (shared screen/window audio) on their own
sub-recorders so they can be transcribed independently. Finalization waits on
a countdown latch for every sub-recorder before any artifact is built.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable

import numpy as np

import mixer
from artifacts import AudioArtifact, Role, build_artifact
from audio_capture import CaptureAdapter, CaptureRequest, LiveStream, SourceKind
from errors import (
    AcquisitionError,
    AcquisitionKind,
    AlreadyRecording,
    ArtifactTooSmallError,
    NotPaused,
    NotRecording,
)
from recorder_config import RecorderConfig
from source_monitor import CancellationSignal, PollingSourceMonitor, SourceMonitor
from system_audio import SidecarRecording


class SessionState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"


class RecordingMode(str, Enum):
    SINGLE = "single"
    SEPARATE = "separate"


class AudioSource(str, Enum):
    MICROPHONE = "microphone"
    SCREEN = "screen"
    BOTH = "both"


class CountdownLatch:
    """Opens once count_down() has been called `count` times."""

    def __init__(self, count: int):
        self._remaining = count
        self._event = asyncio.Event()
        if count <= 0:
            self._event.set()

    @property
    def remaining(self) -> int:
        return self._remaining

    def count_down(self):
        if self._remaining > 0:
            self._remaining -= 1
            if self._remaining == 0:
                self._event.set()

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait for the latch to open; False if the timeout elapsed first."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


class StreamRecorder:
    """Pulls audio blocks from one source and cuts them into PCM chunks.

    A chunk is emitted every `chunk_interval_s` of audio so a long meeting
    never sits entirely in one buffer. Completion fires exactly once, after
    the final partial chunk has been flushed.
    """

    READ_TIMEOUT = 0.25

    def __init__(self, role: Role, source, config: RecorderConfig,
                 on_chunk: Callable | None = None, on_complete: Callable | None = None):
        self.role = role
        self.source = source
        self.config = config
        self.on_chunk = on_chunk
        self.on_complete = on_complete
        self.chunks: list[bytes] = []
        self.state = "inactive"  # inactive | recording | paused | stopped
        self.completed = False
        self._keep_tail = True
        self._stop_signal = CancellationSignal()
        self._pending: list[np.ndarray] = []
        self._pending_frames = 0
        self._chunk_frames = max(1, int(config.sample_rate * config.chunk_interval_s))
        self._task: asyncio.Task | None = None

    def __repr__(self):
        return f"<StreamRecorder {self.role.value} {self.state} chunks={len(self.chunks)}>"

    @property
    def active(self) -> bool:
        return self.state in ("recording", "paused")

    def start(self):
        self.state = "recording"
        self._task = asyncio.create_task(self._run())

    def pause(self):
        if self.state == "recording":
            self.state = "paused"

    def resume(self):
        if self.state == "paused":
            self.state = "recording"

    def stop(self):
        """Request finalization. The recorder completes asynchronously."""
        if not self.active:
            if self.state == "inactive":
                self.state = "stopped"
                self._complete()
            return
        self._keep_tail = self.state == "recording"
        self.state = "stopped"
        self._stop_signal.set("stopped")

    def cancel(self):
        if self._task is not None:
            self._task.cancel()

    async def _run(self):
        try:
            while not self._stop_signal.is_set():
                block = await self.source.read(timeout=self.READ_TIMEOUT)
                if block is None:
                    if not self.source.live:
                        # Source gone; keep what we have until told to stop
                        try:
                            await asyncio.wait_for(self._stop_signal.wait(), timeout=self.READ_TIMEOUT)
                        except asyncio.TimeoutError:
                            pass
                    continue
                if self.state == "paused":
                    continue
                self._append(block)
                if self._pending_frames >= self._chunk_frames:
                    self._emit_chunk()
            if self._keep_tail:
                self._drain()
        finally:
            self._emit_chunk()
            self.state = "stopped"
            self._complete()

    def _drain(self):
        while True:
            block = self.source.read_nowait()
            if block is None:
                return
            self._append(block)

    def _append(self, block: np.ndarray):
        block = block.reshape(-1).astype(np.int16)
        self._pending.append(block)
        self._pending_frames += len(block) // self.config.channels

    def _emit_chunk(self):
        if not self._pending:
            return
        chunk = np.concatenate(self._pending).tobytes()
        self._pending = []
        self._pending_frames = 0
        self.chunks.append(chunk)
        if self.on_chunk:
            self.on_chunk(self.role, chunk)

    def _complete(self):
        if self.completed:
            return
        self.completed = True
        print(f"  [recorder] {self.role.value} recorder finished ({len(self.chunks)} chunks)")
        if self.on_complete:
            self.on_complete(self)


@dataclass
class RecordingSession:
    """All mutable state of one recording, owned by the Recorder."""
    mode: RecordingMode
    source: AudioSource
    state: SessionState = SessionState.IDLE
    started_at: float = 0.0  # ms on the recorder clock
    paused_accumulated_ms: int = 0
    id: str = field(default_factory=lambda: str(int(time.time() * 1000)))
    date: str = field(default_factory=lambda: datetime.now().isoformat())
    chunk_buffers: dict = field(default_factory=dict)
    recorders: dict = field(default_factory=dict)
    streams: list = field(default_factory=list)
    mic_stream: LiveStream | None = None
    counterpart_stream: LiveStream | None = None
    mix: mixer.MixResult | None = None
    latch: CountdownLatch | None = None
    watched_source_id: str | None = None
    watch_signal: CancellationSignal | None = None
    unsubscribe: Callable | None = None
    sidecar: SidecarRecording | None = None
    mic_only: bool = False
    tasks: list = field(default_factory=list)


@dataclass
class RecordingResult:
    """What a finished session hands to the transcription pipeline."""
    id: str
    date: str
    duration_ms: int
    mode: RecordingMode
    artifacts: dict
    sidecar_path: Path | None = None
    sidecar_role: Role | None = None
    mic_only: bool = False

    @property
    def is_separate(self) -> bool:
        return self.mode == RecordingMode.SEPARATE


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


class Recorder:
    """Owns the recording state machine: idle -> recording <-> paused -> idle."""

    FINALIZE_TIMEOUT = 10.0

    def __init__(self, config: RecorderConfig | None = None, adapter: CaptureAdapter | None = None,
                 monitor: SourceMonitor | None = None, clock: Callable = time.monotonic,
                 on_finished: Callable | None = None, on_levels: Callable | None = None,
                 on_chunk: Callable | None = None):
        """
        Args:
            on_finished: callback(result, error) for stops triggered by external
                events (shared window closed, device lost). May be async.
            on_levels: callback(levels) with per-role peaks, about once a second.
            on_chunk: callback(role, chunk_bytes) for every emitted chunk.
        """
        self.config = config or RecorderConfig()
        self.config.validate()
        self.adapter = adapter or CaptureAdapter(self.config)
        self.monitor = monitor or PollingSourceMonitor(self.adapter.catalog, self.config.poll_interval)
        self.on_finished = on_finished
        self.on_levels = on_levels
        self.on_chunk = on_chunk
        self._clock = clock
        self.session: RecordingSession | None = None
        # Set while stop() finalizes and releases; start() is refused meanwhile
        self._finalizing: RecordingSession | None = None
        self._stop_task: asyncio.Task | None = None

    # --- State ---

    @property
    def state(self) -> SessionState:
        return self.session.state if self.session else SessionState.IDLE

    @property
    def elapsed_ms(self) -> int:
        if self.session is None:
            return 0
        return self._elapsed(self.session)

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _elapsed(self, session: RecordingSession) -> int:
        if session.state == SessionState.PAUSED:
            return int(session.paused_accumulated_ms)
        if session.state == SessionState.RECORDING:
            return int(self._now_ms() - session.started_at)
        return 0

    # --- Lifecycle ---

    async def start(self, mode: RecordingMode | str = RecordingMode.SINGLE,
                    source: AudioSource | str = AudioSource.BOTH, source_id: str | None = None,
                    select_source: Callable | None = None,
                    confirm_without_audio: Callable | None = None) -> RecordingSession:
        """Acquire streams and start recording.

        Raises:
            AlreadyRecording: a session is active or still being finalized.
            AcquisitionError: no usable audio could be acquired.
        """
        if self.session is not None or self._finalizing is not None:
            raise AlreadyRecording()
        mode = RecordingMode(mode)
        source = AudioSource(source)
        if mode == RecordingMode.SEPARATE and source != AudioSource.BOTH:
            raise ValueError("Separate recording needs both microphone and screen audio")

        session = RecordingSession(mode=mode, source=source)
        self.session = session
        try:
            await self._acquire(session, source_id, select_source, confirm_without_audio)
            self._start_recorders(session)
        except BaseException:
            try:
                await self._release(session)
            finally:
                self.session = None
            raise

        session.started_at = self._now_ms()
        session.state = SessionState.RECORDING
        self._watch(session)
        roles = ", ".join(r.value for r in session.recorders)
        print(f"  [recorder] Recording started ({mode.value}, {source.value}; recorders: {roles})")
        return session

    def pause(self):
        session = self.session
        if session is None or session.state != SessionState.RECORDING:
            raise NotRecording()
        for rec in session.recorders.values():
            rec.pause()
        session.paused_accumulated_ms = int(self._now_ms() - session.started_at)
        session.state = SessionState.PAUSED
        print(f"  [recorder] Paused at {session.paused_accumulated_ms} ms")

    def resume(self):
        session = self.session
        if session is None or session.state != SessionState.PAUSED:
            raise NotPaused()
        session.started_at = self._now_ms() - session.paused_accumulated_ms
        for rec in session.recorders.values():
            rec.resume()
        session.state = SessionState.RECORDING
        print("  [recorder] Resumed")

    async def stop(self) -> RecordingResult | None:
        """Finalize the session. Returns None if nothing was recording.

        Stream, sidecar and watch cleanup always runs, even when finalization
        fails. Raises ArtifactTooSmallError for recordings under the minimum.
        """
        session = self.session
        if session is None or session.state == SessionState.IDLE:
            return None
        self.session = None
        self._finalizing = session
        duration_ms = self._elapsed(session)
        session.state = SessionState.IDLE
        print(f"  [recorder] Stopping ({duration_ms} ms recorded)...")

        try:
            for rec in session.recorders.values():
                rec.stop()
            if not await session.latch.wait(timeout=self.FINALIZE_TIMEOUT):
                print("  [recorder] Sub-recorders did not finish in time, cancelling")
                for rec in session.recorders.values():
                    rec.cancel()
                await session.latch.wait()
            if session.tasks:
                await asyncio.gather(*session.tasks, return_exceptions=True)
            artifacts: dict[Role, AudioArtifact] = {
                role: build_artifact(rec.chunks, role, self.config.sample_rate, self.config.channels)
                for role, rec in session.recorders.items()
            }
        finally:
            try:
                await self._release(session)
            finally:
                self._finalizing = None

        sidecar_path = None
        if session.sidecar is not None and session.sidecar.path.exists():
            sidecar_path = session.sidecar.path

        minimum_ms = int(self.config.min_recording_s * 1000)
        if duration_ms < minimum_ms:
            if sidecar_path is not None:
                sidecar_path.unlink(missing_ok=True)
            print(f"  [recorder] Recording too short ({duration_ms} ms), discarded")
            raise ArtifactTooSmallError(duration_ms, minimum_ms)

        return RecordingResult(
            id=session.id,
            date=session.date,
            duration_ms=duration_ms,
            mode=session.mode,
            artifacts=artifacts,
            sidecar_path=sidecar_path,
            sidecar_role=self._sidecar_role(session) if sidecar_path else None,
            mic_only=session.mic_only,
        )

    # --- Setup ---

    async def _acquire(self, session: RecordingSession, source_id, select_source, confirm_without_audio):
        if session.source in (AudioSource.MICROPHONE, AudioSource.BOTH):
            echo = self.config.mic_echo_cancellation(separate=session.mode == RecordingMode.SEPARATE)
            session.mic_stream = await self.adapter.acquire(CaptureRequest(
                SourceKind.MICROPHONE,
                constraints={"echo_cancellation": echo, "noise_suppression": echo},
            ))
            session.streams.append(session.mic_stream)

        if session.source in (AudioSource.SCREEN, AudioSource.BOTH):
            previous_sidecar = self.adapter.sidecar
            try:
                stream = await self.adapter.acquire(
                    CaptureRequest(SourceKind.SCREEN, source_id=source_id),
                    select_source=select_source,
                    confirm_without_audio=confirm_without_audio,
                )
            except AcquisitionError as e:
                if session.mic_stream is None or e.kind == AcquisitionKind.USER_CANCELLED:
                    raise
                print(f"  [recorder] Screen capture failed ({e}); recording microphone only")
                session.mic_only = True
            else:
                session.counterpart_stream = stream
                session.streams.append(stream)
                session.watched_source_id = stream.source_id
            finally:
                self._claim_sidecar(session, previous_sidecar)

    def _claim_sidecar(self, session: RecordingSession, previous: SidecarRecording | None):
        if self.adapter.sidecar is not None and self.adapter.sidecar is not previous:
            session.sidecar = self.adapter.sidecar

    def _start_recorders(self, session: RecordingSession):
        inputs = []
        if session.mic_stream is not None:
            inputs.append((session.mic_stream, Role.MICROPHONE))
        if session.counterpart_stream is not None:
            inputs.append((session.counterpart_stream, Role.COUNTERPART))
        session.mix = mixer.build(inputs, self.config)

        if session.mode == RecordingMode.SEPARATE:
            mic_tracks = session.mic_stream.audio_tracks() if session.mic_stream else []
            if mic_tracks:
                self._add_recorder(session, Role.MICROPHONE, mixer.TrackSource(mic_tracks[0]))
            counterpart = session.counterpart_stream
            if counterpart is not None and counterpart.audio_tracks():
                self._add_recorder(session, Role.COUNTERPART, mixer.TrackSource(counterpart.audio_tracks()[0]))
            else:
                session.mic_only = True
        else:
            self._add_recorder(session, Role.COMBINED, session.mix.output)

        session.latch = CountdownLatch(len(session.recorders))
        for rec in session.recorders.values():
            rec.start()
        session.mix.probe.start(self.on_levels)

    def _add_recorder(self, session: RecordingSession, role: Role, source):
        rec = StreamRecorder(role, source, self.config, on_chunk=self.on_chunk,
                             on_complete=lambda r: session.latch.count_down())
        session.recorders[role] = rec
        session.chunk_buffers[role] = rec.chunks

    def _watch(self, session: RecordingSession):
        if session.watched_source_id:
            session.watch_signal = self.monitor.watch(session.watched_source_id)
            session.watch_signal.add_callback(lambda reason: self._on_counterpart_lost(session, reason))
        session.unsubscribe = self.adapter.subscribe(
            lambda stream_id, reason: self._on_stream_ended(session, stream_id, reason)
        )

    # --- External events ---

    def _on_stream_ended(self, session: RecordingSession, stream_id: str, reason: str):
        if session is not self.session:
            return
        if session.counterpart_stream is not None and stream_id == session.counterpart_stream.id:
            self._on_counterpart_lost(session, reason)
        elif session.mic_stream is not None and stream_id == session.mic_stream.id:
            print(f"  [recorder] Microphone lost ({reason})")
            if session.counterpart_stream is None or session.mic_only:
                self._request_stop(reason)

    def _on_counterpart_lost(self, session: RecordingSession, reason: str):
        """Shared window/screen went away.

        Combined mode stops the whole session. Separate mode keeps recording
        the microphone and only finalizes the counterpart.
        """
        if session is not self.session or session.state == SessionState.IDLE:
            return
        if session.mode == RecordingMode.SINGLE:
            print(f"  [recorder] Shared source ended ({reason}); stopping recording")
            self._request_stop(reason)
            return
        if session.mic_only:
            return

        print(f"  [recorder] Shared source ended ({reason}); continuing with microphone only")
        session.mic_only = True
        counterpart = session.recorders.get(Role.COUNTERPART)
        if counterpart is not None:
            counterpart.stop()
        if session.counterpart_stream is not None:
            session.counterpart_stream.stop("source-closed")
        if session.mix is not None:
            session.mix.drop(Role.COUNTERPART)
        self._unwatch(session)
        session.tasks.append(asyncio.create_task(self._stop_sidecar(session)))

        mic = session.recorders.get(Role.MICROPHONE)
        if mic is None or not mic.active:
            self._request_stop("microphone-inactive")

    async def _stop_sidecar(self, session: RecordingSession):
        if session.sidecar is not None:
            await self.adapter.stop_sidecar(session.sidecar)

    def _request_stop(self, reason: str):
        if self._stop_task is None or self._stop_task.done():
            self._stop_task = asyncio.create_task(self._stop_and_report(reason))

    async def _stop_and_report(self, reason: str):
        result, error = None, None
        try:
            result = await self.stop()
        except ArtifactTooSmallError as e:
            error = e
        except Exception as e:
            print(f"  [recorder] Stop after {reason} failed: {e}")
            error = e
        if self.on_finished:
            await _resolve(self.on_finished(result, error))

    # --- Cleanup ---

    async def _release(self, session: RecordingSession):
        """Release every stream, the sidecar and the watch. Never raises."""
        if session.unsubscribe is not None:
            session.unsubscribe()
            session.unsubscribe = None
        self._unwatch(session)
        if session.mix is not None:
            session.mix.close()
        for stream in session.streams:
            stream.stop()
        if session.sidecar is not None:
            try:
                await self.adapter.stop_sidecar(session.sidecar)
            except (OSError, asyncio.TimeoutError) as e:
                print(f"  [recorder] Error stopping system audio: {e}")
        print("  [recorder] Streams released")

    def _unwatch(self, session: RecordingSession):
        """Drop the source watch if it still belongs to this session."""
        if session.watch_signal is not None and self.monitor.signal is session.watch_signal:
            self.monitor.unwatch()
        session.watch_signal = None

    def _sidecar_role(self, session: RecordingSession) -> Role:
        if session.mode == RecordingMode.SEPARATE or session.source == AudioSource.BOTH:
            return Role.COUNTERPART
        return Role.COMBINED

    async def shutdown(self):
        """App teardown: stop any session and drop the watch."""
        if self._stop_task is not None and not self._stop_task.done():
            await self._stop_task
        try:
            await self.stop()
        except ArtifactTooSmallError:
            pass
        self.monitor.unwatch()
