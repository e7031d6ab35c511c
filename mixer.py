"""Mixing graph — per-role gain, summation and dynamics compression.

Mirrors what a browser AudioContext graph does for a meeting recording: each
input gets a gain node, the gains are summed, and a compressor keeps two loud
speakers from clipping. Level metering is pull-based: the probe reads the last
peak recorded on each track and never touches the audio path.
"""

import asyncio
import math
from dataclasses import dataclass, field

import numpy as np

from artifacts import Role
from audio_capture import LiveStream, Track
from errors import AcquisitionError, AcquisitionKind

# Compressor settings (dB / ratio / ms)
THRESHOLD_DB = -50.0
RATIO = 12.0
ATTACK_MS = 3.0
RELEASE_MS = 250.0


class Compressor:
    """Block-rate feed-forward compressor with automatic makeup gain."""

    def __init__(self, sample_rate: int, threshold_db: float = THRESHOLD_DB, ratio: float = RATIO,
                 attack_ms: float = ATTACK_MS, release_ms: float = RELEASE_MS):
        self.sample_rate = sample_rate
        self.threshold_db = threshold_db
        self.ratio = ratio
        self.attack_s = attack_ms / 1000
        self.release_s = release_ms / 1000
        self._gain_db = 0.0
        # Full-scale input lands here after compression; makeup lifts it back partially
        full_range_db = threshold_db - threshold_db / ratio
        self.makeup_db = -0.6 * full_range_db

    def target_gain_db(self, level_db: float) -> float:
        over = level_db - self.threshold_db
        if over <= 0:
            return 0.0
        return -over * (1 - 1 / self.ratio)

    def process(self, block: np.ndarray) -> np.ndarray:
        """Compress a float block in int16 scale."""
        if block.size == 0:
            return block
        peak = float(np.abs(block).max()) / 32768.0
        level_db = 20 * math.log10(max(peak, 1e-9))
        target = self.target_gain_db(level_db)
        tau = self.attack_s if target < self._gain_db else self.release_s
        coeff = math.exp(-(len(block) / self.sample_rate) / tau)
        self._gain_db = target + (self._gain_db - target) * coeff
        return block * (10 ** ((self._gain_db + self.makeup_db) / 20))


@dataclass
class MixInput:
    role: Role
    track: Track
    gain: float


class TrackSource:
    """Reads a single track unmixed."""

    def __init__(self, track: Track):
        self.track = track

    @property
    def live(self) -> bool:
        return self.track.live

    async def read(self, timeout: float = 0.5) -> np.ndarray | None:
        return await self.track.read(timeout)

    def read_nowait(self) -> np.ndarray | None:
        return self.track.read_nowait()


class MixedSource:
    """Sums several inputs into one int16 stream.

    The first live, non-placeholder input is the clock; every other input adds
    its next queued block if one is ready, without waiting for it.
    """

    def __init__(self, inputs: list[MixInput], compressor: Compressor):
        self.inputs = list(inputs)
        self.compressor = compressor

    @property
    def live(self) -> bool:
        return any(i.track.live for i in self.inputs)

    def remove(self, role: Role):
        self.inputs = [i for i in self.inputs if i.role != role]

    def _clock(self) -> MixInput | None:
        for item in self.inputs:
            if not item.track.placeholder and (item.track.live or item.track.pending):
                return item
        return None

    async def read(self, timeout: float = 0.5) -> np.ndarray | None:
        clock = self._clock()
        if clock is None:
            await asyncio.sleep(timeout)
            return None
        block = await clock.track.read(timeout)
        if block is None:
            return None
        return self._mix(clock, block)

    def read_nowait(self) -> np.ndarray | None:
        clock = self._clock()
        if clock is None:
            return None
        block = clock.track.read_nowait()
        if block is None:
            return None
        return self._mix(clock, block)

    def _mix(self, clock: MixInput, block: np.ndarray) -> np.ndarray:
        acc = block.astype(np.float32).reshape(-1) * clock.gain
        for item in self.inputs:
            if item is clock:
                continue
            extra = item.track.read_nowait()
            if extra is not None:
                acc += _fit(extra.astype(np.float32).reshape(-1), len(acc)) * item.gain

        out = self.compressor.process(acc)
        return np.clip(out, -32768, 32767).astype(np.int16)


def _fit(samples: np.ndarray, length: int) -> np.ndarray:
    """Trim or zero-pad to length."""
    if len(samples) >= length:
        return samples[:length]
    return np.pad(samples, (0, length - len(samples)))


class LevelProbe:
    """Pull-based peak metering per input role."""

    def __init__(self, inputs: list[MixInput]):
        self._tracks = {i.role: i.track for i in inputs}
        self._task: asyncio.Task | None = None

    @property
    def roles(self) -> list[Role]:
        return list(self._tracks)

    def sample(self) -> dict[str, int]:
        """Current peak (0-32767) per role; 0 for ended tracks."""
        return {role.value: (t.peak if t.live else 0) for role, t in self._tracks.items()}

    def remove(self, role: Role):
        self._tracks.pop(role, None)

    def start(self, on_levels=None, interval: float = 1.0):
        """Sample at least once a second until stop()."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(on_levels, min(interval, 1.0)))

    async def _run(self, on_levels, interval: float):
        while True:
            await asyncio.sleep(interval)
            levels = self.sample()
            if any(levels.values()):
                print("  [mixer] Levels - " + ", ".join(f"{k}: {v}" for k, v in levels.items()))
            if on_levels:
                on_levels(levels)

    def stop(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None


@dataclass
class MixResult:
    """Output of build(): the stream to record, its probe and degradation flag."""
    output: object
    probe: LevelProbe
    degraded: bool = False
    inputs: list[MixInput] = field(default_factory=list)

    def drop(self, role: Role):
        """Rewire output and probe to the remaining inputs.

        The output object is kept so a recorder already reading it continues
        with whatever inputs remain.
        """
        self.inputs = [i for i in self.inputs if i.role != role]
        self.probe.remove(role)
        if isinstance(self.output, MixedSource):
            self.output.remove(role)
        self.degraded = True

    def close(self):
        self.probe.stop()


def gain_for(role: Role, config) -> float:
    if role == Role.MICROPHONE:
        return config.mic_gain
    return config.counterpart_gain


def build(streams: list[tuple[LiveStream, Role]], config) -> MixResult:
    """Combine streams into one output.

    A stream without audio tracks is skipped and the result is flagged as a
    degraded mix; only if no stream has audio does this raise.
    """
    inputs: list[MixInput] = []
    degraded = False
    for stream, role in streams:
        audio = stream.audio_tracks()
        if not audio:
            print(f"  [mixer] {role.value} stream has no audio tracks; mixing without it")
            degraded = True
            continue
        for track in audio:
            inputs.append(MixInput(role=role, track=track, gain=gain_for(role, config)))

    if not inputs:
        raise AcquisitionError(AcquisitionKind.DEVICE_NOT_FOUND, "No audio tracks to record")

    probe = LevelProbe(inputs)
    if len(inputs) == 1:
        output = TrackSource(inputs[0].track)
    else:
        output = MixedSource(inputs, Compressor(config.sample_rate))
    return MixResult(output=output, probe=probe, degraded=degraded, inputs=inputs)
