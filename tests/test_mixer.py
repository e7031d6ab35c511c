"""Tests for the mixing graph: degradation, summing, compressor, level probe."""

import sys
import os
import asyncio

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _stream(*kinds, label=""):
    from audio_capture import LiveStream, Track
    return LiveStream([Track(kind, label=f"{label}-{kind}") for kind in kinds], label=label)


def test_counterpart_without_audio_is_degraded_not_fatal(config):
    import mixer
    from artifacts import Role
    mic = _stream("audio", label="mic")
    screen = _stream("video", label="screen")

    result = mixer.build([(mic, Role.MICROPHONE), (screen, Role.COUNTERPART)], config)

    assert result.degraded
    assert isinstance(result.output, mixer.TrackSource)
    assert result.probe.roles == [Role.MICROPHONE]


def test_no_audio_at_all_raises(config):
    import mixer
    from artifacts import Role
    from errors import AcquisitionError, AcquisitionKind
    with pytest.raises(AcquisitionError) as exc:
        mixer.build([(_stream("video"), Role.COUNTERPART)], config)
    assert exc.value.kind == AcquisitionKind.DEVICE_NOT_FOUND


def test_two_audio_inputs_produce_mixed_source(config):
    import mixer
    from artifacts import Role
    result = mixer.build([(_stream("audio"), Role.MICROPHONE), (_stream("audio"), Role.COUNTERPART)], config)
    assert isinstance(result.output, mixer.MixedSource)
    assert not result.degraded
    gains = {i.role: i.gain for i in result.inputs}
    assert gains[Role.MICROPHONE] == config.mic_gain
    assert gains[Role.COUNTERPART] == config.counterpart_gain


@pytest.mark.anyio
async def test_mixed_source_sums_and_stays_in_int16(config):
    import mixer
    from artifacts import Role
    mic, counterpart = _stream("audio"), _stream("audio")
    result = mixer.build([(mic, Role.MICROPHONE), (counterpart, Role.COUNTERPART)], config)

    mic.audio_tracks()[0].feed(np.full(100, 30000, dtype=np.int16))
    counterpart.audio_tracks()[0].feed(np.full(60, 30000, dtype=np.int16))
    block = await result.output.read(timeout=0.1)

    assert block.dtype == np.int16
    assert len(block) == 100
    assert counterpart.audio_tracks()[0].pending == 0


@pytest.mark.anyio
async def test_drop_keeps_output_reading_remaining_input(config):
    import mixer
    from artifacts import Role
    mic, counterpart = _stream("audio"), _stream("audio")
    result = mixer.build([(mic, Role.MICROPHONE), (counterpart, Role.COUNTERPART)], config)
    output = result.output

    result.drop(Role.COUNTERPART)
    counterpart.stop("source-closed")

    assert result.output is output
    assert result.degraded
    assert [i.role for i in output.inputs] == [Role.MICROPHONE]
    mic.audio_tracks()[0].feed(np.full(50, 10, dtype=np.int16))
    assert len(await output.read(timeout=0.1)) == 50


@pytest.mark.anyio
async def test_placeholder_is_never_the_clock(config):
    import mixer
    from artifacts import Role
    from audio_capture import LiveStream, Track
    placeholder = LiveStream([Track("audio", placeholder=True)])
    mic = _stream("audio")
    result = mixer.build([(placeholder, Role.COUNTERPART), (mic, Role.MICROPHONE)], config)

    mic.audio_tracks()[0].feed(np.full(80, 10, dtype=np.int16))
    block = await result.output.read(timeout=0.1)
    assert block is not None and len(block) == 80


def test_compressor_leaves_quiet_signal_uncompressed():
    from mixer import Compressor, THRESHOLD_DB, RATIO
    comp = Compressor(44100)
    assert comp.target_gain_db(THRESHOLD_DB - 10) == 0.0
    assert comp.target_gain_db(-20.0) == pytest.approx(-30.0 * (1 - 1 / RATIO))
    assert comp.makeup_db > 0


def test_compressor_attenuates_loud_block():
    from mixer import Compressor
    comp = Compressor(1000)
    loud = np.full(1000, 32000, dtype=np.float32)
    for _ in range(5):
        out = comp.process(loud)
    assert np.abs(out).max() < 32000


@pytest.mark.anyio
async def test_level_probe_reports_peaks_per_role(config):
    import mixer
    from artifacts import Role
    mic, counterpart = _stream("audio"), _stream("audio")
    result = mixer.build([(mic, Role.MICROPHONE), (counterpart, Role.COUNTERPART)], config)

    mic.audio_tracks()[0].feed(np.array([0, -1200, 800], dtype=np.int16))
    assert result.probe.sample() == {"microphone": 1200, "counterpart": 0}

    seen = []
    result.probe.start(seen.append, interval=0.01)
    await asyncio.sleep(0.05)
    result.close()
    assert seen and seen[0]["microphone"] == 1200
