import numpy as np
import pytest

from segscribe.volume import VolumeMeter


def test_silence_reads_zero():
    assert VolumeMeter().update(np.zeros(512, dtype=np.float32)) == 0.0


def test_level_scales_rms_and_clamps():
    meter = VolumeMeter()

    assert meter.update(np.full(256, 0.01, dtype=np.float32)) == pytest.approx(0.2)
    assert meter.update(np.full(256, -0.5, dtype=np.float32)) == 1.0
    assert meter.level == 1.0


def test_multichannel_frames_are_flattened():
    frame = np.full((128, 1), 0.025, dtype=np.float32)
    assert VolumeMeter().update(frame) == pytest.approx(0.5)


def test_empty_frame_and_reset():
    meter = VolumeMeter(gain=10.0)
    meter.update(np.full(8, 0.05))
    assert meter.level == pytest.approx(0.5)

    assert meter.update(np.array([], dtype=np.float32)) == 0.0
    meter.update(np.full(8, 0.05))
    meter.reset()
    assert meter.level == 0.0
