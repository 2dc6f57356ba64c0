from __future__ import annotations

import numpy as np

DEFAULT_GAIN = 20.0


class VolumeMeter:
    """Turn raw audio frames into a 0..1 loudness value for level indicators."""

    def __init__(self, gain: float = DEFAULT_GAIN) -> None:
        self.gain = gain
        self.level = 0.0

    def update(self, frame: np.ndarray) -> float:
        samples = np.asarray(frame, dtype=np.float64)
        if samples.size == 0:
            self.level = 0.0
            return self.level
        if samples.ndim > 1:
            samples = samples.flatten()

        rms = float(np.sqrt(np.mean(samples**2)))
        self.level = min(max(rms * self.gain, 0.0), 1.0)
        return self.level

    def reset(self) -> None:
        self.level = 0.0
