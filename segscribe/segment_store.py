"""On-disk segment files: path allocation, space checks and WAV writers."""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Optional, Set, Union

import numpy as np
import soundfile as sf

from .errors import SegmentWriteFailure
from .models import AudioQuality

DEFAULT_SEGMENT_DIR = Path(tempfile.gettempdir()) / "segscribe"

PathLike = Union[str, Path]


class SegmentWriter:
    """Append-only WAV handle owned by the capture path."""

    def __init__(self, path: Path, quality: AudioQuality) -> None:
        self.path = path
        self.quality = quality
        self.frames = 0
        try:
            self._file: Optional[sf.SoundFile] = sf.SoundFile(
                str(path),
                mode="w",
                samplerate=quality.sample_rate,
                channels=quality.channels,
                subtype=quality.subtype,
                format="WAV",
            )
        except (RuntimeError, OSError) as exc:
            raise SegmentWriteFailure(f"Cannot open segment file {path}: {exc}") from exc

    @property
    def closed(self) -> bool:
        return self._file is None

    def write(self, frame: np.ndarray) -> None:
        if self._file is None:
            raise SegmentWriteFailure(f"Segment file {self.path} is already closed")
        try:
            self._file.write(frame)
        except (RuntimeError, OSError) as exc:
            raise SegmentWriteFailure(f"Cannot write to segment file {self.path}: {exc}") from exc
        self.frames += len(frame)

    def close(self) -> None:
        if self._file is None:
            return
        handle, self._file = self._file, None
        try:
            handle.close()
        except (RuntimeError, OSError) as exc:
            raise SegmentWriteFailure(f"Cannot finalise segment file {self.path}: {exc}") from exc


class SegmentStore:
    """Manage segment files in a scratch directory."""

    def __init__(self, root: Optional[PathLike] = None) -> None:
        self.root = Path(root) if root is not None else DEFAULT_SEGMENT_DIR
        self._allocated: Set[Path] = set()
        self._lock = threading.Lock()

    def allocate(self) -> Path:
        """Return a fresh segment path that has never been handed out before."""

        self.root.mkdir(parents=True, exist_ok=True)
        with self._lock:
            while True:
                name = f"segment_{time.time_ns()}_{uuid.uuid4().hex[:8]}.wav"
                path = self.root / name
                if path not in self._allocated and not path.exists():
                    self._allocated.add(path)
                    return path

    def has_sufficient_space(self, threshold_mb: float = 50.0) -> bool:
        self.root.mkdir(parents=True, exist_ok=True)
        try:
            usage = shutil.disk_usage(self.root)
        except OSError as exc:
            logging.warning("Unable to query free space for %s: %s", self.root, exc)
            return False
        free_mb = usage.free / (1024 * 1024)
        return free_mb > threshold_mb

    def exists(self, path: PathLike) -> bool:
        return Path(path).is_file()

    def has_audio(self, path: PathLike) -> bool:
        """Whether the file exists and holds at least one audio frame."""

        if not self.exists(path):
            return False
        try:
            return sf.info(str(path)).frames > 0
        except (RuntimeError, OSError) as exc:
            logging.debug("Unreadable segment %s: %s", path, exc)
            return False

    def open_writer(self, path: PathLike, quality: AudioQuality) -> SegmentWriter:
        return SegmentWriter(Path(path), quality)
