"""Dataclasses describing sessions, segments and transcripts for segscribe."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class SegmentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    FALLBACK = "fallback"

    @property
    def is_final(self) -> bool:
        return self is not SegmentStatus.PENDING


class RecorderState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"
    ROTATING = "rotating"
    STOPPING = "stopping"


class AudioQuality(str, Enum):
    """Capture presets. All presets are mono linear PCM."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def sample_rate(self) -> int:
        return _QUALITY_SETTINGS[self][0]

    @property
    def bit_depth(self) -> int:
        return _QUALITY_SETTINGS[self][1]

    @property
    def channels(self) -> int:
        return 1

    @property
    def subtype(self) -> str:
        # WAV stores 8-bit PCM unsigned.
        return "PCM_U8" if self.bit_depth == 8 else "PCM_16"


_QUALITY_SETTINGS = {
    AudioQuality.LOW: (8000, 8),
    AudioQuality.MEDIUM: (16000, 16),
    AudioQuality.HIGH: (44100, 16),
}


@dataclass(slots=True, frozen=True)
class Transcript:
    """Text produced by a backend for exactly one segment."""

    id: str
    text: str
    created_at: datetime


@dataclass(slots=True)
class Segment:
    """One capture interval and its transcription outcome."""

    id: str
    file_path: str
    captured_at: datetime
    session_id: Optional[str] = None
    status: SegmentStatus = SegmentStatus.PENDING
    transcript: Optional[Transcript] = None

    @classmethod
    def open(cls, file_path: str, session_id: Optional[str] = None) -> "Segment":
        return cls(id=new_id(), file_path=file_path, captured_at=utcnow(), session_id=session_id)


@dataclass(slots=True)
class RecordingSession:
    """A single start-to-stop recording run."""

    id: str
    started_at: datetime
    segments: List[Segment] = field(default_factory=list)

    @classmethod
    def begin(cls, started_at: Optional[datetime] = None) -> "RecordingSession":
        return cls(id=new_id(), started_at=started_at or utcnow())


@dataclass(slots=True)
class Config:
    """User configuration stored on disk."""

    remote_url: str = "https://api.openai.com/v1/audio/transcriptions"
    remote_model: str = "whisper-1"
    openai_api_key: Optional[str] = None
    whisper_model: str = "base"
    quality: str = AudioQuality.HIGH.value
    segment_seconds: float = 30.0
    min_free_mb: float = 50.0
    max_remote_attempts: int = 5
    backoff_unit: float = 1.0
    api_timeout: float = 60.0
    reachability_interval: float = 10.0
    segment_dir: Optional[str] = None

    @property
    def audio_quality(self) -> AudioQuality:
        return AudioQuality(self.quality)
