"""Errors raised by the capture and transcription pipeline."""

from __future__ import annotations


class SegscribeError(RuntimeError):
    """Base class for pipeline errors."""


class PermissionDenied(SegscribeError):
    """Microphone access was refused."""


class InsufficientStorage(SegscribeError):
    """Free disk space is below the recording threshold."""


class SegmentWriteFailure(SegscribeError):
    """A segment file could not be opened or appended to."""


class BackendFailure(SegscribeError):
    """The remote backend returned a non-200 status or an unusable body."""


class NetworkUnavailable(BackendFailure):
    """The remote endpoint could not be reached at all."""


class FallbackFailure(SegscribeError):
    """The on-device recognizer failed to produce a transcript."""


class RecorderStateError(SegscribeError):
    """A recorder command was issued in a state that does not allow it."""
