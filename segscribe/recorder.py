"""Segmented audio capture: the recorder state machine and its audio sources."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol, Tuple

import numpy as np

from .errors import InsufficientStorage, PermissionDenied, RecorderStateError, SegmentWriteFailure
from .models import AudioQuality, RecorderState, RecordingSession, Segment
from .scheduler import ScheduledJob, Scheduler
from .segment_store import SegmentStore, SegmentWriter
from .storage import Storage
from .volume import VolumeMeter

DEFAULT_SEGMENT_SECONDS = 30.0
DEFAULT_MIN_FREE_MB = 50.0


class AudioEvent(str, Enum):
    INTERRUPTION_BEGAN = "interruption_began"
    INTERRUPTION_ENDED = "interruption_ended"
    ROUTE_CHANGED = "route_changed"


class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNDETERMINED = "undetermined"


FrameCallback = Callable[[np.ndarray], None]
EventCallback = Callable[[AudioEvent], None]


class AudioSource(Protocol):
    """Platform audio collaborator delivering PCM frames and session events."""

    def start(self, on_frame: FrameCallback, on_event: EventCallback) -> None:
        ...

    def pause(self) -> None:
        ...

    def resume(self) -> None:
        ...

    def stop(self) -> None:
        ...


class MicrophonePermission(Protocol):
    def status(self) -> PermissionStatus:
        ...

    def request(self) -> bool:
        ...


class SegmentSink(Protocol):
    def submit(self, segment: Segment) -> None:
        ...


class StaticPermission:
    """Permission answer fixed up front, for hosts that grant access out of band."""

    def __init__(self, status: PermissionStatus = PermissionStatus.GRANTED, grant_on_request: bool = True) -> None:
        self._status = status
        self._grant_on_request = grant_on_request

    def status(self) -> PermissionStatus:
        return self._status

    def request(self) -> bool:
        if self._status is PermissionStatus.UNDETERMINED:
            self._status = PermissionStatus.GRANTED if self._grant_on_request else PermissionStatus.DENIED
        return self._status is PermissionStatus.GRANTED


def _import_sounddevice() -> Any:
    try:
        import sounddevice as sd  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "The `sounddevice` package and PortAudio are required for recording."
        ) from exc
    return sd


class SoundDevicePermission:
    """Treat the presence of a usable default input device as granted access."""

    def status(self) -> PermissionStatus:
        sd = _import_sounddevice()
        try:
            sd.query_devices(kind="input")
        except (sd.PortAudioError, ValueError) as exc:
            logging.debug("No input device available: %s", exc)
            return PermissionStatus.DENIED
        return PermissionStatus.GRANTED

    def request(self) -> bool:
        return self.status() is PermissionStatus.GRANTED


class SoundDeviceSource:
    """Stream microphone audio through a `sounddevice.InputStream`.

    A stream that ends without being asked to (device removed, host error) is
    reported as an interruption.
    """

    def __init__(self, quality: AudioQuality, device: Optional[Any] = None, blocksize: int = 1024) -> None:
        self._sd = _import_sounddevice()
        self._quality = quality
        self._device = device
        self._blocksize = blocksize
        self._stream = None
        self._on_frame: Optional[FrameCallback] = None
        self._on_event: Optional[EventCallback] = None
        self._expected_stop = False

    def start(self, on_frame: FrameCallback, on_event: EventCallback) -> None:
        if self._stream is not None:
            return
        self._on_frame = on_frame
        self._on_event = on_event
        self._expected_stop = False
        self._stream = self._sd.InputStream(
            samplerate=self._quality.sample_rate,
            channels=self._quality.channels,
            dtype="float32",
            device=self._device,
            blocksize=self._blocksize,
            callback=self._callback,
            finished_callback=self._finished,
        )
        self._stream.start()

    def pause(self) -> None:
        if self._stream is None:
            return
        self._expected_stop = True
        self._stream.stop()

    def resume(self) -> None:
        if self._stream is None:
            return
        self._expected_stop = False
        self._stream.start()

    def stop(self) -> None:
        if self._stream is None:
            return
        self._expected_stop = True
        stream, self._stream = self._stream, None
        stream.stop()
        stream.close()

    def _callback(self, indata, frames, time, status) -> None:  # type: ignore[override]
        if status:
            logging.debug("Recorder status: %s", status)
        if self._on_frame is not None:
            self._on_frame(indata.copy())

    def _finished(self) -> None:
        if self._expected_stop or self._on_event is None:
            return
        logging.warning("Audio stream ended unexpectedly")
        # Stopping the recorder closes this stream; that cannot happen on the PortAudio thread.
        threading.Thread(target=self._on_event, args=(AudioEvent.INTERRUPTION_BEGAN,), daemon=True).start()


class SegmentRecorder:
    """Capture audio into fixed-length segments and hand each one off when it closes.

    The audio callback only touches :meth:`on_frame`, which meters the frame
    and appends it to the open segment. Commands (start, rotate, pause,
    resume, stop, interruptions) are serialized by one lock; the writer swap
    during rotation happens under a second, short lock shared with
    ``on_frame`` so no frame is lost or written to a closed file.
    """

    def __init__(
        self,
        source: AudioSource,
        sink: SegmentSink,
        store: SegmentStore,
        scheduler: Scheduler,
        permission: Optional[MicrophonePermission] = None,
        storage: Optional[Storage] = None,
        quality: AudioQuality = AudioQuality.HIGH,
        segment_seconds: float = DEFAULT_SEGMENT_SECONDS,
        min_free_mb: float = DEFAULT_MIN_FREE_MB,
        meter: Optional[VolumeMeter] = None,
    ) -> None:
        self.source = source
        self.sink = sink
        self.store = store
        self.scheduler = scheduler
        self.permission = permission or StaticPermission()
        self.storage = storage
        self.quality = quality
        self.segment_seconds = segment_seconds
        self.min_free_mb = min_free_mb
        self.meter = meter or VolumeMeter()
        self.write_failures = 0

        self._state = RecorderState.IDLE
        self._state_lock = threading.RLock()
        self._writer_lock = threading.Lock()
        self._writer: Optional[SegmentWriter] = None
        self._segment: Optional[Segment] = None
        self._session: Optional[RecordingSession] = None
        self._submitted: List[Segment] = []
        self._timer: Optional[ScheduledJob] = None
        self._generation = 0
        self._listeners: List[Callable[[RecorderState], None]] = []

    @property
    def state(self) -> RecorderState:
        return self._state

    @property
    def volume_level(self) -> float:
        return self.meter.level

    @property
    def current_session(self) -> Optional[RecordingSession]:
        return self._session

    @property
    def current_segment(self) -> Optional[Segment]:
        return self._segment

    def add_listener(self, listener: Callable[[RecorderState], None]) -> None:
        self._listeners.append(listener)

    def start(self) -> RecordingSession:
        with self._state_lock:
            if self._state is not RecorderState.IDLE:
                raise RecorderStateError(f"Cannot start while {self._state.value}")
            self._ensure_permission()
            if not self.store.has_sufficient_space(self.min_free_mb):
                logging.warning("Not enough free space to record (need > %.0f MB)", self.min_free_mb)
                raise InsufficientStorage(
                    f"Less than {self.min_free_mb:.0f} MB of free space is available for recording."
                )

            session = RecordingSession.begin()
            writer, segment = self._open_segment(session.id)
            self._session = session
            self._writer = writer
            self._segment = segment
            self._submitted = []
            self.write_failures = 0
            self._set_state(RecorderState.RECORDING)
            try:
                self.source.start(self.on_frame, self.handle_event)
            except Exception:
                self._set_state(RecorderState.IDLE)
                self._abandon_open_segment()
                raise

            if self.storage is not None:
                self.storage.insert_session(session)
            self._generation += 1
            self._arm_timer()
            logging.info("Recording started (session %s)", session.id)
            return session

    def on_frame(self, frame: np.ndarray) -> None:
        if self._state not in (RecorderState.RECORDING, RecorderState.ROTATING):
            return
        self.meter.update(frame)
        with self._writer_lock:
            if self._writer is None:
                return
            try:
                self._writer.write(frame)
            except SegmentWriteFailure as exc:
                self.write_failures += 1
                logging.warning("%s", exc)

    def rotate(self) -> Optional[Segment]:
        """Close the open segment, submit it and continue in a new one."""

        with self._state_lock:
            if self._state is not RecorderState.RECORDING or self._session is None:
                return None
            self._set_state(RecorderState.ROTATING)
            try:
                try:
                    writer, segment = self._open_segment(self._session.id)
                except SegmentWriteFailure as exc:
                    logging.error("Failed to rotate segment, continuing in current file: %s", exc)
                    return None
                with self._writer_lock:
                    old_writer, self._writer = self._writer, writer
                old_segment, self._segment = self._segment, segment
                self._finalize(old_writer, old_segment)
                return old_segment
            finally:
                self._set_state(RecorderState.RECORDING)

    def pause(self) -> None:
        with self._state_lock:
            if self._state is not RecorderState.RECORDING:
                raise RecorderStateError(f"Cannot pause while {self._state.value}")
            self.source.pause()
            self._set_state(RecorderState.PAUSED)
            logging.info("Recording paused")

    def resume(self) -> None:
        with self._state_lock:
            if self._state is not RecorderState.PAUSED:
                raise RecorderStateError(f"Cannot resume while {self._state.value}")
            self.source.resume()
            self._set_state(RecorderState.RECORDING)
            logging.info("Recording resumed")

    def stop(self) -> List[Segment]:
        """Finish the session. Returns every segment submitted during it."""

        with self._state_lock:
            if self._state not in (RecorderState.RECORDING, RecorderState.PAUSED):
                raise RecorderStateError(f"Cannot stop while {self._state.value}")
            self._set_state(RecorderState.STOPPING)
            self._cancel_timer()
            try:
                self.source.stop()
            except Exception:
                logging.exception("Failed to stop audio source cleanly")

            with self._writer_lock:
                writer, self._writer = self._writer, None
            segment, self._segment = self._segment, None
            if segment is not None:
                self._finalize(writer, segment)

            submitted = list(self._submitted)
            self._submitted = []
            self._session = None
            self.meter.reset()
            self._set_state(RecorderState.IDLE)
            logging.info("Recording stopped (%d segment(s))", len(submitted))
            return submitted

    def handle_event(self, event: AudioEvent) -> None:
        """React to the platform audio event channel."""

        if event is AudioEvent.INTERRUPTION_BEGAN:
            with self._state_lock:
                if self._state in (RecorderState.RECORDING, RecorderState.PAUSED):
                    logging.info("Audio interruption began; stopping recording")
                    self.stop()
                else:
                    logging.debug("Audio interruption while %s ignored", self._state.value)
            return
        logging.info("Audio event: %s", event.value)

    def _ensure_permission(self) -> None:
        status = self.permission.status()
        if status is PermissionStatus.GRANTED:
            return
        if status is PermissionStatus.UNDETERMINED and self.permission.request():
            return
        if status is PermissionStatus.DENIED:
            raise PermissionDenied("Microphone access is denied. Please enable it in your system settings.")
        raise PermissionDenied("Microphone access is required to record audio.")

    def _open_segment(self, session_id: str) -> Tuple[SegmentWriter, Segment]:
        path = self.store.allocate()
        writer = self.store.open_writer(path, self.quality)
        segment = Segment.open(str(path), session_id=session_id)
        logging.debug("Started segment %s", path.name)
        return writer, segment

    def _finalize(self, writer: Optional[SegmentWriter], segment: Segment) -> None:
        if writer is not None:
            try:
                writer.close()
            except SegmentWriteFailure as exc:
                self.write_failures += 1
                logging.error("%s", exc)
            if writer.frames == 0:
                logging.warning("Segment %s captured no audio", Path(segment.file_path).name)
        self._submitted.append(segment)
        if self._session is not None:
            self._session.segments.append(segment)
        self.sink.submit(segment)

    def _abandon_open_segment(self) -> None:
        with self._writer_lock:
            writer, self._writer = self._writer, None
        segment, self._segment = self._segment, None
        self._session = None
        if writer is not None:
            try:
                writer.close()
            except SegmentWriteFailure as exc:
                logging.debug("%s", exc)
        if segment is not None:
            Path(segment.file_path).unlink(missing_ok=True)

    def _arm_timer(self) -> None:
        self._timer = self.scheduler.call_later(self.segment_seconds, self._on_timer, self._generation)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self, generation: int) -> None:
        with self._state_lock:
            if generation != self._generation:
                return
            if self._state is RecorderState.RECORDING:
                self.rotate()
            if self._state in (RecorderState.RECORDING, RecorderState.PAUSED):
                self._arm_timer()

    def _set_state(self, state: RecorderState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logging.exception("Recorder listener failed")
