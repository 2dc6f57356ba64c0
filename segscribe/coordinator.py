"""Drive finalized segments through remote transcription, retries and fallback."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Set

from .connectivity import ConnectivityMonitor
from .errors import BackendFailure, FallbackFailure, NetworkUnavailable
from .ledger import RetryLedger
from .models import RecordingSession, Segment, SegmentStatus
from .scheduler import ScheduledJob, Scheduler
from .segment_store import SegmentStore
from .storage import Storage
from .transcriber import TranscriptionBackend

UNAVAILABLE_TRANSCRIPT = "[transcription unavailable]"
DEFAULT_MAX_ATTEMPTS = 5


class TranscriptionCoordinator:
    """Own the retry ledger and decide what happens to every finalized segment.

    ``submit`` never blocks: each segment is handled as a job on the scheduler.
    Work for one file path is single-flight, so a ledger drain racing a
    scheduled backoff retry is collapsed into one attempt. A path that already
    has a transcript is treated as done.

    Remote failures are retried after ``backoff_unit * 2 ** attempts`` seconds
    until ``max_attempts`` is reached; then the local backend gets exactly one
    try, and the segment is settled as ``fallback`` or ``failed``. An
    unreachable endpoint does not count as an attempt: it marks the monitor
    offline and the segment waits in the ledger for the next drain.
    """

    def __init__(
        self,
        remote: TranscriptionBackend,
        local: TranscriptionBackend,
        storage: Storage,
        ledger: RetryLedger,
        connectivity: ConnectivityMonitor,
        scheduler: Scheduler,
        store: Optional[SegmentStore] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_unit: float = 1.0,
    ) -> None:
        self.remote = remote
        self.local = local
        self.storage = storage
        self.ledger = ledger
        self.connectivity = connectivity
        self.scheduler = scheduler
        self.store = store or SegmentStore()
        self.max_attempts = max_attempts
        self.backoff_unit = backoff_unit
        self._in_flight: Set[str] = set()
        self._timers: Dict[str, ScheduledJob] = {}
        self._lock = threading.Lock()
        self._unsubscribe = connectivity.subscribe(self._on_connectivity_change)

    def submit(self, segment: Segment) -> None:
        """Queue a finalized segment for transcription and return immediately."""

        logging.debug("Submitting segment %s", Path(segment.file_path).name)
        self.scheduler.submit(self._process, segment)

    def drain(self) -> int:
        """Attempt every queued or unfinished file once. Returns the number of jobs started.

        Besides ledger entries this picks up segments still ``pending`` in
        storage, which is where a segment is left when the process died
        before its first attempt finished. A backoff retry already waiting
        for the same file is cancelled in favour of the immediate attempt.
        """

        refs = set(self.ledger.entries())
        refs.update(segment.file_path for segment in self.storage.pending_segments())
        if refs:
            logging.info("Draining %d queued segment(s)", len(refs))
        for ref in sorted(refs):
            self._cancel_retry(ref)
            self.scheduler.submit(self._retry, ref, False)
        return len(refs)

    def pending(self) -> Dict[str, int]:
        return self.ledger.entries()

    def close(self) -> None:
        self._unsubscribe()

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self.drain()

    def _process(self, segment: Segment) -> None:
        if not self._claim(segment.file_path):
            return
        try:
            persisted = self._persist_pending(segment)
            self._handle(persisted, check_connectivity=True)
        finally:
            self._release(segment.file_path)

    def _retry(self, ref: str, check_connectivity: bool = True) -> None:
        with self._lock:
            self._timers.pop(ref, None)
        if not self._claim(ref):
            logging.debug("Segment %s already in flight", Path(ref).name)
            return
        try:
            segment = self.storage.get_segment_by_path(ref)
            if segment is None:
                segment = self._persist_pending(Segment.open(ref))
            self._handle(segment, check_connectivity=check_connectivity)
        finally:
            self._release(ref)

    def _handle(self, segment: Segment, check_connectivity: bool) -> None:
        ref = segment.file_path
        name = Path(ref).name

        if self.storage.has_transcript(ref):
            logging.debug("Segment %s already transcribed", name)
            self.ledger.remove(ref)
            return

        if not self.store.has_audio(ref):
            logging.warning("Segment %s is missing or empty; marking failed", name)
            self._settle(segment, UNAVAILABLE_TRANSCRIPT, SegmentStatus.FAILED)
            return

        # Remote attempts are exhausted; the fallback never needs the network.
        if self.ledger.count(ref) >= self.max_attempts:
            self._fallback(segment)
            return

        if check_connectivity and not self.connectivity.is_online:
            count = self.ledger.add(ref)
            logging.info("Network unavailable, queued segment %s (attempts: %d)", name, count)
            return

        try:
            text = self.remote.transcribe(Path(ref))
        except NetworkUnavailable as exc:
            count = self.ledger.add(ref)
            logging.warning("Endpoint unreachable, queued segment %s (attempts: %d): %s", name, count, exc)
            self.connectivity.update(False)
            return
        except BackendFailure as exc:
            attempts = self.ledger.increment(ref)
            logging.warning("Transcription failed for %s (attempt %d): %s", name, attempts, exc)
            if attempts >= self.max_attempts:
                self._fallback(segment)
            else:
                delay = self.backoff_unit * 2**attempts
                logging.info("Retrying %s in %.1f s", name, delay)
                self._schedule_retry(ref, delay)
            return

        logging.info("Transcription success: %s", name)
        self._settle(segment, text, SegmentStatus.SUCCESS)

    def _fallback(self, segment: Segment) -> None:
        name = Path(segment.file_path).name
        logging.info("Falling back to local transcription for %s", name)
        try:
            text = self.local.transcribe(Path(segment.file_path))
        except FallbackFailure as exc:
            logging.error("Local transcription failed for %s: %s", name, exc)
            self._settle(segment, UNAVAILABLE_TRANSCRIPT, SegmentStatus.FAILED)
            return
        self._settle(segment, text, SegmentStatus.FALLBACK)

    def _settle(self, segment: Segment, text: str, status: SegmentStatus) -> None:
        transcript = self.storage.attach_transcript(segment.id, text, status)
        if transcript is None:
            logging.debug("Segment %s already had a transcript", Path(segment.file_path).name)
        self.ledger.remove(segment.file_path)

    def _persist_pending(self, segment: Segment) -> Segment:
        existing = self.storage.get_segment_by_path(segment.file_path)
        if existing is not None:
            return existing
        session_id = segment.session_id
        if session_id is None:
            session = self.storage.insert_session(RecordingSession.begin(started_at=segment.captured_at))
            session_id = session.id
        return self.storage.insert_segment(
            session_id,
            segment.file_path,
            segment.captured_at,
            SegmentStatus.PENDING,
            segment_id=segment.id,
        )

    def _schedule_retry(self, ref: str, delay: float) -> None:
        job = self.scheduler.call_later(delay, self._retry, ref)
        with self._lock:
            self._timers[ref] = job

    def _cancel_retry(self, ref: str) -> None:
        with self._lock:
            job = self._timers.pop(ref, None)
        if job is not None:
            job.cancel()

    def _claim(self, ref: str) -> bool:
        with self._lock:
            if ref in self._in_flight:
                return False
            self._in_flight.add(ref)
            return True

    def _release(self, ref: str) -> None:
        with self._lock:
            self._in_flight.discard(ref)
