from collections import deque
from pathlib import Path

import numpy as np
import pytest
import soundfile as sf

from segscribe.connectivity import ConnectivityMonitor
from segscribe.coordinator import TranscriptionCoordinator
from segscribe.errors import BackendFailure, FallbackFailure
from segscribe.ledger import RetryLedger
from segscribe.segment_store import SegmentStore
from segscribe.storage import Storage


class ManualJob:
    def __init__(self, delay, fn, args):
        self.delay = delay
        self.fn = fn
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Runs submitted jobs and timers only when the test says so."""

    def __init__(self):
        self.ready = deque()
        self.timers = []

    def submit(self, fn, *args):
        self.ready.append((fn, args))

    def call_later(self, delay, fn, *args):
        job = ManualJob(delay, fn, args)
        self.timers.append(job)
        return job

    @property
    def pending_delays(self):
        return [job.delay for job in self.timers if not job.cancelled]

    def run_pending(self):
        while self.ready:
            fn, args = self.ready.popleft()
            fn(*args)

    def fire_timers(self):
        due, self.timers = [job for job in self.timers if not job.cancelled], []
        for job in due:
            self.ready.append((job.fn, job.args))
        self.run_pending()


class FakeBackend:
    """Plays back a script of results; exceptions are raised, strings returned."""

    def __init__(self, name, script=(), error=BackendFailure):
        self.name = name
        self.script = list(script)
        self.error = error
        self.calls = []

    def transcribe(self, audio_path):
        self.calls.append(str(audio_path))
        if not self.script:
            raise self.error(f"{self.name} has nothing scripted")
        outcome = self.script.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeSource:
    def __init__(self, fail_on_start=None):
        self.on_frame = None
        self.on_event = None
        self.running = False
        self.fail_on_start = fail_on_start

    def start(self, on_frame, on_event):
        if self.fail_on_start is not None:
            raise self.fail_on_start
        self.on_frame = on_frame
        self.on_event = on_event
        self.running = True

    def pause(self):
        self.running = False

    def resume(self):
        self.running = True

    def stop(self):
        self.running = False

    def emit(self, frame):
        self.on_frame(frame)


class CollectingSink:
    def __init__(self):
        self.segments = []

    def submit(self, segment):
        self.segments.append(segment)


def write_wav(path, frames=1600, samplerate=16000):
    tone = 0.1 * np.sin(np.linspace(0, 2 * np.pi * 440, frames, dtype=np.float32))
    sf.write(str(path), tone, samplerate, subtype="PCM_16")
    return Path(path)


def tone_frame(size=1024, amplitude=0.1):
    return np.full((size, 1), amplitude, dtype=np.float32)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def store(tmp_path):
    return SegmentStore(tmp_path / "segments")


@pytest.fixture
def storage(tmp_path):
    return Storage(db_path=tmp_path / "transcripts.db")


@pytest.fixture
def ledger(tmp_path):
    return RetryLedger(tmp_path / "ledger.json")


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(online=True)


@pytest.fixture
def remote():
    return FakeBackend("remote")


@pytest.fixture
def local():
    return FakeBackend("local", error=FallbackFailure)


@pytest.fixture
def coordinator(remote, local, storage, ledger, connectivity, scheduler, store):
    return TranscriptionCoordinator(
        remote=remote,
        local=local,
        storage=storage,
        ledger=ledger,
        connectivity=connectivity,
        scheduler=scheduler,
        store=store,
        max_attempts=5,
        backoff_unit=1.0,
    )
