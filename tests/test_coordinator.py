import json
import sys
import threading
from types import SimpleNamespace

from segscribe.connectivity import ConnectivityMonitor
from segscribe.coordinator import UNAVAILABLE_TRANSCRIPT, TranscriptionCoordinator
from segscribe.errors import BackendFailure, FallbackFailure, NetworkUnavailable
from segscribe.ledger import RetryLedger
from segscribe.models import AudioQuality, RecordingSession, Segment, SegmentStatus
from segscribe.scheduler import ThreadScheduler
from segscribe.transcriber import LocalBackend

from conftest import FakeBackend, write_wav


def _segment(storage, path):
    session = storage.insert_session(RecordingSession.begin())
    return Segment.open(str(path), session_id=session.id)


def test_successful_remote_transcription(coordinator, remote, storage, ledger, scheduler, store):
    path = write_wav(store.allocate())
    remote.script = ["hello world"]

    coordinator.submit(_segment(storage, path))
    assert remote.calls == []  # submit never runs work inline
    scheduler.run_pending()

    segment = storage.get_segment_by_path(str(path))
    assert segment.status is SegmentStatus.SUCCESS
    assert segment.transcript.text == "hello world"
    assert str(path) not in ledger
    assert remote.calls == [str(path)]


def test_offline_segment_is_queued_then_drained_once(coordinator, remote, storage, ledger, scheduler, store, connectivity):
    path = write_wav(store.allocate())
    connectivity.update(False)

    coordinator.submit(_segment(storage, path))
    scheduler.run_pending()

    assert ledger.entries() == {str(path): 0}
    assert remote.calls == []
    assert storage.get_segment_by_path(str(path)).status is SegmentStatus.PENDING

    remote.script = ["back online"]
    connectivity.update(True)
    scheduler.run_pending()

    assert remote.calls == [str(path)]
    assert len(ledger) == 0
    segment = storage.get_segment_by_path(str(path))
    assert segment.status is SegmentStatus.SUCCESS
    assert segment.transcript.text == "back online"


def test_failures_back_off_exponentially_then_fall_back(coordinator, remote, local, storage, ledger, scheduler, store):
    path = write_wav(store.allocate())
    local.script = ["local text"]

    coordinator.submit(_segment(storage, path))
    scheduler.run_pending()

    delays = []
    while scheduler.pending_delays:
        delays.extend(scheduler.pending_delays)
        scheduler.fire_timers()

    assert delays == [2.0, 4.0, 8.0, 16.0]
    assert len(remote.calls) == 5
    assert local.calls == [str(path)]
    segment = storage.get_segment_by_path(str(path))
    assert segment.status is SegmentStatus.FALLBACK
    assert segment.transcript.text == "local text"
    assert str(path) not in ledger


def test_attempt_count_is_tracked_in_the_ledger(coordinator, remote, storage, ledger, scheduler, store):
    path = write_wav(store.allocate())

    coordinator.submit(_segment(storage, path))
    scheduler.run_pending()
    assert ledger.count(path) == 1

    scheduler.fire_timers()
    assert ledger.count(path) == 2
    assert scheduler.pending_delays == [4.0]


def test_unreachable_endpoint_queues_without_spending_attempts(coordinator, remote, local, storage, ledger, scheduler, store, connectivity):
    first = write_wav(store.allocate())
    second = write_wav(store.allocate())
    remote.script = [NetworkUnavailable("no route to host")]

    coordinator.submit(_segment(storage, first))
    scheduler.run_pending()

    assert not connectivity.is_online
    assert ledger.entries() == {str(first): 0}
    assert scheduler.pending_delays == []
    assert local.calls == []
    assert storage.get_segment_by_path(str(first)).status is SegmentStatus.PENDING

    # Recording carries on while the network is down.
    coordinator.submit(_segment(storage, second))
    scheduler.run_pending()
    assert remote.calls == [str(first)]
    assert ledger.entries() == {str(first): 0, str(second): 0}

    remote.script = ["back online", "back online"]
    connectivity.update(True)
    scheduler.run_pending()

    assert sorted(remote.calls[1:]) == sorted([str(first), str(second)])
    for path in (first, second):
        assert storage.get_segment_by_path(str(path)).status is SegmentStatus.SUCCESS
    assert local.calls == []
    assert len(ledger) == 0


def test_restored_entry_at_attempt_limit_goes_straight_to_fallback(coordinator, remote, local, storage, ledger, scheduler, store):
    path = write_wav(store.allocate())
    ledger.add(path, 5)
    local.script = ["on device"]

    assert coordinator.drain() == 1
    scheduler.run_pending()

    assert remote.calls == []
    segment = storage.get_segment_by_path(str(path))
    assert segment.status is SegmentStatus.FALLBACK
    assert segment.transcript.text == "on device"


def test_model_load_failure_is_contained_to_the_segment(tmp_path, monkeypatch, remote, storage, ledger, scheduler, store, connectivity):
    def load_model(name):
        raise RuntimeError(f"Model {name} not found")

    monkeypatch.setitem(sys.modules, "whisper", SimpleNamespace(load_model=load_model))
    coordinator = TranscriptionCoordinator(
        remote=remote,
        local=LocalBackend("bogus"),
        storage=storage,
        ledger=ledger,
        connectivity=connectivity,
        scheduler=scheduler,
        store=store,
    )
    path = write_wav(store.allocate())
    ledger.add(path, 4)

    coordinator.submit(_segment(storage, path))
    scheduler.run_pending()

    segment = storage.get_segment_by_path(str(path))
    assert segment.status is SegmentStatus.FAILED
    assert segment.transcript.text == UNAVAILABLE_TRANSCRIPT
    assert len(ledger) == 0

    assert coordinator.drain() == 0
    scheduler.run_pending()
    assert len(remote.calls) == 1


def test_drain_replaces_a_waiting_backoff_retry(coordinator, remote, storage, ledger, scheduler, store):
    path = write_wav(store.allocate())

    coordinator.submit(_segment(storage, path))
    scheduler.run_pending()
    assert scheduler.pending_delays == [2.0]

    coordinator.drain()
    assert scheduler.pending_delays == []
    scheduler.run_pending()
    assert scheduler.pending_delays == [4.0]

    coordinator.drain()
    scheduler.run_pending()
    assert scheduler.pending_delays == [8.0]
    assert len(remote.calls) == 3
    assert ledger.count(path) == 3


def test_pending_segment_without_ledger_entry_is_resumed_after_restart(tmp_path, remote, local, storage, scheduler, store, connectivity):
    path = write_wav(store.allocate())
    segment = _segment(storage, path)
    storage.insert_segment(segment.session_id, segment.file_path, segment.captured_at, segment_id=segment.id)

    ledger = RetryLedger(tmp_path / "ledger.json")
    assert ledger.entries() == {}
    remote.script = ["resumed"]
    coordinator = TranscriptionCoordinator(
        remote=remote,
        local=local,
        storage=storage,
        ledger=ledger,
        connectivity=connectivity,
        scheduler=scheduler,
        store=store,
    )

    assert coordinator.drain() == 1
    scheduler.run_pending()

    restored = storage.get_segment_by_path(str(path))
    assert restored.id == segment.id
    assert restored.status is SegmentStatus.SUCCESS
    assert restored.transcript.text == "resumed"
    assert storage.pending_segments() == []


def test_fallback_failure_marks_segment_failed(coordinator, remote, local, storage, ledger, scheduler, store):
    path = write_wav(store.allocate())
    ledger.add(path, 4)

    coordinator.submit(_segment(storage, path))
    scheduler.run_pending()

    segment = storage.get_segment_by_path(str(path))
    assert segment.status is SegmentStatus.FAILED
    assert segment.transcript.text == UNAVAILABLE_TRANSCRIPT
    assert local.calls == [str(path)]
    assert len(ledger) == 0
    assert scheduler.pending_delays == []


def test_no_remote_attempt_after_fallback(coordinator, remote, local, storage, scheduler, store):
    path = write_wav(store.allocate())
    local.script = ["from device"]
    segment = _segment(storage, path)
    coordinator.ledger.add(path, 4)

    coordinator.submit(segment)
    scheduler.run_pending()
    coordinator.submit(segment)
    coordinator.drain()
    scheduler.run_pending()

    assert len(remote.calls) == 1
    assert len(local.calls) == 1
    assert storage.get_segment_by_path(str(path)).status is SegmentStatus.FALLBACK


def test_resubmitting_a_transcribed_segment_is_a_no_op(coordinator, remote, storage, scheduler, store):
    path = write_wav(store.allocate())
    remote.script = ["only once"]
    segment = _segment(storage, path)

    coordinator.submit(segment)
    scheduler.run_pending()
    first = storage.get_segment_by_path(str(path))

    coordinator.submit(segment)
    scheduler.run_pending()
    second = storage.get_segment_by_path(str(path))

    assert remote.calls == [str(path)]
    assert second.status is SegmentStatus.SUCCESS
    assert second.transcript == first.transcript


def test_drain_racing_a_scheduled_retry_creates_one_transcript(coordinator, remote, storage, ledger, scheduler, store):
    path = write_wav(store.allocate())
    remote.script = [BackendFailure("503"), "recovered"]

    coordinator.submit(_segment(storage, path))
    scheduler.run_pending()
    assert scheduler.pending_delays == [2.0]

    coordinator.drain()
    scheduler.run_pending()
    scheduler.fire_timers()

    assert len(remote.calls) == 2
    assert ledger.count(path) == 0
    session = storage.get_session(storage.get_segment_by_path(str(path)).session_id)
    assert [s.transcript.text for s in session.segments] == ["recovered"]


def test_concurrent_submissions_share_one_attempt(tmp_path, store, storage):
    path = write_wav(store.allocate())
    entered = threading.Event()
    release = threading.Event()

    class SlowRemote:
        name = "remote"

        def __init__(self):
            self.calls = 0

        def transcribe(self, audio_path):
            self.calls += 1
            entered.set()
            release.wait(5)
            return "slow but steady"

    remote = SlowRemote()
    scheduler = ThreadScheduler(max_workers=4)
    ledger = RetryLedger(tmp_path / "ledger.json")
    coordinator = TranscriptionCoordinator(
        remote=remote,
        local=FakeBackend("local", error=FallbackFailure),
        storage=storage,
        ledger=ledger,
        connectivity=ConnectivityMonitor(),
        scheduler=scheduler,
        store=store,
    )
    segment = _segment(storage, path)
    ledger.add(path)

    coordinator.submit(segment)
    assert entered.wait(5)
    coordinator.submit(segment)
    coordinator.drain()
    release.set()
    assert scheduler.join(timeout=5)
    scheduler.shutdown()

    assert remote.calls == 1
    assert storage.get_segment_by_path(str(path)).transcript.text == "slow but steady"
    assert len(ledger) == 0


def test_missing_file_is_marked_failed_without_backend_calls(coordinator, remote, local, storage, ledger, scheduler, store):
    path = store.allocate()
    ledger.add(path)

    coordinator.submit(_segment(storage, path))
    scheduler.run_pending()

    segment = storage.get_segment_by_path(str(path))
    assert segment.status is SegmentStatus.FAILED
    assert segment.transcript.text == UNAVAILABLE_TRANSCRIPT
    assert remote.calls == [] and local.calls == []
    assert len(ledger) == 0


def test_empty_segment_file_is_marked_failed(coordinator, remote, storage, scheduler, store):
    path = store.allocate()
    store.open_writer(path, AudioQuality.MEDIUM).close()

    coordinator.submit(_segment(storage, path))
    scheduler.run_pending()

    assert storage.get_segment_by_path(str(path)).status is SegmentStatus.FAILED
    assert remote.calls == []


def test_restart_keeps_only_entries_whose_files_exist(tmp_path, remote, local, storage, scheduler, store, connectivity):
    file_a = write_wav(store.allocate())
    file_b = store.root / "gone.wav"
    ledger_path = tmp_path / "restart-ledger.json"
    ledger_path.write_text(json.dumps({"version": 1, "entries": {str(file_a): 2, str(file_b): 4}}))

    ledger = RetryLedger(ledger_path)
    assert ledger.entries() == {str(file_a): 2}

    remote.script = ["after restart"]
    coordinator = TranscriptionCoordinator(
        remote=remote,
        local=local,
        storage=storage,
        ledger=ledger,
        connectivity=connectivity,
        scheduler=scheduler,
        store=store,
    )
    assert coordinator.drain() == 1
    scheduler.run_pending()

    assert remote.calls == [str(file_a)]
    segment = storage.get_segment_by_path(str(file_a))
    assert segment.status is SegmentStatus.SUCCESS
    assert segment.session_id is not None
    assert len(ledger) == 0


def test_online_transition_drains_once(coordinator, remote, storage, ledger, scheduler, store, connectivity):
    paths = [write_wav(store.allocate()) for _ in range(3)]
    connectivity.update(False)
    for path in paths:
        coordinator.submit(_segment(storage, path))
    coordinator.submit(_segment(storage, paths[0]))
    scheduler.run_pending()
    assert set(ledger.entries()) == {str(p) for p in paths}

    remote.script = ["one", "two", "three"]
    connectivity.update(True)
    connectivity.update(True)
    assert len(scheduler.ready) == 3
    scheduler.run_pending()

    assert sorted(remote.calls) == sorted(str(p) for p in paths)
    assert len(ledger) == 0


def test_segment_without_session_gets_one(coordinator, remote, storage, scheduler, store):
    path = write_wav(store.allocate())
    remote.script = ["orphan"]

    coordinator.submit(Segment.open(str(path)))
    scheduler.run_pending()

    segment = storage.get_segment_by_path(str(path))
    assert storage.get_session(segment.session_id).segments[0].transcript.text == "orphan"


def test_scheduled_retry_while_offline_stays_queued(coordinator, remote, storage, ledger, scheduler, store, connectivity):
    path = write_wav(store.allocate())

    coordinator.submit(_segment(storage, path))
    scheduler.run_pending()
    connectivity.update(False)
    scheduler.fire_timers()

    assert len(remote.calls) == 1
    assert ledger.count(path) == 1
    assert scheduler.pending_delays == []
