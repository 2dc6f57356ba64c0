import json

from segscribe.ledger import RetryLedger


def _audio(tmp_path, name):
    path = tmp_path / name
    path.write_bytes(b"RIFF")
    return path


def test_entries_survive_reload(tmp_path):
    ledger_path = tmp_path / "ledger.json"
    a = _audio(tmp_path, "a.wav")
    b = _audio(tmp_path, "b.wav")

    ledger = RetryLedger(ledger_path)
    ledger.add(a)
    assert ledger.increment(b) == 1
    assert ledger.increment(b) == 2

    reloaded = RetryLedger(ledger_path)
    assert reloaded.entries() == {str(a): 0, str(b): 2}
    assert reloaded.count(b) == 2
    assert str(a) in reloaded and len(reloaded) == 2

    payload = json.loads(ledger_path.read_text())
    assert payload["version"] == RetryLedger.VERSION
    assert not ledger_path.with_suffix(".json.tmp").exists()


def test_add_keeps_existing_count(tmp_path):
    ledger = RetryLedger(tmp_path / "ledger.json")
    a = _audio(tmp_path, "a.wav")

    ledger.increment(a)
    ledger.increment(a)
    assert ledger.add(a) == 2
    assert ledger.add(a, count=4) == 4
    assert ledger.count(a) == 4


def test_remove_reports_whether_entry_existed(tmp_path):
    ledger = RetryLedger(tmp_path / "ledger.json")
    a = _audio(tmp_path, "a.wav")
    ledger.add(a)

    assert ledger.remove(a)
    assert not ledger.remove(a)
    assert ledger.count(a) == 0
    assert RetryLedger(tmp_path / "ledger.json").entries() == {}


def test_missing_files_are_dropped_on_load(tmp_path):
    ledger_path = tmp_path / "ledger.json"
    kept = _audio(tmp_path, "kept.wav")
    gone = _audio(tmp_path, "gone.wav")
    ledger = RetryLedger(ledger_path)
    ledger.add(kept, count=1)
    ledger.add(gone, count=3)

    gone.unlink()

    assert RetryLedger(ledger_path).load_all() == {str(kept)}
    assert json.loads(ledger_path.read_text())["entries"] == {str(kept): 1}


def test_corrupt_ledger_starts_empty(tmp_path):
    ledger_path = tmp_path / "ledger.json"
    ledger_path.write_text("{broken")

    ledger = RetryLedger(ledger_path)
    assert ledger.entries() == {}

    a = _audio(tmp_path, "a.wav")
    ledger.add(a)
    assert RetryLedger(ledger_path).entries() == {str(a): 0}
