import threading

import httpx

from segscribe.connectivity import ConnectivityMonitor, ReachabilityWatcher


def test_listeners_hear_only_real_transitions():
    monitor = ConnectivityMonitor(online=False)
    heard = []
    monitor.subscribe(heard.append)

    assert not monitor.update(False)
    assert monitor.update(True)
    assert not monitor.update(True)
    assert monitor.update(False)

    assert heard == [True, False]
    assert not monitor.is_online


def test_unsubscribe_and_failing_listener(caplog):
    monitor = ConnectivityMonitor()
    heard = []

    def broken(online):
        raise ValueError("listener bug")

    monitor.subscribe(broken)
    unsubscribe = monitor.subscribe(heard.append)
    monitor.update(False)
    unsubscribe()
    unsubscribe()
    monitor.update(True)

    assert heard == [False]
    assert monitor.is_online
    assert "Connectivity listener failed" in caplog.text


def _watcher(monitor, handler, interval=10.0):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ReachabilityWatcher(monitor, "https://stt.example/v1/audio/transcriptions", interval=interval, client=client)


def test_any_http_response_counts_as_reachable():
    monitor = ConnectivityMonitor(online=False)
    methods = []

    def handler(request):
        methods.append(request.method)
        return httpx.Response(405)

    assert _watcher(monitor, handler).check()
    assert monitor.is_online
    assert methods == ["HEAD"]


def test_transport_error_marks_offline():
    monitor = ConnectivityMonitor()

    def handler(request):
        raise httpx.ConnectError("no route to host", request=request)

    assert not _watcher(monitor, handler).check()
    assert not monitor.is_online


def test_watcher_thread_brings_monitor_back_online():
    monitor = ConnectivityMonitor(online=False)
    back = threading.Event()
    monitor.subscribe(lambda online: back.set() if online else None)
    watcher = _watcher(monitor, lambda request: httpx.Response(200), interval=0.01)

    watcher.start()
    try:
        assert back.wait(5)
    finally:
        watcher.stop()
    assert monitor.is_online
