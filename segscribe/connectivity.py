"""Network reachability state fed by the platform signal."""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

import httpx

Listener = Callable[[bool], None]


class ConnectivityMonitor:
    """Current online flag plus change notifications.

    The platform reachability source calls :meth:`update`; subscribers only
    hear about real transitions, once each.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    @property
    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def update(self, online: bool) -> bool:
        """Record the latest reachability. Returns True when it changed."""

        with self._lock:
            if online == self._online:
                return False
            self._online = online
            listeners = list(self._listeners)

        logging.info("Network status: %s", "online" if online else "offline")
        for listener in listeners:
            try:
                listener(online)
            except Exception:
                logging.exception("Connectivity listener failed")
        return True


class ReachabilityWatcher:
    """Poll the transcription host and feed the result into a monitor.

    Any HTTP response counts as reachable; only transport errors (DNS,
    refused connection, timeout) count as offline.
    """

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        url: str,
        interval: float = 10.0,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.monitor = monitor
        self.url = url
        self.interval = interval
        self._client = client or httpx.Client(timeout=timeout)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def check(self) -> bool:
        try:
            self._client.head(self.url)
        except httpx.TransportError as exc:
            logging.debug("Reachability check for %s failed: %s", self.url, exc)
            online = False
        else:
            online = True
        self.monitor.update(online)
        return online

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="segscribe-reachability", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval)
            self._thread = None
        self._client.close()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.check()
