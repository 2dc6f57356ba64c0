"""Background job execution for transcription work and timers."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, Protocol, Set


class ScheduledJob(Protocol):
    def cancel(self) -> None:
        """Prevent the job from running if it has not started yet."""


class Scheduler(Protocol):
    """Where the recorder and coordinator run everything that may block."""

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        ...

    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> ScheduledJob:
        ...


class _TimerJob:
    def __init__(self, scheduler: "ThreadScheduler", delay: float, fn: Callable[..., Any], args: tuple) -> None:
        self._scheduler = scheduler
        self._fn = fn
        self._args = args
        self._fired = False
        self._cancelled = False
        self._lock = threading.Lock()
        self._timer = threading.Timer(delay, self._fire)
        self._timer.daemon = True

    def start(self) -> None:
        self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._fired = True
        # Submit first so join() never sees zero outstanding work here.
        self._scheduler.submit(self._fn, *self._args)
        self._scheduler._timer_done(self)

    def cancel(self) -> None:
        with self._lock:
            if self._fired or self._cancelled:
                return
            self._cancelled = True
        self._timer.cancel()
        self._scheduler._timer_done(self)


class ThreadScheduler:
    """Run jobs on a thread pool and delayed jobs on `threading.Timer`.

    Exceptions escaping a job are logged and never reach the submitter.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="segscribe")
        self._cond = threading.Condition()
        self._running = 0
        self._timers: Set[_TimerJob] = set()
        self._closed = False

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        with self._cond:
            if self._closed:
                logging.debug("Scheduler closed; dropping %s", getattr(fn, "__name__", fn))
                return
            self._running += 1
        self._executor.submit(self._run, fn, args)

    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> ScheduledJob:
        job = _TimerJob(self, max(delay, 0.0), fn, args)
        with self._cond:
            if self._closed:
                job._cancelled = True
                return job
            self._timers.add(job)
        job.start()
        return job

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until no job is running or waiting on a timer."""

        with self._cond:
            return self._cond.wait_for(lambda: self._running == 0 and not self._timers, timeout)

    def shutdown(self, wait: bool = True, cancel_timers: bool = False) -> None:
        if cancel_timers:
            with self._cond:
                timers = list(self._timers)
            for job in timers:
                job.cancel()
        if wait:
            self.join()
        with self._cond:
            self._closed = True
        self._executor.shutdown(wait=wait)

    def _run(self, fn: Callable[..., Any], args: tuple) -> None:
        try:
            fn(*args)
        except Exception:
            logging.exception("Background job %s failed", getattr(fn, "__name__", fn))
        finally:
            with self._cond:
                self._running -= 1
                self._cond.notify_all()

    def _timer_done(self, job: _TimerJob) -> None:
        with self._cond:
            self._timers.discard(job)
            self._cond.notify_all()
