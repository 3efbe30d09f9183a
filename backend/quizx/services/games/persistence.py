"""Write-behind mirroring of live game state into the durable store.

During a game the in-memory registry is authoritative; store writes are
queued here and applied in submission order by one background worker, so
broadcasts never wait on the database. A failed job is logged and dropped,
it never rolls back live state. In ``synchronous`` mode (tests) each job
runs inline on submit.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Optional

from flask import has_app_context

_STOP = object()


class WriteBehindQueue:
    def __init__(self, app=None, synchronous: bool = False,
                 spawn: Optional[Callable[..., Any]] = None,
                 logger: Optional[logging.Logger] = None):
        self.app = app
        self.synchronous = synchronous
        self.spawn = spawn
        self.logger = logger or (app.logger if app is not None else logging.getLogger(__name__))
        self.failures = 0
        self._jobs: queue.Queue = queue.Queue()
        self._worker_started = False
        self._start_lock = threading.Lock()

    def submit(self, label: str, fn: Callable[..., Any], *args, **kwargs) -> None:
        job = (label, fn, args, kwargs)
        if self.synchronous:
            self._run(job)
            return
        self._ensure_worker()
        self._jobs.put(job)

    def join(self) -> None:
        """Block until every queued job has been applied."""
        if not self.synchronous and self._worker_started:
            self._jobs.join()

    def shutdown(self) -> None:
        if self.synchronous or not self._worker_started:
            return
        self._jobs.put(_STOP)
        self._jobs.join()
        self._worker_started = False

    def _ensure_worker(self) -> None:
        with self._start_lock:
            if self._worker_started:
                return
            if self.spawn is None:
                raise RuntimeError('WriteBehindQueue needs a spawn function outside synchronous mode')
            self._worker_started = True
            self.spawn(self._worker)

    def _worker(self) -> None:
        while True:
            job = self._jobs.get()
            try:
                if job is _STOP:
                    return
                self._run(job)
            finally:
                self._jobs.task_done()

    def _run(self, job) -> None:
        label, fn, args, kwargs = job
        try:
            if has_app_context() or self.app is None:
                fn(*args, **kwargs)
            else:
                with self.app.app_context():
                    fn(*args, **kwargs)
        except Exception:
            self.failures += 1
            self.logger.exception(f"[persist-fail] job={label}")
