"""Deferred execution of pipeline phases.

``observe()`` only enqueues phase names; the phases themselves run later,
either on a single worker thread (after ``start()``) or when the caller
drains the queue with ``run_pending()``. Either way phases run one at a
time, in the order they were scheduled, so two phases never touch the
vault concurrently.
"""

import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from chittydna.protocols import Clock
from chittydna.types import iso, utc_now

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass
class TaskRecord:
    """One executed phase."""

    phase: str
    queued_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PhaseScheduler:
    """FIFO queue of phase runs with at most one run in flight.

    Args:
        handlers: Phase name -> zero-argument callable that runs it.
        clock: Time source for task records.
        history_size: Number of task records retained.
    """

    def __init__(
        self,
        handlers: Dict[str, Callable[[], Any]],
        clock: Clock = utc_now,
        history_size: int = 100,
    ):
        self.handlers = dict(handlers)
        self.clock = clock
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._queued: Set[str] = set()
        self._outstanding = 0
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._run_lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        self.history: Deque[TaskRecord] = deque(maxlen=history_size)

    def schedule(self, phase: str) -> bool:
        """Queue a phase run.

        Returns:
            False if the phase was already waiting in the queue
        """
        if phase not in self.handlers:
            raise ValueError(f"Unknown phase: {phase!r}")
        with self._lock:
            if phase in self._queued:
                logger.debug(f"Phase {phase} already queued")
                return False
            self._queued.add(phase)
            self._outstanding += 1
        self._queue.put((phase, iso(self.clock())))
        logger.debug(f"Scheduled phase {phase}")
        return True

    def pending(self) -> List[str]:
        with self._lock:
            return sorted(self._queued)

    def _execute(self, item: Tuple[str, str]) -> TaskRecord:
        phase, queued_at = item
        with self._lock:
            self._queued.discard(phase)
        record = TaskRecord(phase=phase, queued_at=queued_at)
        try:
            with self._run_lock:
                record.started_at = iso(self.clock())
                try:
                    self.handlers[phase]()
                except Exception as e:
                    record.error = f"{type(e).__name__}: {e}"
                    logger.error(f"Phase {phase} failed: {e}", exc_info=True)
                record.finished_at = iso(self.clock())
        finally:
            self.history.append(record)
            with self._idle:
                self._outstanding -= 1
                self._idle.notify_all()
        return record

    def run_pending(self) -> List[TaskRecord]:
        """Run every queued phase on the calling thread."""
        records = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            try:
                if item is _STOP:
                    # Leave the stop marker for the worker
                    self._queue.put(item)
                    break
                records.append(self._execute(item))
            finally:
                self._queue.task_done()
        return records

    # === Background worker ===

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        """Start the background worker. Calling it twice is harmless."""
        if self.running:
            return
        self._worker = threading.Thread(target=self._loop, name="chittydna-phases", daemon=True)
        self._worker.start()
        logger.debug("Phase worker started")

    def _loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._execute(item)
            finally:
                self._queue.task_done()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no phase is queued or running.

        Returns:
            False if the timeout expired first
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._outstanding == 0, timeout)

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop the worker after the phases already queued have run."""
        if not self.running:
            return
        self._queue.put(_STOP)
        if wait:
            self._worker.join(timeout)
        self._worker = None
        logger.debug("Phase worker stopped")
