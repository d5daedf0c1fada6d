"""
Debouncing, retry timers and the single-worker queue.

All three hold per-path state behind their own lock and are safe to call
from watcher threads, timer threads and the worker.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Set, Tuple

from auto_installer.logging_utils import fields

logger = logging.getLogger(__name__)

EnqueueCallback = Callable[[str, str], None]


class Debouncer:
    """
    Trailing-edge debounce per path.

    Each event for a path restarts that path's quiet period; the callback
    fires once the quiet period passes without further events.
    """

    def __init__(self, delay_ms: int, callback: Callable[[str], None]):
        """
        Initialize debouncer.

        Args:
            delay_ms: Quiet period in milliseconds (0 forwards immediately)
            callback: Called with the path when its quiet period elapses
        """
        self.delay_seconds = delay_ms / 1000.0
        self.callback = callback
        self._timers: Dict[str, Tuple[threading.Timer, int]] = {}
        self._generation = 0
        self._lock = threading.Lock()

    def trigger(self, path: str) -> None:
        if self.delay_seconds <= 0:
            self.callback(path)
            return

        with self._lock:
            existing = self._timers.pop(path, None)
            if existing:
                existing[0].cancel()

            self._generation += 1
            timer = threading.Timer(self.delay_seconds, self._fire, args=(path, self._generation))
            timer.daemon = True
            self._timers[path] = (timer, self._generation)
            timer.start()

    def _fire(self, path: str, generation: int) -> None:
        with self._lock:
            current = self._timers.get(path)
            if current is None or current[1] != generation:
                return
            del self._timers[path]

        try:
            self.callback(path)
        except Exception:
            logger.exception("Debounce callback failed", extra=fields(path=path))

    def cancel_all(self) -> None:
        with self._lock:
            for timer, _ in self._timers.values():
                timer.cancel()
            self._timers.clear()


@dataclass
class _PendingRetry:
    timer: threading.Timer
    when: float
    generation: int


class RetryScheduler:
    """
    Delayed re-enqueue with one outstanding timer per path.

    A new request only replaces a pending timer when it would fire sooner,
    so an earlier retry is never pushed back.
    """

    def __init__(
        self,
        enqueue: EnqueueCallback,
        min_delay_ms: int = 250,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.enqueue = enqueue
        self.min_delay_ms = min_delay_ms
        self.clock = clock
        self._timers: Dict[str, _PendingRetry] = {}
        self._generation = 0
        self._lock = threading.Lock()

    def schedule(self, path: str, delay_ms: float, reason: str) -> bool:
        """
        Schedule ``path`` to be enqueued after ``delay_ms``.

        Returns:
            True if a timer was created, False if an earlier one was kept
        """
        delay = max(self.min_delay_ms, delay_ms) / 1000.0
        when = self.clock() + delay

        with self._lock:
            existing = self._timers.get(path)
            if existing is not None:
                if existing.when <= when:
                    return False
                existing.timer.cancel()

            self._generation += 1
            timer = threading.Timer(delay, self._fire, args=(path, reason, self._generation))
            timer.daemon = True
            self._timers[path] = _PendingRetry(timer, when, self._generation)
            timer.start()

        logger.debug("Retry scheduled", extra=fields(path=path, delayMs=int(delay * 1000), reason=reason))
        return True

    def _fire(self, path: str, reason: str, generation: int) -> None:
        with self._lock:
            current = self._timers.get(path)
            if current is None or current.generation != generation:
                return
            del self._timers[path]

        try:
            self.enqueue(path, reason)
        except Exception:
            logger.exception("Retry enqueue failed", extra=fields(path=path))

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)

    def cancel_all(self) -> None:
        with self._lock:
            for pending in self._timers.values():
                pending.timer.cancel()
            self._timers.clear()


class WorkQueue:
    """
    Deduplicated FIFO of candidate paths processed one at a time.

    Either a background worker thread (``start``) or the caller
    (``drain``) runs the handler; never both at once.
    """

    def __init__(self, handler: EnqueueCallback):
        self.handler = handler
        self._queue: Deque[Tuple[str, str]] = deque()
        self._pending: Set[str] = set()
        self._cond = threading.Condition()
        self._run_lock = threading.Lock()
        self._stopping = False
        self._thread: Optional[threading.Thread] = None

    def enqueue(self, path: str, reason: str) -> bool:
        """
        Add a path unless it is already pending.

        Returns:
            True if the path was added
        """
        with self._cond:
            if path in self._pending:
                return False
            self._pending.add(path)
            self._queue.append((path, reason))
            self._cond.notify_all()
        return True

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _pop(self) -> Optional[Tuple[str, str]]:
        if not self._queue:
            return None
        path, reason = self._queue.popleft()
        self._pending.discard(path)
        return path, reason

    def _run_one(self, path: str, reason: str) -> None:
        try:
            with self._run_lock:
                self.handler(path, reason)
        except Exception:
            logger.exception("Failed to handle candidate", extra=fields(path=path, reason=reason))

    def drain(self) -> int:
        """
        Process queued items on the calling thread until the queue is empty.

        Returns:
            Number of items handled
        """
        handled = 0
        while True:
            with self._cond:
                item = self._pop()
            if item is None:
                return handled
            self._run_one(*item)
            handled += 1

    def _worker(self) -> None:
        while True:
            with self._cond:
                while not self._queue and not self._stopping:
                    self._cond.wait()
                if self._stopping:
                    return
                item = self._pop()
            self._run_one(*item)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping = False
        self._thread = threading.Thread(target=self._worker, name="auto-installer-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
