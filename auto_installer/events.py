"""
Event source: push notifications, periodic rescans and the startup rescan
merged into one stream of (path, reason) candidates.
"""

import logging
import os
import threading
from typing import Callable, Optional

from auto_installer.logging_utils import fields
from auto_installer.models import InstallerConfig
from auto_installer.scanner import ImageScanner, is_candidate
from auto_installer.scheduler import Debouncer, EnqueueCallback
from auto_installer.watch import create_push_source

logger = logging.getLogger(__name__)

REASON_WATCH = "watch"
REASON_STARTUP = "startup"
REASON_PERIODIC = "periodic"
REASON_RECOVERED = "recovered"


class EventSource:
    """Feeds candidate paths into the work queue."""

    def __init__(
        self,
        config: InstallerConfig,
        scanner: ImageScanner,
        enqueue: EnqueueCallback,
        push_source_factory: Callable = create_push_source,
    ):
        self.config = config
        self.scanner = scanner
        self.enqueue = enqueue
        self.debouncer = Debouncer(config.debounce_ms, self._forward)
        self.push_source = push_source_factory(config, self.on_push_path)
        self._stop = threading.Event()
        self._rescan_thread: Optional[threading.Thread] = None

    def _forward(self, path: str) -> None:
        self.enqueue(path, REASON_WATCH)

    def on_push_path(self, raw_path: str) -> None:
        """Handle one raw path from the push backend."""
        path = raw_path if os.path.isabs(raw_path) else os.path.join(self.config.downloads_dir, raw_path)
        if not is_candidate(path):
            return
        self.debouncer.trigger(path)

    def rescan(self, reason: str) -> int:
        """
        Enqueue every recent candidate in the downloads directory.

        Returns:
            Number of paths offered to the queue
        """
        paths = self.scanner.scan()
        for path in paths:
            self.enqueue(path, reason)
        if paths:
            logger.debug("Rescan found candidates", extra=fields(reason=reason, count=len(paths)))
        return len(paths)

    def _periodic(self) -> None:
        interval = self.config.rescan_interval_ms / 1000.0
        while not self._stop.wait(interval):
            try:
                self.rescan(REASON_PERIODIC)
            except Exception:
                logger.exception("Periodic rescan failed")

    def start(self) -> None:
        """Start push notifications and the periodic rescan."""
        self._stop.clear()
        self.push_source.start()
        self._rescan_thread = threading.Thread(target=self._periodic, name="periodic-rescan", daemon=True)
        self._rescan_thread.start()

    def stop(self) -> None:
        self._stop.set()
        self.debouncer.cancel_all()
        self.push_source.stop()
        if self._rescan_thread is not None:
            self._rescan_thread.join(timeout=5.0)
            self._rescan_thread = None
