#!/usr/bin/env python3
"""
Auto-installer daemon.

Watches the downloads directory and installs applications from finished
disk images, one image at a time:

    watch / rescan → debounce → queue → stability gate → pipeline → state

Usage:
    auto-installer [--config PATH] [--once] [--dry-run] [--process-preexisting]
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from auto_installer import constants
from auto_installer.atomic import SingletonLock
from auto_installer.config import ConfigManager
from auto_installer.diskimage import DiskImageAdapter, HdiutilAdapter
from auto_installer.errors import LockHeldError
from auto_installer.events import REASON_RECOVERED, REASON_STARTUP, EventSource
from auto_installer.identity import identity_from_stat
from auto_installer.logging_utils import configure_logging, fields
from auto_installer.models import InstallerConfig, RecordStatus, WatchBackend, utc_now
from auto_installer.pipeline import HostSystem, InstallPipeline
from auto_installer.processor import REASON_RETRY, ImageProcessor
from auto_installer.scanner import ImageScanner
from auto_installer.scheduler import RetryScheduler, WorkQueue
from auto_installer.stability import safe_stat
from auto_installer.state_store import StateStore
from auto_installer.system import MacSystem
from auto_installer.watch import create_push_source, resolve_backend

logger = logging.getLogger(__name__)

# Seconds between shutdown-flag checks in the main thread
MAIN_LOOP_TICK = 1.0


class AutoInstallerDaemon:
    """
    Single-instance daemon owning the queue, timers and state store.
    """

    def __init__(
        self,
        config_file: Optional[Path] = None,
        once: bool = False,
        dry_run: bool = False,
        process_preexisting: bool = False,
        verbose: bool = False,
        images: Optional[DiskImageAdapter] = None,
        system: Optional[HostSystem] = None,
        push_source_factory: Callable = create_push_source,
    ):
        """
        Initialize daemon.

        Args:
            config_file: Path to configuration file (default location if None)
            once: Drain the startup rescan and exit
            dry_run: Mark admitted images successful without mounting
            process_preexisting: Disable the rescan recency filter
            verbose: Log at debug level
            images: Disk image adapter (hdiutil if None)
            system: Host operations (MacSystem if None)
            push_source_factory: Builds the push notification source
        """
        self.config_file = config_file
        self.once = once
        self.dry_run = dry_run
        self.process_preexisting = process_preexisting
        self.verbose = verbose
        self.images = images or HdiutilAdapter()
        self.system = system or MacSystem()
        self.push_source_factory = push_source_factory

        self.config: Optional[InstallerConfig] = None
        self.lock: Optional[SingletonLock] = None
        self.store: Optional[StateStore] = None
        self.retry: Optional[RetryScheduler] = None
        self.queue: Optional[WorkQueue] = None
        self.events: Optional[EventSource] = None
        self.processor: Optional[ImageProcessor] = None

        self.running = False
        self.shutdown_requested = False
        self._shutdown_event = threading.Event()
        self._previous_handlers: Dict[int, Any] = {}
        self.started_at = time.time()

    def _signal_handler(self, signum, frame):
        """Handle termination signals."""
        logger.info("Received signal; shutting down", extra=fields(signal=signum))
        unwind = self.once and not self.shutdown_requested
        self.request_shutdown()
        if unwind:
            # --once drains on this thread; unwinding it runs _shutdown
            raise SystemExit(128 + signum)

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._previous_handlers[signum] = signal.signal(signum, self._signal_handler)

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            if handler is not None:
                signal.signal(signum, handler)
        self._previous_handlers.clear()

    def load_config(self) -> InstallerConfig:
        self.config = ConfigManager(self.config_file).config
        level = logging.DEBUG if self.verbose else constants.AUTO_INSTALLER_LOG_LEVEL
        configure_logging(self.config.log_path, level=level, also_console=constants.AUTO_INSTALLER_CONSOLE_LOG)
        return self.config

    def _build(self, config: InstallerConfig) -> None:
        self.queue = WorkQueue(self._handle)
        self.retry = RetryScheduler(self.queue.enqueue, min_delay_ms=config.min_retry_delay_ms)

        pipeline = InstallPipeline(config, self.images, self.system)
        self.processor = ImageProcessor(config, self.store, pipeline, self.retry, dry_run=self.dry_run)

        scanner = ImageScanner(
            config.downloads_dir,
            daemon_start=self.started_at,
            skew_ms=config.rescan_skew_ms,
            include_preexisting=self.process_preexisting or config.process_preexisting_on_startup,
        )
        self.events = EventSource(config, scanner, self.queue.enqueue, self.push_source_factory)

    def _handle(self, path: str, reason: str) -> None:
        self.processor.handle(path, reason)

    def _load_state(self, config: InstallerConfig) -> None:
        self.store = StateStore(config.state_path, max_entries=config.max_state_entries)
        self.store.load()
        if config.recover_stuck_on_startup and self.store.recover_stuck():
            self.store.save()

    def _resume_pending(self, config: InstallerConfig) -> int:
        """
        Re-queue retryable failures whose image is still in place.

        Rescans skip images older than the daemon, which covers every
        download interrupted by a restart, so these are offered directly.
        A retry deadline still in the future is re-armed for the remainder.

        Returns:
            Number of records resumed
        """
        now = utc_now()
        resumed = 0
        for key, record in list(self.store.entries.items()):
            if record.status != RecordStatus.FAIL or not record.retryable:
                continue
            if record.attempts >= config.max_attempts_per_key or not record.source_path:
                continue
            st = safe_stat(record.source_path)
            if st is None or identity_from_stat(st, record.source_path).key != key:
                continue

            if record.next_retry_at is not None and record.next_retry_at > now:
                delay_ms = (record.next_retry_at - now).total_seconds() * 1000
                self.retry.schedule(record.source_path, delay_ms, REASON_RETRY)
            else:
                self.queue.enqueue(record.source_path, REASON_RECOVERED)
            resumed += 1

        if resumed:
            logger.info("Resuming pending retries", extra=fields(count=resumed))
        return resumed

    def start(self) -> int:
        """
        Run the daemon until a termination signal (or until drained with --once).

        Returns:
            Process exit code
        """
        config = self.load_config()

        if resolve_backend(config) == WatchBackend.FSWATCH and not os.access(config.fswatch_path, os.X_OK):
            logger.error("fswatch not found", extra=fields(fswatchPath=config.fswatch_path))
            return 1

        self.lock = SingletonLock(config.lock_dir)
        try:
            self.lock.acquire()
        except LockHeldError as e:
            logger.warning(
                "Another instance appears to be running; exiting.",
                extra=fields(lockDir=config.lock_dir, pid=e.pid),
            )
            return 0

        try:
            self._install_signal_handlers()
            logger.info(
                "AutoInstaller starting",
                extra=fields(
                    once=self.once,
                    dryRun=self.dry_run,
                    downloadsDir=config.downloads_dir,
                    installDir=config.install_dir,
                    processPreexisting=self.process_preexisting or config.process_preexisting_on_startup,
                ),
            )
            self._load_state(config)
            self._build(config)
            self.events.rescan(REASON_STARTUP)
            self._resume_pending(config)

            if self.once:
                handled = self.queue.drain()
                logger.info("Queue drained; exiting", extra=fields(handled=handled))
                return 0

            self._run_loop()
            return 0
        finally:
            self._shutdown()

    def _run_loop(self) -> None:
        self.queue.start()
        self.events.start()
        self.running = True

        while not self.shutdown_requested:
            self._shutdown_event.wait(MAIN_LOOP_TICK)

    def request_shutdown(self) -> None:
        self.shutdown_requested = True
        self._shutdown_event.set()

    def _shutdown(self) -> None:
        """Stop sources and timers, then release the lock."""
        self.running = False
        self.shutdown_requested = True
        self._shutdown_event.set()

        if self.events is not None:
            self.events.stop()
        if self.retry is not None:
            self.retry.cancel_all()
        if self.queue is not None:
            self.queue.stop()
        if self.lock is not None:
            self.lock.release()
        self._restore_signal_handlers()

        logger.info("AutoInstaller stopped")


def main():
    """CLI entry point for the daemon."""
    parser = argparse.ArgumentParser(description="Install applications from downloaded disk images")
    parser.add_argument("--config", type=Path, default=None, help="Configuration file path")
    parser.add_argument("--once", action="store_true", help="Process the current downloads and exit")
    parser.add_argument("--dry-run", action="store_true", help="Record images as processed without installing")
    parser.add_argument(
        "--process-preexisting", action="store_true",
        help="Also process images that existed before the daemon started",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    daemon = AutoInstallerDaemon(
        config_file=args.config,
        once=args.once,
        dry_run=args.dry_run,
        process_preexisting=args.process_preexisting,
        verbose=args.verbose,
    )
    sys.exit(daemon.start())


if __name__ == "__main__":
    main()
