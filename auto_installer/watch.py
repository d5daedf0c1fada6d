"""
Push notification backends for the downloads directory.

FswatchSource reads NUL-delimited paths from the ``fswatch`` binary;
WatchdogSource uses the in-process ``watchdog`` observer. Both restart
themselves after an unexpected exit and report raw path strings.
"""

import logging
import os
import subprocess
import threading
from typing import Callable, List, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from auto_installer import constants
from auto_installer.logging_utils import fields
from auto_installer.models import InstallerConfig, WatchBackend

logger = logging.getLogger(__name__)

PathCallback = Callable[[str], None]

FSWATCH_EVENTS = ("Created", "Updated", "Renamed", "MovedTo")


class NulSplitter:
    """Reassemble NUL-terminated records from arbitrary chunks."""

    def __init__(self):
        self._buf = b""

    def feed(self, chunk: bytes) -> List[str]:
        self._buf += chunk
        *records, self._buf = self._buf.split(b"\0")
        paths = []
        for record in records:
            p = record.decode("utf-8", errors="replace").strip()
            if p:
                paths.append(p)
        return paths


def _safe_callback(on_path: PathCallback, path: str) -> None:
    try:
        on_path(path)
    except Exception:
        logger.exception("Path callback failed", extra=fields(path=path))


class FswatchSource:
    """Supervised ``fswatch`` child process."""

    def __init__(
        self,
        fswatch_path: str,
        downloads_dir: str,
        on_path: PathCallback,
        restart_delay: float = constants.WATCH_RESTART_DELAY,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self.fswatch_path = fswatch_path
        self.downloads_dir = downloads_dir
        self.on_path = on_path
        self.restart_delay = restart_delay
        self.popen = popen
        self._proc: Optional[subprocess.Popen] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def argv(self) -> List[str]:
        argv = [self.fswatch_path, "-0", "--latency", "0.2"]
        for event in FSWATCH_EVENTS:
            argv += ["--event", event]
        argv.append(self.downloads_dir)
        return argv

    def _pump_stderr(self, proc: subprocess.Popen) -> None:
        for raw in iter(proc.stderr.readline, b""):
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                logger.warning("fswatch stderr", extra=fields(message=line[:2000]))

    def _run_once(self) -> Optional[int]:
        logger.info(
            "Starting fswatch",
            extra=fields(fswatchPath=self.fswatch_path, downloadsDir=self.downloads_dir),
        )
        try:
            proc = self.popen(self.argv(), stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            logger.error("Failed to start fswatch", extra=fields(fswatchPath=self.fswatch_path, error=str(e)))
            return None

        self._proc = proc
        threading.Thread(target=self._pump_stderr, args=(proc,), name="fswatch-stderr", daemon=True).start()

        splitter = NulSplitter()
        while True:
            chunk = proc.stdout.read1(4096)
            if not chunk:
                break
            for path in splitter.feed(chunk):
                _safe_callback(self.on_path, path)

        return proc.wait()

    def _supervise(self) -> None:
        while not self._stop.is_set():
            code = self._run_once()
            if self._stop.is_set():
                break
            logger.error("fswatch exited; will restart", extra=fields(code=code))
            self._stop.wait(self.restart_delay)

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._supervise, name="fswatch", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        proc = self._proc
        if proc is not None and proc.poll() is None:
            proc.terminate()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        self._proc = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class DownloadsEventHandler(FileSystemEventHandler):
    """Forward file creations, modifications and moves into the directory."""

    def __init__(self, on_path: PathCallback):
        super().__init__()
        self.on_path = on_path

    def _handle(self, event: FileSystemEvent, path: str) -> None:
        if event.is_directory or not path:
            return
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        _safe_callback(self.on_path, path)

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle(event, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle(event, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._handle(event, getattr(event, "dest_path", ""))


class WatchdogSource:
    """``watchdog`` observer on the downloads directory with a restart supervisor."""

    def __init__(
        self,
        downloads_dir: str,
        on_path: PathCallback,
        restart_delay: float = constants.WATCH_RESTART_DELAY,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        self.downloads_dir = downloads_dir
        self.handler = DownloadsEventHandler(on_path)
        self.restart_delay = restart_delay
        self.observer_factory = observer_factory
        self._observer: Optional[Observer] = None
        self._supervisor: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def _start_observer(self) -> bool:
        if not os.path.isdir(self.downloads_dir):
            logger.warning("Downloads directory does not exist", extra=fields(downloadsDir=self.downloads_dir))
            return False

        observer = self.observer_factory()
        observer.schedule(self.handler, self.downloads_dir, recursive=False)
        observer.start()
        self._observer = observer
        logger.info("Watching downloads directory", extra=fields(downloadsDir=self.downloads_dir))
        return True

    def _supervise(self) -> None:
        while not self._stop.wait(self.restart_delay):
            if self.is_running():
                continue
            logger.error("watchdog observer stopped; will restart", extra=fields(downloadsDir=self.downloads_dir))
            try:
                self._start_observer()
            except OSError as e:
                logger.error("Failed to restart observer", extra=fields(error=str(e)))

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        try:
            self._start_observer()
        except OSError as e:
            logger.error("Failed to start observer", extra=fields(error=str(e)))
        self._supervisor = threading.Thread(target=self._supervise, name="watchdog-supervisor", daemon=True)
        self._supervisor.start()

    def stop(self) -> None:
        self._stop.set()
        if self._observer is not None:
            try:
                self._observer.stop()
                self._observer.join(timeout=5.0)
            except RuntimeError as e:
                logger.warning("Error stopping observer", extra=fields(error=str(e)))
            self._observer = None
        if self._supervisor is not None:
            self._supervisor.join(timeout=5.0)
            self._supervisor = None

    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()


def resolve_backend(config: InstallerConfig) -> WatchBackend:
    if config.watch_backend != WatchBackend.AUTO:
        return config.watch_backend
    if os.access(config.fswatch_path, os.X_OK):
        return WatchBackend.FSWATCH
    return WatchBackend.WATCHDOG


def create_push_source(config: InstallerConfig, on_path: PathCallback):
    """Build the push notification source selected by the configuration."""
    backend = resolve_backend(config)
    if backend == WatchBackend.FSWATCH:
        return FswatchSource(config.fswatch_path, config.downloads_dir, on_path)
    return WatchdogSource(config.downloads_dir, on_path)
