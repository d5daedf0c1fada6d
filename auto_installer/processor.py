"""
Per-candidate processing: stability gate, identity, admission, pipeline
and state transitions.
"""

import logging
import time
from datetime import timedelta
from typing import Callable, Dict, Optional

from auto_installer.errors import PipelineError, describe_error
from auto_installer.identity import identity_from_stat
from auto_installer.logging_utils import fields
from auto_installer.models import (
    InstallerConfig, ProcessingRecord, ProcessingResult, RecordStatus, utc_now
)
from auto_installer.pipeline import InstallPipeline
from auto_installer.scheduler import RetryScheduler
from auto_installer.stability import check_stable, safe_stat
from auto_installer.state_store import StateStore

logger = logging.getLogger(__name__)

MAX_BACKOFF_EXPONENT = 6

# handle() outcomes
MISSING = "missing"
UNSTABLE = "unstable"
SKIPPED = "skipped"
SUCCESS = "success"
FAILED = "fail"

REASON_UNSTABLE = "unstable-retry"
REASON_RETRY = "retry"


def compute_backoff(attempts: int, base_ms: int, max_ms: int) -> int:
    """Backoff delay after ``attempts`` failed attempts: base * 2^min(6, attempts-1), capped."""
    exponent = min(MAX_BACKOFF_EXPONENT, max(0, attempts - 1))
    return min(max_ms, base_ms * (2 ** exponent))


class ImageProcessor:
    """
    Handles one dequeued candidate path.

    Only called from the work queue, so at most one attempt runs at a time.
    """

    def __init__(
        self,
        config: InstallerConfig,
        store: StateStore,
        pipeline: InstallPipeline,
        retry: RetryScheduler,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.store = store
        self.pipeline = pipeline
        self.retry = retry
        self.dry_run = dry_run
        self.sleep = sleep
        self.clock = clock
        self._unstable_logged_at: Dict[str, float] = {}

    def _note_unstable(self, path: str, reason: str) -> None:
        now = self.clock()
        last = self._unstable_logged_at.get(path)
        if last is None or (now - last) * 1000 > self.config.unstable_log_interval_ms:
            self._unstable_logged_at[path] = now
            logger.info("Image not stable yet; will retry soon", extra=fields(imagePath=path, reason=reason))
        self.retry.schedule(path, self.config.unstable_retry_delay_ms, REASON_UNSTABLE)

    def admit(self, path: str, prev: Optional[ProcessingRecord]) -> bool:
        """Decide whether a stable image may start a new attempt."""
        if prev is None:
            return True
        if prev.status in (RecordStatus.SUCCESS, RecordStatus.RUNNING):
            return False
        if not prev.retryable or prev.attempts >= self.config.max_attempts_per_key:
            return False
        if prev.next_retry_at is not None:
            remaining = (prev.next_retry_at - utc_now()).total_seconds()
            if remaining > 0:
                self.retry.schedule(path, remaining * 1000, REASON_RETRY)
                return False
        return True

    def handle(self, path: str, reason: str) -> str:
        """
        Process one candidate.

        Returns:
            One of MISSING, UNSTABLE, SKIPPED, SUCCESS, FAILED
        """
        if safe_stat(path) is None:
            self._unstable_logged_at.pop(path, None)
            return MISSING

        stable = check_stable(
            path, self.config.stability_checks, self.config.stability_interval_ms, sleep=self.sleep
        )
        if not stable.stable:
            self._note_unstable(path, reason)
            return UNSTABLE
        self._unstable_logged_at.pop(path, None)

        key = identity_from_stat(stable.stat, path).key
        prev = self.store.get(key)
        if not self.admit(path, prev):
            return SKIPPED

        now = utc_now()
        record = ProcessingRecord(
            status=RecordStatus.RUNNING,
            attempts=(prev.attempts if prev else 0) + 1,
            first_seen_at=prev.first_seen_at if prev else now,
            last_tried_at=now,
            source_path=path,
            trigger_reason=reason,
        )
        self.store.put(key, record)
        self.store.save()

        if self.dry_run:
            logger.info("Dry-run: would process image", extra=fields(imagePath=path, key=key))
            record.status = RecordStatus.SUCCESS
            record.result = ProcessingResult(dry_run=True)
            self.store.save()
            return SUCCESS

        logger.info(
            "Processing image",
            extra=fields(imagePath=path, key=key, attempt=record.attempts, reason=reason),
        )
        try:
            record.result = self.pipeline.run(path)
        except PipelineError as e:
            self._record_failure(key, path, record, e, e.result, e.retryable)
            return FAILED
        except Exception as e:
            logger.exception("Unexpected error while processing image", extra=fields(imagePath=path))
            self._record_failure(key, path, record, e, None, False)
            return FAILED

        record.status = RecordStatus.SUCCESS
        record.next_retry_at = None
        self.store.save()
        logger.info(
            "Installed image",
            extra=fields(imagePath=path, installed=record.result.installed_app_paths,
                         primary=record.result.primary_app_path),
        )
        return SUCCESS

    def _record_failure(
        self,
        key: str,
        path: str,
        record: ProcessingRecord,
        error: BaseException,
        partial: Optional[ProcessingResult],
        retryable: bool,
    ) -> None:
        record.status = RecordStatus.FAIL
        record.retryable = retryable
        record.result = partial or ProcessingResult()
        record.result.error = describe_error(error)

        logger.error("Failed to process image", extra=fields(imagePath=path, key=key, error=record.result.error))

        delay_ms = None
        if retryable and record.attempts < self.config.max_attempts_per_key:
            delay_ms = compute_backoff(
                record.attempts, self.config.retry_base_delay_ms, self.config.retry_max_delay_ms
            )
            record.next_retry_at = utc_now() + timedelta(milliseconds=delay_ms)
        else:
            record.next_retry_at = None

        # Persist the outcome before any retry can fire.
        self.store.save()

        if delay_ms is not None:
            self.retry.schedule(path, delay_ms, REASON_RETRY)
