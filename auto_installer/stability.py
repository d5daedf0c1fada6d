"""Detect whether a downloaded file has finished being written."""

import os
import stat as stat_module
import time
from typing import Callable, NamedTuple, Optional


class StabilityResult(NamedTuple):
    stable: bool
    stat: Optional[os.stat_result] = None


def safe_stat(path: str) -> Optional[os.stat_result]:
    """Stat a path, returning None when it is missing or not a regular file."""
    try:
        st = os.stat(path)
    except OSError:
        return None
    if not stat_module.S_ISREG(st.st_mode):
        return None
    return st


def check_stable(
    path: str,
    checks: int,
    interval_ms: int,
    sleep: Callable[[float], None] = time.sleep,
) -> StabilityResult:
    """
    Sample size and mtime ``checks`` times, ``interval_ms`` apart.

    Args:
        path: File to check
        checks: Number of samples
        interval_ms: Delay between samples
        sleep: Sleep function (injectable for tests)

    Returns:
        StabilityResult; ``stat`` is the final snapshot when stable
    """
    prev = None
    for i in range(checks):
        st = safe_stat(path)
        if st is None:
            return StabilityResult(False)

        cur = (st.st_size, st.st_mtime_ns)
        if prev is not None and cur != prev:
            return StabilityResult(False)

        prev = cur
        if i != checks - 1:
            sleep(interval_ms / 1000.0)

    final = safe_stat(path)
    if final is None or (final.st_size, final.st_mtime_ns) != prev:
        return StabilityResult(False)
    return StabilityResult(True, final)
