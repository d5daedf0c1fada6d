"""
Candidate filtering and downloads directory rescans.

The same name filters apply to every event origin; rescans additionally
skip files that predate the daemon unless pre-existing files were
explicitly requested.
"""

import logging
import os
import re
from typing import List, Optional

from auto_installer import constants
from auto_installer.logging_utils import fields
from auto_installer.stability import safe_stat

logger = logging.getLogger(__name__)

# .iso variants such as ".iso.cdr" produced by hdiutil UDTO conversions
_ISO_VARIANT = re.compile(r"\.iso\.[^./\\]+$")


def is_temporary_download(path: str) -> bool:
    """True for partial-download files written by browsers and download managers."""
    return path.lower().endswith(constants.TEMPORARY_DOWNLOAD_SUFFIXES)


def is_disk_image(path: str) -> bool:
    """True for ``.dmg``, ``.iso`` and ``.iso.<ext>`` names."""
    base = os.path.basename(path).lower()
    if base.endswith(".dmg") or base.endswith(".iso"):
        return True
    return bool(_ISO_VARIANT.search(base))


def is_candidate(path: str) -> bool:
    return bool(path) and not is_temporary_download(path) and is_disk_image(path)


class ImageScanner:
    """Lists candidate images in the downloads directory."""

    def __init__(
        self,
        downloads_dir: str,
        daemon_start: float,
        skew_ms: int = 2000,
        include_preexisting: bool = False,
    ):
        """
        Initialize scanner.

        Args:
            downloads_dir: Directory to scan (not recursive)
            daemon_start: Daemon start time (epoch seconds)
            skew_ms: Tolerance subtracted from the start time
            include_preexisting: Disable the recency filter
        """
        self.downloads_dir = os.path.abspath(downloads_dir)
        self.daemon_start = daemon_start
        self.skew_ms = skew_ms
        self.include_preexisting = include_preexisting

    @property
    def cutoff(self) -> float:
        return self.daemon_start - self.skew_ms / 1000.0

    def is_recent(self, st: os.stat_result) -> bool:
        """True when the file was created or modified since the daemon started."""
        if self.include_preexisting:
            return True
        birth: Optional[float] = getattr(st, "st_birthtime", None)
        if birth is not None and birth >= self.cutoff:
            return True
        return st.st_mtime >= self.cutoff

    def scan(self) -> List[str]:
        """
        List candidate images.

        Returns:
            Absolute paths of recent candidate images, sorted by name
        """
        try:
            names = os.listdir(self.downloads_dir)
        except OSError as e:
            logger.error(
                "Failed to read downloads dir",
                extra=fields(downloadsDir=self.downloads_dir, error=str(e)),
            )
            return []

        found = []
        for name in sorted(names):
            full = os.path.join(self.downloads_dir, name)
            if not is_candidate(full):
                continue
            st = safe_stat(full)
            if st is None or not self.is_recent(st):
                continue
            found.append(full)
        return found
