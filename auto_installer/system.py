"""
Host operations used by the install pipeline.

Everything that touches the installed system (privileged copy, extended
attributes, launching apps, the Trash) goes through MacSystem so tests can
substitute a fake.
"""

import errno
import logging
import os
import shutil
from pathlib import Path
from typing import List

from auto_installer import constants
from auto_installer.command import run_cmd, sudo_run
from auto_installer.errors import AutoInstallerError, OpenError
from auto_installer.logging_utils import fields
from auto_installer.models import utc_now

logger = logging.getLogger(__name__)


def timestamp_suffix() -> str:
    """Filesystem-safe UTC timestamp, e.g. ``2026-10-19T04-09-12-345Z``."""
    stamp = utc_now().isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return stamp.replace(":", "-").replace(".", "-")


def find_bundles(mount_point: str, max_depth: int, suffix: str = constants.BUNDLE_SUFFIX) -> List[str]:
    """
    Find application bundles under ``mount_point``.

    Matches directories named ``*<suffix>`` at most ``max_depth`` levels
    below the mount point. Symlinks are not followed and bundles are not
    searched for nested bundles.

    Returns:
        Sorted bundle paths
    """
    root = os.path.abspath(mount_point)
    base_depth = root.rstrip(os.sep).count(os.sep)
    found = []

    for dirpath, dirnames, _ in os.walk(root, followlinks=False):
        depth = dirpath.rstrip(os.sep).count(os.sep) - base_depth + 1
        keep = []
        for name in dirnames:
            full = os.path.join(dirpath, name)
            if os.path.islink(full):
                continue
            if name.lower().endswith(suffix):
                found.append(full)
            elif depth < max_depth:
                keep.append(name)
        dirnames[:] = keep

    return sorted(found)


class MacSystem:
    """macOS implementation of the pipeline's host operations."""

    def find_bundles(self, mount_point: str, max_depth: int) -> List[str]:
        return find_bundles(mount_point, max_depth)

    def install_bundle(self, src_app_path: str, install_dir: str, remove_quarantine: bool) -> str:
        """
        Copy a bundle into ``install_dir`` with privilege escalation.

        An existing bundle with the same name is renamed aside first.

        Returns:
            Installed bundle path
        """
        target = os.path.join(install_dir, os.path.basename(src_app_path.rstrip(os.sep)))

        if os.path.lexists(target):
            backup = f"{target}.bak-{timestamp_suffix()}"
            logger.warning("Target app already exists; backing up", extra=fields(target=target, backup=backup))
            sudo_run([constants.MV, target, backup], timeout=constants.MOVE_TIMEOUT)

        logger.info("Copying app", extra=fields(srcAppPath=src_app_path, target=target))
        sudo_run([constants.DITTO, src_app_path, target], timeout=constants.COPY_TIMEOUT)

        if remove_quarantine:
            try:
                sudo_run(
                    [constants.XATTR, "-dr", constants.QUARANTINE_ATTRIBUTE, target],
                    timeout=constants.XATTR_TIMEOUT,
                )
                logger.info("Removed quarantine attribute", extra=fields(target=target))
            except AutoInstallerError as e:
                logger.warning("Failed to remove quarantine attribute", extra=fields(target=target, error=str(e)))

        return target

    def open_path(self, app_path: str) -> None:
        try:
            res = run_cmd([constants.OPEN, app_path], timeout=constants.OPEN_TIMEOUT)
        except AutoInstallerError as e:
            raise OpenError(f"open failed: {e}") from e

        if not res.ok:
            raise OpenError(f"open failed ({res.returncode}): {(res.stderr or res.stdout).strip()}")
        logger.info("Opened app", extra=fields(appPath=app_path))

    def move_to_trash(self, image_path: str, trash_dir: str) -> str:
        """
        Move the image into ``trash_dir``.

        Returns:
            Destination path
        """
        Path(trash_dir).mkdir(parents=True, exist_ok=True)

        base = os.path.basename(image_path)
        stem, ext = os.path.splitext(base)
        dest = os.path.join(trash_dir, base)
        if os.path.lexists(dest):
            dest = os.path.join(trash_dir, f"{stem} ({timestamp_suffix()}){ext}")

        try:
            os.rename(image_path, dest)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise
            shutil.copy2(image_path, dest)
            os.unlink(image_path)

        logger.info("Moved image to Trash", extra=fields(imagePath=image_path, dest=dest))
        return dest
