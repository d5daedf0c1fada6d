"""
Disk image attach/detach adapter.

The pipeline only sees the DiskImageAdapter protocol; HdiutilAdapter is the
macOS implementation built on ``hdiutil`` and its plist output.
"""

import logging
import plistlib
import re
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol
from xml.parsers.expat import ExpatError

from auto_installer import constants
from auto_installer.command import CmdResult, run_cmd
from auto_installer.errors import AttachError, AutoInstallerError, DetachError
from auto_installer.logging_utils import fields

logger = logging.getLogger(__name__)

_WHOLE_DISK = re.compile(r"^/dev/disk\d+$")
_PARTITION = re.compile(r"^/dev/disk(\d+)s\d+$")


@dataclass
class AttachInfo:
    mount_points: List[str] = field(default_factory=list)
    device_ids: List[str] = field(default_factory=list)
    detach_device: Optional[str] = None


class DiskImageAdapter(Protocol):
    """Mount tool surface used by the install pipeline."""

    def attach(self, image_path: str) -> AttachInfo:
        ...

    def detach(self, device: str, force: bool = False) -> CmdResult:
        ...


def normalize_dev_entry(dev_entry: str) -> str:
    """Map a partition device (``/dev/disk4s1``) to its whole disk (``/dev/disk4``)."""
    m = _PARTITION.match(dev_entry)
    if m:
        return f"/dev/disk{m.group(1)}"
    return dev_entry


def choose_detach_device(device_ids: List[str]) -> Optional[str]:
    """Prefer a whole-disk identifier, falling back to the first one."""
    for dev in device_ids:
        if _WHOLE_DISK.match(dev):
            return dev
    return device_ids[0] if device_ids else None


def parse_attach_plist(data: bytes) -> AttachInfo:
    """
    Extract mount points and device ids from ``hdiutil attach -plist`` output.

    Raises:
        ValueError: If the output is not a property list
    """
    try:
        plist = plistlib.loads(data)
    except (plistlib.InvalidFileException, ExpatError, ValueError) as e:
        raise ValueError(f"unparsable attach output: {e}") from e

    entities = plist.get("system-entities") if isinstance(plist, dict) else None
    if not isinstance(entities, list):
        entities = []

    mount_points = []
    devices = []
    for entity in entities:
        if not isinstance(entity, dict):
            continue
        mp = entity.get("mount-point")
        if isinstance(mp, str) and mp:
            mount_points.append(mp)
        dev = entity.get("dev-entry")
        if isinstance(dev, str) and dev:
            normalized = normalize_dev_entry(dev)
            if normalized not in devices:
                devices.append(normalized)

    return AttachInfo(
        mount_points=mount_points,
        device_ids=devices,
        detach_device=choose_detach_device(devices),
    )


class HdiutilAdapter:
    """DiskImageAdapter backed by ``hdiutil``."""

    def __init__(self, hdiutil: str = constants.HDIUTIL):
        self.hdiutil = hdiutil

    def attach(self, image_path: str) -> AttachInfo:
        argv = [self.hdiutil, "attach", "-nobrowse", "-noautoopen", "-plist", image_path]
        try:
            res = run_cmd(argv, timeout=constants.ATTACH_TIMEOUT)
        except AutoInstallerError as e:
            raise AttachError(f"hdiutil attach failed: {e}") from e

        if not res.ok:
            detail = (res.stderr or res.stdout).strip()
            raise AttachError(f"hdiutil attach failed ({res.returncode}): {detail}")

        try:
            info = parse_attach_plist(res.stdout.encode("utf-8"))
        except ValueError as e:
            raise AttachError(str(e)) from e

        logger.info(
            "Mounted image",
            extra=fields(imagePath=image_path, mountPoints=info.mount_points, detachDev=info.detach_device),
        )
        return info

    def detach(self, device: str, force: bool = False) -> CmdResult:
        argv = [self.hdiutil, "detach", device]
        if force:
            argv.append("-force")
        argv.append("-quiet")
        return run_cmd(argv, timeout=constants.DETACH_TIMEOUT)


def detach_image(
    adapter: DiskImageAdapter,
    device: Optional[str],
    soft_attempts: int = constants.DETACH_SOFT_ATTEMPTS,
    retry_delay: float = constants.DETACH_RETRY_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Unmount ``device``, escalating to a forced detach.

    Raises:
        DetachError: If the forced detach also fails
    """
    if not device:
        return

    for _ in range(soft_attempts):
        try:
            if adapter.detach(device, force=False).ok:
                logger.info("Detached image", extra=fields(detachDev=device))
                return
        except AutoInstallerError as e:
            logger.debug("Soft detach failed", extra=fields(detachDev=device, error=str(e)))
        sleep(retry_delay)

    try:
        forced = adapter.detach(device, force=True)
    except AutoInstallerError as e:
        raise DetachError(f"hdiutil detach failed: {e}") from e

    if forced.ok:
        logger.warning("Detached image with -force", extra=fields(detachDev=device))
        return

    raise DetachError(f"hdiutil detach failed: {(forced.stderr or forced.stdout).strip()}")
