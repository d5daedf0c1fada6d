"""
Install pipeline for a single disk image.

attach → discover bundles → choose primary → install all → open →
detach → archive. Any failure aborts the attempt without rolling back
completed steps; the partial ProcessingResult travels on the raised
PipelineError.
"""

import logging
import os
import time
from typing import Callable, List, Optional, Protocol, Sequence

from auto_installer import constants
from auto_installer.diskimage import DiskImageAdapter, detach_image
from auto_installer.errors import (
    AutoInstallerError, DetachError, InstallError, NoBundleError, PipelineError
)
from auto_installer.logging_utils import fields
from auto_installer.models import (
    DeletePolicy, InstallerConfig, OpenPolicy, ProcessingResult
)

logger = logging.getLogger(__name__)

KEYWORD_PENALTY = 10
HELPER_PENALTY = 20
MAX_LENGTH_PENALTY_CHARS = 50


class HostSystem(Protocol):
    """Host operations the pipeline depends on (see MacSystem)."""

    def find_bundles(self, mount_point: str, max_depth: int) -> List[str]:
        ...

    def install_bundle(self, src_app_path: str, install_dir: str, remove_quarantine: bool) -> str:
        ...

    def open_path(self, app_path: str) -> None:
        ...

    def move_to_trash(self, image_path: str, trash_dir: str) -> str:
        ...


def _bundle_name(path: str) -> str:
    base = os.path.basename(path.rstrip(os.sep)).lower()
    if base.endswith(constants.BUNDLE_SUFFIX):
        base = base[: -len(constants.BUNDLE_SUFFIX)]
    return base


def score_app_name(name: str) -> float:
    """Higher is more likely to be the real application."""
    score = 0.0
    for word in constants.NON_PRIMARY_KEYWORDS:
        if word in name:
            score -= KEYWORD_PENALTY
    if "helper" in name:
        score -= HELPER_PENALTY
    score -= min(MAX_LENGTH_PENALTY_CHARS, len(name)) / 100
    return score


def choose_primary_app(app_paths: Sequence[str]) -> Optional[str]:
    """
    Pick the bundle most likely to be the application itself.

    Deterministic for a given set of paths: ties break on the lower-cased
    bundle name, then on the full path.
    """
    if not app_paths:
        return None

    ranked = sorted(
        app_paths,
        key=lambda p: (-score_app_name(_bundle_name(p)), _bundle_name(p), p),
    )
    return ranked[0]


class InstallPipeline:
    """Runs one install attempt for a stable disk image."""

    def __init__(
        self,
        config: InstallerConfig,
        images: DiskImageAdapter,
        system: HostSystem,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.images = images
        self.system = system
        self.sleep = sleep

    def _discover(self, mount_points: Sequence[str]) -> List[str]:
        apps = set()
        for mp in mount_points:
            apps.update(self.system.find_bundles(mp, self.config.max_find_depth))
        return sorted(apps)

    def _open(self, installed: List[tuple], primary: Optional[str], result: ProcessingResult) -> None:
        policy = self.config.open_policy
        if policy == OpenPolicy.NONE:
            return

        if policy == OpenPolicy.ALL:
            targets = [target for _, target in installed]
        else:
            targets = [primary] if primary else []

        for target in targets:
            self.system.open_path(target)
            result.opened_app_paths.append(target)

    def _archive(self, image_path: str, result: ProcessingResult) -> None:
        if self.config.delete_policy != DeletePolicy.ON_SUCCESS:
            return
        try:
            result.trashed_path = self.system.move_to_trash(image_path, self.config.trash_dir)
        except OSError as e:
            logger.warning("Failed to move image to Trash", extra=fields(imagePath=image_path, error=str(e)))

    def run(self, image_path: str) -> ProcessingResult:
        """
        Process one image.

        Returns:
            ProcessingResult of the successful attempt

        Raises:
            PipelineError: With ``result`` holding the partial outcome
        """
        result = ProcessingResult()
        detach_dev = None

        try:
            info = self.images.attach(image_path)
            detach_dev = info.detach_device

            apps = self._discover(info.mount_points)
            if not apps:
                raise NoBundleError("No .app found in mounted image")

            primary_src = choose_primary_app(apps)
            if len(apps) > 1:
                logger.info(
                    "Multiple .app found; will install all",
                    extra=fields(imagePath=image_path, primarySrc=primary_src, count=len(apps), apps=apps[:20]),
                )

            installed = []
            for src in apps:
                try:
                    target = self.system.install_bundle(
                        src, self.config.install_dir, self.config.remove_quarantine
                    )
                except AutoInstallerError as e:
                    raise InstallError(f"Failed to install {os.path.basename(src)}: {e}") from e
                installed.append((src, target))
                result.installed_app_paths.append(target)

            result.primary_app_path = next(
                (target for src, target in installed if src == primary_src), installed[0][1]
            )

            self._open(installed, result.primary_app_path, result)

            detach_image(self.images, detach_dev, sleep=self.sleep)
            detach_dev = None

            self._archive(image_path, result)
            return result

        except PipelineError as e:
            e.result = result
            raise
        except (AutoInstallerError, OSError) as e:
            raise PipelineError(str(e), result) from e
        finally:
            if detach_dev:
                try:
                    detach_image(self.images, detach_dev, sleep=self.sleep)
                except DetachError as e:
                    logger.error(
                        "Failed to detach during cleanup",
                        extra=fields(detachDev=detach_dev, error=str(e)),
                    )
