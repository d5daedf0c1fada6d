"""Test fixtures for auto-installer tests."""

import pytest
import tempfile
import shutil
from pathlib import Path
from typing import List, Optional

from auto_installer.command import CmdResult
from auto_installer.diskimage import AttachInfo
from auto_installer.errors import AttachError, OpenError
from auto_installer.models import InstallerConfig


class FakeImageAdapter:
    """DiskImageAdapter double recording attach/detach calls."""

    def __init__(self, mount_point: Optional[str] = None, device: str = "/dev/disk4"):
        self.mount_point = mount_point
        self.device = device
        self.attach_failures = 0
        self.detach_failures = 0
        self.attached: List[str] = []
        self.detached: List[tuple] = []

    def attach(self, image_path: str) -> AttachInfo:
        self.attached.append(image_path)
        if self.attach_failures > 0:
            self.attach_failures -= 1
            raise AttachError("hdiutil attach failed (1): resource temporarily unavailable")
        return AttachInfo(
            mount_points=[self.mount_point] if self.mount_point else [],
            device_ids=[self.device],
            detach_device=self.device,
        )

    def detach(self, device: str, force: bool = False) -> CmdResult:
        self.detached.append((device, force))
        if self.detach_failures > 0:
            self.detach_failures -= 1
            return CmdResult(argv=["hdiutil", "detach", device], returncode=16, stdout="", stderr="resource busy")
        return CmdResult(argv=["hdiutil", "detach", device], returncode=0, stdout="", stderr="")


class FakeSystem:
    """HostSystem double operating on plain directories instead of sudo/open."""

    def __init__(self):
        self.bundles: dict = {}
        self.installed: List[tuple] = []
        self.opened: List[str] = []
        self.trashed: List[tuple] = []
        self.open_error: Optional[str] = None
        self.trash_error: Optional[OSError] = None

    def find_bundles(self, mount_point: str, max_depth: int) -> List[str]:
        return list(self.bundles.get(mount_point, []))

    def install_bundle(self, src_app_path: str, install_dir: str, remove_quarantine: bool) -> str:
        target = str(Path(install_dir) / Path(src_app_path).name)
        self.installed.append((src_app_path, target, remove_quarantine))
        return target

    def open_path(self, app_path: str) -> None:
        if self.open_error:
            raise OpenError(self.open_error)
        self.opened.append(app_path)

    def move_to_trash(self, image_path: str, trash_dir: str) -> str:
        if self.trash_error:
            raise self.trash_error
        dest = str(Path(trash_dir) / Path(image_path).name)
        self.trashed.append((image_path, dest))
        return dest


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def downloads_dir(temp_dir):
    """Downloads directory inside the temp dir."""
    path = temp_dir / "Downloads"
    path.mkdir()
    return path


@pytest.fixture
def state_file(temp_dir):
    """Path for the state file (not created)."""
    return temp_dir / "state" / "state.json"


@pytest.fixture
def sample_config(temp_dir, downloads_dir, state_file):
    """InstallerConfig pointing every path into the temp dir, with fast timings."""
    return InstallerConfig(
        downloads_dir=str(downloads_dir),
        install_dir=str(temp_dir / "Applications"),
        trash_dir=str(temp_dir / "Trash"),
        fswatch_path=str(temp_dir / "bin" / "fswatch"),
        watch_backend="watchdog",
        lock_dir=str(temp_dir / "auto-installer.lock"),
        log_path=str(temp_dir / "logs" / "auto-installer.log"),
        state_path=str(state_file),
        stability_checks=2,
        stability_interval_ms=0,
        debounce_ms=0,
        retry_base_delay_ms=1000,
        retry_max_delay_ms=60000,
    )


@pytest.fixture
def fake_images():
    """Disk image adapter mounting at /Volumes/App."""
    return FakeImageAdapter(mount_point="/Volumes/App")


@pytest.fixture
def fake_system():
    """Host system double with a single App.app bundle."""
    system = FakeSystem()
    system.bundles["/Volumes/App"] = ["/Volumes/App/App.app"]
    return system


@pytest.fixture
def write_image(downloads_dir):
    """Factory writing a finished disk image into the downloads dir."""

    def _write(name: str = "App-1.2.dmg", size: int = 1024) -> Path:
        path = downloads_dir / name
        path.write_bytes(b"\0" * size)
        return path

    return _write
