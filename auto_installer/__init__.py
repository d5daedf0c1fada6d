"""
Auto-Installer - installs applications from downloaded disk images.

Watches a downloads directory, waits for each .dmg/.iso to finish writing,
then mounts it, copies its .app bundles into the install directory, opens
the primary one, unmounts and archives the image. Per-image state survives
restarts.
"""

__version__ = "1.0.0"

from auto_installer.models import (
    OpenPolicy,
    DeletePolicy,
    WatchBackend,
    RecordStatus,
    InstallerConfig,
    ProcessingResult,
    ProcessingRecord,
    StateSnapshot,
)

from auto_installer.config import ConfigManager
from auto_installer.atomic import AtomicFileWriter, SingletonLock
from auto_installer.state_store import StateStore
from auto_installer.scanner import ImageScanner
from auto_installer.pipeline import InstallPipeline, choose_primary_app
from auto_installer.processor import ImageProcessor
from auto_installer.daemon import AutoInstallerDaemon

__all__ = [
    # Models
    "OpenPolicy",
    "DeletePolicy",
    "WatchBackend",
    "RecordStatus",
    "InstallerConfig",
    "ProcessingResult",
    "ProcessingRecord",
    "StateSnapshot",
    # Config
    "ConfigManager",
    # Utilities
    "AtomicFileWriter",
    "SingletonLock",
    # Components
    "StateStore",
    "ImageScanner",
    "InstallPipeline",
    "choose_primary_app",
    "ImageProcessor",
    "AutoInstallerDaemon",
]
