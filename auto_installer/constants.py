"""
Environment variable names and default values for auto-installer.

All environment variables are optional and have sensible defaults.
"""

import os
from pathlib import Path

# Daemon Configuration
AUTO_INSTALLER_CONFIG = os.getenv("AUTO_INSTALLER_CONFIG", "")
AUTO_INSTALLER_LOG_LEVEL = os.getenv("AUTO_INSTALLER_LOG_LEVEL", "INFO").upper()
AUTO_INSTALLER_CONSOLE_LOG = os.getenv("AUTO_INSTALLER_CONSOLE_LOG", "true").lower() == "true"

# Default paths
APP_DIR = Path.home() / "Library" / "Application Support" / "AutoInstaller"
DEFAULT_CONFIG_FILE = Path(AUTO_INSTALLER_CONFIG) if AUTO_INSTALLER_CONFIG else APP_DIR / "config.json"
DEFAULT_STATE_FILE = APP_DIR / "state.json"
DEFAULT_LOG_FILE = Path.home() / "Library" / "Logs" / "auto-installer.log"
DEFAULT_LOCK_DIR = Path("/tmp/com.auto-installer.lock")
DEFAULT_TRASH_DIR = Path.home() / ".Trash"
DEFAULT_DOWNLOADS_DIR = Path.home() / "Downloads"
DEFAULT_INSTALL_DIR = Path("/Applications")
DEFAULT_FSWATCH_PATH = Path("/opt/homebrew/bin/fswatch")

# System tools (absolute so launchd's minimal PATH does not matter)
HDIUTIL = "/usr/bin/hdiutil"
SUDO = "/usr/bin/sudo"
DITTO = "/usr/bin/ditto"
XATTR = "/usr/bin/xattr"
OPEN = "/usr/bin/open"
MV = "/bin/mv"

# Hard-kill ceilings for external commands (seconds)
ATTACH_TIMEOUT = 3 * 60
DETACH_TIMEOUT = 60
COPY_TIMEOUT = 10 * 60
MOVE_TIMEOUT = 60
XATTR_TIMEOUT = 60
OPEN_TIMEOUT = 30

# Detach retry policy
DETACH_SOFT_ATTEMPTS = 3
DETACH_RETRY_DELAY = 2.0

# Watch tool restart backoff (seconds)
WATCH_RESTART_DELAY = 2.0

QUARANTINE_ATTRIBUTE = "com.apple.quarantine"
BUNDLE_SUFFIX = ".app"

TEMPORARY_DOWNLOAD_SUFFIXES = (
    ".crdownload",
    ".download",
    ".part",
    ".tmp",
    ".aria2",
    ".icloud",
)

NON_PRIMARY_KEYWORDS = (
    "helper",
    "install",
    "installer",
    "uninstall",
    "update",
    "updater",
    "readme",
    "guide",
    "license",
    "support",
    "documentation",
)

STATE_SCHEMA_VERSION = 1
