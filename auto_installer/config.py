"""
Configuration management for auto-installer.

The configuration file is a JSON object with camelCase keys. Missing keys
take their defaults; a missing or unreadable file yields the default
configuration.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from auto_installer.atomic import AtomicFileWriter
from auto_installer.constants import DEFAULT_CONFIG_FILE
from auto_installer.logging_utils import fields
from auto_installer.models import InstallerConfig

logger = logging.getLogger(__name__)


class ConfigManager:
    """
    Loads and saves the daemon configuration.

    The daemon reads the configuration once at startup and treats it as
    read-only afterwards.
    """

    def __init__(self, config_file: Optional[Path] = None):
        """
        Initialize config manager.

        Args:
            config_file: Path to configuration file (default location if None)
        """
        self.config_file = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
        self.config = self.load_config()

    def _read_raw(self) -> Dict[str, Any]:
        raw = json.loads(self.config_file.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"config must be a JSON object, got {type(raw).__name__}")
        return raw

    def load_config(self) -> InstallerConfig:
        """
        Load configuration from file.

        Returns:
            InstallerConfig (defaults when the file is missing or invalid)
        """
        if not self.config_file.exists():
            return InstallerConfig()

        try:
            return InstallerConfig.model_validate(self._read_raw())
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(
                "Invalid configuration file; using defaults",
                extra=fields(configFile=str(self.config_file), error=str(e)),
            )
            return InstallerConfig()

    def save_config(self) -> None:
        """Write the current configuration to the config file."""
        data = self.config.model_dump(mode="json", by_alias=True)
        AtomicFileWriter(self.config_file).write_text(json.dumps(data, indent=2) + "\n")
