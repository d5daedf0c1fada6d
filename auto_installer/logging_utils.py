import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from auto_installer import constants

_LEVEL_NAMES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "fatal",
}


def fields(**data: Any) -> Dict[str, Dict[str, Any]]:
    """Build the ``extra`` mapping for a structured log call."""
    return {"fields": data}


class StructuredFormatter(logging.Formatter):
    """Render ``[timestamp] [level] message {json-extra}`` lines."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        stamp = ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        level = _LEVEL_NAMES.get(record.levelno, record.levelname.lower())
        line = f"[{stamp}] [{level}] {record.getMessage()}"

        extra = getattr(record, "fields", None)
        if extra:
            line = f"{line} {json.dumps(extra, default=str, sort_keys=True)}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(
    log_path: str = str(constants.DEFAULT_LOG_FILE),
    level: Union[int, str] = logging.INFO,
    also_console: bool = True,
) -> str:
    """Configure logging.

    Installs a file handler (and optionally a stderr handler) on the root
    logger. Calling it again is a no-op. If the requested file cannot be
    opened, logging falls back to ``./auto-installer.log``.

    Returns the actual file path being used.
    """

    logger = logging.getLogger()
    logger.setLevel(level)

    if getattr(logger, "_auto_installer_configured", False):
        return getattr(logger, "_auto_installer_log_path", log_path)

    fmt = StructuredFormatter()
    handlers: List[logging.Handler] = []

    file_handler: Optional[logging.Handler] = None
    try:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        chosen_path = log_path
    except OSError:
        chosen_path = str(Path.cwd() / "auto-installer.log")
        file_handler = logging.FileHandler(chosen_path, encoding="utf-8")
    file_handler.setFormatter(fmt)
    handlers.append(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        handlers.append(console)

    for h in handlers:
        logger.addHandler(h)

    setattr(logger, "_auto_installer_configured", True)
    setattr(logger, "_auto_installer_log_path", chosen_path)

    logging.getLogger(__name__).debug(
        "Logging initialized", extra=fields(requested=log_path, actual=chosen_path)
    )
    return chosen_path
