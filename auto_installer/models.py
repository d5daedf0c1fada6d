"""
Data models for auto-installer.

Configuration and persisted state share the camelCase JSON layout used by
config.json and state.json; Python code uses the snake_case field names.
"""

import os
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auto_installer import constants


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps from hand-edited files as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OpenPolicy(str, Enum):
    """Which installed bundles are opened after a successful install."""
    PRIMARY = "primary"
    ALL = "all"
    NONE = "none"


class DeletePolicy(str, Enum):
    """Whether the source image is archived after success."""
    ON_SUCCESS = "on_success"
    NEVER = "never"


class WatchBackend(str, Enum):
    """Push notification backend."""
    AUTO = "auto"
    FSWATCH = "fswatch"
    WATCHDOG = "watchdog"


class RecordStatus(str, Enum):
    """Processing status of a single image identity."""
    RUNNING = "running"
    SUCCESS = "success"
    FAIL = "fail"


class InstallerConfig(_CamelModel):
    """Daemon configuration, loaded once at startup."""

    downloads_dir: str = str(constants.DEFAULT_DOWNLOADS_DIR)
    install_dir: str = str(constants.DEFAULT_INSTALL_DIR)
    fswatch_path: str = str(constants.DEFAULT_FSWATCH_PATH)
    watch_backend: WatchBackend = WatchBackend.AUTO
    trash_dir: str = str(constants.DEFAULT_TRASH_DIR)

    stability_checks: int = Field(default=4, ge=1)
    stability_interval_ms: int = Field(default=1000, ge=0)
    debounce_ms: int = Field(default=800, ge=0)
    unstable_retry_delay_ms: int = Field(default=2000, ge=0)
    unstable_log_interval_ms: int = Field(default=15000, ge=0)
    rescan_interval_ms: int = Field(default=5 * 60 * 1000, ge=1000)
    rescan_skew_ms: int = Field(default=2000, ge=0)

    max_attempts_per_key: int = Field(default=20, ge=1)
    retry_base_delay_ms: int = Field(default=15000, ge=0)
    retry_max_delay_ms: int = Field(default=5 * 60 * 1000, ge=0)
    min_retry_delay_ms: int = Field(default=250, ge=0)

    max_find_depth: int = Field(default=3, ge=1)
    remove_quarantine: bool = True
    open_policy: OpenPolicy = OpenPolicy.PRIMARY
    delete_policy: DeletePolicy = DeletePolicy.ON_SUCCESS
    process_preexisting_on_startup: bool = False
    recover_stuck_on_startup: bool = True

    max_state_entries: int = Field(default=800, ge=1)
    lock_dir: str = str(constants.DEFAULT_LOCK_DIR)
    log_path: str = str(constants.DEFAULT_LOG_FILE)
    state_path: str = str(constants.DEFAULT_STATE_FILE)

    @field_validator(
        "downloads_dir", "install_dir", "fswatch_path", "trash_dir",
        "lock_dir", "log_path", "state_path",
    )
    @classmethod
    def expand_user(cls, value: str) -> str:
        return os.path.expanduser(value)


class ProcessingResult(_CamelModel):
    """Outputs of one install attempt, including partial progress."""

    installed_app_paths: List[str] = Field(default_factory=list)
    opened_app_paths: List[str] = Field(default_factory=list)
    primary_app_path: Optional[str] = None
    trashed_path: Optional[str] = None
    error: Optional[Dict[str, str]] = None
    dry_run: Optional[bool] = None


class ProcessingRecord(_CamelModel):
    """Per-identity processing record stored in the state file."""

    status: RecordStatus
    attempts: int = 0
    retryable: bool = True
    next_retry_at: Optional[datetime] = None
    first_seen_at: datetime = Field(default_factory=utc_now)
    last_tried_at: Optional[datetime] = None
    source_path: str = ""
    trigger_reason: str = ""
    result: ProcessingResult = Field(default_factory=ProcessingResult)

    @field_validator("next_retry_at", "first_seen_at", "last_tried_at")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class StateSnapshot(_CamelModel):
    """Complete persisted state document."""

    schema_version: int = constants.STATE_SCHEMA_VERSION
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    entries: Dict[str, ProcessingRecord] = Field(default_factory=dict)

    @field_validator("created_at", "updated_at")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)
