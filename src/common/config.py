from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Set

from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import ConfigError
from .identities import parse_identity_list


# Environment variable names
ENV_DATA_DIR = "WINGMAN_DATA_DIR"
ENV_BACKUPS_DIR = "WINGMAN_BACKUPS_DIR"
ENV_MAX_ACTIVE_MESSAGES = "MAX_ACTIVE_MESSAGES"
ENV_ARCHIVE_THRESHOLD = "ARCHIVE_THRESHOLD"
ENV_RATE_LIMIT_MAX_REQUESTS = "WINGMAN_RATE_LIMIT_MAX_REQUESTS"
ENV_RATE_LIMIT_WINDOW_SECONDS = "WINGMAN_RATE_LIMIT_WINDOW_SECONDS"
ENV_MAX_FAILED_ATTEMPTS = "WINGMAN_MAX_FAILED_ATTEMPTS"
ENV_LOCKOUT_DURATION_SECONDS = "WINGMAN_LOCKOUT_DURATION_SECONDS"
ENV_FLOW_STATE_TIMEOUT_SECONDS = "WINGMAN_FLOW_STATE_TIMEOUT_SECONDS"
ENV_FLOW_STATE_SWEEP_SECONDS = "WINGMAN_FLOW_STATE_SWEEP_SECONDS"
ENV_SECURITY_SWEEP_SECONDS = "WINGMAN_SECURITY_SWEEP_SECONDS"
ENV_KEY_IDENTITY = "WINGMAN_KEY_IDENTITY"
ENV_BANNED_IDS = "WINGMAN_BANNED_IDS"
ENV_BACKUP_BUCKET = "WINGMAN_BACKUP_BUCKET"
ENV_BACKUP_PREFIX = "WINGMAN_BACKUP_PREFIX"

CONVERSATIONS_SUBDIR = "conversations"
ARCHIVES_SUBDIR = "archives"
CONTACTS_FILENAME = "contacts.json"


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    return v if v not in (None, "") else default


class Settings(BaseModel):
    """
    Scalar settings consumed by the session and storage layer.

    Fields
    - data_dir: root for conversations/, archives/, contacts.json and exports.
    - backups_dir: parent directory for backup snapshots.
    - max_active_messages / archive_threshold: archive rollover bounds. Rollover
      fires when the active segment grows past `archive_threshold` and leaves
      exactly `max_active_messages` behind.
    - rate_limit_*: fixed-window request throttling per identity.
    - max_failed_attempts / lockout_duration_seconds: unlock lockout policy.
    - flow_state_*: multi-step interaction expiry and backstop sweep interval.
    - security_sweep_seconds: how often idle rate windows, stale failure counts
      and expired session tokens are purged.
    - key_identity: identity fed into the salt derivation. The working key is
      process-wide, so every unlock derives against the same identity.
    - banned_ids: identities rejected before any other processing.
    """

    data_dir: Path = Field(default=Path("data"))
    backups_dir: Path = Field(default=Path("backups"))

    max_active_messages: int = Field(default=100, gt=0)
    archive_threshold: int = Field(default=200, gt=0)

    rate_limit_max_requests: int = Field(default=20, gt=0)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)

    max_failed_attempts: int = Field(default=5, gt=0)
    lockout_duration_seconds: float = Field(default=15 * 60.0, gt=0)

    flow_state_timeout_seconds: float = Field(default=5 * 60.0, gt=0)
    flow_state_sweep_seconds: float = Field(default=10 * 60.0, gt=0)
    security_sweep_seconds: float = Field(default=10 * 60.0, gt=0)

    key_identity: str = Field(default="default", min_length=1)
    banned_ids: Set[str] = Field(default_factory=set)

    backup_bucket: Optional[str] = None
    backup_prefix: str = "wingman/backups/"

    @model_validator(mode="after")
    def _check_archive_bounds(self) -> "Settings":
        if self.archive_threshold < self.max_active_messages:
            raise ValueError("archive_threshold must be >= max_active_messages")
        return self

    @property
    def conversations_dir(self) -> Path:
        return self.data_dir / CONVERSATIONS_SUBDIR

    @property
    def archives_dir(self) -> Path:
        return self.data_dir / ARCHIVES_SUBDIR

    @property
    def contacts_file(self) -> Path:
        return self.data_dir / CONTACTS_FILENAME

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults.

        Raises ConfigError on unparsable or inconsistent values.
        """
        mapping = {
            "data_dir": ENV_DATA_DIR,
            "backups_dir": ENV_BACKUPS_DIR,
            "max_active_messages": ENV_MAX_ACTIVE_MESSAGES,
            "archive_threshold": ENV_ARCHIVE_THRESHOLD,
            "rate_limit_max_requests": ENV_RATE_LIMIT_MAX_REQUESTS,
            "rate_limit_window_seconds": ENV_RATE_LIMIT_WINDOW_SECONDS,
            "max_failed_attempts": ENV_MAX_FAILED_ATTEMPTS,
            "lockout_duration_seconds": ENV_LOCKOUT_DURATION_SECONDS,
            "flow_state_timeout_seconds": ENV_FLOW_STATE_TIMEOUT_SECONDS,
            "flow_state_sweep_seconds": ENV_FLOW_STATE_SWEEP_SECONDS,
            "security_sweep_seconds": ENV_SECURITY_SWEEP_SECONDS,
            "key_identity": ENV_KEY_IDENTITY,
            "backup_bucket": ENV_BACKUP_BUCKET,
            "backup_prefix": ENV_BACKUP_PREFIX,
        }
        values = {field: _getenv(env) for field, env in mapping.items()}
        values = {k: v for k, v in values.items() if v is not None}

        banned = _getenv(ENV_BANNED_IDS)
        if banned:
            values["banned_ids"] = parse_identity_list(banned)

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid wingman configuration: {e}") from e
