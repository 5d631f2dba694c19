"""
Configuration loading and validation.

Loads client configuration from a YAML file. Secrets and the signed-in user
are resolved from environment variables named in the file, never stored in it.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator


class BackendConfig(BaseModel):
    url: str = "http://localhost:54321"
    api_key_env: str = "PORTAL_API_KEY"
    verify_tls: bool = True
    request_timeout_seconds: int = 30
    heartbeat_timeout_seconds: int = 90

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class IdentityConfig(BaseModel):
    user_id_env: str = "PORTAL_USER_ID"

    @property
    def user_id(self) -> str | None:
        return os.environ.get(self.user_id_env) or None


class NotificationConfig(BaseModel):
    body_max_chars: int = 40
    ellipsis: str = "..."
    invalidate_keys: list[str] = Field(
        default_factory=lambda: ["notifications", "virtual-notifications"]
    )
    sound_enabled: bool = True

    @field_validator("body_max_chars")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("body_max_chars must be positive")
        return v


class MergeConfig(BaseModel):
    cache_ttl_seconds: float = 300.0
    cache_maxsize: int = 256


class ProgressConfig(BaseModel):
    autosave_interval_seconds: float = 10.0
    min_delta_seconds: float = 5.0
    restart_threshold_seconds: float = 5.0
    store: Literal["backend", "local"] = "backend"
    local_db_path: str = "./data/progress.db"


class SyncRule(BaseModel):
    table: str
    keys: list[str]
    # Column compared against the current user for a server-side filter.
    user_column: str | None = None


def _default_sync_rules() -> list[SyncRule]:
    return [
        SyncRule(
            table="user_enrollments",
            keys=["userEnrollments", "dashboardUserEnrollments", "sidebarUserEnrollments"],
            user_column="user_id",
        ),
        SyncRule(table="profiles", keys=["profile"], user_column="user_id"),
        SyncRule(
            table="schedules",
            keys=["student-schedule-direct", "allStudentSchedulesRPC", "ongoingClassRPC"],
        ),
        SyncRule(table="meeting_links", keys=["student-schedule-direct", "ongoingClassRPC"]),
        SyncRule(table="notes", keys=["student-notes", "student-analytics"]),
        SyncRule(table="recordings", keys=["student-recordings", "student-analytics"]),
        SyncRule(
            table="dpp_content",
            keys=["student-dpp", "student-ui-ki-padhai", "student-analytics"],
        ),
        SyncRule(table="feedback", keys=["student-submitted-feedback", "student-analytics"]),
        SyncRule(table="student_activities", keys=["student-activities"], user_column="user_id"),
    ]


class SyncConfig(BaseModel):
    enabled: bool = True
    catch_all: bool = False
    rules: list[SyncRule] = Field(default_factory=_default_sync_rules)


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9091


class RealtimeConfig(BaseModel):
    backend: BackendConfig = Field(default_factory=BackendConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str | Path) -> RealtimeConfig:
    """Load and validate client configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return RealtimeConfig.model_validate(raw)
