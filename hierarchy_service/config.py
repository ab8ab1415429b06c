"""Configuration utilities for the hierarchy service.

This module loads application configuration with the following rules:
- Primary source: `service_config.json` at the project root.
- Overrides: environment variables, then optional text files under `config/`.
- Validation: Pydantic models enforce required fields and value constraints.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator


CONFIG_DIR = Path("config")
ROOT_SERVICE_CONFIG = Path("service_config.json")
# Absolute ceiling on duplication depth regardless of configuration
MAX_DEPTH_CEILING = 10
logger = logging.getLogger(__name__)


def _read_config_file(rel_path: str) -> Optional[str]:
    path = CONFIG_DIR / rel_path
    try:
        if path.exists():
            return path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to read override %s: %s", path, e)
        return None
    return None


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(key, default)


class DatabaseConfig(BaseModel):
    dsn: str

    @field_validator("dsn")
    @classmethod
    def dsn_must_be_non_empty(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("database.dsn must be a non-empty string")
        return v


class PositionSettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=0.05, ge=0)


class DuplicationSettings(BaseModel):
    max_depth: int = Field(default=MAX_DEPTH_CEILING, ge=1, le=MAX_DEPTH_CEILING)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=2.0, ge=0)
    backoff_max_seconds: float = Field(default=300.0, ge=0)
    attempt_timeout_seconds: float = Field(default=120.0, gt=0)
    worker_count: int = Field(default=4, ge=1)


class AttachmentSettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=5.0, ge=0)
    location_prefix: str = "blobs"

    @field_validator("location_prefix")
    @classmethod
    def prefix_without_slashes(cls, v: str) -> str:
        v = str(v).strip().strip("/")
        if not v:
            raise ValueError("attachments.location_prefix must be non-empty")
        return v


class AppConfig(BaseModel):
    database: DatabaseConfig
    positions: PositionSettings = PositionSettings()
    duplication: DuplicationSettings = DuplicationSettings()
    attachments: AttachmentSettings = AttachmentSettings()


def _read_json_file(path: Path) -> dict:
    try:
        if path.exists():
            return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error("Failed to read JSON config %s: %s", path, e)
    return {}


def load_config() -> AppConfig:
    """Load configuration with validation.

    Precedence (highest first):
    1) Environment variables
    2) Text files in `config/` (optional)
    3) service_config.json at project root (primary base)
    4) Safe defaults for development
    """

    base = _read_json_file(ROOT_SERVICE_CONFIG)

    def _base(path: str, default: Optional[str] = None) -> Optional[str]:
        cur: object = base
        for key in path.split("."):
            if not isinstance(cur, dict) or key not in cur:
                return default
            cur = cur[key]
        return str(cur) if cur is not None else default

    def _pick(env_key: str, file_key: str, base_key: str) -> Optional[str]:
        return _env(env_key) or _read_config_file(file_key) or _base(base_key)

    def _section(prefix: str, fields: dict[str, str]) -> dict:
        out: dict = {}
        for name, env_key in fields.items():
            val = _pick(env_key, f"{prefix}.{name}", f"{prefix}.{name}")
            if val is not None and str(val).strip() != "":
                out[name] = str(val).strip()
        return out

    dsn = (
        _env("DATABASE_URL")
        or _read_config_file("database.url")
        or _base("database.dsn")
        or "sqlite+pysqlite:///:memory:"
    )

    try:
        cfg = AppConfig(
            database=DatabaseConfig(dsn=dsn),
            positions=PositionSettings(**_section("positions", {
                "max_attempts": "POSITIONS_MAX_ATTEMPTS",
                "backoff_seconds": "POSITIONS_BACKOFF_SECONDS",
            })),
            duplication=DuplicationSettings(**_section("duplication", {
                "max_depth": "DUPLICATION_MAX_DEPTH",
                "max_attempts": "DUPLICATION_MAX_ATTEMPTS",
                "backoff_base_seconds": "DUPLICATION_BACKOFF_BASE_SECONDS",
                "backoff_max_seconds": "DUPLICATION_BACKOFF_MAX_SECONDS",
                "attempt_timeout_seconds": "DUPLICATION_ATTEMPT_TIMEOUT_SECONDS",
                "worker_count": "DUPLICATION_WORKER_COUNT",
            })),
            attachments=AttachmentSettings(**_section("attachments", {
                "max_attempts": "ATTACHMENTS_MAX_ATTEMPTS",
                "backoff_seconds": "ATTACHMENTS_BACKOFF_SECONDS",
                "location_prefix": "ATTACHMENTS_LOCATION_PREFIX",
            })),
        )
        return cfg
    except PydanticValidationError as e:
        logger.error("Invalid application configuration: %s", e)
        raise


__all__ = [
    "AppConfig",
    "DatabaseConfig",
    "PositionSettings",
    "DuplicationSettings",
    "AttachmentSettings",
    "MAX_DEPTH_CEILING",
    "load_config",
]
