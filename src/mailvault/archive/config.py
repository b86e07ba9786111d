"""Runtime configuration for an archive run."""

from __future__ import annotations

import os
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

PASSWORD_ENV_VAR = "MAILVAULT_PASSWORD"


class ArchiveConfig(BaseModel):
    """Connection, scope and resilience settings for one archive."""

    server: str = Field(..., min_length=1, description="IMAP server hostname")
    port: int = Field(default=993, ge=1, le=65535, description="IMAPS port")
    username: str = Field(..., min_length=1, description="Login name")
    password: SecretStr = Field(..., description="Login password or app password")
    output_dir: Path = Field(default=Path("EmailArchive"), description="Archive root")
    all_folders: bool = Field(default=False, description="Archive every selectable folder")
    folders: Optional[List[str]] = Field(
        default=None, description="Explicit folder list; overrides all_folders"
    )
    start_date: Optional[date] = Field(default=None, description="Only messages on or after")
    end_date: Optional[date] = Field(default=None, description="Only messages on or before")
    batch_size: int = Field(default=50, ge=1, le=1000, description="UIDs per batch")
    connect_timeout_seconds: float = Field(default=120, gt=0, le=3600)
    read_timeout_seconds: float = Field(default=120, gt=0, le=3600)
    chunk_size_bytes: int = Field(
        default=256 * 1024,
        ge=4096,
        le=64 * 1024 * 1024,
        description="Body bytes requested per partial fetch",
    )
    retry_base_delay_seconds: float = Field(default=2, gt=0, le=3600)
    retry_max_delay_seconds: float = Field(default=300, gt=0, le=86400)
    breaker_failure_threshold: int = Field(default=5, ge=1, le=100)
    breaker_cooldown_seconds: float = Field(default=120, ge=0, le=86400)
    telemetry_dir: Optional[Path] = Field(
        default=None, description="Directory for the audit event log"
    )

    @field_validator("output_dir", "telemetry_dir")
    @classmethod
    def _ensure_absolute(cls, value: Optional[Path]) -> Optional[Path]:  # type: ignore[override]
        if value is None:
            return None
        return value.expanduser().resolve()

    @field_validator("port")
    @classmethod
    def _require_tls(cls, value: int) -> int:  # type: ignore[override]
        if value == 143:
            raise ValueError("Plain IMAP (port 143) is unsupported; TLS required")
        return value

    @field_validator("folders")
    @classmethod
    def _clean_folders(cls, value: Optional[List[str]]) -> Optional[List[str]]:  # type: ignore[override]
        if value is None:
            return None
        cleaned = [name.strip() for name in value if name and name.strip()]
        return cleaned or None

    @model_validator(mode="after")
    def _check_ranges(self) -> "ArchiveConfig":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        return self

    @classmethod
    def from_yaml(cls, path: Path, **overrides: Any) -> "ArchiveConfig":
        """Load configuration from a YAML file.

        Values in ``overrides`` that are not None take precedence over the
        file. The password falls back to ``MAILVAULT_PASSWORD``.

        Raises:
            ValueError: If the file is not a YAML mapping
        """
        try:
            with open(path, "r", encoding="utf-8") as fh:
                loaded = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML configuration: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ValueError("Configuration file must contain a mapping")
        return cls.from_sources(loaded, **overrides)

    @classmethod
    def from_sources(cls, base: Optional[Dict[str, Any]] = None, **overrides: Any) -> "ArchiveConfig":
        values: Dict[str, Any] = dict(base or {})
        values.update({key: value for key, value in overrides.items() if value is not None})
        if not values.get("password"):
            env_password = os.environ.get(PASSWORD_ENV_VAR)
            if env_password:
                values["password"] = env_password
        return cls(**values)


__all__ = ["ArchiveConfig", "PASSWORD_ENV_VAR"]
