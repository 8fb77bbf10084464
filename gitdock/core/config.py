"""Unified configuration via pydantic-settings."""

from pathlib import Path
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_BACKEND = "cli"


class GitDockConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GITDOCK_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Repositories opened by the CLI entry point
    repositories: Annotated[list[Path], NoDecode] = []

    # Backend selection ("cli" or "gitpython"); unknown names fall back to cli
    backend: str = DEFAULT_BACKEND
    default_remote: str = "origin"

    # Synchronizer
    poll_interval_seconds: float = 5.0
    log_max_count: int = 100
    disposition_timeout_seconds: float = 300.0
    origin_check_concurrency: int = 8

    # Command execution
    command_timeout_seconds: float = 120.0
    max_batch_paths: int = 100
    max_batch_chars: int = 8000

    # Repository snapshots
    snapshot_dir: Path | None = None
    snapshot_max_age_days: int = 7

    # Logging
    log_level: str = "INFO"
    log_dir: Path | None = None
    log_max_bytes: int = 10_485_760
    log_backup_count: int = 5

    @field_validator("repositories", mode="before")
    @classmethod
    def parse_repositories(cls, v: list[Path] | str | Path) -> list[Path]:
        if isinstance(v, Path):
            return [v]
        if isinstance(v, str):
            return [Path(p.strip()) for p in v.split(",") if p.strip()]
        return v

    @field_validator("repositories")
    @classmethod
    def resolve_repositories(cls, v: list[Path]) -> list[Path]:
        resolved = []
        for p in v:
            r = p.expanduser().resolve()
            if not r.is_dir():
                raise ValueError(f"repository directory does not exist: {r}")
            resolved.append(r)
        return resolved

    @field_validator("backend")
    @classmethod
    def normalize_backend(cls, v: str) -> str:
        return v.strip().lower() or DEFAULT_BACKEND

    @field_validator(
        "poll_interval_seconds", "command_timeout_seconds", "disposition_timeout_seconds"
    )
    @classmethod
    def positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("max_batch_paths", "max_batch_chars", "origin_check_concurrency")
    @classmethod
    def positive_limits(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v
