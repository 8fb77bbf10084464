"""Tests for GitDockConfig."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from gitdock.core.config import DEFAULT_BACKEND, GitDockConfig


class TestGitDockConfig:
    def test_default_values(self):
        config = GitDockConfig()
        assert config.repositories == []
        assert config.backend == DEFAULT_BACKEND
        assert config.default_remote == "origin"
        assert config.poll_interval_seconds == 5.0
        assert config.log_max_count == 100
        assert config.snapshot_dir is None
        assert config.snapshot_max_age_days == 7
        assert config.log_level == "INFO"

    def test_repositories_resolved(self, tmp_path):
        config = GitDockConfig(repositories=[tmp_path])
        assert config.repositories == [tmp_path.resolve()]
        assert config.repositories[0].is_absolute()

    def test_repository_must_exist(self):
        with pytest.raises(ValueError, match="does not exist"):
            GitDockConfig(repositories=[Path("/nonexistent/directory/xyz")])

    def test_repositories_from_csv_string(self, tmp_path):
        d1 = tmp_path / "proj1"
        d2 = tmp_path / "proj2"
        d1.mkdir()
        d2.mkdir()
        config = GitDockConfig(repositories=f"{d1}, {d2}")
        assert config.repositories == [d1.resolve(), d2.resolve()]

    def test_single_path_accepted(self, tmp_path):
        config = GitDockConfig(repositories=tmp_path)
        assert config.repositories == [tmp_path.resolve()]

    def test_repositories_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GITDOCK_REPOSITORIES", str(tmp_path))
        monkeypatch.setenv("GITDOCK_BACKEND", "GitPython")
        config = GitDockConfig()
        assert config.repositories == [tmp_path.resolve()]
        assert config.backend == "gitpython"

    def test_blank_backend_uses_default(self):
        assert GitDockConfig(backend="  ").backend == DEFAULT_BACKEND

    @pytest.mark.parametrize(
        "field", ["poll_interval_seconds", "command_timeout_seconds", "disposition_timeout_seconds"]
    )
    def test_non_positive_seconds_rejected(self, field):
        with pytest.raises(ValidationError, match="greater than zero"):
            GitDockConfig(**{field: 0})

    @pytest.mark.parametrize(
        "field", ["max_batch_paths", "max_batch_chars", "origin_check_concurrency"]
    )
    def test_limits_at_least_one(self, field):
        with pytest.raises(ValidationError, match="at least 1"):
            GitDockConfig(**{field: 0})
