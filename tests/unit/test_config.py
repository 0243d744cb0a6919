"""Tests for photoforge.core.config — configuration management.

Tests cover:
- Default values for quota, provider and upload settings.
- Environment variable overrides via the PHOTOFORGE_ prefix.
- Automatic directory creation on initialisation.
- Derived paths and public URL construction.
- Pydantic validation constraints.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from photoforge.core.config import PhotoforgeConfig


def _config(tmp_path: Path, **overrides) -> PhotoforgeConfig:
    return PhotoforgeConfig(
        _env_file=None,
        data_dir=tmp_path / "data",
        uploads_dir=tmp_path / "uploads",
        outputs_dir=tmp_path / "outputs",
        **overrides,
    )


class TestConfigDefaults:
    """Verify that PhotoforgeConfig provides sensible defaults."""

    def test_tier_limits(self, test_config: PhotoforgeConfig):
        """Free users get 5 generations a day, paid users 50."""
        assert test_config.free_tier_daily_limit == 5
        assert test_config.paid_tier_daily_limit == 50

    def test_warning_threshold(self, test_config: PhotoforgeConfig):
        """Quota status turns to warning at 80% usage."""
        assert test_config.quota_warning_threshold == 0.8

    def test_provider_defaults(self, monkeypatch, tmp_path):
        """Gemini is the default provider and has no key out of the box."""
        monkeypatch.delenv("PHOTOFORGE_GEMINI_API_KEY", raising=False)
        cfg = _config(tmp_path)
        assert cfg.provider_name == "Gemini"
        assert cfg.gemini_api_key is None
        assert cfg.provider_timeout_seconds == 60.0

    def test_upload_defaults(self, test_config: PhotoforgeConfig):
        """Uploads are limited to 10MB and 100..4096 pixels per side."""
        assert test_config.max_upload_bytes == 10 * 1024 * 1024
        assert test_config.min_image_dimension == 100
        assert test_config.max_image_dimension == 4096
        assert test_config.jpeg_quality == 85

    def test_prompt_limits(self, test_config: PhotoforgeConfig):
        assert test_config.max_prompt_length == 1000
        assert test_config.stored_prompt_max_length == 2000


class TestConfigEnvironment:
    """Verify PHOTOFORGE_* environment overrides."""

    def test_limit_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PHOTOFORGE_FREE_TIER_DAILY_LIMIT", "3")
        assert _config(tmp_path).free_tier_daily_limit == 3

    def test_api_key_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PHOTOFORGE_GEMINI_API_KEY", "secret")
        assert _config(tmp_path).gemini_api_key == "secret"

    def test_case_insensitive(self, monkeypatch, tmp_path):
        monkeypatch.setenv("photoforge_paid_tier_daily_limit", "75")
        assert _config(tmp_path).paid_tier_daily_limit == 75

    def test_admin_ids_from_json_list(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PHOTOFORGE_ADMIN_USER_IDS", '["ops-1", "ops-2"]')
        assert _config(tmp_path).admin_user_ids == ["ops-1", "ops-2"]

    def test_no_admins_by_default(self, test_config: PhotoforgeConfig):
        assert test_config.admin_user_ids == []


class TestConfigDirectoryCreation:
    """Verify that PhotoforgeConfig creates required directories."""

    def test_directories_created(self, test_config: PhotoforgeConfig):
        assert test_config.data_dir.is_dir()
        assert test_config.uploads_dir.is_dir()
        assert test_config.outputs_dir.is_dir()

    def test_nested_directories_created(self, tmp_path):
        cfg = PhotoforgeConfig(
            _env_file=None,
            data_dir=tmp_path / "a" / "b" / "data",
            uploads_dir=tmp_path / "a" / "uploads",
            outputs_dir=tmp_path / "a" / "outputs",
        )
        assert cfg.data_dir.is_dir()


class TestConfigPaths:
    """Verify derived paths and URLs."""

    def test_database_path(self, test_config: PhotoforgeConfig):
        assert test_config.database_path == test_config.data_dir / "photoforge.db"

    def test_presets_path(self, test_config: PhotoforgeConfig):
        assert test_config.presets_path == test_config.data_dir / "presets.json"

    def test_public_url_relative(self, test_config: PhotoforgeConfig):
        """Without a base URL, image references are site-relative."""
        assert test_config.public_url("uploads", "a.jpg") == "/uploads/a.jpg"

    def test_public_url_absolute(self, tmp_path):
        cfg = _config(tmp_path, public_base_url="https://img.example.com/")
        assert cfg.public_url("outputs", "b.png") == "https://img.example.com/outputs/b.png"


class TestConfigValidation:
    """Verify Pydantic field constraints."""

    def test_zero_limit_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            _config(tmp_path, free_tier_daily_limit=0)

    def test_threshold_above_one_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            _config(tmp_path, quota_warning_threshold=1.5)

    def test_privileged_port_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            _config(tmp_path, server_port=80)

    def test_invalid_log_level_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            _config(tmp_path, log_level="VERBOSE")
