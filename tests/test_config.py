"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from variant_release.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.cache_dir == Path.home() / ".cache" / "variant-release"
        assert (
            settings.releases_dir
            == Path.home() / ".local" / "share" / "variant-release" / "releases"
        )
        assert "sqlite" in settings.db_url
        assert settings.keep_work_dir is False
        assert settings.log_level == "INFO"
        assert settings.max_concurrent_builds >= 1
        assert settings.job_timeout == 3600
        assert settings.publish_url is None
        assert settings.signing_configured is False

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "VARREL_KEEP_WORK_DIR": "true",
                "VARREL_LOG_LEVEL": "DEBUG",
                "VARREL_MAX_CONCURRENT_BUILDS": "4",
                "VARREL_JOB_TIMEOUT": "120",
            },
        ):
            settings = Settings()
            assert settings.keep_work_dir is True
            assert settings.log_level == "DEBUG"
            assert settings.max_concurrent_builds == 4
            assert settings.job_timeout == 120

    def test_settings_cache_dir_from_env(self) -> None:
        """Cache dir should be configurable via env."""
        with patch.dict(os.environ, {"VARREL_CACHE_DIR": "/tmp/test-cache"}):
            settings = Settings()
            assert settings.cache_dir == Path("/tmp/test-cache")

    def test_signing_credentials_from_env(self, tmp_path: Path) -> None:
        """Signing credentials should come from the environment."""
        key_file = tmp_path / "release.pem"
        with patch.dict(
            os.environ,
            {
                "VARREL_SIGNING_KEY_FILE": str(key_file),
                "VARREL_SIGNING_KEY_ALIAS": "release",
                "VARREL_SIGNING_KEY_PASSPHRASE": "hunter2",
            },
        ):
            settings = Settings()
            assert settings.signing_configured is True
            assert settings.signing_key_file == key_file
            assert settings.signing_key_alias == "release"
            assert settings.signing_key_passphrase is not None
            assert settings.signing_key_passphrase.get_secret_value() == "hunter2"

    def test_invalid_concurrency_rejected(self) -> None:
        """Zero concurrent builds should be rejected."""
        with patch.dict(os.environ, {"VARREL_MAX_CONCURRENT_BUILDS": "0"}):
            with pytest.raises(ValidationError):
                Settings()


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        settings = get_settings()
        assert isinstance(settings, Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        settings = Settings()
        json_str = print_settings_json(settings)

        parsed = json.loads(json_str)

        assert "cache_dir" in parsed
        assert "work_dir" in parsed
        assert "releases_dir" in parsed
        assert "db_url" in parsed
        assert "job_timeout" in parsed

    def test_print_settings_json_default(self) -> None:
        """print_settings_json without args should use default settings."""
        json_str = print_settings_json()
        parsed = json.loads(json_str)
        assert "cache_dir" in parsed

    def test_secrets_are_masked(self) -> None:
        """Secret values should never be printed."""
        settings = Settings(
            publish_token="token-value",
            signing_key_passphrase="passphrase-value",
        )
        json_str = print_settings_json(settings)

        assert "token-value" not in json_str
        assert "passphrase-value" not in json_str
        parsed = json.loads(json_str)
        assert parsed["publish_token"] == "**********"
        assert parsed["signing_key_passphrase"] == "**********"

    def test_unset_secrets_stay_null(self) -> None:
        """Unset secrets should be null, not masked."""
        parsed = json.loads(print_settings_json(Settings()))
        assert parsed["publish_token"] is None
        assert parsed["signing_key_passphrase"] is None
