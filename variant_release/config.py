"""Configuration settings for variant_release.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Signing credentials are only ever read from here (environment or .env
file), never from the variant matrix.
"""

import json
import os
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "variant-release"


def _default_work_dir() -> Path:
    """Return the default per-run work directory."""
    return Path.home() / ".local" / "share" / "variant-release" / "work"


def _default_releases_dir() -> Path:
    """Return the default directory for published releases."""
    return Path.home() / ".local" / "share" / "variant-release" / "releases"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "variant-release" / "db.sqlite"
    return f"sqlite:///{db_path}"


def _default_concurrency() -> int:
    """Return the number of available parallel execution units."""
    return os.cpu_count() or 1


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the VARREL_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="VARREL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for the content-addressed build cache",
    )
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for per-run job workspaces",
    )
    releases_dir: Path = Field(
        default_factory=_default_releases_dir,
        description="Root directory of the local publication sink",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for the release registry",
    )
    keep_work_dir: bool = Field(
        default=False,
        description="Keep job workspaces after a successful release",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default_factory=_default_concurrency,
        ge=1,
        le=64,
        description="Maximum concurrent build jobs",
    )

    # Timeouts (in seconds)
    job_timeout: int = Field(
        default=3600,
        ge=1,
        description="Per-job deadline",
    )
    termination_grace: int = Field(
        default=30,
        ge=0,
        description="Grace period between terminate and kill on timeout",
    )
    cache_lock_timeout: int = Field(
        default=3600,
        ge=1,
        description="Maximum wait for another process building the same cache key",
    )
    publish_lock_timeout: int = Field(
        default=300,
        ge=1,
        description="Maximum wait for the per-version publication lock",
    )

    # Publication
    publish_url: str | None = Field(
        default=None,
        description="Base URL of an HTTP release server (uses releases_dir if unset)",
    )
    publish_token: SecretStr | None = Field(
        default=None,
        description="Bearer token for the HTTP release server",
    )

    # Signing credential
    signing_key_file: Path | None = Field(
        default=None,
        description="PEM private key or PKCS#12 keystore used for signing",
    )
    signing_key_alias: str | None = Field(
        default=None,
        description="Alias of the signing key",
    )
    signing_key_passphrase: SecretStr | None = Field(
        default=None,
        description="Passphrase protecting the signing key",
    )

    @property
    def signing_configured(self) -> bool:
        """Whether a signing credential has been configured."""
        return self.signing_key_file is not None


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Secret values are masked.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    data = json.loads(settings.model_dump_json())
    for name in ("publish_token", "signing_key_passphrase"):
        if data.get(name) is not None:
            data[name] = "**********"
    return json.dumps(data, indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
