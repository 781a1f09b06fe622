"""Tessera configuration — reads from tessera.toml, env vars, and CLI args."""

import logging
import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger("tessera.config")


class TesseraSettings(BaseSettings):
    """Engine and worker settings."""

    # Storage
    store_dir: str = Field(default=".tessera", alias="TESSERA_STORE_DIR")
    database_url: str | None = Field(default=None, alias="TESSERA_DATABASE_URL")
    default_format: str = "pickle"

    # Scheduling
    max_workers: int = 4
    keep_going: bool = False
    seed: int = 0
    track_globals: bool = True
    log_level: str = "info"

    # Worker daemon
    host: str = "0.0.0.0"
    port: int = 8500
    api_key: str = Field(default="tessera_dev_key", alias="TESSERA_API_KEY")

    model_config = {"env_prefix": "TESSERA_", "env_file": ".env", "populate_by_name": True}

    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{Path(self.store_dir) / 'meta.db'}"


@dataclass(frozen=True)
class BuildConfig:
    """Immutable options threaded through graph building and scheduling."""
    max_workers: int = 4
    keep_going: bool = False
    seed: int = 0
    default_format: str = "pickle"
    track_globals: bool = True

    @classmethod
    def from_settings(cls, settings: TesseraSettings) -> "BuildConfig":
        return cls(
            max_workers=settings.max_workers,
            keep_going=settings.keep_going,
            seed=settings.seed,
            default_format=settings.default_format,
            track_globals=settings.track_globals,
        )

    def with_options(self, **changes) -> "BuildConfig":
        """Copy with overrides, ignoring options left as None."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}


def _load_toml_config() -> Dict[str, Any]:
    """Load configuration from tessera.toml files.

    Searches for tessera.toml in:
    1. TESSERA_HOME (~/.tessera/tessera.toml by default)
    2. Current directory (./tessera.toml)

    Returns:
        Combined configuration dict; the local file takes precedence
    """
    config: Dict[str, Any] = {}

    tessera_home = Path(os.environ.get("TESSERA_HOME", "~/.tessera")).expanduser()
    global_config_path = tessera_home / "tessera.toml"
    if global_config_path.exists():
        config.update(_read_toml(global_config_path))

    local_config_path = Path("tessera.toml")
    if local_config_path.exists():
        config.update(_read_toml(local_config_path))

    return config


def get_settings() -> TesseraSettings:
    """Settings from tessera.toml, overridden by environment variables."""
    toml_config = _load_toml_config()
    known = {k: v for k, v in toml_config.items() if k in TesseraSettings.model_fields}
    settings = TesseraSettings()
    for key, value in known.items():
        if key not in settings.model_fields_set:
            setattr(settings, key, value)
    return settings
