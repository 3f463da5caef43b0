"""Settings loader for Dmv."""

from __future__ import annotations

import contextvars
import os
from pathlib import Path
from typing import Any, Literal

import tomllib
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from Dmv.exceptions import ConfigError

DEFAULT_CONFIG_PATH = "bot.toml"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./dmv.sqlite3"

# Which TOML file the settings source reads; set by load_settings()
_config_path: contextvars.ContextVar[Path | None] = contextvars.ContextVar(
    "dmv_config_path", default=None
)


def _resolve_config_path() -> Path:
    explicit = _config_path.get()
    if explicit is not None:
        return explicit
    return Path(os.environ.get("DMV_CONFIG", DEFAULT_CONFIG_PATH))


def _toml_settings_source() -> dict[str, Any]:
    """Load settings from bot.toml with keys mapped to Settings fields.

    This source has LOWER priority than env/.env so those can override TOML.
    """
    cfg_path = _resolve_config_path()
    if not cfg_path.exists():
        return {}
    with cfg_path.open("rb") as f:
        t = tomllib.load(f)

    bot_cfg = dict(t.get("bot", {}) or {})
    storage_cfg = dict(t.get("storage", {}) or {})
    # Legacy layout: a top-level sqlite path instead of a [storage] table
    legacy_db_path = t.get("db_path") or t.get("DBPath")
    if legacy_db_path and "database_url" not in storage_cfg:
        storage_cfg["database_url"] = f"sqlite+aiosqlite:///{legacy_db_path}"

    out: dict[str, Any] = {
        "env": t.get("app", {}).get("env", "dev"),
        "bot": bot_cfg,
        "storage": storage_cfg,
        # Logging config
        "logging_enabled": t.get("logging", {}).get("enabled", True),
        "logging_level": t.get("logging", {}).get("level", "INFO"),
        "logging_file_path": t.get("logging", {}).get("file_path", "logs/bot.jsonl"),
        "logging_max_bytes": t.get("logging", {}).get("max_bytes", 5_000_000),
        "logging_backup_count": t.get("logging", {}).get("backup_count", 5),
    }

    log_cfg = t.get("logging", {}) or {}
    # Per-handler levels: strings INFO|DEBUG|WARNING|ERROR|CRITICAL|NONE
    # Booleans map True -> overall level, False -> NONE
    overall = out["logging_level"]

    def _norm_level(v, default):
        if isinstance(v, str):
            return v.upper()
        if isinstance(v, bool):
            return default if v else "NONE"
        return default

    out["logging_console"] = _norm_level(log_cfg.get("console"), overall)
    out["logging_file"] = _norm_level(log_cfg.get("to_file"), overall)
    return out


class BotConfig(BaseModel):
    token: SecretStr
    application_id: str
    # Guilds where the commands are registered
    guild_ids: list[str] = Field(default_factory=list)


class StorageConfig(BaseModel):
    backend: Literal["sql", "memory"] = "sql"
    database_url: str = DEFAULT_DATABASE_URL
    auto_create_schema: bool = True


class Settings(BaseSettings):
    env: str = Field(default="dev")

    bot: BotConfig
    storage: StorageConfig = StorageConfig()

    # --- Logging ---
    logging_enabled: bool = True
    logging_level: str = "INFO"
    logging_console: str = "INFO"
    logging_file: str = "INFO"
    logging_file_path: str = "logs/bot.jsonl"
    logging_max_bytes: int = 5_000_000
    logging_backup_count: int = 5

    model_config = SettingsConfigDict(
        env_prefix="DMV_",
        env_nested_delimiter="__",
        case_sensitive=False,
        env_file=".env",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Precedence (highest to lowest):
        # 1) init_settings (explicit overrides in code/tests)
        # 2) dotenv (.env in cwd)
        # 3) env_settings (OS env)
        # 4) TOML (bot.toml)
        # 5) file_secret_settings
        return (
            init_settings,
            dotenv_settings,
            env_settings,
            _toml_settings_source,
            file_secret_settings,
        )


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings, reading TOML from ``path`` when given.

    An explicit path that does not exist raises ConfigError; a malformed
    file raises ConfigError too. Missing required keys surface as pydantic's
    ValidationError.
    """
    cfg_path = Path(path) if path is not None else None
    if cfg_path is not None and not cfg_path.exists():
        raise ConfigError(f"config file not found: {cfg_path}")
    token = _config_path.set(cfg_path)
    try:
        return Settings()
    except tomllib.TOMLDecodeError as err:
        raise ConfigError(f"malformed config file {_resolve_config_path()}: {err}") from err
    finally:
        _config_path.reset(token)
