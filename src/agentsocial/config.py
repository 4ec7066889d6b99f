"""Centralized configuration via Pydantic Settings.

All values loaded from environment variables prefixed with AGENTSOCIAL_.
Per-bot credentials live in the settings file (``~/.agentsocial/settings.json``)
and are loaded with :func:`load_app_configs`.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agentsocial.core.errors import ConfigError

logger = structlog.get_logger()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AGENTSOCIAL_", env_file=".env", extra="ignore")

    # Local state
    home_dir: Path = Path.home() / ".agentsocial"
    sessions_root: Path = Path("sessions")
    settings_file: Path = Path("settings.json")

    # Agent binary
    agent_type: str = "gemini"
    agent_bin: str = "gemini"
    agent_home_env: str = "GEMINI_CLI_HOME"
    agent_credentials_dir: Path = Path.home() / ".gemini"
    credential_files: tuple[str, ...] = (
        "oauth_creds.json",
        "google_accounts.json",
        "settings.json",
        "installation_id",
    )

    # ── Execution limits ──────────────────────────────────────
    run_timeout_seconds: float = 1800.0
    kill_grace_seconds: float = 5.0
    stdin_channel_size: int = 8
    callback_grace_seconds: float = 10.0
    dedup_capacity: int = 1000
    lifecycle_capacity: int = 1000

    # ── Presentation ──────────────────────────────────────────
    max_message_chars: int = 4000
    truncated_message_chars: int = 3900

    # Slack
    slack_bot_token: str = ""
    slack_app_token: str = ""
    slack_signing_secret: str = ""

    # Default project tree the agent works on
    project_path: Path | None = None

    # Application
    log_level: str = "INFO"
    env: str = "development"

    def model_post_init(self, __context: object) -> None:
        """Resolve relative state paths against the home directory."""
        if not self.sessions_root.is_absolute():
            self.sessions_root = self.home_dir / self.sessions_root
        if not self.settings_file.is_absolute():
            self.settings_file = self.home_dir / self.settings_file


settings = Settings()  # type: ignore[call-arg]


class AppConfig(BaseModel):
    """One configured bot identity and the project it drives."""

    platform: str = "slack"
    app_id: str = Field(min_length=3, max_length=128, pattern=r"^[a-zA-Z0-9_-]+$")
    app_secret: str = Field(default="", repr=False)
    agent_type: str = "gemini"
    project_path: Path | None = None
    sandbox: bool = False

    @field_validator("app_id", mode="before")
    @classmethod
    def _strip_app_id(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


def load_app_configs(path: Path | None = None) -> list[AppConfig]:
    """Load bot configs from the settings file.

    Accepts a list of app objects, ``{"apps": [...]}``, or a single object.
    A missing file means nothing is configured yet.
    """
    path = path or settings.settings_file
    if not path.exists():
        logger.info("settings_file_missing", path=str(path))
        return []

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e

    if isinstance(data, list):
        raw_apps = data
    elif isinstance(data, dict) and isinstance(data.get("apps"), list):
        raw_apps = data["apps"]
    elif isinstance(data, dict):
        raw_apps = [data]
    else:
        raise ConfigError(f"Unsupported settings layout in {path}")

    try:
        return [AppConfig.model_validate(item) for item in raw_apps]
    except ValidationError as e:
        raise ConfigError(f"Invalid app config in {path}: {e}") from e
