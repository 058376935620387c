"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".fleet_orchestrator" / "fo.db")
    workspace_id: str = "default"
    slack_bot_token: str | None = None
    log_level: str = "INFO"
    monitor_interval: float = 60.0
    channel_timeout: float = 10.0
    channel_backoff: tuple[float, ...] = (1.0, 4.0, 16.0)

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("FO_DB_PATH"):
            config.db_path = Path(db)

        if workspace := os.environ.get("FO_WORKSPACE"):
            config.workspace_id = workspace

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")

        if level := os.environ.get("FO_LOG_LEVEL"):
            config.log_level = level.upper()

        if interval := os.environ.get("FO_MONITOR_INTERVAL"):
            config.monitor_interval = float(interval)

        if timeout := os.environ.get("FO_CHANNEL_TIMEOUT"):
            config.channel_timeout = float(timeout)

        if backoff := os.environ.get("FO_CHANNEL_BACKOFF"):
            config.channel_backoff = tuple(
                float(b) for b in backoff.split(",") if b.strip()
            )

        return config


def get_config() -> Config:
    return Config.from_env()
