"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_MODEL_BASE_URL = "https://open.bigmodel.cn/api/paas/v4"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".device_orchestrator" / "devo.db")
    max_concurrent_tasks: int = 3
    max_steps_per_task: int = 100
    max_iterations: int = 5
    display_width: int = 1080
    display_height: int = 2400
    display_density: int = 420
    enable_virtual_displays: bool = True
    pause_poll_interval: float = 0.1
    lang: str = "en"
    model_base_url: str = DEFAULT_MODEL_BASE_URL
    model_api_key: str = ""
    model_name: str = "autoglm-phone"
    planner_base_url: str | None = None
    planner_api_key: str | None = None
    planner_model: str | None = None
    adb_serial: str | None = None
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @property
    def effective_planner_base_url(self) -> str:
        return self.planner_base_url or self.model_base_url

    @property
    def effective_planner_api_key(self) -> str:
        return self.planner_api_key if self.planner_api_key is not None else self.model_api_key

    @property
    def effective_planner_model(self) -> str:
        return self.planner_model or self.model_name

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("DEVO_DB_PATH"):
            config.db_path = Path(db)

        if n := os.environ.get("DEVO_MAX_CONCURRENT_TASKS"):
            config.max_concurrent_tasks = int(n)

        if n := os.environ.get("DEVO_MAX_STEPS_PER_TASK"):
            config.max_steps_per_task = int(n)

        if n := os.environ.get("DEVO_MAX_ITERATIONS"):
            config.max_iterations = int(n)

        if n := os.environ.get("DEVO_DISPLAY_WIDTH"):
            config.display_width = int(n)

        if n := os.environ.get("DEVO_DISPLAY_HEIGHT"):
            config.display_height = int(n)

        if n := os.environ.get("DEVO_DISPLAY_DENSITY"):
            config.display_density = int(n)

        if flag := os.environ.get("DEVO_ENABLE_VIRTUAL_DISPLAYS"):
            config.enable_virtual_displays = _env_bool(flag)

        if interval := os.environ.get("DEVO_PAUSE_POLL_INTERVAL"):
            config.pause_poll_interval = float(interval)

        if lang := os.environ.get("DEVO_LANG"):
            config.lang = lang

        if url := os.environ.get("DEVO_MODEL_BASE_URL"):
            config.model_base_url = url

        if key := os.environ.get("DEVO_MODEL_API_KEY"):
            config.model_api_key = key

        if name := os.environ.get("DEVO_MODEL_NAME"):
            config.model_name = name

        config.planner_base_url = os.environ.get("DEVO_PLANNER_BASE_URL")
        config.planner_api_key = os.environ.get("DEVO_PLANNER_API_KEY")
        config.planner_model = os.environ.get("DEVO_PLANNER_MODEL")
        config.adb_serial = os.environ.get("DEVO_ADB_SERIAL")
        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("DEVO_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
