"""Load YAML + env configuration."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from autopilot.log import get_logger

log = get_logger(__name__)

load_dotenv()

ROOT_DIR: Path = Path(__file__).resolve().parent.parent
CONFIG_DIR: Path = ROOT_DIR / "config"
CONFIG_PATH: Path = CONFIG_DIR / "autopilot.yaml"
DATA_DIR: Path = ROOT_DIR / "data"

DEFAULT_PLATFORMS = ["remoteok", "hackernews", "remotive", "jsearch", "linkedin"]


class TaskIntervals(BaseModel):
    """Period of each scheduled task, in minutes."""

    auto_search: int = Field(default=60, ge=1)
    auto_apply: int = Field(default=120, ge=1)
    email_sync: int = Field(default=15, ge=1)
    interview_reminders: int = Field(default=15, ge=1)
    daily_digest: int = Field(default=60, ge=1)

    def for_task(self, name: str) -> int:
        return getattr(self, name.replace("-", "_"))


class AppConfig(BaseModel):
    data_dir: str = str(DATA_DIR)
    platforms: list[str] = Field(default_factory=lambda: list(DEFAULT_PLATFORMS))
    adapter_timeout: float = Field(default=15.0, gt=0)
    hackernews_timeout: float = Field(default=60.0, gt=0)
    hackernews_max_comments: int = Field(default=40, ge=1)
    scoring_batch_size: int = Field(default=5, ge=1)
    min_field_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    submit_when_review_required: bool = False
    apply_timeout: float = Field(default=180.0, gt=0)
    apply_close_grace: float = Field(default=5.0, ge=0)
    apply_delay_seconds: float = Field(default=30.0, ge=0)
    headless: bool = True
    high_match_threshold: int = Field(default=80, ge=0, le=100)
    ai_model: str = "llama-3.3-70b-versatile"
    ai_base_url: str = ""
    tasks: TaskIntervals = Field(default_factory=TaskIntervals)


def get_env(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def _env_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes", "on")


def load_config(path: Path | None = None) -> AppConfig:
    """Read ``config/autopilot.yaml`` (optional) and apply env overrides."""
    path = path or CONFIG_PATH
    data: dict[str, Any] = {}
    if path.exists():
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        log.info("Loaded config from %s", path)
    else:
        log.info("No config file at %s, using defaults", path)

    if get_env("AUTOPILOT_DATA_DIR"):
        data["data_dir"] = get_env("AUTOPILOT_DATA_DIR")
    if get_env("AI_MODEL"):
        data["ai_model"] = get_env("AI_MODEL")
    if get_env("AI_BASE_URL"):
        data["ai_base_url"] = get_env("AI_BASE_URL")
    if get_env("RUN_HEADLESS"):
        data["headless"] = _env_bool(get_env("RUN_HEADLESS"))

    return AppConfig(**data)


def ensure_dirs(config: AppConfig) -> None:
    Path(config.data_dir).mkdir(parents=True, exist_ok=True)
