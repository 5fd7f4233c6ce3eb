"""Configuration management."""

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_MODEL = "google/gemini-2.0-flash-001"


class AccountConfig(BaseModel):
    """A connected mailbox account."""

    account_id: str
    token_path: Optional[str] = None


class Config(BaseModel):
    """Application configuration."""

    db_path: str = "data/jobs.sqlite"
    log_level: str = "INFO"

    model_id: str = DEFAULT_MODEL
    allowed_models: list[str] = Field(default_factory=lambda: [DEFAULT_MODEL])
    llm_api_url: str = "https://openrouter.ai/api/v1/chat/completions"
    llm_timeout_seconds: float = 20.0

    max_attempts: int = Field(default=3, ge=1)
    match_window_days: int = Field(default=30, ge=1)

    days_to_sync: int = 30
    max_messages: int = 500
    max_parallel_accounts: int = Field(default=2, ge=1)
    account_time_budget_seconds: Optional[float] = None

    review_sweep_interval_minutes: float = 60.0
    review_sweep_initial_delay_seconds: float = 30.0

    accounts: list[AccountConfig] = Field(default_factory=list)


_config: Optional[Config] = None


def load_config(config_path: Optional[Path] = None, reload: bool = False) -> Config:
    """Load configuration from YAML file."""
    global _config

    if _config is not None and not reload:
        return _config

    if config_path is None:
        config_path = Path(__file__).parent.parent / "config" / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}. "
            "Copy config/config.yaml.example to config/config.yaml and fill in your settings."
        )

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    _config = Config(**data)
    return _config


def set_config(config: Config) -> None:
    """Install an already-built configuration (used by tests and embedding callers)."""
    global _config
    _config = config


def get_config() -> Config:
    """Get the loaded configuration."""
    if _config is None:
        return load_config()
    return _config
