"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class AnthropicConfig(BaseModel):
    api_key: str
    base_url: Optional[str] = None
    max_retries: int = 3
    timeout: int = 120


class ModelConfig(BaseModel):
    name: str
    provider: str = "anthropic"  # "anthropic" | "local"
    quality: int = 5  # 1-10
    speed: int = 5
    cost_tier: int = 1
    supports_tools: bool = True


class StorageConfig(BaseModel):
    db_path: str = "./data/archive.db"
    fts_enabled: bool = True


class ArchiveConfig(BaseModel):
    silence_minutes: int = 10
    max_context_messages: int = 50
    max_context_minutes: int = 60


class EpisodicConfig(BaseModel):
    daily_dir: str = ""
    lookback_days: int = 2
    history_tokens: int = 4000
    session_gap_minutes: int = 30


class SummarizerConfig(BaseModel):
    enabled: bool = True
    interval_seconds: float = 300
    timeout_seconds: float = 60
    pause_between_seconds: float = 5
    batch_size: int = 10
    model_preference: str = ""
    idle_timeout_minutes: int = 0  # 0 disables the idle-session backstop


class TempFilesConfig(BaseModel):
    base_dir: str = "./data/tmp"


class CapabilityConfig(BaseModel):
    description: str = ""
    tools: list[str] = Field(default_factory=list)
    always_active: bool = False


class AgentConfig(BaseModel):
    max_tool_rounds: int = 10
    max_tokens: int = 4096
    temperature: float = 0.7


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_json: bool = False
    data_dir: str = "./data"
    timezone: str = "UTC"
    system_prompt: str = ""
    anthropic: Optional[AnthropicConfig] = None
    models: list[ModelConfig] = Field(default_factory=list)
    default_model: str = "claude-sonnet-4-20250514"
    storage: StorageConfig = Field(default_factory=StorageConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    episodic: EpisodicConfig = Field(default_factory=EpisodicConfig)
    summarizer: SummarizerConfig = Field(default_factory=SummarizerConfig)
    tempfiles: TempFilesConfig = Field(default_factory=TempFilesConfig)
    paths: dict[str, str] = Field(default_factory=dict)
    capabilities: dict[str, CapabilityConfig] = Field(default_factory=dict)
    agent: AgentConfig = Field(default_factory=AgentConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # data_dir may be referenced by other values as ${data_dir}
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
