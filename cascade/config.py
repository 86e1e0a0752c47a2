"""Project configuration loaded from .cascade/config.yaml.

All sections are optional; a missing file yields the defaults. Secrets are
never stored in the file, only the names of the environment variables that
hold them.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_DIR = ".cascade"
CONFIG_FILE = "config.yaml"

DEFAULT_CONFIG_YAML = """# Cascade engine configuration
database_path: .cascade/state.db

# Company used by re-test requests that do not name one
default_company_id: null

# OpenAI-compatible chat completions endpoint
generation:
  base_url: https://api.openai.com/v1
  api_key_env: CASCADE_GENERATION_API_KEY
  timeout: 120

integrations:
  firecrawl_url: null
  api_key_env: CASCADE_INTEGRATION_API_KEY

evaluation:
  enabled: true
  alert_threshold: 50
  auto_tag_low_quality: true
  hallucination_enabled: true
  data_quality_enabled: true
  complexity_enabled: true

# What happens when a cascade for the same company/workflow is already running
concurrency:
  busy_policy: queue   # queue | reject
  busy_timeout: 300

outbox:
  max_attempts: 8
  base_delay: 2.0
  max_delay: 300.0
  poll_interval: 1.0

sync:
  enabled: false
  webhook_url: null
  ssot_endpoint: null
"""


class ConfigError(Exception):
    """Invalid or unreadable configuration."""

    pass


class GenerationSettings(BaseModel):
    base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "CASCADE_GENERATION_API_KEY"
    timeout: float = 120.0

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class IntegrationSettings(BaseModel):
    firecrawl_url: str | None = None
    api_key_env: str = "CASCADE_INTEGRATION_API_KEY"

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class EvaluationSettings(BaseModel):
    """Quality evaluation toggles and thresholds."""

    enabled: bool = True
    alert_threshold: int = Field(default=50, ge=0, le=100)
    auto_tag_low_quality: bool = True
    hallucination_enabled: bool = True
    data_quality_enabled: bool = True
    complexity_enabled: bool = True
    model: str = "google/gemini-2.5-flash-lite"


class ConcurrencySettings(BaseModel):
    busy_policy: Literal["queue", "reject"] = "queue"
    busy_timeout: float = 300.0


class OutboxSettings(BaseModel):
    max_attempts: int = Field(default=8, ge=1)
    base_delay: float = 2.0
    max_delay: float = 300.0
    poll_interval: float = 1.0


class SyncSettings(BaseModel):
    enabled: bool = False
    webhook_url: str | None = None
    ssot_endpoint: str | None = None


class CascadeConfig(BaseModel):
    database_path: str = ".cascade/state.db"
    default_company_id: str | None = None
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    integrations: IntegrationSettings = Field(default_factory=IntegrationSettings)
    evaluation: EvaluationSettings = Field(default_factory=EvaluationSettings)
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)
    outbox: OutboxSettings = Field(default_factory=OutboxSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)

    def resolve_database_path(self, project_root: Path) -> Path:
        path = Path(self.database_path)
        return path if path.is_absolute() else project_root / path


def find_project_root(start: Path | None = None) -> Path:
    """Find the project root by looking for a .cascade directory.

    Walks up from ``start`` (default: cwd). Falls back to ``start`` if not found.
    """
    current = (start or Path.cwd()).resolve()
    for parent in [current] + list(current.parents):
        if (parent / CONFIG_DIR).is_dir():
            return parent
    return current


def load_config(project_root: Path) -> CascadeConfig:
    """Load .cascade/config.yaml under ``project_root``.

    Raises:
        ConfigError: If the file exists but is not valid YAML or fails validation
    """
    config_path = project_root / CONFIG_DIR / CONFIG_FILE
    if not config_path.exists():
        logger.debug(f"No config at {config_path}, using defaults")
        return CascadeConfig()

    try:
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as e:
        raise ConfigError(f"Could not read {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    try:
        return CascadeConfig.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration in {config_path}: {problems}") from e
