"""Engine configuration loaded from ``.dagflow/config.yaml``."""

import logging
from pathlib import Path

import pydantic
import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CONFIG_DIR = ".dagflow"
CONFIG_FILE = "config.yaml"

DEFAULT_CONFIG_YAML = """# dagflow configuration for this project

# SQLite database holding definitions and run state (relative to the project root)
db_path: .dagflow/state.db

# Delay between agent node attempts when a node sets no backoffMs.
# Attempt n waits default_backoff_ms * n milliseconds.
default_backoff_ms: 1000

# Maximum runs returned when listing executions
list_limit: 50

# Actor recorded on audit entries and agent calls made by workflows
system_actor: system

# Log level used without --verbose (DEBUG, INFO, WARNING, ERROR)
log_level: WARNING
"""


class ConfigError(Exception):
    """Configuration file could not be read or validated."""

    pass


class EngineConfig(BaseModel):
    db_path: str = ".dagflow/state.db"
    default_backoff_ms: int = Field(default=1000, ge=0)
    list_limit: int = Field(default=50, gt=0)
    system_actor: str = "system"
    log_level: str = "WARNING"

    @pydantic.field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level '{value}'")
        return level


def load_config(repo_path: Path) -> EngineConfig:
    """Load ``.dagflow/config.yaml`` under ``repo_path``.

    A missing file yields the defaults. Unreadable YAML or invalid values
    raise ConfigError.
    """
    config_path = repo_path / CONFIG_DIR / CONFIG_FILE
    if not config_path.exists():
        logger.debug(f"No config at {config_path}, using defaults")
        return EngineConfig()

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping, got {type(data).__name__}")

    try:
        return EngineConfig(**data)
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e
