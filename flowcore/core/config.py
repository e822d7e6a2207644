"""Engine configuration.

Loaded from ``.flowcore/config.yaml``; every key is optional.
"""

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

CONFIG_DIR = ".flowcore"
CONFIG_FILE = "config.yaml"

DEFAULT_CONFIG_YAML = """# flowcore engine configuration

# SQLite file holding runs, durable step results and node status history
db_path: .flowcore/state.db

# Independent nodes of one topological level executed concurrently
max_parallel: 1

# DEBUG, INFO, WARNING or ERROR
log_level: INFO
"""


class ConfigError(Exception):
    """Configuration file is unreadable or invalid."""

    pass


class EngineConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    db_path: Path = Path(CONFIG_DIR) / "state.db"
    max_parallel: int = Field(default=1, ge=1)
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level '{v}'")
        return level


def default_config_path(repo_path: Path | None = None) -> Path:
    return (repo_path or Path.cwd()) / CONFIG_DIR / CONFIG_FILE


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load engine configuration; a missing file yields the defaults.

    Raises:
        ConfigError: If the file is not valid YAML or has invalid values
    """
    config_path = Path(path) if path is not None else default_config_path()
    if not config_path.exists():
        return EngineConfig()

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in '{config_path}': {e}") from e

    if raw is None:
        return EngineConfig()
    if not isinstance(raw, dict):
        raise ConfigError(
            f"Invalid config content in '{config_path}'. "
            f"Expected a mapping, got {type(raw).__name__}."
        )

    try:
        return EngineConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in '{config_path}': {e}") from e
