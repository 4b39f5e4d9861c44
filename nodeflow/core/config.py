"""Engine configuration loaded from ``.nodeflow/config.yaml``.

Every key is optional; a missing file yields the defaults below.
"""

from pathlib import Path

import pydantic
import yaml
from pydantic import BaseModel, Field

NODEFLOW_DIR = ".nodeflow"
CONFIG_FILE = "config.yaml"

DEFAULT_CONFIG_YAML = """# nodeflow engine configuration
code_timeout: 5.0         # code node budget (seconds)
condition_timeout: 1.0    # condition node budget (seconds)
sandbox_memory_mb: 256    # child interpreter address-space limit
stale_after: 300          # reclaim 'processing' queue entries older than this (seconds)
poll_interval: 2.0        # daemon scan interval (seconds)
max_concurrent_runs: 4
default_max_cycles: 10    # loop budget when no condition governs the loop
prompt_command: ["claude", "-p"]
prompt_timeout: 300.0
"""


class ConfigError(Exception):
    """Configuration file is unreadable or invalid."""

    pass


class EngineConfig(BaseModel):
    """Timeouts and limits for the workflow engine."""

    code_timeout: float = Field(default=5.0, gt=0)
    condition_timeout: float = Field(default=1.0, gt=0)
    sandbox_memory_mb: int = Field(default=256, ge=32)
    stale_after: float = Field(default=300.0, gt=0)
    poll_interval: float = Field(default=2.0, gt=0)
    max_concurrent_runs: int = Field(default=4, ge=1)
    default_max_cycles: int = Field(default=10, ge=1)
    prompt_command: list[str] = Field(default_factory=lambda: ["claude", "-p"], min_length=1)
    prompt_timeout: float = Field(default=300.0, gt=0)


def load_config(root: Path) -> EngineConfig:
    """Load ``EngineConfig`` for the vault at ``root``.

    Raises:
        ConfigError: If the file cannot be parsed or fails validation
    """
    config_path = root / NODEFLOW_DIR / CONFIG_FILE
    if not config_path.exists():
        return EngineConfig()

    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e

    if data is None:
        return EngineConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping, got {type(data).__name__}")

    try:
        return EngineConfig.model_validate(data)
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e
