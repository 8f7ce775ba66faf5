"""
Configuration loading.

YAML file validated with pydantic. A missing file yields defaults; anything
malformed raises ConfigError, which is fatal at startup.

Example (config.yaml):

    osc:
      use_custom_port: false
      send_port: 9000
      update_interval: 0.1
      advertise: true
      service_name: OSC-Tally
      parameters:
        Preview: [/avatar/parameters/TallyPreview]
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError
from .parameters import TallyParameter

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".osc-tally" / "config.yaml"
ADDRESS_PREFIX = "/avatar/parameters/Tally"


def _default_parameters() -> Dict[str, List[str]]:
    return {name.value: [f"{ADDRESS_PREFIX}{name.value}"] for name in TallyParameter}


class OscSettings(BaseModel):
    """OSC output settings."""
    use_custom_port: bool = False
    send_port: int = Field(default=9000, ge=1, le=65535)
    update_interval: float = Field(default=0.1, gt=0)
    capability_endpoint: str = "/chatbox"
    discovery_interval: float = Field(default=2.0, gt=0)
    stale_after_cycles: Optional[int] = Field(default=None, ge=1)
    advertise: bool = True
    service_name: str = Field(default="OSC-Tally", min_length=1)
    parameters: Dict[str, List[str]] = Field(default_factory=_default_parameters)

    @field_validator("capability_endpoint")
    @classmethod
    def _check_endpoint(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("capability_endpoint must start with '/'")
        return value

    @field_validator("parameters")
    @classmethod
    def _check_parameters(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        known = {name.value for name in TallyParameter}
        unknown = sorted(set(value) - known)
        if unknown:
            raise ValueError(f"unknown parameters: {', '.join(unknown)}")

        merged = _default_parameters()
        merged.update(value)
        for name, addresses in merged.items():
            if not addresses:
                raise ValueError(f"{name} needs at least one OSC address")
            for address in addresses:
                if not address.startswith("/"):
                    raise ValueError(f"{name}: OSC address must start with '/' ({address!r})")
        return merged


class TallyConfig(BaseModel):
    """Top-level configuration record."""
    osc: OscSettings = Field(default_factory=OscSettings)


def load_config(path: Optional[Union[str, Path]] = None) -> TallyConfig:
    """
    Load configuration from YAML.

    Args:
        path: Config file (default: ~/.osc-tally/config.yaml)

    Returns:
        TallyConfig (defaults if the file does not exist)

    Raises:
        ConfigError: unreadable file, invalid YAML, or invalid values
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        logger.info(f"No config file at {config_path}, using defaults")
        return TallyConfig()

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read {config_path}: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: top level must be a mapping")

    try:
        config = TallyConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config {config_path}:\n{exc}") from exc

    logger.info(f"Loaded config from {config_path}")
    return config


def save_config(config: TallyConfig, path: Optional[Union[str, Path]] = None) -> Path:
    """Write configuration to YAML (atomic via temp file + rename)."""
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)

    temp_file = config_path.with_suffix(".tmp")
    try:
        with open(temp_file, "w") as f:
            yaml.safe_dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)
        temp_file.replace(config_path)
    except OSError as exc:
        if temp_file.exists():
            temp_file.unlink()
        raise ConfigError(f"Cannot write {config_path}: {exc}") from exc

    logger.info(f"Saved config to {config_path}")
    return config_path
