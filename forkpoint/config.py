"""
Forkpoint Configuration - YAML settings for building a checkpoint saver

Example checkpointer.yaml:

    checkpointer:
      backend: postgres
      dsn: ${FORKPOINT_DSN}
      max_pool_size: 20
      list_page_size: 100

Usage:
    config = load_config("checkpointer.yaml")
    async with CheckpointSaver.from_config(config) as saver:
        ...
"""

import os
import re
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, PositiveInt, ValidationError, model_validator

from .errors import ConfigurationError

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def _describe(err: ValidationError) -> str:
    parts = []
    for error in err.errors():
        location = ".".join(str(p) for p in error["loc"])
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts)


class StoreConfig(BaseModel):
    """Settings for the checkpoint store and saver"""
    backend: Literal["memory", "postgres"] = "memory"
    dsn: Optional[str] = None
    min_pool_size: PositiveInt = 2
    max_pool_size: PositiveInt = 10

    # Rows fetched per store round trip by CheckpointSaver.list
    list_page_size: PositiveInt = 50
    default_list_limit: PositiveInt = 100

    setup_on_start: bool = True

    model_config = ConfigDict(extra="forbid")  # Typos in YAML are errors

    def __init__(self, **data: Any):
        try:
            super().__init__(**data)
        except ValidationError as err:
            raise ConfigurationError(f"Invalid checkpointer config: {_describe(err)}") from err

    @model_validator(mode="after")
    def check_backend_settings(self):
        if self.backend == "postgres" and not self.dsn:
            raise ValueError("The postgres backend requires a 'dsn'")
        if self.min_pool_size > self.max_pool_size:
            raise ValueError(
                f"min_pool_size ({self.min_pool_size}) exceeds max_pool_size ({self.max_pool_size})"
            )
        return self

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StoreConfig":
        """Build from a mapping, optionally nested under a 'checkpointer' key"""
        data = data or {}
        if isinstance(data, dict) and "checkpointer" in data:
            data = data["checkpointer"] or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config must be a mapping, got {type(data).__name__}")
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()


def _substitute_env(raw: str, path: str) -> str:
    """Replace ${VAR} with environment variable values"""
    def _replace_env(match):
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigurationError(
                f"Environment variable '{var_name}' not set "
                f"(referenced in config file '{path}')"
            )
        return value

    return _ENV_PATTERN.sub(_replace_env, raw)


def load_config(path: str) -> StoreConfig:
    """Read YAML config file with ${VAR} environment variable substitution."""
    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()

    try:
        data = yaml.safe_load(_substitute_env(raw, path))
    except yaml.YAMLError as err:
        raise ConfigurationError(f"Invalid YAML in config file '{path}': {err}") from err
    return StoreConfig.from_dict(data)
