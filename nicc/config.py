from pydantic_settings import BaseSettings
from pydantic import Field, field_validator, model_validator
from typing import Any, Optional
import os
import re
import yaml

from .cache.units import kb_to_bytes
from .triggers.schedule import validate_cron_string

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _resolve_env_vars(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_PATTERN.sub(
            lambda m: os.environ.get(m.group(1), m.group(0)), value
        )
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(v) for v in value]
    return value


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "NICC_",
        "env_file": ".env",
        "extra": "ignore",
        "populate_by_name": True,
    }

    directory_path: str = Field(
        validation_alias="NICC_IMAGE_CACHE_DIRECTORY",
    )
    # kilobytes
    directory_size: Optional[int] = Field(
        default=None,
        validation_alias="NICC_MAX_CAPACITY",
    )
    fullness_percent: Optional[float] = Field(
        default=None,
        validation_alias="NICC_FULLNESS_PERCENT",
    )
    cron_string: Optional[str] = Field(
        default=None,
        validation_alias="NICC_CRON_CONFIG",
    )
    log_level: str = "info"
    concurrency_limit: int = 100
    watch_depth: int = 2
    debounce_seconds: float = 0.5
    write_settle_seconds: float = 2.0
    write_poll_seconds: float = 0.1
    watch_retry_seconds: float = 30.0

    def __init__(self, **values: Any):
        # Key init values by their env alias so they replace env values instead of sitting beside them
        aliases = {
            name: field.validation_alias
            for name, field in type(self).model_fields.items()
            if isinstance(field.validation_alias, str)
        }
        super().__init__(**{aliases.get(k, k): v for k, v in values.items()})

    @field_validator("directory_size", "fullness_percent", "cron_string", mode="before")
    @classmethod
    def _blank_as_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cron_string")
    @classmethod
    def _check_cron(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not validate_cron_string(value):
            raise ValueError(f"Incorrect cron string syntax: {value!r}")
        return value

    @field_validator("concurrency_limit")
    @classmethod
    def _check_concurrency(cls, value: int) -> int:
        if value < 1:
            raise ValueError("concurrency_limit must be greater than 0")
        return value

    @field_validator("watch_depth")
    @classmethod
    def _check_depth(cls, value: int) -> int:
        if value < 0:
            raise ValueError("watch_depth cannot be negative")
        return value

    @field_validator("watch_retry_seconds")
    @classmethod
    def _check_retry(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("watch_retry_seconds must be greater than 0")
        return value

    @model_validator(mode="after")
    def _check_capacity_pair(self) -> "Settings":
        if not self.directory_path:
            raise ValueError("NICC_IMAGE_CACHE_DIRECTORY cannot be empty")
        if (self.directory_size is None) != (self.fullness_percent is None):
            raise ValueError(
                "NICC_FULLNESS_PERCENT and NICC_MAX_CAPACITY cannot be defined separately"
            )
        if self.directory_size is not None and self.directory_size <= 0:
            raise ValueError("NICC_MAX_CAPACITY must be greater than 0")
        if self.fullness_percent is not None and not 0 < self.fullness_percent < 1:
            raise ValueError(
                "NICC_FULLNESS_PERCENT must be a fractional value in the range (0, 1)"
            )
        return self

    @property
    def by_cron(self) -> bool:
        return self.cron_string is not None

    @property
    def by_fullness(self) -> bool:
        return self.fullness_percent is not None

    @property
    def capacity_bytes(self) -> Optional[int]:
        if self.directory_size is None:
            return None
        return kb_to_bytes(self.directory_size)

    @property
    def limit_bytes(self) -> Optional[int]:
        if self.capacity_bytes is None or self.fullness_percent is None:
            return None
        return round(self.capacity_bytes * self.fullness_percent)

    @classmethod
    def from_yaml(cls, path: str = "nicc.yaml", **overrides: Any) -> "Settings":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        data = _resolve_env_vars(data)
        data.update(overrides)
        return cls(**data)
