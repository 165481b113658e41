from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional, Tuple, Type

from pydantic import Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from .core.errors import ConfigError
from .core.models import Limits

BACKEND_NAMES = ("firejail", "unshare", "prlimit", "none")


def _yaml_files() -> List[Path]:
    # conf/sandbox.yaml (or $SANDBOX_CONF) first, conf/limits.yaml overrides the limit keys
    return [
        Path(os.environ.get("SANDBOX_CONF", "conf/sandbox.yaml")),
        Path(os.environ.get("SANDBOX_LIMITS", "conf/limits.yaml")),
    ]


class Settings(BaseSettings):
    """Runtime configuration.

    Sources, highest priority first: constructor kwargs, ``SBX_*`` environment
    variables, ``.env``, the YAML files, then the defaults below.
    """

    # ---- limits (per execution, overridable per request) ----
    memory_bytes: int = 256 * 1024 * 1024
    cpu_seconds: int = 5
    wall_ms: int = 5000
    max_output: int = 1024 * 1024
    max_processes: int = 256

    # ---- toolchain ----
    compiler: str = "g++"
    cpp_std: str = "gnu++17"
    compile_timeout_s: float = 30.0
    workspace_root: Optional[Path] = None  # None -> system temp dir

    # ---- isolation ----
    isolation_backends: List[str] = Field(default_factory=lambda: list(BACKEND_NAMES))

    # ---- external services ----
    redis_url: Optional[str] = None
    database_url: str = "sqlite:///./sandbox.db"
    queue_name: str = "boxxy_queue"
    queue_wait_s: int = 8
    visibility_timeout_s: int = 60
    max_receives: int = 5
    status_ttl_s: int = 24 * 3600

    # ---- worker loop ----
    empty_poll_sleep_s: float = 1.0
    error_poll_sleep_s: float = 5.0

    # ---- logging ----
    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(env_prefix="SBX_", env_file=".env", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=_yaml_files()),
            file_secret_settings,
        )

    @field_validator("isolation_backends")
    @classmethod
    def _known_backends(cls, v: List[str]) -> List[str]:
        names = [n.strip().lower() for n in v if n.strip()]
        bad = [n for n in names if n not in BACKEND_NAMES]
        if bad:
            raise ValueError(f"unknown isolation backend(s): {bad}")
        return names

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def _check_limits(self) -> "Settings":
        self.default_limits()  # raises InvalidLimitsError (a ValueError)
        return self

    def default_limits(self) -> Limits:
        return Limits(
            memory_bytes=self.memory_bytes,
            cpu_seconds=self.cpu_seconds,
            wall_ms=self.wall_ms,
            max_output=self.max_output,
            max_processes=self.max_processes,
        )

    def require(self, *names: str) -> "Settings":
        missing = [n for n in names if getattr(self, n, None) in (None, "")]
        if missing:
            env = ", ".join(f"SBX_{n.upper()}" for n in missing)
            raise ConfigError(f"missing required setting(s): {', '.join(missing)} (set {env})")
        return self


def load_settings(**overrides) -> Settings:
    try:
        return Settings(**overrides)
    except ValueError as e:
        raise ConfigError(str(e)) from e
