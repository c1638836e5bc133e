from __future__ import annotations

from pathlib import Path
from typing import Any, ClassVar, Literal, cast

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, Field, ValidationError, field_validator

GRAPHITE_DISABLED = "-"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

PercentileMode = Literal["truncated", "exact"]


class ConfigError(Exception):
    """Raised when the configuration file or overrides are invalid."""


def split_host_port(address: str, default_host: str = "0.0.0.0") -> tuple[str, int]:
    """Split ``host:port`` into its parts.

    An empty host (``":8125"``) binds all interfaces. Bracketed IPv6 hosts
    (``"[::1]:8125"``) are unwrapped.

    Raises:
        ValueError: If the port is missing or not an integer in 0..65535
    """
    host, sep, port_text = address.rpartition(":")
    if not sep:
        raise ValueError(f"address must be host:port, got {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ValueError(f"invalid port in address {address!r}") from exc
    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range in address {address!r}")
    return host or default_host, port


class ListenerCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    address: str = ":8125"
    max_in_flight: int = Field(default=64, gt=0)

    @field_validator("address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        split_host_port(value)
        return value


class AggregatorCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    flush_interval: int = Field(default=10, gt=0)
    percent_threshold: int = Field(default=90, ge=0, le=100)
    percentile_mode: PercentileMode = "truncated"
    queue_capacity: int = Field(default=10000, gt=0)
    flush_on_shutdown: bool = True


class SinksCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    graphite_address: str = "localhost:2003"
    output_file: str = "stats.csv"
    connect_timeout: float | None = None

    @field_validator("graphite_address")
    @classmethod
    def _check_graphite_address(cls, value: str) -> str:
        if value and value != GRAPHITE_DISABLED:
            split_host_port(value, default_host="localhost")
        return value

    @field_validator("connect_timeout")
    @classmethod
    def _check_connect_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("connect_timeout must be positive")
        return value

    @property
    def graphite_enabled(self) -> bool:
        return bool(self.graphite_address) and self.graphite_address != GRAPHITE_DISABLED

    @property
    def file_enabled(self) -> bool:
        return bool(self.output_file)


class LoggingCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    level: str = "INFO"
    format: Literal["console", "json"] = "console"
    log_dir: Path | None = None

    @field_validator("level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"level must be one of {', '.join(LOG_LEVELS)} (got {value!r})")
        return level


class Config(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    listener: ListenerCfg = Field(default_factory=ListenerCfg)
    aggregator: AggregatorCfg = Field(default_factory=AggregatorCfg)
    sinks: SinksCfg = Field(default_factory=SinksCfg)
    logging: LoggingCfg = Field(default_factory=LoggingCfg)


def _read_yaml(path: Path) -> dict[str, Any]:
    """Safe YAML read; returns {} if file missing/empty."""
    if not path.exists():
        return {}
    text = path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Malformed YAML in {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")
    return data


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    base_dir: str | Path, overrides: dict[str, Any] | None = None
) -> Config:
    """Load config from ./config/base.yaml (optional) and apply overrides.

    Args:
        base_dir: Directory containing config/
        overrides: Nested mapping applied on top of the file, e.g.
            ``{"aggregator": {"flush_interval": 5}}``

    Raises:
        ConfigError: If the file is malformed or validation fails
    """
    base_yaml = Path(base_dir) / "config" / "base.yaml"
    data = _read_yaml(base_yaml)
    if overrides:
        data = _merge(data, overrides)

    try:
        return cast(Config, Config.model_validate(data))
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
