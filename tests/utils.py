from __future__ import annotations

from typing import Any, cast

from core.config import AggregatorCfg, Config


class RecordingSink:
    """In-memory sink that keeps every payload it accepts."""

    def __init__(self, name: str = "memory", available: bool = True) -> None:
        self.name = name
        self.available = available
        self.payloads: list[bytes] = []

    async def write(self, payload: bytes) -> bool:
        if not self.available:
            return False
        self.payloads.append(payload)
        return True

    def lines(self) -> list[str]:
        return [line for payload in self.payloads for line in payload.decode().splitlines()]


def strip_timestamps(payload: bytes) -> list[str]:
    """Drop the trailing timestamp from each output line."""
    return [line.rsplit(" ", 1)[0] for line in payload.decode().splitlines()]


def build_aggregator_cfg(**overrides: Any) -> AggregatorCfg:
    data: dict[str, Any] = {
        "flush_interval": 10,
        "percent_threshold": 90,
        "percentile_mode": "truncated",
        "queue_capacity": 100,
        "flush_on_shutdown": True,
    }
    data.update(overrides)
    return cast(AggregatorCfg, AggregatorCfg.model_validate(data))


def build_test_config(output_file: str, **aggregator: Any) -> Config:
    cfg_dict = {
        "listener": {"address": "127.0.0.1:0", "max_in_flight": 8},
        "aggregator": build_aggregator_cfg(**aggregator).model_dump(),
        "sinks": {"graphite_address": "-", "output_file": output_file},
        "logging": {"level": "DEBUG", "format": "console"},
    }
    return cast(Config, Config.model_validate(cfg_dict))
