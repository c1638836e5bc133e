"""Flush destinations.

Each sink is opened afresh for every flush and closed afterwards. A sink that
cannot be opened or written is logged and skipped for that flush only.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol

from core.config import SinksCfg, split_host_port

logger = logging.getLogger(__name__)


class Sink(Protocol):
    """Destination for one flush payload."""

    name: str

    async def write(self, payload: bytes) -> bool:
        """Write ``payload`` in full.

        Returns:
            True if the payload was written, False if the sink was unavailable
            or the write failed (already logged).
        """
        ...


class GraphiteSink:
    """Plaintext TCP sink, dialled once per flush."""

    name = "graphite"

    def __init__(self, host: str, port: int, connect_timeout: float | None = None) -> None:
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout

    @classmethod
    def from_address(cls, address: str, connect_timeout: float | None = None) -> GraphiteSink:
        host, port = split_host_port(address, default_host="localhost")
        return cls(host, port, connect_timeout)

    async def write(self, payload: bytes) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.connect_timeout
            )
        except (OSError, TimeoutError) as exc:
            logger.warning(
                "statsd.sink_dial_failed",
                extra={"sink": self.name, "host": self.host, "port": self.port, "error": str(exc)},
            )
            return False

        try:
            writer.write(payload)
            await writer.drain()
        except OSError as exc:
            logger.warning(
                "statsd.sink_write_failed",
                extra={"sink": self.name, "bytes": len(payload), "error": str(exc)},
            )
            return False
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                logger.debug("statsd.sink_close_failed", extra={"sink": self.name})
        return True


class FileSink:
    """Append-only file sink, reopened once per flush."""

    name = "file"

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def write(self, payload: bytes) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = self.path.open("ab")
        except OSError as exc:
            logger.warning(
                "statsd.sink_open_failed",
                extra={"sink": self.name, "path": str(self.path), "error": str(exc)},
            )
            return False

        with handle:
            try:
                handle.write(payload)
                handle.flush()
            except OSError as exc:
                logger.warning(
                    "statsd.sink_write_failed",
                    extra={"sink": self.name, "bytes": len(payload), "error": str(exc)},
                )
                return False
        logger.debug("statsd.sink_file_written", extra={"path": str(self.path), "bytes": len(payload)})
        return True


def build_sinks(cfg: SinksCfg) -> list[Sink]:
    """Build the sinks enabled by configuration (possibly none)."""
    sinks: list[Sink] = []
    if cfg.graphite_enabled:
        sinks.append(GraphiteSink.from_address(cfg.graphite_address, cfg.connect_timeout))
    if cfg.file_enabled:
        sinks.append(FileSink(cfg.output_file))
    return sinks
