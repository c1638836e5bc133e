"""tallyd daemon entry point.

Listens for plaintext samples over UDP, aggregates them, and flushes derived
statistics to Graphite and/or a local file on a fixed interval.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys
from typing import Any

import structlog

from core.config import Config, ConfigError, load_config
from core.logging import setup_logging
from ingest.listener import DatagramListener, ListenerBindError
from telemetry.aggregation import Aggregator
from telemetry.sinks import build_sinks

EXIT_OK = 0
EXIT_BIND_FAILED = 1
EXIT_BAD_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    """Build argument parser.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(description="tallyd metrics aggregation daemon")
    parser.add_argument(
        "--config-root",
        default=".",
        help="Directory containing config/ (defaults to current working directory)",
    )
    parser.add_argument("--address", help="UDP service address (default: :8125)")
    parser.add_argument(
        "--graphite",
        help="Graphite service address, or - to disable (default: localhost:2003)",
    )
    parser.add_argument("--output-file", help="File to append stats to (default: stats.csv)")
    parser.add_argument("--flush-interval", type=int, help="Flush interval in seconds")
    parser.add_argument("--percent-threshold", type=int, help="Timer percentile threshold")
    parser.add_argument(
        "--percentile-mode",
        choices=["truncated", "exact"],
        help="Percentile window arithmetic (default: truncated)",
    )
    parser.add_argument("--queue-capacity", type=int, help="Aggregator queue capacity")
    parser.add_argument("--log-level", help="Log level (default: INFO)")
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict[str, Any]:
    """Map CLI flags onto the nested config layout, skipping unset flags."""
    mapping = {
        "address": ("listener", "address"),
        "graphite": ("sinks", "graphite_address"),
        "output_file": ("sinks", "output_file"),
        "flush_interval": ("aggregator", "flush_interval"),
        "percent_threshold": ("aggregator", "percent_threshold"),
        "percentile_mode": ("aggregator", "percentile_mode"),
        "queue_capacity": ("aggregator", "queue_capacity"),
        "log_level": ("logging", "level"),
    }
    overrides: dict[str, Any] = {}
    for attr, (section, key) in mapping.items():
        value = getattr(args, attr)
        if value is not None:
            overrides.setdefault(section, {})[key] = value
    return overrides


async def run_daemon(config: Config, stop_event: asyncio.Event | None = None) -> int:
    """Run listener and aggregator until ``stop_event`` is set or SIGINT/SIGTERM.

    Returns:
        Exit code
    """
    logger = structlog.stdlib.get_logger("tallyd")
    stop = stop_event or asyncio.Event()

    sinks = build_sinks(config.sinks)
    aggregator = Aggregator(config.aggregator, sinks)
    listener = DatagramListener(config.listener, aggregator)

    try:
        await listener.start()
    except ListenerBindError as exc:
        logger.error("tallyd.bind_failed", address=config.listener.address, error=str(exc))
        return EXIT_BIND_FAILED

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)

    logger.info(
        "tallyd.ready",
        address=listener.local_address,
        sinks=[sink.name for sink in sinks],
        flush_interval=config.aggregator.flush_interval,
    )

    aggregator_task = asyncio.create_task(aggregator.run())
    listener_task = asyncio.create_task(listener.serve())
    stop_task = asyncio.create_task(stop.wait())
    try:
        await asyncio.wait(
            {aggregator_task, listener_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        listener_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await listener_task
        await listener.close()

        aggregator.stop()
        await aggregator_task
        stop_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await stop_task
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)
        logger.info("tallyd.stopped")

    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        argv: Command line arguments

    Returns:
        Exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config_root, overrides_from_args(args))
    except ConfigError as exc:
        parser.print_usage(sys.stderr)
        print(f"tallyd: invalid configuration: {exc}", file=sys.stderr)
        return EXIT_BAD_CONFIG

    setup_logging(config.logging)

    try:
        return asyncio.run(run_daemon(config))
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
