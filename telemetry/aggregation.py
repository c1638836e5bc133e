"""Single-owner aggregation loop for counters and timers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from core.contracts import COUNTER, TIMER, Modifier, Packet
from telemetry.reduction import corrected_count, render_flush

if TYPE_CHECKING:
    from core.config import AggregatorCfg
    from telemetry.sinks import Sink

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlushResult:
    """Outcome of one flush.

    Attributes:
        num_stats: Buckets that produced output
        payload: Bytes handed to every sink (empty when num_stats is 0)
        timestamp: Unix seconds stamped on every line
        sinks_written: Names of the sinks that accepted the payload
    """

    num_stats: int
    payload: bytes
    timestamp: int
    sinks_written: tuple[str, ...] = ()


class Aggregator:
    """Exclusive owner of the counter and timer maps.

    Packets arrive through ``submit`` onto a bounded queue. ``run`` is the
    only consumer: it either applies one packet or runs one flush, never both
    at once, so the maps need no lock. ``apply`` and ``flush`` are public for
    direct use from tests and from ``run`` itself; nothing else may call them
    while ``run`` is active.
    """

    def __init__(self, cfg: AggregatorCfg, sinks: Sequence[Sink] = ()) -> None:
        """Initialize aggregator.

        Args:
            cfg: Flush interval, percentile settings and queue capacity
            sinks: Destinations for each flush payload
        """
        self.flush_interval = cfg.flush_interval
        self.percent_threshold = cfg.percent_threshold
        self.percentile_mode = cfg.percentile_mode
        self.flush_on_shutdown = cfg.flush_on_shutdown
        self.sinks = list(sinks)

        self._queue: asyncio.Queue[Packet] = asyncio.Queue(maxsize=cfg.queue_capacity)
        self._counters: dict[str, int] = {}
        self._timers: dict[str, list[int]] = {}
        self._conflicts_reported: set[str] = set()
        self._stopping = asyncio.Event()
        self.flush_count = 0

    async def submit(self, packet: Packet) -> None:
        """Enqueue a packet, waiting while the queue is full."""
        await self._queue.put(packet)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def apply(self, packet: Packet) -> None:
        """Fold one packet into the maps."""
        if packet.modifier == TIMER:
            self._check_conflict(packet.bucket, TIMER)
            self._timers.setdefault(packet.bucket, []).append(packet.value)
        else:
            self._check_conflict(packet.bucket, COUNTER)
            if packet.bucket not in self._counters:
                self._counters[packet.bucket] = 0
            self._counters[packet.bucket] += corrected_count(packet.value, packet.sampling_rate)

    def _check_conflict(self, bucket: str, modifier: Modifier) -> None:
        other = self._counters if modifier == TIMER else self._timers
        if bucket in other and bucket not in self._conflicts_reported:
            self._conflicts_reported.add(bucket)
            logger.warning(
                "statsd.bucket_modifier_conflict",
                extra={"bucket": bucket, "modifier": modifier},
            )

    def counter_value(self, bucket: str) -> int | None:
        """Current counter for ``bucket`` or None if never seen."""
        return self._counters.get(bucket)

    def timer_values(self, bucket: str) -> list[int] | None:
        """Copy of the timer samples for ``bucket`` or None if never seen."""
        values = self._timers.get(bucket)
        return list(values) if values is not None else None

    def buckets(self) -> dict[str, set[Modifier]]:
        """Every bucket seen so far with the modifiers it was used with."""
        seen: dict[str, set[Modifier]] = {}
        for bucket in self._counters:
            seen.setdefault(bucket, set()).add(COUNTER)
        for bucket in self._timers:
            seen.setdefault(bucket, set()).add(TIMER)
        return seen

    def _reset(self) -> None:
        for bucket in self._counters:
            self._counters[bucket] = 0
        for values in self._timers.values():
            values.clear()

    async def flush(self, now: float | None = None) -> FlushResult:
        """Reduce current state, reset it, and write the payload to every sink.

        State is reset whether or not any sink accepted the payload.
        """
        timestamp = int(time.time() if now is None else now)
        payload, num_stats = render_flush(
            self._counters,
            self._timers,
            flush_interval=self.flush_interval,
            percent_threshold=self.percent_threshold,
            timestamp=timestamp,
            mode=self.percentile_mode,
        )
        self._reset()
        self.flush_count += 1

        logger.info("statsd.flush", extra={"num_stats": num_stats, "timestamp": timestamp})
        if num_stats == 0:
            return FlushResult(num_stats=0, payload=b"", timestamp=timestamp)

        written: list[str] = []
        for sink in self.sinks:
            if await sink.write(payload):
                written.append(sink.name)
        return FlushResult(
            num_stats=num_stats,
            payload=payload,
            timestamp=timestamp,
            sinks_written=tuple(written),
        )

    async def _flush_safely(self) -> None:
        try:
            await self.flush()
        except Exception:
            logger.exception("statsd.flush_failed")

    def _drain(self) -> int:
        drained = 0
        while True:
            try:
                packet = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return drained
            self.apply(packet)
            drained += 1

    def stop(self) -> None:
        """Ask ``run`` to return after its current step."""
        self._stopping.set()

    async def run(self) -> None:
        """Main aggregation loop.

        Alternates between applying queued packets and flushing on schedule
        until ``stop`` is called or the task is cancelled.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.flush_interval
        get_task: asyncio.Task[Packet] | None = None
        stop_task = asyncio.create_task(self._stopping.wait())

        logger.info(
            "statsd.aggregator_started",
            extra={
                "flush_interval_seconds": self.flush_interval,
                "percent_threshold": self.percent_threshold,
                "percentile_mode": self.percentile_mode,
                "queue_capacity": self._queue.maxsize,
            },
        )
        try:
            while not self._stopping.is_set():
                if get_task is None:
                    get_task = asyncio.create_task(self._queue.get())

                timeout = max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    {get_task, stop_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )

                if get_task in done:
                    self.apply(get_task.result())
                    get_task = None

                if loop.time() >= deadline:
                    await self._flush_safely()
                    deadline = loop.time() + self.flush_interval
        finally:
            stop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stop_task
            if get_task is not None:
                if get_task.done() and not get_task.cancelled():
                    self.apply(get_task.result())
                else:
                    get_task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await get_task

        if self.flush_on_shutdown:
            drained = self._drain()
            logger.info("statsd.aggregator_final_flush", extra={"drained": drained})
            await self._flush_safely()
        logger.info("statsd.aggregator_stopped")
