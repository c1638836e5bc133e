"""Tests for the aggregator state, flush and event loop."""

from __future__ import annotations

import asyncio
import logging

import pytest

from core.contracts import Packet
from ingest.parser import parse_and_submit
from telemetry.aggregation import Aggregator
from tests.utils import RecordingSink, build_aggregator_cfg, strip_timestamps

TS = 1_700_000_000


class TestApply:
    """Tests for folding packets into state."""

    def test_counter_created_lazily(self) -> None:
        aggregator = Aggregator(build_aggregator_cfg())

        assert aggregator.counter_value("hits") is None
        aggregator.apply(Packet("hits", 3, "c"))
        aggregator.apply(Packet("hits", 4, "c"))

        assert aggregator.counter_value("hits") == 7

    def test_sampling_correction(self) -> None:
        aggregator = Aggregator(build_aggregator_cfg())

        for _ in range(3):
            aggregator.apply(Packet("sampled", 1, "c", 0.5))

        assert aggregator.counter_value("sampled") == 6

    def test_timer_values_are_not_sampling_corrected(self) -> None:
        aggregator = Aggregator(build_aggregator_cfg())

        aggregator.apply(Packet("latency", 5, "ms", 0.1))
        aggregator.apply(Packet("latency", 3, "ms"))

        assert aggregator.timer_values("latency") == [5, 3]

    def test_shared_bucket_is_kept_separate_and_warned(self, caplog: pytest.LogCaptureFixture) -> None:
        aggregator = Aggregator(build_aggregator_cfg())

        with caplog.at_level(logging.WARNING, logger="telemetry.aggregation"):
            aggregator.apply(Packet("mixed", 2, "c"))
            aggregator.apply(Packet("mixed", 40, "ms"))
            aggregator.apply(Packet("mixed", 41, "ms"))

        assert aggregator.counter_value("mixed") == 2
        assert aggregator.timer_values("mixed") == [40, 41]
        assert aggregator.buckets() == {"mixed": {"c", "ms"}}
        conflicts = [r for r in caplog.records if r.getMessage() == "statsd.bucket_modifier_conflict"]
        assert len(conflicts) == 1


class TestFlush:
    """Tests for flush output and reset semantics."""

    @pytest.mark.asyncio
    async def test_flush_writes_same_payload_to_every_sink(self) -> None:
        first, second = RecordingSink("one"), RecordingSink("two")
        aggregator = Aggregator(build_aggregator_cfg(), [first, second])
        aggregator.apply(Packet("hits", 30, "c"))

        result = await aggregator.flush(now=TS)

        assert result.num_stats == 1
        assert result.sinks_written == ("one", "two")
        assert first.payloads == [result.payload]
        assert second.payloads == [result.payload]
        assert result.payload.decode().splitlines() == [
            f"stats.hits 3 {TS}",
            f"stats_counts.hits 30 {TS}",
            f"statsd.numStats 1 {TS}",
        ]

    @pytest.mark.asyncio
    async def test_reset_law(self) -> None:
        aggregator = Aggregator(build_aggregator_cfg())
        aggregator.apply(Packet("hits", 1, "c"))
        aggregator.apply(Packet("latency", 12, "ms"))

        await aggregator.flush(now=TS)

        assert aggregator.counter_value("hits") == 0
        assert aggregator.timer_values("latency") == []
        assert set(aggregator.buckets()) == {"hits", "latency"}

    @pytest.mark.asyncio
    async def test_empty_flush_writes_nothing(self) -> None:
        sink = RecordingSink()
        aggregator = Aggregator(build_aggregator_cfg(), [sink])
        aggregator.apply(Packet("hits", 1, "c"))
        await aggregator.flush(now=TS)

        result = await aggregator.flush(now=TS + 10)

        assert result.num_stats == 0
        assert result.payload == b""
        assert result.sinks_written == ()
        assert len(sink.payloads) == 1

    @pytest.mark.asyncio
    async def test_unavailable_sink_does_not_block_others(self) -> None:
        down, up = RecordingSink("down", available=False), RecordingSink("up")
        aggregator = Aggregator(build_aggregator_cfg(), [down, up])
        aggregator.apply(Packet("hits", 1, "c"))

        result = await aggregator.flush(now=TS)

        assert result.sinks_written == ("up",)
        assert down.payloads == []
        assert len(up.payloads) == 1
        assert aggregator.counter_value("hits") == 0

    @pytest.mark.asyncio
    async def test_timer_reduction_truncated_mode(self) -> None:
        aggregator = Aggregator(build_aggregator_cfg(percent_threshold=90))
        for value in range(10, 0, -1):
            aggregator.apply(Packet("t", value, "ms"))

        result = await aggregator.flush(now=TS)

        assert strip_timestamps(result.payload) == [
            "stats.timers.t.mean 5",
            "stats.timers.t.upper 10",
            "stats.timers.t.upper_90 10",
            "stats.timers.t.lower 1",
            "stats.timers.t.count 10",
            "statsd.numStats 1",
        ]

    @pytest.mark.asyncio
    async def test_timer_reduction_exact_mode(self) -> None:
        aggregator = Aggregator(build_aggregator_cfg(percent_threshold=90, percentile_mode="exact"))
        for value in range(1, 11):
            aggregator.apply(Packet("t", value, "ms"))

        result = await aggregator.flush(now=TS)

        assert "stats.timers.t.upper_90 9" in strip_timestamps(result.payload)

    @pytest.mark.asyncio
    async def test_identical_input_gives_identical_output_each_interval(self) -> None:
        aggregator = Aggregator(build_aggregator_cfg())
        samples = [
            Packet("hits", 4, "c"),
            Packet("latency", 9, "ms"),
            Packet("misses", 1, "c", 0.25),
            Packet("latency", 3, "ms"),
        ]

        outputs = []
        for interval in range(3):
            for packet in samples:
                aggregator.apply(packet)
            result = await aggregator.flush(now=TS + interval * 10)
            outputs.append(strip_timestamps(result.payload))

        assert outputs[0] == outputs[1] == outputs[2]
        assert outputs[0][-1] == "statsd.numStats 3"


class TestRunLoop:
    """Tests for the single-consumer event loop."""

    @pytest.mark.asyncio
    async def test_concurrent_parsers_counted_exactly_once(self) -> None:
        sink = RecordingSink()
        aggregator = Aggregator(build_aggregator_cfg(queue_capacity=5), [sink])
        runner = asyncio.create_task(aggregator.run())

        total = 200
        pushed = await asyncio.gather(
            *(parse_and_submit(b"requests:1|c", aggregator) for _ in range(total))
        )
        aggregator.stop()
        await asyncio.wait_for(runner, timeout=5)

        assert sum(pushed) == total
        assert sink.lines()[1].startswith(f"stats_counts.requests {total} ")

    @pytest.mark.asyncio
    async def test_backpressure_blocks_submit_when_full(self) -> None:
        aggregator = Aggregator(build_aggregator_cfg(queue_capacity=2))
        await aggregator.submit(Packet("a", 1, "c"))
        await aggregator.submit(Packet("a", 1, "c"))

        blocked = asyncio.create_task(aggregator.submit(Packet("a", 1, "c")))
        await asyncio.sleep(0.01)
        assert not blocked.done()

        runner = asyncio.create_task(aggregator.run())
        await asyncio.wait_for(blocked, timeout=1)
        runner.cancel()
        with pytest.raises(asyncio.CancelledError):
            await runner

    @pytest.mark.asyncio
    async def test_periodic_flush(self) -> None:
        sink = RecordingSink()
        aggregator = Aggregator(build_aggregator_cfg(flush_interval=1, flush_on_shutdown=False), [sink])
        runner = asyncio.create_task(aggregator.run())

        await aggregator.submit(Packet("tick", 10, "c"))
        for _ in range(40):
            if sink.payloads:
                break
            await asyncio.sleep(0.1)

        aggregator.stop()
        await asyncio.wait_for(runner, timeout=2)

        assert len(sink.payloads) == 1
        assert strip_timestamps(sink.payloads[0]) == [
            "stats.tick 10",
            "stats_counts.tick 10",
            "statsd.numStats 1",
        ]

    @pytest.mark.asyncio
    async def test_stop_without_final_flush(self) -> None:
        sink = RecordingSink()
        aggregator = Aggregator(build_aggregator_cfg(flush_on_shutdown=False), [sink])
        runner = asyncio.create_task(aggregator.run())

        await aggregator.submit(Packet("hits", 1, "c"))
        await asyncio.sleep(0.01)
        aggregator.stop()
        await asyncio.wait_for(runner, timeout=1)

        assert sink.payloads == []
        assert aggregator.counter_value("hits") == 1

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_kill_loop(self) -> None:
        class ExplodingSink:
            name = "boom"

            async def write(self, payload: bytes) -> bool:
                raise RuntimeError("sink exploded")

        aggregator = Aggregator(build_aggregator_cfg(flush_interval=1), [ExplodingSink()])
        runner = asyncio.create_task(aggregator.run())
        await aggregator.submit(Packet("hits", 1, "c"))
        await asyncio.sleep(1.3)

        assert not runner.done()
        assert aggregator.flush_count >= 1
        assert aggregator.counter_value("hits") == 0

        aggregator.stop()
        await asyncio.wait_for(runner, timeout=1)
