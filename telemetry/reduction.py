"""Flush-time reduction of counters and timers into plaintext lines.

Every function here is pure; the aggregator owns the state and the reset.
All division is integer division truncated toward zero.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from fractions import Fraction

from core.config import PercentileMode


def trunc_div(numerator: int, denominator: int) -> int:
    """Integer division rounding toward zero (``//`` rounds toward -inf)."""
    if denominator == 0:
        raise ZeroDivisionError("trunc_div by zero")
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def corrected_count(value: int, sampling_rate: float) -> int:
    """Scale a counter sample by its sampling rate, truncated toward zero.

    The rate is taken at its shortest decimal repr so that e.g. ``1 / 0.1``
    is exactly 10 rather than 9.999....
    """
    if sampling_rate == 1.0:
        return value
    return int(Fraction(value) / Fraction(repr(sampling_rate)))


@dataclass(frozen=True)
class TimerSummary:
    mean: int
    lower: int
    upper: int
    upper_at_threshold: int
    count: int


def threshold_index(count: int, percent_threshold: int, mode: PercentileMode) -> int:
    """Number of largest samples excluded from the percentile window.

    ``truncated`` divides before multiplying, so any threshold strictly
    between 0 and 100 excludes nothing. ``exact`` multiplies first. Both keep
    at least one sample.
    """
    if mode == "exact":
        index = ((100 - percent_threshold) * count) // 100
    else:
        index = ((100 - percent_threshold) // 100) * count
    return min(index, count - 1)


def summarize_timer(
    values: Iterable[int], percent_threshold: int, mode: PercentileMode = "truncated"
) -> TimerSummary:
    """Reduce one bucket's timer samples.

    Raises:
        ValueError: If ``values`` is empty
    """
    ordered = sorted(values)
    if not ordered:
        raise ValueError("cannot summarize an empty timer")

    count = len(ordered)
    lower = ordered[0]
    upper = ordered[-1]
    if count == 1:
        return TimerSummary(mean=lower, lower=lower, upper=upper, upper_at_threshold=upper, count=1)

    num_in_threshold = count - threshold_index(count, percent_threshold, mode)
    window = ordered[:num_in_threshold]
    mean = trunc_div(sum(window), num_in_threshold)
    at_threshold = upper if mode == "truncated" else window[-1]
    return TimerSummary(
        mean=mean,
        lower=lower,
        upper=upper,
        upper_at_threshold=at_threshold,
        count=count,
    )


def counter_lines(bucket: str, value: int, flush_interval: int, timestamp: int) -> list[str]:
    rate = trunc_div(value, flush_interval)
    return [
        f"stats.{bucket} {rate} {timestamp}\n",
        f"stats_counts.{bucket} {value} {timestamp}\n",
    ]


def timer_lines(
    bucket: str, summary: TimerSummary, percent_threshold: int, timestamp: int
) -> list[str]:
    prefix = f"stats.timers.{bucket}"
    return [
        f"{prefix}.mean {summary.mean} {timestamp}\n",
        f"{prefix}.upper {summary.upper} {timestamp}\n",
        f"{prefix}.upper_{percent_threshold} {summary.upper_at_threshold} {timestamp}\n",
        f"{prefix}.lower {summary.lower} {timestamp}\n",
        f"{prefix}.count {summary.count} {timestamp}\n",
    ]


def render_flush(
    counters: Mapping[str, int],
    timers: Mapping[str, Sequence[int]],
    *,
    flush_interval: int,
    percent_threshold: int,
    timestamp: int,
    mode: PercentileMode = "truncated",
) -> tuple[bytes, int]:
    """Render one flush worth of lines.

    Zero counters and empty timers are skipped. When anything was rendered a
    trailing ``statsd.numStats`` line is appended.

    Returns:
        (payload, num_stats); payload is empty when num_stats is 0
    """
    lines: list[str] = []
    num_stats = 0

    for bucket, value in counters.items():
        if value == 0:
            continue
        lines.extend(counter_lines(bucket, value, flush_interval, timestamp))
        num_stats += 1

    for bucket, values in timers.items():
        if not values:
            continue
        summary = summarize_timer(values, percent_threshold, mode)
        lines.extend(timer_lines(bucket, summary, percent_threshold, timestamp))
        num_stats += 1

    if num_stats == 0:
        return b"", 0

    lines.append(f"statsd.numStats {num_stats} {timestamp}\n")
    return "".join(lines).encode("utf-8"), num_stats
