"""Aggregation, flush-time reduction and sinks."""

from telemetry.aggregation import Aggregator, FlushResult
from telemetry.reduction import TimerSummary, render_flush, summarize_timer
from telemetry.sinks import FileSink, GraphiteSink, Sink, build_sinks

__all__ = [
    "Aggregator",
    "FileSink",
    "FlushResult",
    "GraphiteSink",
    "Sink",
    "TimerSummary",
    "build_sinks",
    "render_flush",
    "summarize_timer",
]
