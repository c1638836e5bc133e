"""Tokenizer for the plaintext sample protocol.

A datagram carries one or more samples of the form::

    <bucket>:<value>|<c|ms>[|@<samplingRate>]

Samples may be concatenated with or without separators. The payload is first
stripped of every character outside ``[A-Za-z0-9-_.:|@]``, then scanned left
to right. Fragments that do not form a sample are skipped silently.
"""

from __future__ import annotations

import logging
import string
from typing import TYPE_CHECKING

from core.contracts import COUNTER, TIMER, Modifier, Packet

if TYPE_CHECKING:
    from telemetry.aggregation import Aggregator

logger = logging.getLogger(__name__)

BUCKET_CHARS = frozenset(string.ascii_letters + string.digits + "_")
VALUE_CHARS = BUCKET_CHARS | frozenset("-.")
RATE_CHARS = frozenset(string.digits + ".")
ALLOWED_CHARS = BUCKET_CHARS | frozenset("-.:|@")

DEFAULT_VALUES: dict[Modifier, int] = {COUNTER: 1, TIMER: 0}
DEFAULT_SAMPLING_RATE = 1.0


def sanitize(text: str) -> str:
    """Drop every character outside the protocol alphabet."""
    return "".join(ch for ch in text if ch in ALLOWED_CHARS)


def _scan(text: str, pos: int, chars: frozenset[str]) -> int:
    """Return the end of the run of ``chars`` starting at ``pos``."""
    end = pos
    size = len(text)
    while end < size and text[end] in chars:
        end += 1
    return end


def decode_value(raw: str, modifier: Modifier) -> int:
    """Decode a signed decimal integer, falling back to the modifier default."""
    digits = raw[1:] if raw.startswith("-") else raw
    if digits.isdigit() and digits.isascii():
        return int(raw)
    return DEFAULT_VALUES[modifier]


def decode_sampling_rate(raw: str) -> float:
    """Decode a sampling rate in (0, 1]; anything else means 1.0."""
    if not raw:
        return DEFAULT_SAMPLING_RATE
    try:
        rate = float(raw)
    except ValueError:
        return DEFAULT_SAMPLING_RATE
    if not 0.0 < rate <= 1.0:
        return DEFAULT_SAMPLING_RATE
    return rate


def _match_at(text: str, start: int) -> tuple[Packet | None, int]:
    """Try to read one sample at ``start``.

    Returns the packet (or None) and the position scanning resumes from.
    """
    size = len(text)
    bucket_end = _scan(text, start, BUCKET_CHARS)
    if bucket_end == start:
        return None, start + 1
    # A bucket that fails to match cannot start a match anywhere inside
    # its own run, so resume after it.
    miss = bucket_end
    if bucket_end >= size or text[bucket_end] != ":":
        return None, miss

    value_start = bucket_end + 1
    value_end = _scan(text, value_start, VALUE_CHARS)
    if value_end == value_start or value_end >= size or text[value_end] != "|":
        return None, miss

    mod_start = value_end + 1
    modifier: Modifier
    if text.startswith(TIMER, mod_start):
        modifier = TIMER
    elif text.startswith(COUNTER, mod_start):
        modifier = COUNTER
    else:
        return None, miss
    end = mod_start + len(modifier)

    raw_rate = ""
    if text.startswith("|@", end):
        rate_end = _scan(text, end + 2, RATE_CHARS)
        raw_rate = text[end + 2 : rate_end]
        end = rate_end

    packet = Packet(
        bucket=text[start:bucket_end],
        value=decode_value(text[value_start:value_end], modifier),
        modifier=modifier,
        sampling_rate=decode_sampling_rate(raw_rate),
    )
    return packet, end


def parse_packets(data: bytes | str) -> list[Packet]:
    """Extract every sample from a raw datagram, in order of appearance."""
    text = data.decode("utf-8", errors="ignore") if isinstance(data, bytes) else data
    text = sanitize(text)

    packets: list[Packet] = []
    pos = 0
    while pos < len(text):
        packet, pos = _match_at(text, pos)
        if packet is not None:
            packets.append(packet)
    return packets


async def parse_and_submit(data: bytes, aggregator: Aggregator) -> int:
    """Parse ``data`` and push its packets onto the aggregator queue.

    Blocks while the queue is full. Returns the number of packets pushed.
    """
    packets = parse_packets(data)
    logger.debug("statsd.datagram_parsed", extra={"bytes": len(data), "packets": len(packets)})
    for packet in packets:
        await aggregator.submit(packet)
    return len(packets)
