"""Datagram reception and sample parsing."""

from ingest.listener import MAX_DATAGRAM_SIZE, DatagramListener, ListenerBindError
from ingest.parser import parse_and_submit, parse_packets, sanitize

__all__ = [
    "MAX_DATAGRAM_SIZE",
    "DatagramListener",
    "ListenerBindError",
    "parse_and_submit",
    "parse_packets",
    "sanitize",
]
