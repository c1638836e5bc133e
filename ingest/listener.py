"""UDP endpoint feeding the parser.

Each datagram is parsed in its own task. A semaphore caps the number of
in-flight parse tasks; once it is exhausted the listener stops reading and
further datagrams wait in (or overflow) the kernel socket buffer.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from typing import TYPE_CHECKING

from core.config import split_host_port
from ingest.parser import parse_and_submit

if TYPE_CHECKING:
    from core.config import ListenerCfg
    from telemetry.aggregation import Aggregator

logger = logging.getLogger(__name__)

MAX_DATAGRAM_SIZE = 512


class ListenerBindError(RuntimeError):
    """The listening socket could not be bound. Fatal at startup."""


class DatagramListener:
    """Receives datagrams and dispatches bounded parse-and-enqueue tasks."""

    def __init__(self, cfg: ListenerCfg, aggregator: Aggregator) -> None:
        self.address = cfg.address
        self.max_in_flight = cfg.max_in_flight
        self.aggregator = aggregator
        self._sock: socket.socket | None = None
        self._slots = asyncio.Semaphore(cfg.max_in_flight)
        self._tasks: set[asyncio.Task[int]] = set()
        self.datagrams_received = 0
        self.read_errors = 0

    @property
    def local_address(self) -> tuple[str, int]:
        if self._sock is None:
            raise RuntimeError("listener is not bound")
        host, port = self._sock.getsockname()[:2]
        return host, port

    async def start(self) -> None:
        """Bind the UDP socket.

        Raises:
            ListenerBindError: If the address cannot be resolved or bound
        """
        try:
            host, port = split_host_port(self.address)
            infos = await asyncio.get_running_loop().getaddrinfo(
                host, port, type=socket.SOCK_DGRAM
            )
            family, _, _, _, sockaddr = infos[0]
            sock = socket.socket(family, socket.SOCK_DGRAM)
        except (OSError, ValueError) as exc:
            raise ListenerBindError(f"cannot resolve {self.address!r}: {exc}") from exc

        try:
            sock.setblocking(False)
            sock.bind(sockaddr)
        except OSError as exc:
            sock.close()
            raise ListenerBindError(f"cannot bind {self.address!r}: {exc}") from exc

        self._sock = sock
        logger.info("statsd.listener_bound", extra={"address": self.local_address})

    async def serve(self) -> None:
        """Read datagrams until cancelled."""
        if self._sock is None:
            await self.start()
        assert self._sock is not None
        loop = asyncio.get_running_loop()

        while True:
            await self._slots.acquire()
            try:
                data, remote = await loop.sock_recvfrom(self._sock, MAX_DATAGRAM_SIZE)
            except OSError as exc:
                self._slots.release()
                self.read_errors += 1
                logger.warning("statsd.listener_read_failed", extra={"error": str(exc)})
                continue
            except BaseException:
                self._slots.release()
                raise

            self.datagrams_received += 1
            logger.debug("statsd.datagram_received", extra={"remote": remote, "bytes": len(data)})
            self.dispatch(bytes(data))

    def dispatch(self, data: bytes) -> asyncio.Task[int]:
        """Start a parse-and-enqueue task for one datagram.

        The caller must hold one slot; the task releases it when done.
        """
        task = asyncio.create_task(parse_and_submit(data, self.aggregator))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[int]) -> None:
        self._tasks.discard(task)
        self._slots.release()
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "statsd.parse_task_failed",
                exc_info=task.exception(),
            )

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def close(self) -> None:
        """Wait for in-flight parse tasks and release the socket."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._sock is not None:
            with contextlib.suppress(OSError):
                self._sock.close()
            self._sock = None
            logger.info("statsd.listener_closed", extra={"datagrams": self.datagrams_received})
