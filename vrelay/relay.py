"""Bidirectional byte relaying between two asyncio stream pairs, with traffic counters."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from typing import Awaitable, Callable, Optional

from vrelay.common import LW_BUFFER_SIZE

log = logging.getLogger(__name__)

_U64_MASK = (1 << 64) - 1

StreamPair = tuple[asyncio.StreamReader, asyncio.StreamWriter]


class TrafficCounter:
    """Thread-safe unsigned 64-bit byte counter that wraps on overflow."""

    def __init__(self, value: int = 0) -> None:
        self._value = value & _U64_MASK
        self._lock = threading.Lock()

    def add(self, amount: int) -> None:
        with self._lock:
            self._value = (self._value + amount) & _U64_MASK

    def load(self) -> int:
        with self._lock:
            return self._value

    def swap(self, value: int) -> int:
        """Store ``value`` and return the previous value."""
        with self._lock:
            old, self._value = self._value, value & _U64_MASK
            return old


async def _pump(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    buffer_size: int,
    on_read: Optional[Callable[[int], None]],
    on_write: Callable[[int], None],
) -> None:
    """Copy until EOF on ``reader``, then flush ``writer``."""
    if buffer_size < 0:
        raise ValueError("buffer size must not be negative")
    while True:
        chunk = await reader.read(buffer_size) if buffer_size else b""
        if on_read is not None:
            on_read(len(chunk))
        if not chunk:
            break
        writer.write(chunk)
        on_write(len(chunk))
        await writer.drain()
    await writer.drain()


async def copy_with_counter(
    reader: asyncio.StreamReader, writer: asyncio.StreamWriter, buffer_size: int
) -> int:
    """Copy ``reader`` into ``writer`` in chunks of at most ``buffer_size``; return bytes written."""
    counter = TrafficCounter()
    await _pump(reader, writer, buffer_size, None, counter.add)
    return counter.load()


async def copy_with_traffic_counters(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    counter_in: TrafficCounter,
    counter_out: TrafficCounter,
    buffer_size: int,
) -> None:
    """Copy like copy_with_counter, adding bytes read to ``counter_in`` and written to ``counter_out``."""
    await _pump(reader, writer, buffer_size, counter_in.add, counter_out.add)


async def _race(*coros: Awaitable[None]) -> None:
    """Run the coroutines until the first finishes, then cancel the rest; errors are dropped."""
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                log.debug("relay direction ended with error: %s", result)


async def _close(*writers: asyncio.StreamWriter) -> None:
    for writer in writers:
        with contextlib.suppress(Exception):
            writer.close()
            await writer.wait_closed()


async def relay(
    inbound: StreamPair, outbound: StreamPair, relay_buffer_size: int
) -> tuple[int, int]:
    """Relay both ways until one direction ends; return ``(downloaded, uploaded)`` byte counts."""
    inbound_r, inbound_w = inbound
    outbound_r, outbound_w = outbound
    size = LW_BUFFER_SIZE * relay_buffer_size
    down = TrafficCounter()
    up = TrafficCounter()
    try:
        await _race(
            _pump(outbound_r, inbound_w, size, None, down.add),
            _pump(inbound_r, outbound_w, size, None, up.add),
        )
    finally:
        await _close(inbound_w, outbound_w)
    log.info("downloaded bytes:%d, uploaded bytes:%d", down.load(), up.load())
    return down.load(), up.load()


async def relay_with_counters(
    inbound: StreamPair,
    outbound: StreamPair,
    inbound_up: TrafficCounter,
    inbound_down: TrafficCounter,
    outbound_up: TrafficCounter,
    outbound_down: TrafficCounter,
    relay_buffer_size: int,
) -> None:
    """Relay both ways until one direction ends, feeding the four shared traffic counters."""
    inbound_r, inbound_w = inbound
    outbound_r, outbound_w = outbound
    size = LW_BUFFER_SIZE * relay_buffer_size
    try:
        await _race(
            _pump(outbound_r, inbound_w, size, outbound_down.add, inbound_down.add),
            _pump(inbound_r, outbound_w, size, inbound_up.add, outbound_up.add),
        )
    finally:
        await _close(inbound_w, outbound_w)
    log.debug(
        "api atomic counter downloaded bytes:%d, uploaded bytes:%d",
        inbound_down.load(),
        inbound_up.load(),
    )