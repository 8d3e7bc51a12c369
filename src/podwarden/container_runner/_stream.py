"""Stdout stream handling — sentinel framing, rate-limit latch, ordered delivery.

Provides:
  - OutputStreamParser — extracts START…END payloads from arbitrary chunks
  - RateLimitDetector — one-shot latch on rate-limit phrases
  - OrderedDelivery — bounded queue drained by a single callback consumer
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable

from podwarden.config import Settings
from podwarden.logger import logger
from podwarden.types import ContainerOutput

OnOutput = Callable[[ContainerOutput], Awaitable[None]]

# The reset notice ends in ")", so it sits outside the trailing word boundary
RATE_LIMIT_PATTERN = re.compile(
    r"\b(?:429|rate.?limit|too many requests|quota exceeded|usage limit|hit your limit"
    r"|hit .+ limit)\b|\bresets \d+\w+\s*\(UTC\)",
    re.IGNORECASE,
)


class OutputStreamParser:
    """Incremental parser for the sentinel-delimited stdout protocol.

    Chunk boundaries may fall anywhere, including inside a marker. Text
    outside a marker pair is discarded; an incomplete pair stays buffered
    until the next ``feed``.
    """

    def __init__(
        self,
        start_marker: str = Settings.OUTPUT_START_MARKER,
        end_marker: str = Settings.OUTPUT_END_MARKER,
    ) -> None:
        self.start_marker = start_marker
        self.end_marker = end_marker
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, text: str) -> list[str]:
        """Append a chunk and return every complete payload (stripped) in order."""
        self._buffer += text
        payloads: list[str] = []
        while True:
            start_idx = self._buffer.find(self.start_marker)
            if start_idx == -1:
                # Only a partial start marker at the tail can still matter
                keep = len(self.start_marker) - 1
                self._buffer = self._buffer[max(0, len(self._buffer) - keep) :]
                break
            end_idx = self._buffer.find(self.end_marker, start_idx)
            if end_idx == -1:
                self._buffer = self._buffer[start_idx:]  # Incomplete pair, wait for more data
                break

            payloads.append(self._buffer[start_idx + len(self.start_marker) : end_idx].strip())
            self._buffer = self._buffer[end_idx + len(self.end_marker) :]
        return payloads


class RateLimitDetector:
    """Latches once any inspected chunk matches a rate-limit phrase.

    Disabled detectors never latch (fallback runs cannot trigger another
    fallback).
    """

    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self.detected = False

    def inspect(self, text: str, *, source: str, group: str) -> bool:
        if not self.enabled or self.detected:
            return self.detected
        match = RATE_LIMIT_PATTERN.search(text)
        if match:
            self.detected = True
            logger.warning(
                "Rate limit detected in container output",
                group=group,
                source=source,
                match=match.group(0),
            )
        return self.detected


_DONE = object()


class OrderedDelivery:
    """Serialises output callbacks.

    A single consumer task awaits the callback for each unit before taking
    the next one, so units are delivered strictly in parse order and at most
    one callback is in flight. ``put`` blocks once ``maxsize`` units are
    waiting, which backpressures the stdout reader.
    """

    def __init__(self, on_output: OnOutput, group: str, maxsize: int = 64) -> None:
        self._on_output = on_output
        self._group = group
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._consumer = asyncio.create_task(self._consume())
        self.delivered = 0

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _DONE:
                return
            assert isinstance(item, ContainerOutput)
            try:
                await self._on_output(item)
            except Exception as exc:
                logger.error(
                    "Output callback failed",
                    group=self._group,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            self.delivered += 1

    async def put(self, output: ContainerOutput) -> None:
        await self._queue.put(output)

    async def drain(self) -> None:
        """Wait until every queued unit has been handed to the callback."""
        await self._queue.put(_DONE)
        await self._consumer
