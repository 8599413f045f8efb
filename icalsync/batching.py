"""Cooperative scheduling helpers shared by the parse, filter and write loops.

Everything here runs on a single event loop. ``checkpoint`` hands control
back to the loop so other tasks (the admin API, timers) stay responsive
while a long scan is in progress.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterator, Optional, Sequence, TypeVar

from icalsync.models import NormalizedEvent


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Items processed between checkpoints in parse/filter loops.
PARSE_YIELD_BATCH_SIZE = 50
# Store mutations issued between checkpoints.
MUTATION_YIELD_BATCH_SIZE = 3

ProgressCallback = Callable[[int, int], None]


async def checkpoint() -> None:
    # sleep(0) is asyncio's bare yield: the task suspends and is rescheduled
    # behind every callback already queued on the loop.
    await asyncio.sleep(0)


async def maybe_yield(count: int, every: int = MUTATION_YIELD_BATCH_SIZE) -> None:
    if every > 0 and count % every == 0:
        await checkpoint()


async def delay_ms(milliseconds: int) -> None:
    if milliseconds > 0:
        await asyncio.sleep(milliseconds / 1000)


def sort_events_by_date_descending(events: Sequence[T], key: Callable[[T], NormalizedEvent] | None = None) -> list[T]:
    """Return a new list, most recent (or furthest future) first.

    Undated events go last; ``sorted`` is stable so their relative order
    is kept.
    """

    def _event(item: T) -> NormalizedEvent:
        return key(item) if key is not None else item  # type: ignore[return-value]

    dated = [item for item in events if _event(item).effective_date is not None]
    undated = [item for item in events if _event(item).effective_date is None]
    dated = sorted(dated, key=lambda item: _event(item).effective_date, reverse=True)
    return dated + undated


def iter_batches(items: Sequence[T], batch_size: int) -> Iterator[list[T]]:
    size = max(1, int(batch_size))
    for offset in range(0, len(items), size):
        yield list(items[offset : offset + size])


class BatchRunner:
    """Feeds fixed-size batches to a handler with a pause between them."""

    def __init__(
        self,
        batch_size: int,
        batch_delay_ms: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.batch_size = max(1, int(batch_size))
        self.batch_delay_ms = max(0, int(batch_delay_ms))
        self.on_progress = on_progress

    async def run(self, items: Sequence[T], handler: Callable[[list[T]], Awaitable[None]]) -> int:
        total = len(items)
        processed = 0
        batches = list(iter_batches(items, self.batch_size))
        for number, batch in enumerate(batches, start=1):
            await handler(batch)
            processed += len(batch)
            if self.on_progress is not None:
                self.on_progress(processed, total)
            logger.debug(
                "Batch %s/%s processed (%s events, %s/%s total)",
                number,
                len(batches),
                len(batch),
                processed,
                total,
            )
            if number < len(batches):
                await delay_ms(self.batch_delay_ms)
        return processed
