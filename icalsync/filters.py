from __future__ import annotations

import logging
import re
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Sequence

from icalsync.batching import PARSE_YIELD_BATCH_SIZE, checkpoint
from icalsync.models import NormalizedEvent


logger = logging.getLogger(__name__)


def should_exclude_event(title: str, patterns: Sequence[re.Pattern[str]]) -> bool:
    if not title or not patterns:
        return False
    return any(pattern.search(title) for pattern in patterns)


async def filter_excluded_events(
    events: Sequence[NormalizedEvent],
    patterns: Sequence[re.Pattern[str]],
    yield_every: int = PARSE_YIELD_BATCH_SIZE,
) -> list[NormalizedEvent]:
    if not patterns:
        return list(events)
    kept: list[NormalizedEvent] = []
    for index, event in enumerate(events, start=1):
        if should_exclude_event(event.title, patterns):
            logger.debug("Event excluded by title pattern: %r (%s)", event.title, event.identity)
        else:
            kept.append(event)
        if yield_every > 0 and index % yield_every == 0:
            await checkpoint()
    return kept


def date_window(
    days_past: int,
    days_future: int,
    now: datetime | None = None,
    tz: tzinfo = timezone.utc,
) -> tuple[datetime, datetime]:
    """Half-open ``[start, end)`` window around the start of today in ``tz``."""
    current = now.astimezone(tz) if now is not None else datetime.now(tz)
    start_of_today = datetime.combine(current.date(), time.min, tzinfo=tz)
    return (
        start_of_today - timedelta(days=max(0, days_past)),
        start_of_today + timedelta(days=max(0, days_future) + 1),
    )


def is_event_in_window(event: NormalizedEvent, window: tuple[datetime, datetime]) -> bool:
    effective = event.effective_date
    if effective is None:
        return False
    start, end = window
    return start <= effective < end


async def filter_events_by_date_window(
    events: Sequence[NormalizedEvent],
    days_past: int,
    days_future: int,
    now: datetime | None = None,
    tz: tzinfo = timezone.utc,
    yield_every: int = PARSE_YIELD_BATCH_SIZE,
) -> list[NormalizedEvent]:
    window = date_window(days_past, days_future, now=now, tz=tz)
    kept: list[NormalizedEvent] = []
    for index, event in enumerate(events, start=1):
        if is_event_in_window(event, window):
            kept.append(event)
        if yield_every > 0 and index % yield_every == 0:
            await checkpoint()
    if len(kept) != len(events):
        logger.debug(
            "Date window %s..%s kept %s of %s events",
            window[0].isoformat(),
            window[1].isoformat(),
            len(kept),
            len(events),
        )
    return kept
