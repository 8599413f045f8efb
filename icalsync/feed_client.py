from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import timezone, tzinfo
from typing import Callable, Optional

import requests

from icalsync.batching import checkpoint
from icalsync.models import CalendarSource, FeedCalendar, NormalizedEvent
from icalsync.naming import hash_content
from icalsync.normalizer import ParseStats, parse_ical_content


logger = logging.getLogger(__name__)

PROXY_ENV_VAR = "ICALSYNC_PROXY_URL"
DEFAULT_TIMEOUT_SECONDS = 10


class FeedFetchError(Exception):
    """Transport failure or non-2xx response while fetching a feed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProxyUnavailableError(RuntimeError):
    """No forwarding proxy address is available from the host."""


@dataclass
class FeedCacheEntry:
    url: str
    content_hash: str
    last_fetched: float
    etag: Optional[str] = None
    last_modified: Optional[str] = None


@dataclass
class FetchResult:
    content: str
    changed: bool
    served_from_cache: bool
    etag: Optional[str] = None
    last_modified: Optional[str] = None


@dataclass
class FetchStats:
    total: int = 0
    changed: int = 0
    cached: int = 0
    failed: int = 0


@dataclass
class CachedCalendar:
    """A feed's parsed events together with what they were parsed under."""

    name: str
    events: list[NormalizedEvent]
    tz: tzinfo


class FeedCache:
    """Per-URL conditional-request state and the last parse of each feed.

    Lives for the lifetime of the process; nothing is persisted.
    """

    def __init__(self) -> None:
        self.entries: dict[str, FeedCacheEntry] = {}
        self.calendars: dict[str, CachedCalendar] = {}

    def forget(self, url: str) -> None:
        self.entries.pop(url, None)
        self.calendars.pop(url, None)

    def clear(self) -> None:
        self.entries.clear()
        self.calendars.clear()
        logger.debug("Feed cache cleared")

    def stats(self) -> dict[str, object]:
        return {"size": len(self.entries), "entries": sorted(self.entries)}


def env_proxy_url() -> Optional[str]:
    return os.getenv(PROXY_ENV_VAR) or None


def build_proxied_url(proxy_url: str, target_url: str) -> str:
    return f"{proxy_url.rstrip('/')}/{target_url}"


class FeedClient:
    def __init__(
        self,
        proxy_url_provider: Callable[[], Optional[str]] = env_proxy_url,
        cache: Optional[FeedCache] = None,
        session: Optional[requests.Session] = None,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        tz: tzinfo = timezone.utc,
    ) -> None:
        self.proxy_url_provider = proxy_url_provider
        self.cache = cache if cache is not None else FeedCache()
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds
        self.tz = tz

    def _proxy_url(self) -> str:
        proxy_url = self.proxy_url_provider()
        if not proxy_url:
            raise ProxyUnavailableError(
                f"Forwarding proxy URL not available. Set network.proxy_url or {PROXY_ENV_VAR}."
            )
        return proxy_url

    def _get(self, url: str, headers: dict[str, str]) -> requests.Response:
        try:
            return self.session.get(url, headers=headers, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise FeedFetchError(f"Request failed: {exc}") from exc

    async def fetch(self, source: CalendarSource, force_refresh: bool = False) -> FetchResult:
        url = source.feed_url
        proxied_url = build_proxied_url(self._proxy_url(), url)
        entry = self.cache.entries.get(url)

        headers: dict[str, str] = {}
        if not force_refresh and entry is not None:
            if entry.etag:
                headers["If-None-Match"] = entry.etag
            if entry.last_modified:
                headers["If-Modified-Since"] = entry.last_modified
        logger.debug("Fetching %s via proxy (cached=%s, force=%s)", url, entry is not None, force_refresh)

        await checkpoint()
        response = await asyncio.to_thread(self._get, proxied_url, headers)
        await checkpoint()

        if response.status_code == 304 and entry is not None:
            entry.last_fetched = time.time()
            logger.info("Calendar unchanged (304): %s", url)
            return FetchResult(
                content="",
                changed=False,
                served_from_cache=True,
                etag=entry.etag,
                last_modified=entry.last_modified,
            )
        if not 200 <= response.status_code < 300:
            raise FeedFetchError(f"HTTP {response.status_code}: {response.reason}", status_code=response.status_code)

        if "charset" not in response.headers.get("Content-Type", "").lower():
            response.encoding = "utf-8"
        text = response.text
        etag = response.headers.get("ETag")
        last_modified = response.headers.get("Last-Modified")
        content_hash = hash_content(text)
        changed = entry is None or entry.content_hash != content_hash
        if changed:
            logger.debug(
                "Content changed for %s (%s -> %s)", url, entry.content_hash if entry else None, content_hash
            )
        else:
            logger.info("Calendar unchanged (hash match): %s", url)

        self.cache.entries[url] = FeedCacheEntry(
            url=url,
            content_hash=content_hash,
            last_fetched=time.time(),
            etag=etag,
            last_modified=last_modified,
        )
        return FetchResult(
            content=text,
            changed=changed,
            served_from_cache=False,
            etag=etag,
            last_modified=last_modified,
        )

    async def fetch_calendar(self, source: CalendarSource, force_refresh: bool = False) -> FeedCalendar:
        url = source.feed_url
        parsed = self.cache.calendars.get(url)
        if parsed is not None and parsed.tz != self.tz:
            # Event times are resolved at parse time, so a new timezone needs the raw feed again.
            logger.info("Timezone changed for %r, refetching", source.display_name)
            self.cache.forget(url)
            parsed = None

        # Without a parse to fall back on, a 304 would leave nothing to return.
        result = await self.fetch(source, force_refresh=force_refresh or parsed is None)
        if not result.changed and parsed is not None:
            logger.debug("Reusing %s parsed events for %r", len(parsed.events), parsed.name)
            return FeedCalendar(
                source=source,
                name=parsed.name,
                events=list(parsed.events),
                changed=False,
                cached=result.served_from_cache,
            )

        await checkpoint()
        stats = ParseStats()
        events = await parse_ical_content(result.content, source.display_name, tz=self.tz, stats=stats)
        if stats.feed_failed:
            # Forget the hash so the next run re-parses instead of trusting an empty cache.
            self.cache.forget(url)
            raise FeedFetchError(f"Unreadable calendar content from {source.display_name!r}")
        self.cache.calendars[url] = CachedCalendar(name=stats.calendar_name, events=events, tz=self.tz)
        return FeedCalendar(source=source, name=stats.calendar_name, events=events, changed=True, cached=False)

    async def fetch_all(
        self, sources: list[CalendarSource], force_refresh: bool = False
    ) -> tuple[list[FeedCalendar], FetchStats]:
        """Fetch sources one after another; a failing source is counted and skipped."""
        stats = FetchStats(total=len(sources))
        calendars: list[FeedCalendar] = []
        for source in sources:
            try:
                calendar = await self.fetch_calendar(source, force_refresh=force_refresh)
            except ProxyUnavailableError:
                raise
            except Exception as exc:
                stats.failed += 1
                logger.warning("Calendar fetch failed for %r: %s", source.display_name, exc)
                continue
            calendars.append(calendar)
            if calendar.changed:
                stats.changed += 1
            if calendar.cached:
                stats.cached += 1
            await checkpoint()
        logger.debug(
            "Fetched %s calendars (changed=%s cached=%s failed=%s)",
            stats.total,
            stats.changed,
            stats.cached,
            stats.failed,
        )
        return calendars, stats
