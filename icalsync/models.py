from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone, tzinfo
from typing import Any
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


logger = logging.getLogger(__name__)

DEFAULT_PAGE_PREFIX = "ical"
DEFAULT_TITLE_PREFIX = "#gcal"
DEFAULT_EXCLUDE_PATTERNS = ["^Busy$"]
DEFAULT_BATCH_SIZE = 50
DEFAULT_BATCH_DELAY_MS = 500
DEFAULT_MUTATION_DELAY_MS = 100
DEFAULT_SYNC_DAYS_PAST = 30
DEFAULT_SYNC_DAYS_FUTURE = 30

INLINE_FLAGS_PATTERN = re.compile(r"\(\?[aiLmsux]+\)")


def resolve_timezone(name: str | None) -> tzinfo:
    text = str(name or "").strip()
    if not text or text.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", text)
        return timezone.utc


def to_aware(value: datetime | date | None, tz: tzinfo) -> datetime | None:
    """Coerce a decoded iCalendar value into an aware datetime in ``tz``.

    Floating times are read as wall-clock time in ``tz``; all-day dates
    become the start of that day.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=tz)
        return value.astimezone(tz)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=tz)
    return None


def is_valid_url(value: str) -> bool:
    try:
        parsed = urlparse(str(value or "").strip())
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


@dataclass(frozen=True)
class Attendee:
    display_name: str = ""
    address: str = ""


@dataclass(frozen=True)
class NormalizedEvent:
    identity: str
    title: str = ""
    description: str = ""
    location: str = ""
    primary_url: str = ""
    meeting_url: str | None = None
    meeting_service: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    attendees: tuple[Attendee, ...] = ()

    @property
    def effective_date(self) -> datetime | None:
        return self.start if self.start is not None else self.end


@dataclass(frozen=True)
class CalendarSource:
    display_name: str
    feed_url: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.display_name, "url": self.feed_url}


@dataclass
class FeedCalendar:
    """Events of one calendar source after fetch and parse."""

    source: CalendarSource
    name: str
    events: list[NormalizedEvent] = field(default_factory=list)
    changed: bool = True
    cached: bool = False


def parse_calendar_line(line: str) -> CalendarSource | None:
    trimmed = str(line or "").strip()
    if not trimmed:
        return None
    if "|" not in trimmed:
        if is_valid_url(trimmed):
            return CalendarSource(display_name=urlparse(trimmed).hostname or trimmed, feed_url=trimmed)
        raise ValueError(f"Invalid calendar URL: {trimmed}")
    name, _, url = trimmed.partition("|")
    name = name.strip()
    url = url.strip()
    if not name or not is_valid_url(url):
        raise ValueError(f"Invalid calendar config line: {trimmed}")
    return CalendarSource(display_name=name, feed_url=url)


def parse_calendar_lines(raw: str | list[Any] | None) -> tuple[list[CalendarSource], list[str]]:
    """Parse ``name|url`` lines (or mappings) into calendar sources.

    Returns the valid sources and one error message per rejected entry.
    """
    if not raw:
        return [], []
    entries: list[Any] = raw.splitlines() if isinstance(raw, str) else list(raw)
    sources: list[CalendarSource] = []
    errors: list[str] = []
    for entry in entries:
        if isinstance(entry, dict):
            name = str(entry.get("name", "")).strip()
            url = str(entry.get("url", "")).strip()
            if not url:
                continue
            if not is_valid_url(url):
                errors.append(f"Invalid calendar URL: {url}")
                continue
            sources.append(CalendarSource(display_name=name or urlparse(url).hostname or url, feed_url=url))
            continue
        try:
            source = parse_calendar_line(str(entry))
        except ValueError as exc:
            errors.append(str(exc))
            continue
        if source is not None:
            sources.append(source)
    for error in errors:
        logger.warning("%s (skipped)", error)
    return sources, errors


def compile_exclude_patterns(raw: str | list[str] | None) -> list[re.Pattern[str]]:
    if not raw:
        return []
    lines = raw.splitlines() if isinstance(raw, str) else [str(x) for x in raw]
    patterns: list[re.Pattern[str]] = []
    for line in lines:
        text = INLINE_FLAGS_PATTERN.sub("", line.strip())
        if not text:
            continue
        try:
            patterns.append(re.compile(text, re.IGNORECASE))
        except re.error:
            logger.warning("Invalid exclude pattern (skipped): %s", text)
    return patterns


def _int_at_least(value: Any, default: int, minimum: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, parsed)


@dataclass
class SyncConfig:
    interval_minutes: int = 30
    days_past: int = DEFAULT_SYNC_DAYS_PAST
    days_future: int = DEFAULT_SYNC_DAYS_FUTURE
    timezone: str = "UTC"
    batch_size: int = DEFAULT_BATCH_SIZE
    batch_delay_ms: int = DEFAULT_BATCH_DELAY_MS
    mutation_delay_ms: int = DEFAULT_MUTATION_DELAY_MS

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_minutes=_int_at_least(data.get("interval_minutes", 30), 30, 1),
            days_past=_int_at_least(data.get("days_past", DEFAULT_SYNC_DAYS_PAST), DEFAULT_SYNC_DAYS_PAST, 0),
            days_future=_int_at_least(
                data.get("days_future", DEFAULT_SYNC_DAYS_FUTURE), DEFAULT_SYNC_DAYS_FUTURE, 0
            ),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            batch_size=_int_at_least(data.get("batch_size", DEFAULT_BATCH_SIZE), DEFAULT_BATCH_SIZE, 1),
            batch_delay_ms=_int_at_least(
                data.get("batch_delay_ms", DEFAULT_BATCH_DELAY_MS), DEFAULT_BATCH_DELAY_MS, 0
            ),
            mutation_delay_ms=_int_at_least(
                data.get("mutation_delay_ms", DEFAULT_MUTATION_DELAY_MS), DEFAULT_MUTATION_DELAY_MS, 0
            ),
        )

    @property
    def interval_seconds(self) -> int:
        return self.interval_minutes * 60


@dataclass
class OutputConfig:
    page_prefix: str = DEFAULT_PAGE_PREFIX
    title_prefix: str = DEFAULT_TITLE_PREFIX

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "OutputConfig":
        data = data or {}
        page_prefix = str(data.get("page_prefix", DEFAULT_PAGE_PREFIX)).strip().strip("/")
        title_prefix = data.get("title_prefix", DEFAULT_TITLE_PREFIX)
        return cls(
            page_prefix=page_prefix or DEFAULT_PAGE_PREFIX,
            title_prefix="" if title_prefix is None else str(title_prefix),
        )


@dataclass
class FilterConfig:
    exclude_title_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FilterConfig":
        data = data or {}
        raw = data.get("exclude_title_patterns", DEFAULT_EXCLUDE_PATTERNS)
        if isinstance(raw, str):
            raw = raw.splitlines()
        return cls(exclude_title_patterns=[str(x).strip() for x in raw or [] if str(x).strip()])

    def compiled(self) -> list[re.Pattern[str]]:
        return compile_exclude_patterns(self.exclude_title_patterns)


@dataclass
class NetworkConfig:
    proxy_url: str = ""
    timeout_seconds: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "NetworkConfig":
        data = data or {}
        return cls(
            proxy_url=str(data.get("proxy_url", "") or "").strip().rstrip("/"),
            timeout_seconds=_int_at_least(data.get("timeout_seconds", 10), 10, 1),
        )


@dataclass
class LoggingConfig:
    debug: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(debug=bool(data.get("debug", False)))


@dataclass
class AppConfig:
    calendars: list[CalendarSource] = field(default_factory=list)
    sync: SyncConfig = field(default_factory=SyncConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    filters: FilterConfig = field(default_factory=FilterConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        calendars, _errors = parse_calendar_lines(data.get("calendars"))
        return cls(
            calendars=calendars,
            sync=SyncConfig.from_dict(data.get("sync")),
            output=OutputConfig.from_dict(data.get("output")),
            filters=FilterConfig.from_dict(data.get("filters")),
            network=NetworkConfig.from_dict(data.get("network")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["calendars"] = [source.to_dict() for source in self.calendars]
        return payload


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    events_synced: int = 0
    calendars_loaded: int = 0
    failed_sources: int = 0
    failed_locations: int = 0
    created: int = 0
    updated: int = 0
    # Property children created or rewritten under records that already existed.
    properties_changed: int = 0
    deleted: int = 0
    duplicates: int = 0
    emptied_locations: int = 0
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def mutations(self) -> int:
        return self.created + self.updated + self.properties_changed + self.deleted

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["run_at"] = self.run_at.isoformat()
        return payload


def default_app_config() -> AppConfig:
    return AppConfig()
