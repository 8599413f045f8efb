from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Optional

from icalendar import Calendar as ICalendar

from icalsync.batching import PARSE_YIELD_BATCH_SIZE, checkpoint
from icalsync.models import Attendee, NormalizedEvent, to_aware


logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_NAME = "Calendar"
MAILTO_PATTERN = re.compile(r"^mailto:", re.IGNORECASE)

# Ordered: the first service whose pattern matches wins.
MEETING_URL_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("Zoom", re.compile(r"https://(?:[\w-]+\.)?zoom\.us/(?:j|my|s|wc)/[a-zA-Z0-9]+(?:\?[a-zA-Z0-9=&_-]+)?", re.I)),
    ("Google Meet", re.compile(r"https://meet\.google\.com/[a-z]{3}-[a-z]{4}-[a-z]{3}", re.I)),
    (
        "Microsoft Teams",
        re.compile(r"https://teams\.(?:microsoft|live)\.com/(?:l/meetup-join|meet)/[a-zA-Z0-9%._/-]+", re.I),
    ),
    ("Webex", re.compile(r"https://(?:[\w-]+\.)?webex\.com/(?:meet|join|m|wbxmjs)/[a-zA-Z0-9./_-]+", re.I)),
    ("GoToMeeting", re.compile(r"https://(?:global\.gotomeeting\.com/join|gotomeet\.me)/[0-9]+", re.I)),
    ("Whereby", re.compile(r"https://whereby\.com/[a-zA-Z0-9_-]+", re.I)),
    ("Jitsi", re.compile(r"https://(?:meet\.jit\.si|8x8\.vc|[\w-]+\.jitsi\.net)/[a-zA-Z0-9_-]+", re.I)),
    ("Discord", re.compile(r"https://discord\.(?:gg|com/invite)/[a-zA-Z0-9]+", re.I)),
    ("Slack", re.compile(r"https://[\w-]+\.slack\.com/(?:huddle|call)/[a-zA-Z0-9./_-]+", re.I)),
    ("Amazon Chime", re.compile(r"https://(?:chime\.aws|app\.chime\.aws)/meetings/[a-zA-Z0-9-]+", re.I)),
    ("BlueJeans", re.compile(r"https://(?:[\w-]+\.)?bluejeans\.com/[0-9]+(?:/[a-zA-Z0-9]+)?", re.I)),
    ("RingCentral", re.compile(r"https://(?:[\w-]+\.)?ringcentral\.com/(?:j|join)/[0-9]+", re.I)),
    ("Loom", re.compile(r"https://www\.loom\.com/share/[a-zA-Z0-9]+", re.I)),
    ("Around", re.compile(r"https://meet\.around\.co/r/[a-zA-Z0-9_-]+", re.I)),
    ("Skype", re.compile(r"https://(?:join\.skype\.com|meet\.lync\.com)/[a-zA-Z0-9./_-]+", re.I)),
    ("Gather", re.compile(r"https://(?:gather\.town|app\.gather\.town)/app/[a-zA-Z0-9./_-]+", re.I)),
    ("Tuple", re.compile(r"https://tuple\.app/[a-zA-Z0-9./_-]+", re.I)),
    ("Pop", re.compile(r"https://pop\.com/[a-zA-Z0-9_-]+", re.I)),
    ("Riverside", re.compile(r"https://riverside\.fm/studio/[a-zA-Z0-9_-]+", re.I)),
    ("StreamYard", re.compile(r"https://streamyard\.com/[a-zA-Z0-9]+", re.I)),
]


@dataclass(frozen=True)
class MeetingLink:
    url: str
    service: str


@dataclass
class ParseStats:
    """Failures recorded while parsing one feed."""

    events_found: int = 0
    event_failures: int = 0
    feed_failed: bool = False
    calendar_name: str = ""


def extract_meeting_link(text: Optional[str]) -> Optional[MeetingLink]:
    if not text:
        return None
    for service, pattern in MEETING_URL_PATTERNS:
        match = pattern.search(text)
        if match:
            return MeetingLink(url=match.group(0), service=service)
    return None


def _text(component: Any, name: str) -> str:
    value = component.get(name)
    if value is None:
        return ""
    if isinstance(value, list):
        value = value[0] if value else ""
    return str(value).strip()


def _decoded_time(component: Any, name: str, tz: tzinfo) -> Optional[datetime]:
    if component.get(name) is None:
        return None
    try:
        value = component.decoded(name)
    except (KeyError, ValueError, TypeError):
        return None
    if not isinstance(value, (datetime, date)):
        return None
    return to_aware(value, tz)


def _decoded_duration(component: Any) -> Optional[timedelta]:
    if component.get("DURATION") is None:
        return None
    try:
        value = component.decoded("DURATION")
    except (KeyError, ValueError, TypeError):
        return None
    return value if isinstance(value, timedelta) else None


def _extract_attendees(component: Any) -> tuple[Attendee, ...]:
    raw = component.get("ATTENDEE")
    if raw is None:
        return ()
    entries = raw if isinstance(raw, list) else [raw]
    attendees: list[Attendee] = []
    for entry in entries:
        params = getattr(entry, "params", {}) or {}
        display_name = str(params.get("CN", "") or "").strip()
        address = MAILTO_PATTERN.sub("", str(entry or "").strip())
        if not display_name and not address:
            continue
        attendees.append(Attendee(display_name=display_name, address=address))
    return tuple(attendees)


def normalize_vevent(component: Any, tz: tzinfo = timezone.utc) -> Optional[NormalizedEvent]:
    identity = _text(component, "UID")
    if not identity:
        return None
    location = _text(component, "LOCATION")
    description = _text(component, "DESCRIPTION")
    url = _text(component, "URL")
    meeting = extract_meeting_link(location) or extract_meeting_link(description) or extract_meeting_link(url)

    start = _decoded_time(component, "DTSTART", tz)
    end = _decoded_time(component, "DTEND", tz)
    if end is None and start is not None:
        duration = _decoded_duration(component)
        if duration is not None:
            end = start + duration

    return NormalizedEvent(
        identity=identity,
        title=_text(component, "SUMMARY"),
        description=description,
        location=location,
        primary_url=url,
        meeting_url=meeting.url if meeting else None,
        meeting_service=meeting.service if meeting else None,
        start=start,
        end=end,
        attendees=_extract_attendees(component),
    )


async def parse_ical_content(
    content: str | bytes,
    calendar_name: str = "",
    tz: tzinfo = timezone.utc,
    stats: Optional[ParseStats] = None,
) -> list[NormalizedEvent]:
    """Parse raw feed content into normalized events.

    Never raises for bad input: an unreadable feed yields ``[]`` and a
    broken VEVENT is skipped. Both are counted in ``stats`` when given.
    """
    stats = stats if stats is not None else ParseStats()
    events: list[NormalizedEvent] = []

    await checkpoint()
    try:
        calendar_obj = ICalendar.from_ical(content)
    except Exception as exc:
        stats.feed_failed = True
        logger.error("Failed to parse iCal content for %r: %s", calendar_name or DEFAULT_CALENDAR_NAME, exc)
        return events
    await checkpoint()

    stats.calendar_name = calendar_name or _text(calendar_obj, "X-WR-CALNAME") or DEFAULT_CALENDAR_NAME
    vevents = list(calendar_obj.walk("VEVENT"))
    for index, vevent in enumerate(vevents, start=1):
        try:
            event = normalize_vevent(vevent, tz)
        except Exception as exc:
            stats.event_failures += 1
            logger.debug("Skipping unparseable VEVENT #%s in %r: %s", index, stats.calendar_name, exc)
            event = None
        if event is not None:
            events.append(event)
        if index % PARSE_YIELD_BATCH_SIZE == 0:
            await checkpoint()

    stats.events_found = len(events)
    logger.debug("Parsed %s events from %r", len(events), stats.calendar_name)
    return events
