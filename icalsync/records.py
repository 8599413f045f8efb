from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from icalsync.models import NormalizedEvent
from icalsync.naming import sanitize_display_name


ICAL_ID_PROPERTY = "ical-id"
ICAL_DESC_PROPERTY = "ical-desc"
ICAL_LOCATION_PROPERTY = "ical-location"
ICAL_MEETING_URL_PROPERTY = "ical-meeting-url"
ICAL_URL_PROPERTY = "ical-url"
ICAL_END_PROPERTY = "ical-end"

NO_DATE_TEXT = "No date"
UNTITLED_TEXT = "Untitled event"

MONTH_NAMES = [
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
]

ICAL_ID_PATTERN = re.compile(rf"^{re.escape(ICAL_ID_PROPERTY)}::\s*(.+)$", re.IGNORECASE | re.MULTILINE)
PROPERTY_KEY_PATTERN = re.compile(r"^([\w-]+)::")
LINE_BREAKS_PATTERN = re.compile(r"[\r\n]+")


@dataclass
class RecordBlock:
    """A block to write: root text plus nested children."""

    text: str
    children: list["RecordBlock"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "children": [child.to_dict() for child in self.children]}


def ordinal_suffix(day: int) -> str:
    if 11 <= day % 100 <= 13:
        return "th"
    return {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")


def format_date(value: datetime) -> str:
    return f"{MONTH_NAMES[value.month - 1]} {value.day}{ordinal_suffix(value.day)}, {value.year}"


def safe_text(value: Optional[str]) -> str:
    if not value:
        return ""
    return LINE_BREAKS_PATTERN.sub(" ", value).strip()


def property_block(key: str, value: str) -> RecordBlock:
    return RecordBlock(text=f"{key}:: {value}")


def extract_ical_id(text: Optional[str]) -> Optional[str]:
    match = ICAL_ID_PATTERN.search(text or "")
    return match.group(1).strip() if match else None


def extract_ical_id_from_node(text: Optional[str], children: list[Any] | None = None) -> Optional[str]:
    """Find the ``ical-id`` in a root text, falling back to its children.

    ``children`` may hold store nodes or record blocks; only ``.text`` is read.
    """
    found = extract_ical_id(text)
    if found:
        return found
    for child in children or []:
        found = extract_ical_id(getattr(child, "text", ""))
        if found:
            return found
    return None


def extract_property_key(text: Optional[str]) -> Optional[str]:
    match = PROPERTY_KEY_PATTERN.match(text or "")
    return match.group(1) if match else None


def build_event_record(event: NormalizedEvent, calendar_name: str, title_prefix: str) -> RecordBlock:
    date_text = format_date(event.start) if event.start is not None else NO_DATE_TEXT
    title = safe_text(event.title) or UNTITLED_TEXT
    root_text = f"[[{date_text}]] {title} #{sanitize_display_name(calendar_name)}"
    if title_prefix and title_prefix.strip():
        root_text = f"{title_prefix.strip()} {root_text}"

    children = [property_block(ICAL_ID_PROPERTY, event.identity)]
    description = safe_text(event.description)
    if description:
        children.append(property_block(ICAL_DESC_PROPERTY, description))
    location = safe_text(event.location)
    if location:
        children.append(property_block(ICAL_LOCATION_PROPERTY, location))
    if event.meeting_url:
        children.append(property_block(ICAL_MEETING_URL_PROPERTY, f"[**JOIN MEETING**]({event.meeting_url})"))
    if event.primary_url:
        children.append(property_block(ICAL_URL_PROPERTY, f"[link]({event.primary_url})"))
    if event.end is not None:
        end_text = format_date(event.end)
        if end_text != date_text:
            children.append(property_block(ICAL_END_PROPERTY, f"[[{end_text}]]"))
    return RecordBlock(text=root_text, children=children)
