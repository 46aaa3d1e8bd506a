#!/usr/bin/env python3
"""Scrape the RSF group-fitness schedule from the Mindbody class widget."""

from __future__ import annotations

import argparse
import datetime as dt
import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from bs4 import BeautifulSoup, Tag
from zoneinfo import ZoneInfo

from ttl_cache import TTLCache
from upstream import DEFAULT_TIMEOUT, MalformedUpstreamPayload, fetch_json

logger = logging.getLogger(__name__)

MBO_BASE_URL = "https://widgets.mindbodyonline.com"
DEFAULT_WIDGET_ID = "3262"
PACIFIC_TIMEZONE = "America/Los_Angeles"
DEFAULT_LOCATION = "UC Berkeley Rec Sports"
DEFAULT_OUTPUT = Path("classes.json")
DEFAULT_TTL_SECONDS = 300.0

SCHEDULE_DATA_RE = re.compile(r"scheduleData\s*=\s*(\{.*?\})\s*;?\s*$", re.MULTILINE | re.DOTALL)
CANCELED_ENTRY_RE = re.compile(r'"(\d+)"\s*:\s*\{[^}]*"isCanceled"\s*:\s*(true|false)')
DATE_CLASS_RE = re.compile(r"date-(\d{4}-\d{2}-\d{2})")
ROOM_PREFIX_RE = re.compile(r"Room:", re.IGNORECASE)


def pacific_today() -> str:
    """Today's date in the facility timezone as YYYY-MM-DD."""
    return dt.datetime.now(ZoneInfo(PACIFIC_TIMEZONE)).date().isoformat()


class MindbodyClient:
    """Fetches the widget's load_markup payload for a start date."""

    def __init__(
        self,
        widget_id: str = DEFAULT_WIDGET_ID,
        base_url: str = MBO_BASE_URL,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.widget_id = widget_id
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.cancel_event = cancel_event

    @classmethod
    def from_env(
        cls, session: Optional[requests.Session] = None, cancel_event: Optional[threading.Event] = None
    ) -> "MindbodyClient":
        return cls(
            widget_id=os.getenv("MBO_WIDGET_ID", DEFAULT_WIDGET_ID),
            base_url=os.getenv("MBO_BASE_URL", MBO_BASE_URL),
            session=session,
            cancel_event=cancel_event,
        )

    def fetch_markup(self, start_date: str) -> Any:
        url = f"{self.base_url}/widgets/schedules/{self.widget_id}/load_markup"
        return fetch_json(
            self.session,
            "Mindbody",
            url,
            params={"options[start_date]": start_date},
            timeout=self.timeout,
            cancel_event=self.cancel_event,
        )


def extract_cancellation_map(html: str) -> Dict[str, bool]:
    """Pull ``{class_id: isCanceled}`` pairs out of the embedded scheduleData blob.

    The blob is scanned with regexes rather than parsed, so truncated or
    slightly invalid JSON still yields whatever pairs are readable. Any
    anomaly results in an empty map.
    """
    try:
        match = SCHEDULE_DATA_RE.search(html)
        if not match:
            return {}
        return {
            class_id: flag == "true"
            for class_id, flag in CANCELED_ENTRY_RE.findall(match.group(1))
        }
    except (TypeError, re.error) as exc:
        logger.warning("Could not parse schedule data blob: %s", exc)
        return {}


def clean_text(element: Optional[Tag]) -> str:
    """Whitespace-collapsed text for a tag, or an empty string."""
    if element is None:
        return ""
    return " ".join(element.get_text(" ").split())


def _select_text(parent: Tag, selector: str) -> str:
    return " ".join(clean_text(el) for el in parent.select(selector)).strip()


def _time_attr(session_el: Tag, selector: str) -> Optional[str]:
    time_el = session_el.select_one(selector)
    if time_el is None:
        return None
    return time_el.get("datetime") or None


def is_session_cancelled(session_el: Tag, cancellation_map: Dict[str, bool]) -> bool:
    """Prefer the scheduleData flag; fall back to the visible canceled marker."""
    class_id = session_el.get("data-bw-widget-mbo-class-id")
    if class_id and class_id in cancellation_map:
        return cancellation_map[class_id]

    markers = session_el.select(".bw-session__canceled")
    return bool(markers) and "cancel" in _select_text(session_el, ".bw-session__canceled").lower()


def parse_session(session_el: Tag, cancellation_map: Dict[str, bool]) -> Dict[str, Any]:
    """Convert one ``.bw-session`` element into a session dictionary."""
    description = clean_text(session_el.select_one(".bw-session__description"))
    location = ROOM_PREFIX_RE.sub("", _select_text(session_el, ".bw-session__room")).strip()

    return {
        "id": session_el.get("id"),
        "name": _select_text(session_el, ".bw-session__name"),
        "category": _select_text(session_el, ".bw-session__type"),
        "instructor": _select_text(session_el, ".bw-session__staff"),
        "startTimeLocal": _time_attr(session_el, "time.hc_starttime"),
        "endTimeLocal": _time_attr(session_el, "time.hc_endtime"),
        "timeZone": PACIFIC_TIMEZONE,
        "location": location or DEFAULT_LOCATION,
        "description": description,
        "isCancelled": is_session_cancelled(session_el, cancellation_map),
    }


def parse_day(day_el: Tag, cancellation_map: Dict[str, bool]) -> Optional[Dict[str, Any]]:
    """Parse a ``.bw-widget__day`` container; None when it carries no date."""
    date_el = day_el.select_one(".bw-widget__date")
    if date_el is None:
        return None
    match = DATE_CLASS_RE.search(" ".join(date_el.get("class", [])))
    if not match:
        return None

    return {
        "date": match.group(1),
        "label": clean_text(date_el),
        "sessions": [parse_session(el, cancellation_map) for el in day_el.select(".bw-session")],
    }


def parse_sessions(html: str, cancellation_map: Optional[Dict[str, bool]] = None) -> List[Dict[str, Any]]:
    """Parse widget markup into an ordered list of class days."""
    soup = BeautifulSoup(html, "html.parser")
    days = []
    for day_el in soup.select(".bw-widget__day"):
        day = parse_day(day_el, cancellation_map or {})
        if day is not None:
            days.append(day)
    return days


def load_schedule(client: MindbodyClient, start_date: str) -> Dict[str, Any]:
    """Fetch and parse the schedule starting at ``start_date``."""
    empty = {"startDate": start_date, "days": []}
    try:
        payload = client.fetch_markup(start_date)
    except MalformedUpstreamPayload as exc:
        logger.warning("Ignoring unusable class markup for %s: %s", start_date, exc)
        return empty

    html = None
    if isinstance(payload, dict):
        html = payload.get("class_sessions") or payload.get("contents")
    if not html or not isinstance(html, str):
        logger.info("No class markup returned for %s", start_date)
        return empty

    cancellation_map = extract_cancellation_map(html)
    return {"startDate": start_date, "days": parse_sessions(html, cancellation_map)}


class ScheduleService:
    """Per-start-date cached schedule lookups."""

    def __init__(self, client: MindbodyClient, cache: TTLCache, ttl: float = DEFAULT_TTL_SECONDS) -> None:
        self.client = client
        self.cache = cache
        self.ttl = ttl

    def load_schedule(self, start_date: str) -> Dict[str, Any]:
        return self.cache.get_or_load(
            f"classes:{start_date}",
            self.ttl,
            lambda: load_schedule(self.client, start_date),
        )


def parse_start_date(value: str) -> str:
    """Validate a YYYY-MM-DD string for argparse."""
    try:
        return dt.date.fromisoformat(value).isoformat()
    except ValueError:
        raise argparse.ArgumentTypeError("Dates must be in YYYY-MM-DD format") from None


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Scrape the RSF group-fitness class schedule into JSON."
    )
    parser.add_argument(
        "--start-date",
        type=parse_start_date,
        default=None,
        help="First day of the schedule in YYYY-MM-DD (default: today, Pacific time).",
    )
    parser.add_argument(
        "--widget-id",
        default=os.getenv("MBO_WIDGET_ID", DEFAULT_WIDGET_ID),
        help=f"Mindbody schedule widget id (default: {DEFAULT_WIDGET_ID}).",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=DEFAULT_OUTPUT,
        help=f"Where to write the JSON output (default: {DEFAULT_OUTPUT}).",
    )
    args = parser.parse_args()

    start_date = args.start_date or pacific_today()
    schedule = load_schedule(MindbodyClient(widget_id=args.widget_id), start_date)
    args.output.write_text(json.dumps(schedule, indent=2))
    session_count = sum(len(day["sessions"]) for day in schedule["days"])
    print(
        f"Saved {session_count} sessions across {len(schedule['days'])} days "
        f"starting {start_date} to {args.output}"
    )


if __name__ == "__main__":
    main()
