"""Live weight-room occupancy from the Density sensor API.

Two provider resources are consulted: the display (capacity and threshold
text) and the space count (live headcount). The weekly hours table decides
whether a missing answer is expected (closed) or an error (open).
"""

from __future__ import annotations

import datetime as dt
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

import requests

from peak_hours import round_half_up
from snapshots import SnapshotStore
from ttl_cache import TTLCache
from upstream import DEFAULT_TIMEOUT, UpstreamUnavailable, fetch_json

logger = logging.getLogger(__name__)

PACIFIC = ZoneInfo("America/Los_Angeles")
DENSITY_BASE_URL = "https://api.density.io/v2"
DEFAULT_DISPLAY_ID = "dsp_956223069054042646"
DEFAULT_SPACE_ID = "spc_863128347956216317"
CACHE_KEY = "weightroom"
DEFAULT_TTL_SECONDS = 30.0

# 0 = Sunday
WEIGHTROOM_HOURS: Dict[int, Dict[str, str]] = {
    0: {"open": "09:00", "close": "22:00"},
    1: {"open": "06:00", "close": "23:00"},
    2: {"open": "06:00", "close": "23:00"},
    3: {"open": "06:00", "close": "23:00"},
    4: {"open": "06:00", "close": "23:00"},
    5: {"open": "06:00", "close": "22:00"},
    6: {"open": "08:00", "close": "22:00"},
}

WEIGHTROOM_HOURS_DISPLAY: List[Dict[str, str]] = [
    {"label": "Mon – Thu", "open": "6:00 AM", "close": "11:00 PM"},
    {"label": "Fri", "open": "6:00 AM", "close": "10:00 PM"},
    {"label": "Sat", "open": "8:00 AM", "close": "10:00 PM"},
    {"label": "Sun", "open": "9:00 AM", "close": "10:00 PM"},
]

CLOSED_STATUS = "Closed"
UNAVAILABLE_STATUS = "Capacity unavailable"
UNAVAILABLE_MESSAGE = "We can't reach the Density sensors right now. Please try again shortly."


@dataclass(frozen=True)
class OccupancyStatus:
    occupancy: int
    capacity: Optional[int]
    percent: Optional[int]
    status: str
    message: str
    updated_at: dt.datetime
    is_open: bool
    hours: List[Dict[str, str]] = field(default_factory=lambda: list(WEIGHTROOM_HOURS_DISPLAY))

    def as_payload(self) -> Dict[str, Any]:
        return {
            "occupancy": self.occupancy,
            "capacity": self.capacity,
            "percent": self.percent,
            "status": self.status,
            "message": self.message,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
            "isOpen": self.is_open,
            "hours": [dict(slot) for slot in self.hours],
        }


class DensityClient:
    """Bearer-token client for the two Density resources we read."""

    def __init__(
        self,
        *,
        display_id: str = DEFAULT_DISPLAY_ID,
        space_id: str = DEFAULT_SPACE_ID,
        share_token: str = "",
        base_url: str = DENSITY_BASE_URL,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.display_id = display_id
        self.space_id = space_id
        self.share_token = share_token.strip()
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.cancel_event = cancel_event

    @classmethod
    def from_env(
        cls, session: Optional[requests.Session] = None, cancel_event: Optional[threading.Event] = None
    ) -> "DensityClient":
        return cls(
            display_id=os.getenv("DENSITY_DISPLAY_ID", DEFAULT_DISPLAY_ID),
            space_id=os.getenv("DENSITY_SPACE_ID", DEFAULT_SPACE_ID),
            share_token=os.getenv("DENSITY_SHARE_TOKEN", ""),
            base_url=os.getenv("DENSITY_BASE_URL", DENSITY_BASE_URL),
            session=session,
            cancel_event=cancel_event,
        )

    def _get(self, path: str) -> Any:
        return fetch_json(
            self.session,
            "Density",
            f"{self.base_url}{path}",
            headers={"Authorization": f"Bearer {self.share_token}"},
            timeout=self.timeout,
            cancel_event=self.cancel_event,
        )

    def fetch_display(self) -> Dict[str, Any]:
        return _as_dict(self._get(f"/displays/{self.display_id}"))

    def fetch_count(self) -> Dict[str, Any]:
        return _as_dict(self._get(f"/spaces/{self.space_id}/count"))


def _as_dict(payload: Any) -> Dict[str, Any]:
    return payload if isinstance(payload, dict) else {}


def _minutes(value: str) -> int:
    hour, minute = value.split(":", 1)
    return int(hour) * 60 + int(minute)


def is_within_operating_hours(when: Optional[dt.datetime] = None) -> bool:
    """True when ``when`` falls in today's [open, close) window, Pacific time."""
    now = (when or dt.datetime.now(dt.timezone.utc)).astimezone(PACIFIC)
    today = WEIGHTROOM_HOURS.get((now.weekday() + 1) % 7)
    if not today:
        return False
    minutes_now = now.hour * 60 + now.minute
    return _minutes(today["open"]) <= minutes_now < _minutes(today["close"])


def build_closed_message() -> str:
    window_text = " · ".join(
        f"{slot['label']}: {slot['open']} – {slot['close']}" for slot in WEIGHTROOM_HOURS_DISPLAY
    )
    return f"The RSF weight room is currently closed. Regular hours: {window_text}."


def _capacity_from_display(display: Dict[str, Any]) -> Optional[int]:
    space = display.get("dedicated_space") or {}
    return space.get("safe_capacity") or space.get("capacity") or None


def compute_percent(occupancy: int, capacity: Optional[int]) -> Optional[int]:
    if capacity and capacity > 0:
        return round_half_up(occupancy / capacity * 100)
    return None


def fetch_weightroom_status(client: DensityClient, now: Optional[dt.datetime] = None) -> OccupancyStatus:
    """Query Density and fold provider failures into a status.

    Display failures are tolerated only while the room is scheduled closed;
    count failures are always tolerated and reported as degraded.
    """
    now = now or dt.datetime.now(dt.timezone.utc)
    open_now = is_within_operating_hours(now)

    try:
        display = client.fetch_display()
    except UpstreamUnavailable as exc:
        if open_now:
            raise
        logger.warning("Density display unavailable while closed: %s", exc)
        return OccupancyStatus(
            occupancy=0,
            capacity=None,
            percent=None,
            status=CLOSED_STATUS,
            message=build_closed_message(),
            updated_at=now,
            is_open=False,
        )

    capacity = _capacity_from_display(display)

    try:
        count = client.fetch_count()
    except UpstreamUnavailable as exc:
        logger.warning("Density count unavailable (open=%s): %s", open_now, exc)
        if not open_now:
            return OccupancyStatus(
                occupancy=0,
                capacity=capacity,
                percent=None,
                status=CLOSED_STATUS,
                message=build_closed_message(),
                updated_at=now,
                is_open=False,
            )
        return OccupancyStatus(
            occupancy=0,
            capacity=capacity,
            percent=None,
            status=UNAVAILABLE_STATUS,
            message=UNAVAILABLE_MESSAGE,
            updated_at=now,
            is_open=True,
        )

    occupancy = count.get("count")
    if occupancy is None:
        occupancy = (display.get("dedicated_space") or {}).get("current_count")
    if occupancy is None:
        occupancy = 0

    if capacity and occupancy >= capacity:
        status_text = display.get("at_or_above_threshold_text") or "Wait"
    else:
        status_text = display.get("below_threshold_text") or "Go"

    return OccupancyStatus(
        occupancy=occupancy,
        capacity=capacity,
        percent=compute_percent(occupancy, capacity),
        status=status_text,
        message=display.get("message") or "",
        updated_at=now,
        is_open=open_now,
    )


class WeightRoomService:
    """Cached status lookups that record a capacity snapshot on every refresh."""

    def __init__(
        self,
        client: DensityClient,
        cache: TTLCache,
        store: Optional[SnapshotStore] = None,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.timezone.utc),
    ) -> None:
        self.client = client
        self.cache = cache
        self.store = store
        self.ttl = ttl
        self.clock = clock

    def load_status(self) -> OccupancyStatus:
        return self.cache.get_or_load(CACHE_KEY, self.ttl, self._refresh)

    def _refresh(self) -> OccupancyStatus:
        status = fetch_weightroom_status(self.client, self.clock())
        if self.store is not None:
            self.store.record_status(status)
        return status
