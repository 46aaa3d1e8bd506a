"""Rolling JSON history of weight-room occupancy samples.

Each status refresh appends one snapshot. The file is rewritten whole on every
append (read, append, prune, write), so two overlapping writers can lose one
sample; refreshes are rate-limited by the status cache, which keeps that window
small enough to live with.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from upstream import PersistenceFailure

if TYPE_CHECKING:
    from occupancy import OccupancyStatus

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_PATH = Path("data") / "capacity_history.json"
RETENTION_DAYS = 90
DEFAULT_MAX_CAPACITY = 100
PACIFIC = ZoneInfo("America/Los_Angeles")


def parse_timestamp(value: Any) -> Optional[dt.datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def build_snapshot(status: "OccupancyStatus") -> Dict[str, Any]:
    """Turn a status payload into a calendar-tagged capacity sample."""
    taken_at = status.updated_at
    local = taken_at.astimezone(PACIFIC)
    max_capacity = status.capacity or DEFAULT_MAX_CAPACITY
    return {
        "timestamp": taken_at.astimezone(dt.timezone.utc).isoformat(timespec="seconds"),
        # 0 = Sunday
        "dayOfWeek": (local.weekday() + 1) % 7,
        "hour": local.hour,
        "minute": local.minute,
        "currentCount": status.occupancy,
        "maxCapacity": max_capacity,
        "percentage": status.occupancy / max_capacity,
        "isOpen": status.is_open,
    }


class SnapshotStore:
    """Append-and-prune store over a single JSON array file."""

    def __init__(self, path: Path | str = DEFAULT_HISTORY_PATH, retention_days: int = RETENTION_DAYS) -> None:
        self.path = Path(path)
        self.retention = dt.timedelta(days=retention_days)

    def load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise PersistenceFailure(f"Could not read {self.path}: {exc}") from exc
        if not isinstance(payload, list):
            raise PersistenceFailure(f"{self.path} does not contain a JSON array")
        return [entry for entry in payload if isinstance(entry, dict)]

    def save(self, snapshots: List[Dict[str, Any]]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(snapshots, indent=2), encoding="utf-8")
        except OSError as exc:
            raise PersistenceFailure(f"Could not write {self.path}: {exc}") from exc

    def append(self, snapshot: Dict[str, Any], now: Optional[dt.datetime] = None) -> List[Dict[str, Any]]:
        """Append ``snapshot`` and drop everything older than the retention window."""
        now = now or dt.datetime.now(dt.timezone.utc)
        cutoff = now - self.retention

        try:
            snapshots = self.load()
        except PersistenceFailure as exc:
            logger.warning("Capacity history unreadable, starting a new one: %s", exc)
            self._set_aside()
            snapshots = []
        snapshots.append(snapshot)
        kept = [entry for entry in snapshots if _newer_than(entry, cutoff)]
        self.save(kept)
        return kept

    def _set_aside(self) -> None:
        """Move an unreadable history file to <name>.corrupt so the next save starts clean."""
        corrupt_path = self.path.with_name(self.path.name + ".corrupt")
        try:
            self.path.replace(corrupt_path)
        except OSError as exc:
            logger.warning("Could not move %s aside: %s", self.path, exc)
        else:
            logger.warning("Moved unreadable capacity history to %s", corrupt_path)

    def record_status(self, status: "OccupancyStatus") -> bool:
        """Persist a snapshot for ``status``; failures are logged, never raised."""
        snapshot = build_snapshot(status)
        try:
            self.append(snapshot, now=status.updated_at)
        except PersistenceFailure as exc:
            logger.warning("Could not store capacity snapshot: %s", exc)
            return False
        logger.info(
            "Stored capacity snapshot: %s/%s at %d:%02d",
            snapshot["currentCount"],
            snapshot["maxCapacity"],
            snapshot["hour"],
            snapshot["minute"],
        )
        return True

    def between(self, start: dt.datetime, end: dt.datetime) -> List[Dict[str, Any]]:
        """Snapshots whose timestamp falls within ``[start, end]``."""
        results = []
        for entry in self.load():
            taken_at = parse_timestamp(entry.get("timestamp"))
            if taken_at is not None and start <= taken_at <= end:
                results.append(entry)
        return results


def _newer_than(entry: Dict[str, Any], cutoff: dt.datetime) -> bool:
    taken_at = parse_timestamp(entry.get("timestamp"))
    return taken_at is not None and taken_at > cutoff
