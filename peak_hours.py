"""Busiest and quietest weight-room hours from the capacity history."""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Optional, Tuple

MIN_SAMPLES = 50
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
COLLECTING_MESSAGE = "We're collecting data! Check back in a few days to see peak hours."


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (12.5 -> 13)."""
    return int(math.floor(value + 0.5))


def format_hour(hour: Optional[int]) -> str:
    """18 -> '6:00 PM', 0 -> '12:00 AM'."""
    if hour is None:
        return "N/A"
    period = "PM" if hour >= 12 else "AM"
    display_hour = 12 if hour == 0 else hour - 12 if hour > 12 else hour
    return f"{display_hour}:00 {period}"


def _sample_percentage(entry: Dict[str, Any]) -> float:
    percentage = entry.get("percentage")
    if percentage:
        return float(percentage)
    max_capacity = entry.get("maxCapacity") or 0
    if not max_capacity:
        return 0.0
    return (entry.get("currentCount") or 0) / max_capacity


def _calendar_keys(entry: Dict[str, Any]) -> Optional[Tuple[int, int]]:
    """(hour, dayOfWeek) for a snapshot, or None when either is missing or out of range."""
    try:
        hour = int(entry["hour"])
        day = int(entry["dayOfWeek"])
    except (KeyError, TypeError, ValueError):
        return None
    if not (0 <= hour <= 23 and 0 <= day <= 6):
        return None
    return hour, day


def _averages(groups: Dict[int, List[float]]) -> Dict[int, float]:
    return {key: sum(values) / len(values) for key, values in sorted(groups.items())}


def _argmax(averages: Dict[int, float]) -> Optional[int]:
    best_key, best_value = None, 0.0
    for key, value in averages.items():
        if value > best_value:
            best_key, best_value = key, value
    return best_key


def _argmin_nonzero(averages: Dict[int, float]) -> Optional[int]:
    # Zero-average hours are skipped: they mostly come from placeholder samples.
    best_key, best_value = None, 1.0
    for key, value in averages.items():
        if 0 < value < best_value:
            best_key, best_value = key, value
    return best_key


def _label(hour: Optional[int], averages: Dict[int, float]) -> str:
    if hour is None:
        return "N/A"
    return f"{format_hour(hour)} (avg {round_half_up(averages[hour] * 100)}% full)"


def analyze_peak_hours(snapshots: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Summarize capacity snapshots into busiest/best hour and busiest day.

    Requires MIN_SAMPLES stored snapshots before reporting; only samples taken
    while the room was open feed the averages.
    """
    data = list(snapshots)
    total = len(data)

    if total == 0:
        return {"hasData": False, "message": COLLECTING_MESSAGE, "totalSamples": 0}

    if total < MIN_SAMPLES:
        return {
            "hasData": False,
            "message": (
                f"We're collecting data! ({total} samples so far). "
                "Check back in a few days to see peak hours."
            ),
            "totalSamples": total,
        }

    by_hour: Dict[int, List[float]] = {}
    by_day: Dict[int, List[float]] = {}
    for entry in data:
        if not entry.get("isOpen"):
            continue
        keys = _calendar_keys(entry)
        if keys is None:
            continue
        hour, day = keys
        percentage = _sample_percentage(entry)
        by_hour.setdefault(hour, []).append(percentage)
        by_day.setdefault(day, []).append(percentage)

    hourly = _averages(by_hour)
    daily = _averages(by_day)
    busiest_hour = _argmax(hourly)
    best_hour = _argmin_nonzero(hourly)
    busiest_day = _argmax(daily)

    return {
        "hasData": True,
        "busiest": _label(busiest_hour, hourly),
        "bestTime": _label(best_hour, hourly),
        "busiestDay": DAY_NAMES[busiest_day] if busiest_day is not None else None,
        "totalSamples": total,
        "dataRange": {
            "oldest": data[0].get("timestamp"),
            "newest": data[-1].get("timestamp"),
        },
    }
