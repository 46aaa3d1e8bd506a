from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import pytest
import requests

PACIFIC = ZoneInfo("America/Los_Angeles")


class FakeResponse:
    def __init__(self, payload: Any = None, status_code: int = 200, text: Optional[str] = None) -> None:
        self._payload = payload
        self.status_code = status_code
        self.text = text

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        if self.text is not None:
            raise ValueError("not JSON")
        return self._payload


class FakeSession:
    """Stands in for requests.Session; routes by URL suffix."""

    def __init__(self, routes: Optional[Dict[str, Any]] = None) -> None:
        self.routes: Dict[str, Any] = routes or {}
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def get(self, url: str, headers=None, params=None, timeout=None):
        self.calls.append({"url": url, "headers": headers, "params": params, "timeout": timeout})
        for suffix, outcome in self.routes.items():
            if url.endswith(suffix):
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome
        raise requests.ConnectionError(f"no route for {url}")

    def close(self) -> None:
        self.closed = True

    def calls_to(self, suffix: str) -> int:
        return sum(1 for call in self.calls if call["url"].endswith(suffix))


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def pacific(year: int, month: int, day: int, hour: int, minute: int = 0) -> dt.datetime:
    return dt.datetime(year, month, day, hour, minute, tzinfo=PACIFIC)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def history_path(tmp_path):
    return tmp_path / "data" / "capacity_history.json"
