import datetime as dt

import pytest
import requests
from fastapi.testclient import TestClient

import app as app_module
from app import app
from class_schedule import MindbodyClient, ScheduleService
from conftest import FakeResponse, FakeSession, pacific
from occupancy import DensityClient, WeightRoomService
from snapshots import SnapshotStore
from ttl_cache import TTLCache

DISPLAY = "/displays/dsp_test"
COUNT = "/spaces/spc_test/count"
MARKUP_PATH = "/widgets/schedules/3262/load_markup"
OPEN_MONDAY = pacific(2026, 10, 19, 17, 30)

MARKUP = """
<div class="bw-widget__day">
  <h2 class="bw-widget__date date-2026-10-19">Monday</h2>
  <div class="bw-session" id="s1" data-bw-widget-mbo-class-id="9">
    <div class="bw-session__name">Zumba</div>
  </div>
</div>
"""


@pytest.fixture
def density_session():
    return FakeSession(
        {
            DISPLAY: FakeResponse({"dedicated_space": {"safe_capacity": 100}, "below_threshold_text": "Go"}),
            COUNT: FakeResponse({"count": 45}),
        }
    )


@pytest.fixture
def mindbody_session():
    return FakeSession({MARKUP_PATH: FakeResponse({"class_sessions": MARKUP})})


@pytest.fixture
def client(density_session, mindbody_session, history_path, clock):
    cache = TTLCache(clock=clock)
    store = SnapshotStore(history_path)
    app.state.snapshot_store = store
    app.state.weightroom = WeightRoomService(
        DensityClient(display_id="dsp_test", space_id="spc_test", session=density_session),
        cache,
        store,
        ttl=30,
        clock=lambda: OPEN_MONDAY,
    )
    app.state.schedule = ScheduleService(MindbodyClient(session=mindbody_session), cache)
    return TestClient(app)


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_weightroom_returns_status_and_cache_header(client, density_session, history_path):
    response = client.get("/api/weightroom")

    assert response.status_code == 200
    body = response.json()
    assert body["occupancy"] == 45
    assert body["percent"] == 45
    assert body["isOpen"] is True
    assert len(body["hours"]) == 4
    assert response.headers["cache-control"] == "public, max-age=30"
    assert history_path.exists()

    again = client.get("/api/weightroom")
    assert again.content == response.content
    assert density_session.calls_to(COUNT) == 1


def test_weightroom_display_failure_while_open_is_502(client, density_session):
    density_session.routes[DISPLAY] = FakeResponse(status_code=500)

    response = client.get("/api/weightroom")

    assert response.status_code == 502
    assert response.json() == {"error": "Density is unavailable", "detail": "Density returned HTTP 500"}


def test_weightroom_timeout_is_504(client, density_session):
    density_session.routes[DISPLAY] = requests.Timeout("slow")

    response = client.get("/api/weightroom")

    assert response.status_code == 504
    assert set(response.json()) == {"error", "detail"}


def test_classes_for_explicit_date(client, mindbody_session):
    response = client.get("/api/classes", params={"startDate": "2026-10-19"})

    assert response.status_code == 200
    body = response.json()
    assert body["startDate"] == "2026-10-19"
    assert body["days"][0]["sessions"][0]["name"] == "Zumba"
    assert mindbody_session.calls[0]["params"] == {"options[start_date]": "2026-10-19"}


def test_classes_default_to_pacific_today(client, monkeypatch):
    monkeypatch.setattr(app_module, "pacific_today", lambda: "2026-10-21")

    response = client.get("/api/classes")

    assert response.json()["startDate"] == "2026-10-21"


def test_classes_rejects_bad_date(client):
    response = client.get("/api/classes", params={"startDate": "10/19/2026"})

    assert response.status_code == 400
    assert response.json()["detail"] == "startDate must be YYYY-MM-DD"


def test_peak_hours_collecting(client):
    response = client.get("/api/peak-hours")

    assert response.status_code == 200
    body = response.json()
    assert body["hasData"] is False
    assert body["totalSamples"] == 0
    assert "busiest" not in body


def test_peak_hours_after_history_builds(client, history_path):
    store = app.state.snapshot_store
    now = dt.datetime.now(dt.timezone.utc)
    for i in range(50):
        store.append(
            {
                "timestamp": (now - dt.timedelta(hours=i)).isoformat(),
                "dayOfWeek": 2,
                "hour": 18 if i % 2 else 7,
                "minute": 0,
                "currentCount": 80 if i % 2 else 20,
                "maxCapacity": 100,
                "percentage": 0.8 if i % 2 else 0.2,
                "isOpen": True,
            },
            now=now,
        )

    body = client.get("/api/peak-hours").json()

    assert body["hasData"] is True
    assert body["busiest"] == "6:00 PM (avg 80% full)"
    assert body["bestTime"] == "7:00 AM (avg 20% full)"
    assert body["busiestDay"] == "Tuesday"


def test_capacity_history_range(client):
    client.get("/api/weightroom")

    response = client.get("/api/capacity-history", params={"start": "2026-10-19", "end": "2026-10-21"})

    assert response.status_code == 200
    assert len(response.json()["snapshots"]) == 1


def test_capacity_history_rejects_bad_bound(client):
    response = client.get("/api/capacity-history", params={"start": "yesterday"})

    assert response.status_code == 400


def test_unknown_route_uses_error_body(client):
    response = client.get("/api/nope")

    assert response.status_code == 404
    assert set(response.json()) == {"error", "detail"}
