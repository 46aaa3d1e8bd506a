"""FastAPI service exposing RSF weight-room occupancy, classes, and peak hours."""

from __future__ import annotations

import datetime as dt
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from class_schedule import MindbodyClient, ScheduleService, pacific_today
from occupancy import DensityClient, WeightRoomService
from peak_hours import analyze_peak_hours
from snapshots import DEFAULT_HISTORY_PATH, SnapshotStore, parse_timestamp
from ttl_cache import TTLCache
from upstream import PersistenceFailure, UpstreamCancelled, UpstreamTimeout, UpstreamUnavailable

logger = logging.getLogger(__name__)

app = FastAPI(title="RSF Pulse")

_cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_methods=["GET"],
    allow_headers=["*"],
)


class HoursSlot(BaseModel):
    label: str
    open: str
    close: str


class WeightRoomResponse(BaseModel):
    occupancy: int = Field(..., ge=0)
    capacity: Optional[int] = None
    percent: Optional[int] = None
    status: str
    message: str = ""
    updatedAt: str
    isOpen: bool
    hours: List[HoursSlot]


class ClassSession(BaseModel):
    id: Optional[str] = None
    name: str
    category: str
    instructor: str
    startTimeLocal: Optional[str] = None
    endTimeLocal: Optional[str] = None
    timeZone: str
    location: str
    description: str
    isCancelled: bool


class ClassDay(BaseModel):
    date: str
    label: str
    sessions: List[ClassSession]


class ClassScheduleResponse(BaseModel):
    startDate: str
    days: List[ClassDay]


class DataRange(BaseModel):
    oldest: Optional[str] = None
    newest: Optional[str] = None


class PeakHoursResponse(BaseModel):
    hasData: bool
    totalSamples: int
    message: Optional[str] = None
    busiest: Optional[str] = None
    bestTime: Optional[str] = None
    busiestDay: Optional[str] = None
    dataRange: Optional[DataRange] = None


class ErrorBody(BaseModel):
    error: str
    detail: str


def build_services(state: Any) -> None:
    """Wire clients, caches and the snapshot store from the environment."""
    cache = TTLCache()
    state.shutdown_event = threading.Event()
    state.snapshot_store = SnapshotStore(Path(os.getenv("CAPACITY_HISTORY_JSON", str(DEFAULT_HISTORY_PATH))))
    state.weightroom = WeightRoomService(
        DensityClient.from_env(cancel_event=state.shutdown_event),
        cache,
        state.snapshot_store,
        ttl=float(os.getenv("WEIGHTROOM_CACHE_SECONDS", "30")),
    )
    state.schedule = ScheduleService(
        MindbodyClient.from_env(cancel_event=state.shutdown_event),
        cache,
        ttl=float(os.getenv("CLASSES_CACHE_SECONDS", "300")),
    )


@app.on_event("startup")
def startup() -> None:
    """Build the upstream clients once when the API starts."""
    if not os.getenv("DENSITY_SHARE_TOKEN"):
        logger.warning("DENSITY_SHARE_TOKEN is not set; occupancy requests will likely be rejected.")
    build_services(app.state)


@app.on_event("shutdown")
def shutdown() -> None:
    """Abandon in-flight upstream calls and release pooled connections."""
    stop_upstream_calls(app.state)


def stop_upstream_calls(state: Any) -> None:
    event = getattr(state, "shutdown_event", None)
    if event is not None:
        event.set()
    for name in ("weightroom", "schedule"):
        service = getattr(state, name, None)
        if service is not None:
            service.client.session.close()


def _error_response(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "detail": detail})


@app.exception_handler(UpstreamUnavailable)
async def upstream_error(request: Request, exc: UpstreamUnavailable) -> JSONResponse:
    logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    status_code = 504 if isinstance(exc, UpstreamTimeout) else 502
    return _error_response(status_code, f"{exc.source} is unavailable", str(exc))


@app.exception_handler(UpstreamCancelled)
async def cancelled_error(request: Request, exc: UpstreamCancelled) -> JSONResponse:
    return _error_response(503, "Service is shutting down", str(exc))


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(exc.status_code, "Request failed", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = ", ".join(".".join(str(part) for part in err.get("loc", ())) for err in exc.errors())
    return _error_response(400, "Invalid request", f"Invalid parameters: {fields}")


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return _error_response(500, "Internal server error", "An unexpected error occurred.")


def _parse_date(value: str, name: str) -> dt.date:
    try:
        return dt.date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{name} must be YYYY-MM-DD") from None


@app.get("/api/health", tags=["meta"])
def health() -> Dict[str, Any]:
    """Simple health check."""
    return {"ok": True, "time": dt.datetime.now(dt.timezone.utc).isoformat(timespec="seconds")}


@app.get(
    "/api/weightroom",
    response_model=WeightRoomResponse,
    responses={502: {"model": ErrorBody}, 504: {"model": ErrorBody}},
    tags=["occupancy"],
)
def weightroom(response: Response) -> Dict[str, Any]:
    """Current weight-room occupancy, cached briefly."""
    service: WeightRoomService = app.state.weightroom
    status = service.load_status()
    response.headers["Cache-Control"] = f"public, max-age={int(service.ttl)}"
    return status.as_payload()


@app.get(
    "/api/classes",
    response_model=ClassScheduleResponse,
    responses={400: {"model": ErrorBody}, 502: {"model": ErrorBody}},
    tags=["classes"],
)
def classes(startDate: Optional[str] = Query(None, description="First day, YYYY-MM-DD.")) -> Dict[str, Any]:
    """Group-fitness sessions starting at ``startDate`` (today, Pacific, by default)."""
    start_date = _parse_date(startDate, "startDate").isoformat() if startDate else pacific_today()
    return app.state.schedule.load_schedule(start_date)


@app.get("/api/peak-hours", response_model=PeakHoursResponse, response_model_exclude_none=True, tags=["occupancy"])
def peak_hours() -> Dict[str, Any]:
    """Busiest and quietest hours from the stored capacity history."""
    try:
        snapshots = app.state.snapshot_store.load()
    except PersistenceFailure as exc:
        logger.warning("Capacity history unreadable: %s", exc)
        snapshots = []
    return analyze_peak_hours(snapshots)


@app.get("/api/capacity-history", tags=["occupancy"])
def capacity_history(
    start: Optional[str] = Query(None, description="ISO timestamp or date; default 7 days ago."),
    end: Optional[str] = Query(None, description="ISO timestamp or date; default now."),
) -> Dict[str, Any]:
    """Raw capacity snapshots within a time range."""
    now = dt.datetime.now(dt.timezone.utc)
    range_start = _parse_bound(start, "start") if start else now - dt.timedelta(days=7)
    range_end = _parse_bound(end, "end") if end else now
    try:
        snapshots = app.state.snapshot_store.between(range_start, range_end)
    except PersistenceFailure as exc:
        logger.warning("Capacity history unreadable: %s", exc)
        raise HTTPException(status_code=503, detail="Capacity history is temporarily unavailable.") from exc
    return {
        "start": range_start.isoformat(timespec="seconds"),
        "end": range_end.isoformat(timespec="seconds"),
        "snapshots": snapshots,
    }


def _parse_bound(value: str, name: str) -> dt.datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise HTTPException(status_code=400, detail=f"{name} must be an ISO date or timestamp")
    return parsed


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "4000")))
