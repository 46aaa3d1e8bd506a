"""Shared HTTP plumbing for the occupancy and class-widget providers."""

from __future__ import annotations

import os
import threading
from typing import Any, Dict, Optional

import requests

DEFAULT_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT", "10"))
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Safari/605.1.15"
)


class UpstreamUnavailable(Exception):
    """A provider could not be reached or answered with a non-2xx status."""

    def __init__(self, source: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.source = source
        self.status_code = status_code


class UpstreamTimeout(UpstreamUnavailable):
    """A provider did not answer within the request timeout."""


class MalformedUpstreamPayload(UpstreamUnavailable):
    """A provider answered 2xx but the body was not usable JSON."""


class UpstreamCancelled(Exception):
    """An upstream call was abandoned because the service is shutting down."""

    def __init__(self, source: str) -> None:
        super().__init__(f"{source} request was cancelled")
        self.source = source


class PersistenceFailure(Exception):
    """The snapshot history could not be read or written."""


def fetch_json(
    session: requests.Session,
    source: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, str]] = None,
    timeout: float = DEFAULT_TIMEOUT,
    cancel_event: Optional[threading.Event] = None,
) -> Any:
    """GET a JSON document, translating transport failures into upstream errors.

    When ``cancel_event`` is set the call is skipped, or its response discarded
    if the event was set while the request was in flight.
    """
    if cancel_event is not None and cancel_event.is_set():
        raise UpstreamCancelled(source)
    merged_headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
    if headers:
        merged_headers.update(headers)

    try:
        response = session.get(url, headers=merged_headers, params=params, timeout=timeout)
    except requests.Timeout as exc:
        raise UpstreamTimeout(source, f"{source} did not respond within {timeout:g}s") from exc
    except requests.RequestException as exc:
        if cancel_event is not None and cancel_event.is_set():
            raise UpstreamCancelled(source) from exc
        raise UpstreamUnavailable(source, f"{source} could not be reached") from exc

    if cancel_event is not None and cancel_event.is_set():
        raise UpstreamCancelled(source)

    if not response.ok:
        raise UpstreamUnavailable(
            source,
            f"{source} returned HTTP {response.status_code}",
            status_code=response.status_code,
        )

    try:
        return response.json()
    except ValueError as exc:
        raise MalformedUpstreamPayload(source, f"{source} returned a non-JSON body") from exc
