"""In-process memoization with a per-call time-to-live."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Tuple


class TTLCache:
    """Key -> (value, stored_at) map refreshed lazily by a loader.

    Entries are only replaced, never evicted; callers use a small fixed set of
    keys such as ``"weightroom"`` and ``"classes:<date>"``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def get_or_load(self, key: str, ttl: float, loader: Callable[[], Any]) -> Any:
        """Return the cached value for ``key`` if younger than ``ttl`` seconds.

        Otherwise call ``loader`` and store its result. If the loader raises,
        the exception propagates and the existing entry is left untouched.
        """
        now = self._clock()
        cached = self._entries.get(key)
        if cached is not None and now - cached[1] < ttl:
            return cached[0]

        value = loader()
        self._entries[key] = (value, now)
        return value

    def invalidate(self, key: Optional[str] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
