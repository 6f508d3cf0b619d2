from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from leaklock.errors import StaleRefsWarning
from leaklock.models import FetchState

DEFAULT_STALE_AFTER = timedelta(minutes=15)


class RefFreshnessTracker:
    """Remembers when remote refs were last fetched for the selected repository."""

    def __init__(self, stale_after: timedelta = DEFAULT_STALE_AFTER, state: FetchState | None = None):
        self.stale_after = stale_after
        self._state = state or FetchState()

    @property
    def fetch_state(self) -> FetchState:
        return self._state

    def record_fetch(self, timestamp: datetime) -> FetchState:
        self._state = FetchState(last_fetched_at=timestamp)
        return self._state

    def reset(self) -> None:
        self._state = FetchState()

    def is_stale(self, now: datetime) -> bool:
        last = self._state.last_fetched_at
        return last is None or now - last > self.stale_after

    def staleness_warning(self, now: datetime) -> Optional[StaleRefsWarning]:
        if not self.is_stale(now):
            return None
        return StaleRefsWarning(
            last_fetched_at=self._state.last_fetched_at,
            stale_after_minutes=int(self.stale_after.total_seconds() // 60),
        )
