"""Time-window ordering used to widen a search that came back empty."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from xcurator.models import TimeWindow

_ORDER: list[TimeWindow] = list(TimeWindow)

_SPANS: dict[TimeWindow, timedelta] = {
    TimeWindow.H1: timedelta(hours=1),
    TimeWindow.H12: timedelta(hours=12),
    TimeWindow.H24: timedelta(days=1),
    TimeWindow.H48: timedelta(days=2),
    TimeWindow.D7: timedelta(days=7),
    TimeWindow.D14: timedelta(days=14),
    TimeWindow.D30: timedelta(days=30),
}


def next_window(current: TimeWindow) -> TimeWindow | None:
    """Return the next wider window, or ``None`` when *current* is the widest."""
    idx = _ORDER.index(current)
    if idx + 1 >= len(_ORDER):
        return None
    return _ORDER[idx + 1]


def from_date(window: TimeWindow, now: datetime | None = None) -> str:
    """Return the ``YYYY-MM-DD`` lower bound for an ``x_search`` over *window*."""
    now = now or datetime.now(UTC)
    return (now - _SPANS[window]).date().isoformat()
