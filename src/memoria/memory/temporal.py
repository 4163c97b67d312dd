"""Time-of-day, calendar and session features used as retrieval signals.

The context is recomputed lazily once it is older than the refresh interval
(default 15 minutes).  Interactions at most 30 minutes apart belong to the
same session.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from memoria.models import RecentActivity, Season, TemporalContext, TimeOfDay, utcnow

logger = logging.getLogger(__name__)

SESSION_GAP = timedelta(minutes=30)
_DEFAULT_UPDATE_INTERVAL_MS = 15 * 60 * 1000

_WORK_START_HOUR = 9
_WORK_END_HOUR = 17


def time_of_day(hour: int) -> TimeOfDay:
    """Morning 5-12, afternoon 12-17, evening 17-21, night otherwise."""
    if 5 <= hour < 12:
        return TimeOfDay.MORNING
    if 12 <= hour < 17:
        return TimeOfDay.AFTERNOON
    if 17 <= hour < 21:
        return TimeOfDay.EVENING
    return TimeOfDay.NIGHT


def season(month: int) -> Season:
    """Northern-hemisphere meteorological season for *month* (1-12)."""
    if month in (3, 4, 5):
        return Season.SPRING
    if month in (6, 7, 8):
        return Season.SUMMER
    if month in (9, 10, 11):
        return Season.FALL
    return Season.WINTER


def is_work_hours(local: datetime) -> bool:
    """Monday to Friday, local hour in [9, 17)."""
    return local.weekday() < 5 and _WORK_START_HOUR <= local.hour < _WORK_END_HOUR


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Invalid timezone: {name!r}") from exc


class TemporalContextManager:
    """Tracks the current temporal context and conversation session state.

    Args:
        timezone: IANA zone name the calendar features are computed in.
        update_interval_ms: Age after which the cached context is recomputed.
        clock: Returns the current UTC instant; injectable for tests.
    """

    def __init__(
        self,
        timezone: str = "UTC",
        update_interval_ms: int = _DEFAULT_UPDATE_INTERVAL_MS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._zone = _zone(timezone)
        self._zone_name = timezone
        self._interval = timedelta(milliseconds=update_interval_ms)
        self._clock = clock
        self._activity = RecentActivity()
        self._context: TemporalContext | None = None
        self._computed_at: datetime | None = None

    @property
    def recent_activity(self) -> RecentActivity:
        return self._activity

    def get_current_context(self, *, force: bool = False) -> TemporalContext:
        """Return the temporal context, recomputing it when stale or when *force* is set."""
        now = self._clock()
        self._expire_session(now)
        stale = self._computed_at is None or now - self._computed_at >= self._interval
        if force or stale or self._context is None:
            self._context = self._compute(now)
            self._computed_at = now
        return self._context

    def record_interaction(
        self, interaction_type: str, at: datetime | None = None
    ) -> RecentActivity:
        """Register an interaction, continuing or starting a session."""
        now = at or self._clock()
        activity = self._activity
        last = activity.last_interaction_timestamp
        if last is not None and activity.session_start is not None and now - last <= SESSION_GAP:
            activity.session_duration = now - activity.session_start
        else:
            if last is not None:
                logger.debug("Starting new session after %s idle", now - last)
            activity.session_start = now
            activity.session_duration = timedelta(0)
        activity.active_session = True
        activity.last_interaction_type = interaction_type
        activity.last_interaction_timestamp = now
        return activity

    def _expire_session(self, now: datetime) -> None:
        last = self._activity.last_interaction_timestamp
        if self._activity.active_session and last is not None and now - last > SESSION_GAP:
            self._activity.active_session = False

    def _compute(self, now: datetime) -> TemporalContext:
        local = now.astimezone(self._zone)
        return TemporalContext(
            current_time=now,
            year=local.year,
            month=local.month,
            day=local.day,
            day_of_week=local.weekday(),
            hour=local.hour,
            minute=local.minute,
            is_weekend=local.weekday() >= 5,
            is_work_hours=is_work_hours(local),
            time_of_day=time_of_day(local.hour),
            season=season(local.month),
            timezone=self._zone_name,
            recent_activity=self._activity,
        )
