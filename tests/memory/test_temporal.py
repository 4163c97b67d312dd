"""Tests for the temporal context manager."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from memoria.memory.temporal import TemporalContextManager, is_work_hours, season, time_of_day
from memoria.models import InteractionType, Season, TimeOfDay

pytestmark = pytest.mark.unit


@pytest.fixture
def temporal(clock) -> TemporalContextManager:
    return TemporalContextManager(clock=clock)


class TestCalendarFeatures:
    def test_fixed_instant(self, temporal):
        ctx = temporal.get_current_context()
        assert (ctx.year, ctx.month, ctx.day) == (2024, 6, 12)
        assert ctx.day_of_week == 2
        assert (ctx.hour, ctx.minute) == (14, 30)
        assert ctx.is_weekend is False
        assert ctx.is_work_hours is True
        assert ctx.time_of_day is TimeOfDay.AFTERNOON
        assert ctx.season is Season.SUMMER
        assert ctx.timezone == "UTC"

    def test_timezone_shifts_local_features(self, clock):
        temporal = TemporalContextManager("America/New_York", clock=clock)
        ctx = temporal.get_current_context()
        assert ctx.hour == 10
        assert ctx.time_of_day is TimeOfDay.MORNING
        assert ctx.current_time == clock.now

    def test_invalid_timezone(self):
        with pytest.raises(ValueError, match="Invalid timezone"):
            TemporalContextManager("Mars/Olympus_Mons")

    @pytest.mark.parametrize(
        ("hour", "expected"),
        [
            (4, TimeOfDay.NIGHT),
            (5, TimeOfDay.MORNING),
            (11, TimeOfDay.MORNING),
            (12, TimeOfDay.AFTERNOON),
            (17, TimeOfDay.EVENING),
            (20, TimeOfDay.EVENING),
            (21, TimeOfDay.NIGHT),
        ],
    )
    def test_time_of_day_boundaries(self, hour, expected):
        assert time_of_day(hour) is expected

    @pytest.mark.parametrize(
        ("month", "expected"),
        [
            (1, Season.WINTER),
            (3, Season.SPRING),
            (8, Season.SUMMER),
            (11, Season.FALL),
            (12, Season.WINTER),
        ],
    )
    def test_season(self, month, expected):
        assert season(month) is expected

    def test_work_hours(self):
        saturday = datetime(2024, 6, 15, 10, tzinfo=UTC)
        assert is_work_hours(saturday) is False
        assert is_work_hours(datetime(2024, 6, 14, 9, tzinfo=UTC)) is True
        assert is_work_hours(datetime(2024, 6, 14, 17, tzinfo=UTC)) is False


class TestRefresh:
    def test_context_is_cached_within_interval(self, temporal, clock):
        first = temporal.get_current_context()
        clock.advance(minutes=10)
        assert temporal.get_current_context() is first

    def test_context_recomputed_after_interval(self, temporal, clock):
        first = temporal.get_current_context()
        clock.advance(minutes=15)
        second = temporal.get_current_context()
        assert second is not first
        assert second.minute == 45

    def test_force_recomputes(self, temporal, clock):
        first = temporal.get_current_context()
        clock.advance(minutes=1)
        assert temporal.get_current_context(force=True).minute == 31
        assert temporal.get_current_context() is not first


class TestSessions:
    def test_first_interaction_starts_session(self, temporal, clock):
        activity = temporal.record_interaction(InteractionType.CONVERSATION)
        assert activity.active_session is True
        assert activity.session_start == clock.now
        assert activity.session_duration == timedelta(0)
        assert activity.last_interaction_type == "conversation"

    def test_interactions_within_gap_extend_session(self, temporal, clock):
        temporal.record_interaction(InteractionType.CONVERSATION)
        start = clock.now
        clock.advance(minutes=20)
        temporal.record_interaction(InteractionType.MEMORY_RETRIEVAL)
        clock.advance(minutes=25)
        activity = temporal.record_interaction(InteractionType.MEMORY_FEEDBACK)
        assert activity.session_start == start
        assert activity.session_duration == timedelta(minutes=45)

    def test_long_gap_starts_new_session(self, temporal, clock):
        temporal.record_interaction(InteractionType.CONVERSATION)
        clock.advance(minutes=31)
        activity = temporal.record_interaction(InteractionType.CONVERSATION)
        assert activity.session_start == clock.now
        assert activity.session_duration == timedelta(0)

    def test_session_goes_inactive_after_gap(self, temporal, clock):
        temporal.record_interaction(InteractionType.CONVERSATION)
        clock.advance(minutes=45)
        ctx = temporal.get_current_context()
        assert ctx.recent_activity.active_session is False

    def test_explicit_timestamp(self, temporal, clock):
        earlier = clock.now - timedelta(hours=1)
        activity = temporal.record_interaction("conversation", at=earlier)
        assert activity.last_interaction_timestamp == earlier
