"""Tests for the slot availability engine."""

import pytest
from unittest.mock import AsyncMock, MagicMock
from datetime import date, datetime, time

from clinicbot.core.exceptions import ValidationError
from clinicbot.core.scheduling.slots import (
    SlotEngine,
    calculate_gaps,
    compute_slots,
    filter_future_slots,
    merge_intervals,
)
from clinicbot.core.scheduling.types import BookedInterval, ScheduleRule


# Tuesday; day_of_week() == 2
TUESDAY = date(2025, 10, 14)


class TestIntervalMath:
    """Test the pure interval helpers."""

    def test_merge_overlapping_and_touching(self):
        """Overlapping and touching intervals collapse into one."""
        merged = merge_intervals([(600, 660), (480, 540), (540, 570), (650, 700)])
        assert merged == [(480, 570), (600, 700)]

    def test_merge_empty(self):
        assert merge_intervals([]) == []

    def test_gaps_clip_to_window(self):
        """Occupancy outside the window is clipped away."""
        gaps = calculate_gaps(480, 720, [(420, 510), (540, 600), (700, 800)])
        assert gaps == [(510, 540), (600, 700)]

    def test_gaps_fully_booked(self):
        assert calculate_gaps(480, 720, [(480, 720)]) == []

    def test_gaps_no_bookings(self):
        assert calculate_gaps(480, 720, []) == [(480, 720)]


class TestComputeSlots:
    """Test candidate generation."""

    def test_booking_blocks_overlapping_candidates(self):
        """08:00-12:00, 60 min, step 30, booked 09:00-10:00."""
        slots = compute_slots([(480, 720)], [(540, 600)], duration=60, granularity=30)

        assert slots == ["08:00", "10:00", "10:30", "11:00"]

    def test_last_slot_must_end_inside_window(self):
        """11:00 ends exactly at 12:00 and fits; 11:30 would not."""
        slots = compute_slots([(480, 720)], [], duration=60, granularity=30)

        assert slots[-1] == "11:00"
        assert "11:30" not in slots

    def test_back_to_back_booking_is_not_overlap(self):
        """A booking ending at 09:00 leaves 09:00 free."""
        slots = compute_slots([(480, 600)], [(480, 540)], duration=60, granularity=30)
        assert slots == ["09:00"]

    def test_multiple_windows_sorted_and_unique(self):
        """Windows that overlap do not produce duplicate slots."""
        slots = compute_slots(
            [(840, 960), (480, 600), (540, 600)], [], duration=60, granularity=60
        )
        assert slots == ["08:00", "09:00", "14:00", "15:00"]

    def test_duration_longer_than_window(self):
        assert compute_slots([(480, 510)], [], duration=60, granularity=30) == []


class TestFilterFutureSlots:
    """Test dropping past slots for today."""

    def test_today_drops_started_slots(self):
        now_local = datetime(2025, 10, 14, 10, 0)
        slots = ["09:00", "10:00", "10:30", "11:00"]

        assert filter_future_slots(slots, TUESDAY, now_local) == ["10:30", "11:00"]

    def test_future_day_untouched(self):
        now_local = datetime(2025, 10, 13, 23, 0)
        slots = ["08:00", "09:00"]

        assert filter_future_slots(slots, TUESDAY, now_local) == slots

    def test_past_day_empty(self):
        now_local = datetime(2025, 10, 15, 8, 0)
        assert filter_future_slots(["08:00"], TUESDAY, now_local) == []


class TestSlotEngine:
    """Test SlotEngine against a mocked repository."""

    @pytest.fixture
    def mock_repository(self):
        """Doctor works Tuesdays 08:00-12:00 with one booking at 09:00."""
        repo = MagicMock()
        repo.get_schedule_rules = AsyncMock(return_value=(
            [ScheduleRule("doc-1", 2, time(8, 0), time(12, 0))],
            ["cal-1"],
        ))
        repo.get_co_assigned_doctor_ids = AsyncMock(return_value=["doc-2"])
        repo.get_booked_intervals = AsyncMock(return_value=[
            BookedInterval("doc-2", TUESDAY, time(9, 0), 60),
        ])
        return repo

    @pytest.fixture
    def engine(self, mock_repository):
        return SlotEngine(repository=mock_repository, granularity=30)

    @pytest.mark.asyncio
    async def test_available_slots(self, engine, mock_repository):
        """Bookings from doctors sharing the calendar block the slot."""
        slots = await engine.available_slots("doc-1", TUESDAY, 60)

        assert slots == ["08:00", "10:00", "10:30", "11:00"]
        doctor_ids = mock_repository.get_booked_intervals.call_args.args[0]
        assert set(doctor_ids) == {"doc-1", "doc-2"}

    @pytest.mark.asyncio
    async def test_non_working_day(self, engine):
        """Wednesday has no schedule rule."""
        slots = await engine.available_slots("doc-1", date(2025, 10, 15), 60)
        assert slots == []

    @pytest.mark.asyncio
    async def test_no_rules(self, engine, mock_repository):
        """A doctor without schedules has no slots and no booking query."""
        mock_repository.get_schedule_rules = AsyncMock(return_value=([], []))

        slots = await engine.available_slots("doc-1", TUESDAY, 60)

        assert slots == []
        mock_repository.get_booked_intervals.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_duration(self, engine):
        with pytest.raises(ValidationError):
            await engine.available_slots("doc-1", TUESDAY, 0)

    @pytest.mark.asyncio
    async def test_is_slot_free(self, engine):
        """Times are compared after normalizing to HH:MM."""
        assert await engine.is_slot_free("doc-1", TUESDAY, "10:00:00", 60)
        assert not await engine.is_slot_free("doc-1", TUESDAY, "09:00", 60)

    @pytest.mark.asyncio
    async def test_slots_for_range(self, engine, mock_repository):
        """One query of each kind covers the whole range."""
        by_day = await engine.slots_for_range("doc-1", TUESDAY, date(2025, 10, 21), 60)

        assert len(by_day) == 8
        assert by_day[TUESDAY] == ["08:00", "10:00", "10:30", "11:00"]
        assert by_day[date(2025, 10, 21)] == ["08:00", "08:30", "09:00", "09:30",
                                              "10:00", "10:30", "11:00"]
        assert by_day[date(2025, 10, 15)] == []
        mock_repository.get_schedule_rules.assert_called_once()

    @pytest.mark.asyncio
    async def test_available_days(self, engine):
        """Working days are flagged and the booked day still fits 60 minutes."""
        days = await engine.available_days("doc-1", 2025, 10, 60)

        assert len(days) == 31
        tuesday = next(d for d in days if d.date == "2025-10-14")
        assert tuesday.working is True
        assert tuesday.can_fit is True
        assert tuesday.dow == 2
        wednesday = next(d for d in days if d.date == "2025-10-15")
        assert wednesday.working is False
        assert wednesday.can_fit is False

    @pytest.mark.asyncio
    async def test_available_days_cannot_fit(self, engine):
        """No free gap of 180 minutes remains on the booked Tuesday."""
        days = await engine.available_days("doc-1", 2025, 10, 180)

        tuesday = next(d for d in days if d.date == "2025-10-14")
        assert tuesday.working is True
        assert tuesday.can_fit is False

    @pytest.mark.asyncio
    async def test_available_days_invalid_month(self, engine):
        with pytest.raises(ValidationError):
            await engine.available_days("doc-1", 2025, 13, 60)
