"""
Slot Availability Engine.

Computes bookable start times from weekly schedule windows minus the
intervals already occupied by non-cancelled appointments. Doctors that
share a calendar share its occupancy.

Usage:
    engine = get_slot_engine()
    slots = await engine.available_slots(doctor_id, date(2025, 10, 14), 60)
    # ["08:00", "08:30", "10:00", ...]
"""

import calendar as _calendar
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from clinicbot.config import settings
from clinicbot.core.exceptions import ValidationError
from clinicbot.core.scheduling.repository import (
    SchedulingRepository,
    get_scheduling_repository,
)
from clinicbot.core.scheduling.timeutils import (
    day_of_week,
    minutes_to_hhmm,
    to_minutes,
)
from clinicbot.core.scheduling.types import BookedInterval, ScheduleRule

logger = logging.getLogger(__name__)

Interval = tuple[int, int]


# === Pure interval math ===

def merge_intervals(intervals: list[Interval]) -> list[Interval]:
    """Merge overlapping or touching [start, end) intervals."""
    if not intervals:
        return []
    ordered = sorted(intervals)
    merged = [ordered[0]]
    for start, end in ordered[1:]:
        last_start, last_end = merged[-1]
        if start <= last_end:
            merged[-1] = (last_start, max(last_end, end))
        else:
            merged.append((start, end))
    return merged


def calculate_gaps(work_start: int, work_end: int, occupied: list[Interval]) -> list[Interval]:
    """Free gaps inside a working window after clipping and merging occupancy."""
    clipped = [
        (max(start, work_start), min(end, work_end))
        for start, end in occupied
    ]
    clipped = [(s, e) for s, e in clipped if s < e]

    gaps: list[Interval] = []
    cursor = work_start
    for start, end in merge_intervals(clipped):
        if cursor < start:
            gaps.append((cursor, start))
        cursor = max(cursor, end)
    if cursor < work_end:
        gaps.append((cursor, work_end))
    return gaps


def compute_slots(
    windows: list[Interval],
    occupied: list[Interval],
    duration: int,
    granularity: int,
) -> list[str]:
    """
    Candidate start times that fit a window and overlap nothing occupied.

    Args:
        windows: Working windows in minutes since midnight
        occupied: Occupied intervals in minutes since midnight
        duration: Appointment length in minutes
        granularity: Step between candidates in minutes

    Returns:
        Sorted, de-duplicated "HH:MM" strings
    """
    starts: set[int] = set()
    for window_start, window_end in windows:
        candidate = window_start
        while candidate + duration <= window_end:
            candidate_end = candidate + duration
            if not any(candidate < end and start < candidate_end for start, end in occupied):
                starts.add(candidate)
            candidate += granularity
    return [minutes_to_hhmm(m) for m in sorted(starts)]


def filter_future_slots(slots: list[str], day: date, now_local: datetime) -> list[str]:
    """Drop slots that already started when day is today in the tenant timezone."""
    if day != now_local.date():
        return slots if day > now_local.date() else []
    current = now_local.hour * 60 + now_local.minute
    return [s for s in slots if to_minutes(s) > current]


@dataclass
class DayAvailability:
    """One calendar day in a month availability view."""

    date: str
    dow: int
    working: bool
    can_fit: bool

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "dow": self.dow,
            "working": self.working,
            "canFit": self.can_fit,
        }


class SlotEngine:
    """Availability queries over the scheduling repository."""

    def __init__(
        self,
        repository: Optional[SchedulingRepository] = None,
        granularity: Optional[int] = None,
    ):
        self._repository = repository
        self.granularity = granularity or settings.slot_granularity_minutes

    def _get_repository(self) -> SchedulingRepository:
        if self._repository is None:
            self._repository = get_scheduling_repository()
        return self._repository

    @staticmethod
    def _validate(duration: int, granularity: int) -> None:
        if duration <= 0:
            raise ValidationError(f"Duration must be positive, got {duration}")
        if granularity <= 0:
            raise ValidationError(f"Granularity must be positive, got {granularity}")

    async def _load(
        self,
        resource_id: str,
        start: date,
        end: date,
        calendar_id: Optional[str],
    ) -> tuple[list[ScheduleRule], list[BookedInterval]]:
        """Rules for the resource plus bookings of everyone sharing its calendars."""
        repo = self._get_repository()
        rules, calendar_ids = await repo.get_schedule_rules(resource_id, calendar_id)
        if not rules:
            return [], []

        doctor_ids = await repo.get_co_assigned_doctor_ids(calendar_ids)
        if resource_id not in doctor_ids:
            doctor_ids.append(resource_id)

        booked = await repo.get_booked_intervals(doctor_ids, start, end)
        return rules, booked

    @staticmethod
    def _windows_for(rules: list[ScheduleRule], day: date) -> list[Interval]:
        dow = day_of_week(day)
        return [
            (to_minutes(r.start_time), to_minutes(r.end_time))
            for r in rules
            if r.day_of_week == dow
        ]

    @staticmethod
    def _occupied_by_date(booked: list[BookedInterval]) -> dict[date, list[Interval]]:
        by_date: dict[date, list[Interval]] = defaultdict(list)
        for b in booked:
            start = to_minutes(b.time)
            by_date[b.date].append((start, start + b.duration_minutes))
        return by_date

    async def available_slots(
        self,
        resource_id: str,
        day: date,
        duration_minutes: int,
        granularity: Optional[int] = None,
        calendar_id: Optional[str] = None,
    ) -> list[str]:
        """
        Bookable start times for one resource on one date.

        Past times are not filtered; callers do that in the tenant timezone.

        Raises:
            ValidationError: If duration or granularity is not positive
        """
        step = granularity or self.granularity
        self._validate(duration_minutes, step)

        rules, booked = await self._load(resource_id, day, day, calendar_id)
        windows = self._windows_for(rules, day)
        if not windows:
            return []

        occupied = self._occupied_by_date(booked).get(day, [])
        return compute_slots(windows, occupied, duration_minutes, step)

    async def slots_for_range(
        self,
        resource_id: str,
        start: date,
        end: date,
        duration_minutes: int,
        calendar_id: Optional[str] = None,
    ) -> dict[date, list[str]]:
        """Slots for every date in [start, end] using one query of each kind."""
        self._validate(duration_minutes, self.granularity)
        if end < start:
            return {}

        rules, booked = await self._load(resource_id, start, end, calendar_id)
        occupied = self._occupied_by_date(booked)

        result: dict[date, list[str]] = {}
        day = start
        while day <= end:
            windows = self._windows_for(rules, day)
            result[day] = (
                compute_slots(windows, occupied.get(day, []), duration_minutes, self.granularity)
                if windows else []
            )
            day += timedelta(days=1)
        return result

    async def available_days(
        self,
        resource_id: str,
        year: int,
        month: int,
        duration_minutes: int,
        calendar_id: Optional[str] = None,
    ) -> list[DayAvailability]:
        """
        Month view: whether each day is a working day and can fit the duration.

        A day can fit when some free gap inside one of its windows is at
        least duration_minutes long.
        """
        if not 1 <= month <= 12:
            raise ValidationError(f"Invalid month: {month}")
        if duration_minutes <= 0 or duration_minutes > 480:
            raise ValidationError("durationMinutes must be between 1 and 480")

        first = date(year, month, 1)
        last = date(year, month, _calendar.monthrange(year, month)[1])
        rules, booked = await self._load(resource_id, first, last, calendar_id)
        occupied = self._occupied_by_date(booked)

        days: list[DayAvailability] = []
        day = first
        while day <= last:
            windows = self._windows_for(rules, day)
            can_fit = any(
                gap_end - gap_start >= duration_minutes
                for window_start, window_end in windows
                for gap_start, gap_end in calculate_gaps(
                    window_start, window_end, occupied.get(day, [])
                )
            )
            days.append(DayAvailability(
                date=day.isoformat(),
                dow=day_of_week(day),
                working=bool(windows),
                can_fit=can_fit,
            ))
            day += timedelta(days=1)
        return days

    async def is_slot_free(
        self,
        resource_id: str,
        day: date,
        time_str: str,
        duration_minutes: int,
        calendar_id: Optional[str] = None,
    ) -> bool:
        """Re-check one slot against current bookings just before writing."""
        slots = await self.available_slots(
            resource_id, day, duration_minutes, calendar_id=calendar_id
        )
        return minutes_to_hhmm(to_minutes(time_str)) in slots


# Singleton
_engine: Optional[SlotEngine] = None


def get_slot_engine() -> SlotEngine:
    """Get singleton SlotEngine."""
    global _engine
    if _engine is None:
        _engine = SlotEngine()
    return _engine
