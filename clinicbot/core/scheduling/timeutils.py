"""
Date and time helpers.

All patient-facing dates use dd/MM/yyyy and 12-hour clock times, and
"today" is always evaluated in the tenant timezone.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

from clinicbot.config import settings


SPANISH_WEEKDAYS = ["Lunes", "Martes", "Miércoles", "Jueves", "Viernes", "Sábado", "Domingo"]

SPANISH_MONTHS_SHORT = [
    "ene", "feb", "mar", "abr", "may", "jun",
    "jul", "ago", "sep", "oct", "nov", "dic",
]


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def tenant_zone(tz_name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(tz_name or settings.tenant_timezone)


def tenant_now(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> datetime:
    """Current (or given) instant expressed in the tenant timezone."""
    return (now or _utcnow()).astimezone(tenant_zone(tz_name))


def tenant_today(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> date:
    return tenant_now(now, tz_name).date()


def day_of_week(d: date) -> int:
    """Weekday with 0=Sunday .. 6=Saturday."""
    return (d.weekday() + 1) % 7


def week_monday(d: date) -> date:
    return d - timedelta(days=d.weekday())


def to_minutes(value: Union[str, time]) -> int:
    """
    Convert "HH:MM", "HH:MM:SS" or a time object to minutes since midnight.

    Raises:
        ValueError: If the string is not a valid clock time
    """
    if isinstance(value, time):
        return value.hour * 60 + value.minute
    parts = value.strip().split(":")
    if len(parts) < 2:
        raise ValueError(f"Invalid time: {value!r}")
    hours, minutes = int(parts[0]), int(parts[1])
    if not (0 <= hours <= 24 and 0 <= minutes < 60):
        raise ValueError(f"Invalid time: {value!r}")
    return hours * 60 + minutes


def minutes_to_hhmm(total: int) -> str:
    return f"{total // 60:02d}:{total % 60:02d}"


def parse_hhmm(value: str) -> time:
    minutes = to_minutes(value)
    return time(minutes // 60, minutes % 60)


def format_date(d: Union[date, str]) -> str:
    """Format as dd/MM/yyyy."""
    if isinstance(d, str):
        d = date.fromisoformat(d)
    return d.strftime("%d/%m/%Y")


def format_time_12h(value: Union[str, time]) -> str:
    """Format as "3:00 PM"."""
    minutes = to_minutes(value)
    hours, mins = divmod(minutes, 60)
    period = "PM" if hours >= 12 else "AM"
    hours12 = hours % 12 or 12
    return f"{hours12}:{mins:02d} {period}"


def format_appointment_datetime(d: Union[date, str], t: Union[str, time]) -> str:
    """Format as "12/12/2025 a las 3:00 PM"."""
    return f"{format_date(d)} a las {format_time_12h(t)}"


def format_week_label(start: date, end: date) -> str:
    """Format as "Semana del 13 oct al 19 oct"."""
    return (
        f"Semana del {start.day} {SPANISH_MONTHS_SHORT[start.month - 1]} "
        f"al {end.day} {SPANISH_MONTHS_SHORT[end.month - 1]}"
    )


def format_day_label(d: date) -> str:
    """Format as "Lunes 14/10"."""
    return f"{SPANISH_WEEKDAYS[d.weekday()]} {d.day:02d}/{d.month:02d}"


def combine_local(d: date, t: time, tz_name: Optional[str] = None) -> datetime:
    """Wall-clock date and time in the tenant timezone as an aware datetime."""
    return datetime.combine(d, t, tzinfo=tenant_zone(tz_name))
