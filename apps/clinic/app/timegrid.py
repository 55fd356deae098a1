"""Slot grid arithmetic.

All instants are naive clinic-local datetimes; the clinic runs on a single
timezone (``CLINIC_TZ``) and nothing here converts between zones.
"""
import math
from datetime import date, datetime, time, timedelta
from typing import List, Optional
from zoneinfo import ZoneInfo

from . import config
from .errors import InvalidRangeError, ValidationError


def clinic_now(tz_name: Optional[str] = None) -> datetime:
    return datetime.now(ZoneInfo(tz_name or config.CLINIC_TZ)).replace(tzinfo=None, microsecond=0)


def parse_hhmm(val: str) -> int:
    """"HH:MM" (24h) to minutes from midnight."""
    try:
        hh, mm = val.split(":")
        hhi = int(hh); mmi = int(mm)
        if hhi < 0 or hhi > 23 or mmi < 0 or mmi > 59:
            raise ValueError()
        return hhi * 60 + mmi
    except (AttributeError, ValueError):
        raise ValidationError("time must be HH:MM 24h", value=val)


def at_minute(day: date, minute: int) -> datetime:
    return datetime.combine(day, time()) + timedelta(minutes=minute)


def format_time(t: datetime) -> str:
    return t.strftime("%I:%M %p")


def expand_slots(session_start: datetime, session_end: datetime, slot_minutes: int) -> List[datetime]:
    """Slot start instants of ``[session_start, session_end)``.

    The final slot is kept when it starts strictly before the end, even if
    it would run past it.
    """
    if slot_minutes <= 0:
        raise InvalidRangeError("slot duration must be positive", slot_minutes=slot_minutes)
    if session_end <= session_start:
        raise InvalidRangeError(
            "session end must be after session start",
            start=session_start.isoformat(),
            end=session_end.isoformat(),
        )
    step = timedelta(minutes=slot_minutes)
    slots: List[datetime] = []
    t = session_start
    while t < session_end:
        slots.append(t)
        t += step
    return slots


def slot_count(session_start: datetime, session_end: datetime, slot_minutes: int) -> int:
    span = (session_end - session_start).total_seconds() / 60
    return max(0, math.ceil(span / slot_minutes))


def day_slot_index(t: datetime, slot_minutes: int) -> int:
    """Day-wide slot index of the slot starting at ``t``.

    Counted on a grid anchored at midnight so indices from different
    sessions of the same day never collide.
    """
    minutes = t.hour * 60 + t.minute + t.second / 60
    return int(minutes // slot_minutes)


def minutes_between(a: datetime, b: datetime) -> int:
    return int((b - a).total_seconds() // 60)
