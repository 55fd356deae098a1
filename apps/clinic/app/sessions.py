"""Which session is running, where it ends, and what its slots look like.

Effective session ends are computed here and nowhere else; other modules
take a ``SessionInfo``.
"""
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from .breaks import break_containing
from .domain import BreakPeriod, DoctorSchedule, SessionInfo, SlotInfo
from .errors import NotFoundError
from .timegrid import day_slot_index, expand_slots, format_time


CANCELLED = "Cancelled"


def _require_session(schedule: DoctorSchedule, session_index: int) -> None:
    if not schedule.has_session(session_index):
        raise NotFoundError(
            "session not found",
            doctor_id=schedule.doctor_id,
            date=schedule.day.isoformat(),
            session_index=session_index,
        )


def get_session_breaks(schedule: DoctorSchedule, session_index: int) -> Tuple[BreakPeriod, ...]:
    return schedule.breaks_for(session_index)


def get_session_end(schedule: DoctorSchedule, session_index: int) -> datetime:
    """Template end of the session, ignoring any extension."""
    _require_session(schedule, session_index)
    return schedule.session_end(session_index)


def get_effective_session_end(schedule: DoctorSchedule, session_index: int) -> datetime:
    end = get_session_end(schedule, session_index)
    ext = schedule.extension_for(session_index)
    if ext is not None and ext.total_extended_by > 0:
        return end + timedelta(minutes=ext.total_extended_by)
    return end


def resolve_session_info(schedule: DoctorSchedule, session_index: int) -> SessionInfo:
    _require_session(schedule, session_index)
    breaks = get_session_breaks(schedule, session_index)
    original_end = schedule.session_end(session_index)
    return SessionInfo(
        session_index=session_index,
        session_start=schedule.session_start(session_index),
        session_end=original_end,
        breaks=breaks,
        total_break_minutes=sum(b.duration_minutes for b in breaks),
        effective_end=get_effective_session_end(schedule, session_index),
        original_end=original_end,
    )


def all_sessions(schedule: DoctorSchedule) -> List[SessionInfo]:
    return [resolve_session_info(schedule, i) for i in range(len(schedule.sessions))]


def get_current_active_session(schedule: DoctorSchedule, now: datetime) -> Optional[SessionInfo]:
    """Session whose ``[start, effective end)`` contains ``now``."""
    for info in all_sessions(schedule):
        if info.session_start <= now < info.effective_end:
            return info
    return None


def select_session(schedule: DoctorSchedule, now: datetime) -> Optional[SessionInfo]:
    """Active session, else the next one that has not ended, else the last one."""
    sessions = all_sessions(schedule)
    if not sessions:
        return None
    active = get_current_active_session(schedule, now)
    if active is not None:
        return active
    upcoming = [info for info in sessions if info.effective_end > now]
    if upcoming:
        return min(upcoming, key=lambda info: info.session_start)
    return sessions[-1]


def _occupied_indices(appointments: Iterable) -> set:
    # slot indices are day-wide; a shifted entry may sit past its own session
    taken = set()
    for a in appointments:
        if a.status == CANCELLED:
            continue
        if a.slot_index is not None:
            taken.add(a.slot_index)
    return taken


def list_session_slots(
    schedule: DoctorSchedule,
    session_index: int,
    appointments: Iterable = (),
) -> List[SlotInfo]:
    info = resolve_session_info(schedule, session_index)
    occupied = _occupied_indices(appointments)
    out: List[SlotInfo] = []
    for t in expand_slots(info.session_start, info.effective_end, schedule.slot_minutes):
        idx = day_slot_index(t, schedule.slot_minutes)
        out.append(
            SlotInfo(
                iso_instant=t.isoformat(),
                session_index=session_index,
                slot_index=idx,
                time_formatted=format_time(t),
                is_taken=idx in occupied or break_containing(t, info.breaks) is not None,
            )
        )
    return out


def get_available_break_slots(schedule: DoctorSchedule, now: datetime) -> List[SlotInfo]:
    """Future slots of the current and upcoming sessions a break could cover.

    Booked slots are included (a break may displace bookings); slots already
    inside a break are not.
    """
    out: List[SlotInfo] = []
    for info in all_sessions(schedule):
        if info.effective_end <= now:
            continue
        for t in expand_slots(info.session_start, info.effective_end, schedule.slot_minutes):
            if t < now or break_containing(t, info.breaks) is not None:
                continue
            out.append(
                SlotInfo(
                    iso_instant=t.isoformat(),
                    session_index=info.session_index,
                    slot_index=day_slot_index(t, schedule.slot_minutes),
                    time_formatted=format_time(t),
                    is_taken=False,
                )
            )
    return out
