"""Walk-in queue placement, wait estimates and the walk-in reserve.

Advance bookings carry tokens ``A<n>`` (``n`` is the slot's position in
the day's template) and walk-ins carry ``W<n>`` in arrival order. In the
patient-facing queue one walk-in is slotted after every
``walk_in_token_allotment`` advance tokens; advance tokens keep their
labels and relative order.
"""
import logging
import math
from datetime import date, datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from . import config
from .breaks import apply_break_offsets, break_containing, build_break_intervals, skip_breaks
from .domain import AppointmentDraft, DoctorSchedule, SessionInfo, WalkInDetails
from .errors import CapacityExceededError, ValidationError
from .extension import BREAK_BLOCK
from .models import Appointment
from .repository import ScheduleRepository
from .reservations import build_appointment, reserve, reserve_first_free
from .sessions import all_sessions, select_session
from .timegrid import day_slot_index, expand_slots


log = logging.getLogger("clinic.walkin")

WALK_IN = "Walk-in"
WAITING_STATUSES = {"Pending", "Confirmed"}
ACTIVE_STATUSES = {"Pending", "Confirmed", "Skipped", "Completed"}


def advance_token(n: int) -> str:
    return f"A{n}"


def walk_in_token(n: int) -> str:
    return f"W{n}"


def walk_in_insertion_points(advance_count: int, allotment: int) -> List[int]:
    """Advance-token counts after which a walk-in goes (1-based)."""
    if allotment <= 0:
        return []
    return list(range(allotment, advance_count + 1, allotment))


def build_token_queue(advance: Sequence, walk_ins: Sequence, allotment: int) -> List:
    """Interleave walk-ins into the advance queue.

    Items keep their relative order within each list. Walk-ins beyond the
    available insertion points, or all of them when ``allotment`` is not
    positive, go to the end.
    """
    points = set(walk_in_insertion_points(len(advance), allotment))
    pending = list(walk_ins)
    out = []
    for pos, item in enumerate(advance, start=1):
        out.append(item)
        if pos in points and pending:
            out.append(pending.pop(0))
    out.extend(pending)
    return out


def calculate_session_capacity(total_slots: int, reserve_ratio: Optional[float] = None) -> Tuple[int, int]:
    """(advance, walk-in) split of a session's slots; walk-ins always get one."""
    if total_slots <= 0:
        return 0, 0
    ratio = config.WALK_IN_RESERVE_RATIO if reserve_ratio is None else reserve_ratio
    walk_in = min(total_slots, max(1, math.ceil(total_slots * ratio)))
    return total_slots - walk_in, walk_in


def reserved_walk_in_slots(slots: Sequence[datetime], now: datetime, reserve_ratio: Optional[float] = None) -> List[datetime]:
    """The last ``ceil(ratio * future)`` future slots, held back for walk-ins."""
    ratio = config.WALK_IN_RESERVE_RATIO if reserve_ratio is None else reserve_ratio
    future = sorted(t for t in slots if t >= now)
    if not future or ratio <= 0:
        return []
    count = math.ceil(len(future) * ratio)
    return future[-count:]


def _bookable_slots(schedule: DoctorSchedule, info: SessionInfo) -> List[datetime]:
    return [
        t
        for t in expand_slots(info.session_start, info.effective_end, schedule.slot_minutes)
        if break_containing(t, info.breaks) is None
    ]


def _free_slots(schedule: DoctorSchedule, info: SessionInfo, appointments: Sequence[Appointment], now: datetime) -> List[datetime]:
    taken = {a.slot_index for a in appointments if a.status != "Cancelled" and a.slot_index is not None}
    return [
        t
        for t in _bookable_slots(schedule, info)
        if t >= now and day_slot_index(t, schedule.slot_minutes) not in taken
    ]


def queue_entries(appointments: Sequence[Appointment]) -> Tuple[List[Appointment], List[Appointment]]:
    live = [a for a in appointments if a.booked_via != BREAK_BLOCK and a.status in ACTIVE_STATUSES]
    advance = sorted(
        (a for a in live if a.booked_via != WALK_IN),
        key=lambda a: (a.base_arrive_by_at or a.arrive_by_at, a.id),
    )
    walk_ins = sorted(
        (a for a in live if a.booked_via == WALK_IN),
        key=lambda a: (a.numeric_token or 0, a.arrive_by_at),
    )
    return advance, walk_ins


def _check_capacity(info: SessionInfo, schedule: DoctorSchedule, appointments: Sequence[Appointment], threshold: Optional[float]) -> None:
    if not threshold or threshold <= 0:
        return
    total = len(_bookable_slots(schedule, info))
    booked = sum(1 for a in appointments if a.booked_via != BREAK_BLOCK and a.status in ACTIVE_STATUSES)
    if total == 0 or booked / total >= threshold:
        raise CapacityExceededError(
            "walk-in capacity reached for this session",
            session_index=info.session_index,
            date=schedule.day.isoformat(),
            booked=booked,
            total=total,
        )


def estimate_start(info: SessionInfo, now: datetime, patients_ahead: int, slot_minutes: int) -> datetime:
    """When a patient with ``patients_ahead`` people before them gets seen.

    Breaks starting after the queue begins push the estimate by their full
    length, and the result never falls inside a break.
    """
    base = skip_breaks(max(now, info.session_start), info.breaks)
    raw = base + timedelta(minutes=patients_ahead * slot_minutes)
    later = [iv for iv in build_break_intervals(info.breaks) if iv[0] >= base]
    return skip_breaks(apply_break_offsets(raw, later), info.breaks)


def calculate_walk_in_details(
    s: Session,
    doctor_id: int,
    now: datetime,
    walk_in_token_allotment: Optional[int] = None,
    capacity_threshold: Optional[float] = None,
) -> WalkInDetails:
    repo = ScheduleRepository(s)
    schedule = repo.load_schedule(doctor_id, now.date())
    clinic = repo.get_clinic(schedule.clinic_id)
    if walk_in_token_allotment is None:
        walk_in_token_allotment = clinic.walk_in_token_allotment if clinic else 0
    if capacity_threshold is None:
        capacity_threshold = clinic.walk_in_capacity_threshold if clinic else 0.0

    info = select_session(schedule, now)
    if info is None:
        raise CapacityExceededError("doctor has no session today", doctor_id=doctor_id, date=now.date().isoformat())
    day_appts = repo.list_appointments(doctor_id, schedule.day, active_only=True)
    appts = [a for a in day_appts if a.session_index == info.session_index]
    _check_capacity(info, schedule, appts, capacity_threshold)

    free = _free_slots(schedule, info, day_appts, now)
    if not free:
        raise CapacityExceededError(
            "no walk-in slot left in this session",
            session_index=info.session_index,
            date=schedule.day.isoformat(),
        )

    numeric = max((a.numeric_token or 0 for a in day_appts if a.booked_via == WALK_IN), default=0) + 1
    advance, walk_ins = queue_entries(appts)
    marker = object()
    queue = build_token_queue(advance, walk_ins + [marker], walk_in_token_allotment)
    pos = queue.index(marker)
    ahead = sum(1 for a in queue[:pos] if a.status in WAITING_STATUSES)

    anchor = next((a for a in reversed(queue[:pos]) if a.booked_via != WALK_IN), None)
    slot_time = free[0]
    if anchor is not None:
        after_anchor = [t for t in free if t > anchor.arrive_by_at]
        if after_anchor:
            slot_time = after_anchor[0]

    details = WalkInDetails(
        patients_ahead=ahead,
        estimated_time=estimate_start(info, now, ahead, schedule.slot_minutes),
        session_index=info.session_index,
        slot_index=day_slot_index(slot_time, schedule.slot_minutes),
        slot_time=slot_time,
        numeric_token=numeric,
        token_number=walk_in_token(numeric),
    )
    log.info(
        "walk-in estimate for doctor %s: %s ahead, slot %s, token %s",
        doctor_id,
        details.patients_ahead,
        details.slot_index,
        details.token_number,
    )
    return details


def book_walk_in(
    s: Session,
    doctor_id: int,
    now: datetime,
    patient_name: Optional[str] = None,
    patient_phone: Optional[str] = None,
    walk_in_token_allotment: Optional[int] = None,
    capacity_threshold: Optional[float] = None,
) -> Tuple[Appointment, WalkInDetails]:
    """Plan a walk-in and claim its slot, moving on to later slots if beaten to it."""
    details = calculate_walk_in_details(s, doctor_id, now, walk_in_token_allotment, capacity_threshold)
    repo = ScheduleRepository(s)
    schedule = repo.load_schedule(doctor_id, now.date())
    info = next(i for i in all_sessions(schedule) if i.session_index == details.session_index)
    day_appts = repo.list_appointments(doctor_id, schedule.day, active_only=True)
    free = _free_slots(schedule, info, day_appts, now)
    candidates = [details.slot_time] + [t for t in free if t > details.slot_time] + [t for t in free if t < details.slot_time]
    draft = AppointmentDraft(
        patient_name=patient_name,
        patient_phone=patient_phone,
        booked_via=WALK_IN,
        status="Confirmed",
        token_number=details.token_number,
        numeric_token=details.numeric_token,
    )
    appt = reserve_first_free(
        s,
        candidates,
        lambda t: build_appointment(schedule, info.session_index, t, draft),
    )
    return appt, details


def advance_token_number(schedule: DoctorSchedule, slot_time: datetime) -> int:
    n = 0
    for i in range(len(schedule.sessions)):
        for t in expand_slots(schedule.session_start(i), schedule.session_end(i), schedule.slot_minutes):
            n += 1
            if t == slot_time:
                return n
    return n + 1


def book_advance(
    s: Session,
    doctor_id: int,
    day: date,
    slot_time: datetime,
    now: datetime,
    patient_name: Optional[str] = None,
    patient_phone: Optional[str] = None,
    booked_via: str = "Advanced Booking",
) -> Appointment:
    """Book a specific slot ahead of time, keeping clear of the walk-in reserve."""
    repo = ScheduleRepository(s)
    schedule = repo.load_schedule(doctor_id, day)
    clinic = repo.get_clinic(schedule.clinic_id)
    ratio = clinic.walk_in_reserve_ratio if clinic else None

    info = next(
        (i for i in all_sessions(schedule) if i.session_start <= slot_time < i.effective_end),
        None,
    )
    if info is None or slot_time not in _bookable_slots(schedule, info):
        raise ValidationError("not a bookable slot", date=day.isoformat(), slot=slot_time.isoformat())
    if slot_time < now:
        raise ValidationError("slot is in the past", slot=slot_time.isoformat())
    if slot_time in reserved_walk_in_slots(_bookable_slots(schedule, info), now, ratio):
        raise CapacityExceededError(
            "slot is held for walk-ins",
            session_index=info.session_index,
            slot_index=day_slot_index(slot_time, schedule.slot_minutes),
        )

    n = advance_token_number(schedule, slot_time)
    draft = AppointmentDraft(
        patient_name=patient_name,
        patient_phone=patient_phone,
        booked_via=booked_via,
        status="Pending",
        token_number=advance_token(n),
        numeric_token=n,
    )
    return reserve(s, build_appointment(schedule, info.session_index, slot_time, draft))
