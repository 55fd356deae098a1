"""Moves booked appointments out of the way of breaks.

Every appointment keeps its pre-break position (``base_arrive_by_at`` /
``base_slot_index``); each break that moves it adds an ``AppointmentShift``
ledger row. A break is applied at most once (``ShiftRun``), and
``reconcile_session`` can always rebuild the whole session from the
baseline and the stored breaks.

Shifting runs after the break is committed. A failure here leaves the
break in place and is reported as ``ShiftApplicationError``.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .breaks import create_break_period, skip_breaks
from .domain import BreakPeriod, DoctorSchedule
from .errors import ShiftApplicationError
from .extension import BREAK_BLOCK, is_queued
from .models import Appointment, AppointmentShift, ShiftRun, SlotReservation
from .repository import ScheduleRepository, break_from_row
from .reservations import apply_arrive_by, reservation_id
from .timegrid import day_slot_index, minutes_between


log = logging.getLogger("clinic.shifter")

FULL = "full"
GAP_AWARE = "gap_aware"


class ShiftReport(BaseModel):
    break_id: str
    mode: str = FULL
    shifted: Dict[str, int] = Field(default_factory=dict)  # appointment id -> minutes
    blocked_slots: List[int] = Field(default_factory=list)
    skipped: bool = False


def _plan(
    positions: Dict[str, datetime],
    brk: BreakPeriod,
    mode: str,
    obstacles: Sequence[BreakPeriod],
    slot_minutes: int,
) -> Dict[str, datetime]:
    """New positions for the entries ``brk`` displaces.

    Full mode pushes everything at or after the break start by the whole
    break; gap-aware mode pushes only as far as the queue needs. Either way
    entries hop over every obstacle and never land on each other.
    """
    step = timedelta(minutes=slot_minutes)
    push = timedelta(minutes=brk.duration_minutes) if mode == FULL else timedelta(0)
    moved: Dict[str, datetime] = {}
    cursor: Optional[datetime] = None
    for appt_id, t in sorted(positions.items(), key=lambda kv: (kv[1], kv[0])):
        target = t + push if t >= brk.start_time else t
        if cursor is not None and target < cursor:
            target = cursor
        target = skip_breaks(target, obstacles)
        cursor = target + step
        if target != t:
            moved[appt_id] = target
    return moved


def _session_rows(s: Session, schedule: DoctorSchedule, session_index: int) -> List[Appointment]:
    return ScheduleRepository(s).list_appointments(
        schedule.doctor_id, schedule.day, session_index=session_index, active_only=True, for_update=True
    )


def _fixed_slots(rows: Sequence[Appointment], live_ids: set, slot_minutes: int) -> List[BreakPeriod]:
    """Held slots nobody may be moved onto, as one-slot obstacles.

    These are blocks left behind by removed breaks and rows that keep their
    claim without needing the doctor (no-shows).
    """
    out = []
    for a in rows:
        if is_queued(a) or (a.booked_via == BREAK_BLOCK and a.break_id in live_ids):
            continue
        out.append(create_break_period([a.arrive_by_at], a.session_index, slot_minutes, kind="blocked"))
    return out


def _other_session_slots(s: Session, schedule: DoctorSchedule, session_index: int) -> List[BreakPeriod]:
    """Slots the doctor's other sessions hold that day.

    Slot indices are day-wide, so an entry pushed past its session end must
    not land on a slot a neighbouring session already claimed.
    """
    rows = ScheduleRepository(s).list_appointments(schedule.doctor_id, schedule.day, active_only=True)
    return [
        create_break_period([a.arrive_by_at], a.session_index, schedule.slot_minutes, kind="blocked")
        for a in rows
        if a.session_index != session_index
    ]


def _write_positions(
    s: Session,
    rows: Dict[str, Appointment],
    targets: Dict[str, datetime],
    slot_minutes: int,
) -> None:
    """Move appointments and their reservations.

    All old claims are dropped before any new one is written, so moves in
    any order cannot trip over each other.
    """
    if not targets:
        return
    s.execute(delete(SlotReservation).where(SlotReservation.appointment_id.in_(list(targets))))
    s.flush()
    for appt_id, target in targets.items():
        a = rows[appt_id]
        a.slot_index = day_slot_index(target, slot_minutes)
        apply_arrive_by(a, target)
        base = a.base_arrive_by_at or target
        a.delay = max(0, minutes_between(base, target))
        s.add(
            SlotReservation(
                id=reservation_id(a.clinic_id, a.doctor_name, a.day, a.slot_index),
                clinic_id=a.clinic_id,
                doctor_name=a.doctor_name,
                day=a.day,
                slot_index=a.slot_index,
                appointment_id=a.id,
            )
        )
    s.flush()


def _place_blocks(s: Session, schedule: DoctorSchedule, brk: BreakPeriod) -> List[int]:
    """Hold every free slot of the break window with a break-block row."""
    blocked = []
    for t in brk.slots:
        idx = day_slot_index(t, schedule.slot_minutes)
        rid = reservation_id(schedule.clinic_id, schedule.doctor_name, schedule.day, idx)
        if s.get(SlotReservation, rid) is not None:
            continue
        a = Appointment(
            id=str(uuid.uuid4()),
            clinic_id=schedule.clinic_id,
            doctor_id=schedule.doctor_id,
            doctor_name=schedule.doctor_name,
            day=schedule.day,
            session_index=brk.session_index,
            slot_index=idx,
            base_slot_index=idx,
            base_arrive_by_at=t,
            status="Completed",
            booked_via=BREAK_BLOCK,
            cancelled_by_break=True,
            break_id=brk.id,
            delay=0,
        )
        apply_arrive_by(a, t)
        s.add(a)
        s.add(
            SlotReservation(
                id=rid,
                clinic_id=schedule.clinic_id,
                doctor_name=schedule.doctor_name,
                day=schedule.day,
                slot_index=idx,
                appointment_id=a.id,
            )
        )
        blocked.append(idx)
    s.flush()
    return blocked


def _record(s: Session, schedule: DoctorSchedule, brk_id: str, before, after, slot_minutes: int) -> Dict[str, int]:
    shifted = {}
    for appt_id, target in after.items():
        minutes = minutes_between(before[appt_id], target)
        slots = day_slot_index(target, slot_minutes) - day_slot_index(before[appt_id], slot_minutes)
        s.add(
            AppointmentShift(
                appointment_id=appt_id,
                break_id=brk_id,
                doctor_id=schedule.doctor_id,
                day=schedule.day,
                minutes=minutes,
                slots=slots,
            )
        )
        shifted[appt_id] = minutes
    return shifted


def _with_retries(s: Session, what: str, context: dict, fn):
    last: Optional[Exception] = None
    for attempt in range(1, config.SHIFT_MAX_ATTEMPTS + 1):
        try:
            result = fn()
            s.commit()
            return result
        except SQLAlchemyError as e:
            s.rollback()
            last = e
            log.warning("%s failed (attempt %s/%s): %s", what, attempt, config.SHIFT_MAX_ATTEMPTS, e)
    raise ShiftApplicationError(f"{what} failed", **context) from last


def shift_appointments_for_new_break(
    s: Session,
    schedule: DoctorSchedule,
    new_break: BreakPeriod,
    mode: str = FULL,
) -> ShiftReport:
    """Push the session's booked appointments out of ``new_break``.

    Safe to call again for the same break id: the second call does nothing.
    """
    session_index = new_break.session_index
    context = dict(
        break_id=new_break.id,
        doctor_id=schedule.doctor_id,
        date=schedule.day.isoformat(),
        session_index=session_index,
    )

    def _apply() -> ShiftReport:
        done = s.execute(
            select(ShiftRun).where(
                ShiftRun.doctor_id == schedule.doctor_id,
                ShiftRun.day == schedule.day,
                ShiftRun.break_id == new_break.id,
            )
        ).scalars().first()
        if done is not None:
            return ShiftReport(break_id=new_break.id, mode=done.mode, skipped=True)

        repo = ScheduleRepository(s)
        live = [break_from_row(r) for r in repo.break_rows(schedule.doctor_id, schedule.day, session_index)]
        if not any(b.start_time <= new_break.start_time < b.end_time for b in live):
            live.append(new_break)
        live_ids = {i for b in live for i in (b.id,) + b.member_ids}

        rows = _session_rows(s, schedule, session_index)
        queued = {a.id: a for a in rows if is_queued(a)}
        before = {k: a.arrive_by_at for k, a in queued.items()}
        obstacles = (
            live
            + _fixed_slots(rows, live_ids, schedule.slot_minutes)
            + _other_session_slots(s, schedule, session_index)
        )
        after = _plan(before, new_break, mode, obstacles, schedule.slot_minutes)

        shifted = _record(s, schedule, new_break.id, before, after, schedule.slot_minutes)
        _write_positions(s, queued, after, schedule.slot_minutes)
        blocked = _place_blocks(s, schedule, new_break)
        s.add(
            ShiftRun(
                doctor_id=schedule.doctor_id,
                day=schedule.day,
                session_index=session_index,
                break_id=new_break.id,
                mode=mode,
            )
        )
        return ShiftReport(break_id=new_break.id, mode=mode, shifted=shifted, blocked_slots=blocked)

    report = _with_retries(s, "appointment shift", context, _apply)
    if not report.skipped:
        log.info(
            "break %s applied (%s): %s appointments shifted, %s slots blocked",
            new_break.id,
            report.mode,
            len(report.shifted),
            len(report.blocked_slots),
        )
    return report


def reconcile_session(s: Session, schedule: DoctorSchedule, session_index: int) -> Dict[str, int]:
    """Rebuild every appointment position of a session from scratch.

    Appointments go back to their baseline, then the stored breaks are
    applied in start order. Blocked slots of removed breaks stay in place.
    Returns appointment id -> total minutes shifted.
    """
    context = dict(doctor_id=schedule.doctor_id, date=schedule.day.isoformat(), session_index=session_index)

    def _apply() -> Dict[str, int]:
        repo = ScheduleRepository(s)
        live = [break_from_row(r) for r in repo.break_rows(schedule.doctor_id, schedule.day, session_index)]
        live_ids = {i for b in live for i in (b.id,) + b.member_ids}
        rows = _session_rows(s, schedule, session_index)

        stale_blocks = [a for a in rows if a.booked_via == BREAK_BLOCK and a.break_id in live_ids]
        if stale_blocks:
            ids = [a.id for a in stale_blocks]
            s.execute(delete(SlotReservation).where(SlotReservation.appointment_id.in_(ids)))
            for a in stale_blocks:
                s.delete(a)
            s.flush()

        queued = {a.id: a for a in rows if is_queued(a)}
        if queued:
            s.execute(delete(AppointmentShift).where(AppointmentShift.appointment_id.in_(list(queued))))
        s.execute(
            delete(ShiftRun).where(
                ShiftRun.doctor_id == schedule.doctor_id,
                ShiftRun.day == schedule.day,
                ShiftRun.session_index == session_index,
            )
        )

        fixed = _fixed_slots(rows, live_ids, schedule.slot_minutes) + _other_session_slots(
            s, schedule, session_index
        )
        positions = {k: (a.base_arrive_by_at or a.arrive_by_at) for k, a in queued.items()}
        applied: List[BreakPeriod] = []
        for brk in sorted(live, key=lambda b: b.start_time):
            applied.append(brk)
            after = _plan(positions, brk, brk.shift_mode, applied + fixed, schedule.slot_minutes)
            _record(s, schedule, brk.id, positions, after, schedule.slot_minutes)
            positions.update(after)
            s.add(
                ShiftRun(
                    doctor_id=schedule.doctor_id,
                    day=schedule.day,
                    session_index=session_index,
                    break_id=brk.id,
                    mode=brk.shift_mode,
                )
            )

        changed = {k: t for k, t in positions.items() if queued[k].arrive_by_at != t}
        _write_positions(s, queued, changed, schedule.slot_minutes)
        for brk in live:
            _place_blocks(s, schedule, brk)
        return {k: max(0, minutes_between(queued[k].base_arrive_by_at or t, t)) for k, t in positions.items()}

    totals = _with_retries(s, "session reconcile", context, _apply)
    log.info(
        "session %s of doctor %s on %s reconciled (%s appointments)",
        session_index,
        schedule.doctor_id,
        schedule.day.isoformat(),
        len(totals),
    )
    return totals


def drop_break_ledger(s: Session, schedule: DoctorSchedule, break_ids: Sequence[str]) -> None:
    """Forget that ``break_ids`` were applied. Does not commit."""
    ids = list(break_ids)
    s.execute(
        delete(AppointmentShift).where(
            AppointmentShift.doctor_id == schedule.doctor_id,
            AppointmentShift.day == schedule.day,
            AppointmentShift.break_id.in_(ids),
        )
    )
    s.execute(
        delete(ShiftRun).where(
            ShiftRun.doctor_id == schedule.doctor_id,
            ShiftRun.day == schedule.day,
            ShiftRun.break_id.in_(ids),
        )
    )


def open_blocked_slots(s: Session, blocks: Sequence[Appointment]) -> int:
    """Cancel break-block rows and free their slots. Does not commit."""
    if not blocks:
        return 0
    s.execute(delete(SlotReservation).where(SlotReservation.appointment_id.in_([a.id for a in blocks])))
    for a in blocks:
        a.status = "Cancelled"
        a.cancelled_by_break = False
        s.add(a)
    s.flush()
    return len(blocks)


def release_expired_blocks(s: Session, now: datetime) -> int:
    """Reopen keep-blocked slots whose hold has run out."""
    rows = s.execute(
        select(Appointment).where(
            Appointment.booked_via == BREAK_BLOCK,
            Appointment.status != "Cancelled",
            Appointment.blocked_until.is_not(None),
            Appointment.blocked_until <= now,
        )
    ).scalars().all()
    count = open_blocked_slots(s, rows)
    s.commit()
    if count:
        log.info("released %s expired blocked slots", count)
    return count
