import logging
import re
import uuid
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from . import config
from .domain import AppointmentDraft, DoctorSchedule
from .errors import NotFoundError, SlotTakenError
from .models import Appointment, SlotReservation
from .timegrid import day_slot_index


log = logging.getLogger("clinic.reservations")


def reservation_id(clinic_id: str, doctor_name: str, day: date, slot_index: int) -> str:
    raw = f"{clinic_id}_{doctor_name}_{day.isoformat()}_slot_{slot_index}"
    return re.sub(r"[^A-Za-z0-9_]", "", re.sub(r"\s+", "_", raw))


def apply_arrive_by(a: Appointment, arrive_by: datetime) -> None:
    a.arrive_by_at = arrive_by
    a.cut_off_at = arrive_by - timedelta(minutes=config.CUT_OFF_MINUTES)
    a.no_show_at = arrive_by + timedelta(minutes=config.NO_SHOW_MINUTES)


def build_appointment(
    schedule: DoctorSchedule,
    session_index: int,
    slot_time: datetime,
    draft: AppointmentDraft,
) -> Appointment:
    idx = day_slot_index(slot_time, schedule.slot_minutes)
    a = Appointment(
        id=str(uuid.uuid4()),
        clinic_id=schedule.clinic_id,
        doctor_id=schedule.doctor_id,
        doctor_name=schedule.doctor_name,
        day=schedule.day,
        session_index=session_index,
        slot_index=idx,
        base_slot_index=idx,
        base_arrive_by_at=slot_time,
        delay=0,
        status=draft.status,
        booked_via=draft.booked_via,
        token_number=draft.token_number,
        numeric_token=draft.numeric_token,
        cancelled_by_break=False,
        patient_name=draft.patient_name,
        patient_phone=draft.patient_phone,
    )
    apply_arrive_by(a, slot_time)
    return a


def reserve(s: Session, appointment: Appointment) -> Appointment:
    """Claim ``appointment.slot_index`` and store the appointment, atomically.

    Any lost race (existing claim, unique violation, lock timeout) comes back
    as ``SlotTakenError`` with the transaction rolled back.
    """
    rid = reservation_id(appointment.clinic_id, appointment.doctor_name, appointment.day, appointment.slot_index)
    ctx = dict(reservation_id=rid, slot_index=appointment.slot_index, date=appointment.day.isoformat())
    try:
        if s.get(SlotReservation, rid) is not None:
            raise SlotTakenError(**ctx)
        s.add(
            SlotReservation(
                id=rid,
                clinic_id=appointment.clinic_id,
                doctor_name=appointment.doctor_name,
                day=appointment.day,
                slot_index=appointment.slot_index,
                appointment_id=appointment.id,
            )
        )
        s.add(appointment)
        s.commit()
    except (IntegrityError, OperationalError) as e:
        s.rollback()
        log.info("slot claim lost: %s (%s)", rid, e.__class__.__name__)
        raise SlotTakenError(**ctx) from e
    log.info("slot reserved: %s -> %s", rid, appointment.id)
    return appointment


def release(s: Session, rid: str) -> bool:
    """Drop a reservation. Releasing an absent one is a no-op."""
    row = s.get(SlotReservation, rid)
    if row is None:
        return False
    s.delete(row)
    s.commit()
    log.info("slot released: %s", rid)
    return True


def reserve_first_free(
    s: Session,
    candidates: Iterable[datetime],
    make_appointment: Callable[[datetime], Appointment],
    max_attempts: Optional[int] = None,
) -> Appointment:
    """Try candidate slot times in order until one claim sticks.

    Gives up with the last ``SlotTakenError`` after ``max_attempts`` lost
    claims.
    """
    attempts = max_attempts or config.RESERVATION_MAX_ATTEMPTS
    last_error: Optional[SlotTakenError] = None
    tried = 0
    for t in candidates:
        if tried >= attempts:
            break
        tried += 1
        try:
            return reserve(s, make_appointment(t))
        except SlotTakenError as e:
            last_error = e
    if last_error is None:
        raise SlotTakenError("no free slot to reserve")
    raise last_error


def cancel_appointment(s: Session, appointment_id: str) -> Appointment:
    a = s.get(Appointment, appointment_id)
    if not a:
        raise NotFoundError("appointment not found", appointment_id=appointment_id)
    a.status = "Cancelled"
    for row in s.execute(select(SlotReservation).where(SlotReservation.appointment_id == a.id)).scalars().all():
        s.delete(row)
    s.add(a)
    s.commit()
    log.info("appointment cancelled: %s", a.id)
    return a
