"""Read/write access to per-doctor, per-date schedule state.

Reads come back as immutable value objects; the only writers are the
break workflow and the appointment shifter.
"""
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .domain import BreakPeriod, DoctorSchedule, SessionExtension, SessionTemplate
from .errors import NotFoundError
from .models import (
    Appointment,
    BreakPeriodRow,
    Clinic,
    Doctor,
    DoctorSession,
    SessionExtensionRow,
)
from .timegrid import expand_slots


def supports_row_locks(s: Session) -> bool:
    return s.get_bind().dialect.name != "sqlite"


def _hhmm(minute: int) -> str:
    return f"{minute // 60:02d}:{minute % 60:02d}"


def break_from_row(row: BreakPeriodRow) -> BreakPeriod:
    members = tuple(m for m in (row.members or "").split(",") if m) or (row.break_id,)
    return BreakPeriod(
        id=row.break_id,
        start_time=row.start_at,
        end_time=row.end_at,
        duration_minutes=row.duration_minutes,
        session_index=row.session_index,
        slot_minutes=row.slot_minutes,
        slots=tuple(expand_slots(row.start_at, row.end_at, row.slot_minutes)),
        kind=row.kind or "break",
        members=members,
        shift_mode=row.shift_mode or "full",
    )


class ScheduleRepository:
    def __init__(self, s: Session):
        self.s = s

    def get_doctor(self, doctor_id: int) -> Doctor:
        d = self.s.get(Doctor, doctor_id)
        if not d:
            raise NotFoundError("doctor not found", doctor_id=doctor_id)
        return d

    def get_clinic(self, clinic_id: str) -> Optional[Clinic]:
        return self.s.get(Clinic, clinic_id)

    def session_templates(self, doctor_id: int, weekday: int) -> List[SessionTemplate]:
        rows = self.s.execute(
            select(DoctorSession)
            .where(DoctorSession.doctor_id == doctor_id, DoctorSession.weekday == weekday)
            .order_by(DoctorSession.position, DoctorSession.start_minute)
        ).scalars().all()
        return [SessionTemplate(start=_hhmm(r.start_minute), end=_hhmm(r.end_minute)) for r in rows]

    def break_rows(self, doctor_id: int, day: date, session_index: Optional[int] = None) -> List[BreakPeriodRow]:
        q = select(BreakPeriodRow).where(BreakPeriodRow.doctor_id == doctor_id, BreakPeriodRow.day == day)
        if session_index is not None:
            q = q.where(BreakPeriodRow.session_index == session_index)
        return list(self.s.execute(q.order_by(BreakPeriodRow.start_at)).scalars().all())

    def extension_row(self, doctor_id: int, day: date, session_index: int) -> Optional[SessionExtensionRow]:
        return self.s.execute(
            select(SessionExtensionRow).where(
                SessionExtensionRow.doctor_id == doctor_id,
                SessionExtensionRow.day == day,
                SessionExtensionRow.session_index == session_index,
            )
        ).scalars().first()

    def load_schedule(self, doctor_id: int, day: date) -> DoctorSchedule:
        doctor = self.get_doctor(doctor_id)
        breaks = [break_from_row(r) for r in self.break_rows(doctor_id, day)]
        ext_rows = self.s.execute(
            select(SessionExtensionRow).where(
                SessionExtensionRow.doctor_id == doctor_id, SessionExtensionRow.day == day
            )
        ).scalars().all()
        extensions = [
            SessionExtension(
                session_index=r.session_index,
                breaks=tuple(b for b in breaks if b.session_index == r.session_index),
                total_extended_by=r.total_extended_by,
                original_end_time=r.original_end_at,
                new_end_time=r.new_end_at,
            )
            for r in ext_rows
        ]
        return DoctorSchedule(
            doctor_id=doctor.id,
            doctor_name=doctor.name,
            clinic_id=doctor.clinic_id,
            day=day,
            slot_minutes=doctor.average_consulting_minutes,
            sessions=tuple(self.session_templates(doctor.id, day.weekday())),
            breaks=tuple(breaks),
            extensions=tuple(extensions),
        )

    def list_appointments(
        self,
        doctor_id: int,
        day: date,
        session_index: Optional[int] = None,
        active_only: bool = False,
        for_update: bool = False,
    ) -> List[Appointment]:
        q = select(Appointment).where(Appointment.doctor_id == doctor_id, Appointment.day == day)
        if session_index is not None:
            q = q.where(Appointment.session_index == session_index)
        if active_only:
            q = q.where(Appointment.status != "Cancelled")
        if for_update and supports_row_locks(self.s):
            q = q.with_for_update()
        return list(self.s.execute(q.order_by(Appointment.arrive_by_at, Appointment.id)).scalars().all())

    def replace_session_breaks(
        self,
        doctor_id: int,
        day: date,
        session_index: int,
        breaks: Iterable[BreakPeriod],
    ) -> None:
        """Swap the stored break set of one session. Does not commit."""
        self.s.execute(
            delete(BreakPeriodRow).where(
                BreakPeriodRow.doctor_id == doctor_id,
                BreakPeriodRow.day == day,
                BreakPeriodRow.session_index == session_index,
            )
        )
        for b in breaks:
            self.s.add(
                BreakPeriodRow(
                    doctor_id=doctor_id,
                    day=day,
                    break_id=b.id,
                    session_index=session_index,
                    start_at=b.start_time,
                    end_at=b.end_time,
                    duration_minutes=b.duration_minutes,
                    slot_minutes=b.slot_minutes,
                    kind=b.kind,
                    members=",".join(b.member_ids),
                    shift_mode=b.shift_mode,
                )
            )

    def set_extension(
        self,
        doctor_id: int,
        day: date,
        session_index: int,
        original_end: datetime,
        total_extended_by: int,
    ) -> Optional[SessionExtensionRow]:
        """Replace the session's extension entry; zero removes it. Does not commit."""
        row = self.extension_row(doctor_id, day, session_index)
        if total_extended_by <= 0:
            if row is not None:
                self.s.delete(row)
            return None
        if row is None:
            row = SessionExtensionRow(doctor_id=doctor_id, day=day, session_index=session_index)
        row.original_end_at = original_end
        row.total_extended_by = total_extended_by
        row.new_end_at = original_end + timedelta(minutes=total_extended_by)
        self.s.add(row)
        return row
