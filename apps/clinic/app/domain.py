from datetime import date, datetime, timedelta
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .timegrid import at_minute, parse_hhmm


class ValueObject(BaseModel):
    model_config = ConfigDict(frozen=True)


class SessionTemplate(ValueObject):
    start: str = Field(pattern=r"^\d{2}:\d{2}$")
    end: str = Field(pattern=r"^\d{2}:\d{2}$")

    @property
    def start_minute(self) -> int:
        return parse_hhmm(self.start)

    @property
    def end_minute(self) -> int:
        return parse_hhmm(self.end)


class BreakPeriod(ValueObject):
    id: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    session_index: int
    slot_minutes: int
    slots: Tuple[datetime, ...]
    kind: str = "break"
    members: Tuple[str, ...] = ()
    shift_mode: str = "full"

    def covers(self, t: datetime) -> bool:
        return self.start_time <= t < self.end_time

    def overlaps(self, other: "BreakPeriod") -> bool:
        return self.start_time < other.end_time and other.start_time < self.end_time

    @property
    def member_ids(self) -> Tuple[str, ...]:
        return self.members or (self.id,)


class SessionExtension(ValueObject):
    session_index: int
    breaks: Tuple[BreakPeriod, ...] = ()
    total_extended_by: int = 0
    original_end_time: datetime
    new_end_time: datetime


class DoctorSchedule(ValueObject):
    """Everything known about one doctor on one date.

    Built by the repository; sessions are the weekday template, breaks and
    extensions are the per-date overrides.
    """

    doctor_id: int
    doctor_name: str
    clinic_id: str
    day: date
    slot_minutes: int
    sessions: Tuple[SessionTemplate, ...] = ()
    breaks: Tuple[BreakPeriod, ...] = ()
    extensions: Tuple[SessionExtension, ...] = ()

    def has_session(self, session_index: int) -> bool:
        return 0 <= session_index < len(self.sessions)

    def session_start(self, session_index: int) -> datetime:
        return at_minute(self.day, self.sessions[session_index].start_minute)

    def session_end(self, session_index: int) -> datetime:
        return at_minute(self.day, self.sessions[session_index].end_minute)

    def breaks_for(self, session_index: int) -> Tuple[BreakPeriod, ...]:
        return tuple(
            sorted(
                (b for b in self.breaks if b.session_index == session_index),
                key=lambda b: b.start_time,
            )
        )

    def extension_for(self, session_index: int) -> Optional[SessionExtension]:
        for ext in self.extensions:
            if ext.session_index == session_index:
                return ext
        return None


class SessionInfo(ValueObject):
    session_index: int
    session_start: datetime
    session_end: datetime
    breaks: Tuple[BreakPeriod, ...] = ()
    total_break_minutes: int = 0
    effective_end: datetime
    original_end: datetime

    @property
    def extended_by(self) -> int:
        return int((self.effective_end - self.original_end) / timedelta(minutes=1))


class SlotInfo(ValueObject):
    iso_instant: str
    session_index: int
    slot_index: int
    time_formatted: str
    is_taken: bool


class ExtensionResult(ValueObject):
    new_session_end: datetime
    # minutes the session has to grow; the raw break sum when no bookings are given
    total_break_minutes: int
    break_minutes: int


class ExtensionOptions(ValueObject):
    has_overrun: bool
    minimal: int
    full: int
    last_before: Optional[datetime] = None
    last_after: Optional[datetime] = None
    estimated_finish: Optional[datetime] = None
    effective_end: datetime


class WalkInDetails(ValueObject):
    patients_ahead: int
    estimated_time: datetime
    session_index: int
    slot_index: int
    slot_time: datetime
    numeric_token: int
    token_number: str


class AppointmentDraft(BaseModel):
    patient_name: Optional[str] = None
    patient_phone: Optional[str] = None
    booked_via: str = "Advanced Booking"
    status: str = "Pending"
    token_number: Optional[str] = None
    numeric_token: Optional[int] = None
