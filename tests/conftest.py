import os
import tempfile
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

os.environ.setdefault("ENV", "test")
os.environ.setdefault("CLINIC_DB_URL", f"sqlite+pysqlite:///{tempfile.mkdtemp()}/clinic-test.db")

import apps.clinic.app.models as models  # type: ignore[import]  # noqa: E402
from apps.clinic.app.domain import AppointmentDraft  # type: ignore[import]  # noqa: E402
from apps.clinic.app.repository import ScheduleRepository  # type: ignore[import]  # noqa: E402
from apps.clinic.app.reservations import build_appointment, reserve  # type: ignore[import]  # noqa: E402
from apps.clinic.app.walkin import advance_token, advance_token_number  # type: ignore[import]  # noqa: E402


# a Monday
DAY = date(2026, 3, 2)


def at(hhmm: str, day: date = DAY) -> datetime:
    hh, mm = hhmm.split(":")
    return datetime.combine(day, time()) + timedelta(hours=int(hh), minutes=int(mm))


def _engine(url: str):
    engine = create_engine(url, connect_args={"check_same_thread": False}, pool_pre_ping=True)
    models.Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def clinic_engine():
    """
    Isolated in-memory SQLite engine for scheduling tests.
    """
    return _engine("sqlite+pysqlite:///:memory:")


@pytest.fixture()
def file_engine(tmp_path):
    """
    File-backed SQLite engine, shareable between threads.
    """
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'clinic.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    models.Base.metadata.create_all(engine)
    return engine


def seed_doctor(
    s: Session,
    sessions: Iterable[Tuple[str, str]] = (("09:00", "13:00"),),
    slot_minutes: int = 15,
    allotment: int = 0,
    threshold: float = 0.0,
    reserve_ratio: float = 0.15,
    clinic_id: str = "c1",
    name: str = "Dr. Asha Rao",
    day: date = DAY,
) -> int:
    if s.get(models.Clinic, clinic_id) is None:
        s.add(
            models.Clinic(
                id=clinic_id,
                name="City Clinic",
                walk_in_token_allotment=allotment,
                walk_in_capacity_threshold=threshold,
                walk_in_reserve_ratio=reserve_ratio,
            )
        )
    d = models.Doctor(clinic_id=clinic_id, name=name, average_consulting_minutes=slot_minutes)
    s.add(d)
    s.flush()
    for pos, (start, end) in enumerate(sessions):
        st, en = at(start, day), at(end, day)
        s.add(
            models.DoctorSession(
                doctor_id=d.id,
                weekday=day.weekday(),
                position=pos,
                start_minute=st.hour * 60 + st.minute,
                end_minute=en.hour * 60 + en.minute,
            )
        )
    s.commit()
    return d.id


def book(
    s: Session,
    doctor_id: int,
    hhmm: str,
    session_index: int = 0,
    status: str = "Pending",
    booked_via: str = "Advanced Booking",
    day: date = DAY,
    patient_name: Optional[str] = None,
) -> models.Appointment:
    schedule = ScheduleRepository(s).load_schedule(doctor_id, day)
    t = at(hhmm, day)
    n = advance_token_number(schedule, t)
    draft = AppointmentDraft(
        patient_name=patient_name or f"Patient {hhmm}",
        booked_via=booked_via,
        status=status,
        token_number=advance_token(n),
        numeric_token=n,
    )
    return reserve(s, build_appointment(schedule, session_index, t, draft))


def arrive_times(s: Session, doctor_id: int, day: date = DAY):
    """Arrive-by times of queued (non-block, non-cancelled) appointments keyed by patient name."""
    repo = ScheduleRepository(s)
    return {
        a.patient_name: a.arrive_by_at
        for a in repo.list_appointments(doctor_id, day, active_only=True)
        if a.booked_via != "BreakBlock"
    }
