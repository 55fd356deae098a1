from contextlib import contextmanager
from datetime import date, datetime
from typing import List, Optional
from zoneinfo import ZoneInfo

from clinic_shared import RequestIDMiddleware, add_standard_health, configure_cors, register_startup, setup_json_logging
from fastapi import APIRouter, Depends, FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import create_engine, func, select, text
from sqlalchemy.orm import Session

from . import config
from .domain import ExtensionOptions, SessionInfo, SlotInfo, WalkInDetails
from .errors import (
    CapacityExceededError,
    NotFoundError,
    OverlapWithNextSessionError,
    SchedulingError,
    SlotTakenError,
)
from .models import Base, Clinic, Doctor, DoctorSession
from .repository import ScheduleRepository
from .reservations import cancel_appointment as _cancel_appointment
from .sessions import get_available_break_slots, get_current_active_session, list_session_slots, select_session
from .shifter import reconcile_session, release_expired_blocks
from .timegrid import clinic_now, parse_hhmm
from .walkin import queue_entries, book_advance, book_walk_in, build_token_queue, calculate_walk_in_details
from .workflow import BreakCommitResult, BreakInsertionWorkflow, BreakRemovalResult, remove_break


app = FastAPI(title="Clinic Scheduling API", version="0.1.0")
app.add_middleware(RequestIDMiddleware)
configure_cors(app, config.ALLOWED_ORIGINS)

router = APIRouter()


if config.DB_URL.startswith("sqlite"):
    engine = create_engine(config.DB_URL, pool_pre_ping=True, connect_args={"check_same_thread": False})
else:
    engine = create_engine(config.DB_URL, pool_pre_ping=True)


def _db_ping() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


add_standard_health(app, db_ping=_db_ping)


def get_session():
    with Session(engine) as s:
        yield s


@register_startup(app)
def _startup():
    setup_json_logging(config.LOG_LEVEL)
    Base.metadata.create_all(engine)
    _seed_demo_data()


def _seed_demo_data():
    if not config.DEMO_SEED:
        return
    with Session(engine) as s:
        existing = s.execute(select(func.count(Doctor.id))).scalar() or 0
        if existing > 0:
            return
        s.add(Clinic(id="demo-clinic", name="Demo Clinic", walk_in_token_allotment=3))
        d = Doctor(clinic_id="demo-clinic", name="Dr. Meera Iyer", average_consulting_minutes=15)
        s.add(d)
        s.flush()
        for weekday in range(6):
            s.add(DoctorSession(doctor_id=d.id, weekday=weekday, position=0, start_minute=9 * 60, end_minute=13 * 60))
            s.add(DoctorSession(doctor_id=d.id, weekday=weekday, position=1, start_minute=17 * 60, end_minute=20 * 60))
        s.commit()


@contextmanager
def _http_errors():
    try:
        yield
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except (SlotTakenError, CapacityExceededError, OverlapWithNextSessionError) as e:
        raise HTTPException(status_code=409, detail=e.message)
    except SchedulingError as e:
        raise HTTPException(status_code=400, detail=e.message)


def _parse_local_iso(ts_iso: Optional[str]) -> datetime:
    """Clinic-local naive datetime; aware inputs are converted first."""
    if not ts_iso:
        return clinic_now()
    try:
        ts = datetime.fromisoformat(ts_iso.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid ts")
    if ts.tzinfo is not None:
        ts = ts.astimezone(ZoneInfo(config.CLINIC_TZ)).replace(tzinfo=None)
    return ts


def _parse_day(val: Optional[str]) -> date:
    if not val:
        return clinic_now().date()
    try:
        return date.fromisoformat(val)
    except ValueError:
        raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD")


class ClinicIn(BaseModel):
    id: str
    name: str
    walk_in_token_allotment: int = Field(default=0, ge=0)
    walk_in_capacity_threshold: float = Field(default=0.0, ge=0, le=1)
    walk_in_reserve_ratio: float = Field(default=config.WALK_IN_RESERVE_RATIO, ge=0, le=1)


class ClinicOut(ClinicIn):
    model_config = ConfigDict(from_attributes=True)


class DoctorIn(BaseModel):
    clinic_id: str
    name: str
    average_consulting_minutes: int = Field(default=config.DEFAULT_SLOT_MINUTES, ge=5, le=180)


class DoctorOut(DoctorIn):
    id: int
    model_config = ConfigDict(from_attributes=True)


class SessionBlock(BaseModel):
    weekday: int = Field(ge=0, le=6, description="0=Monday, 6=Sunday")
    start_time: str = Field(description="HH:MM 24h")
    end_time: str = Field(description="HH:MM 24h")


class BreakRequest(BaseModel):
    date: Optional[str] = None
    start_iso: str
    end_iso: str = Field(description="start of the last slot covered by the break")
    session_index: Optional[int] = None
    extension_minutes: int = Field(default=0, ge=0)


class BookRequest(BaseModel):
    slot_iso: str
    patient_name: str
    patient_phone: Optional[str] = None
    now_iso: Optional[str] = None


class WalkInRequest(BaseModel):
    patient_name: str
    patient_phone: Optional[str] = None
    now_iso: Optional[str] = None


class AppointmentOut(BaseModel):
    id: str
    doctor_id: int
    day: date
    session_index: int
    slot_index: Optional[int]
    arrive_by_at: datetime
    cut_off_at: Optional[datetime]
    no_show_at: Optional[datetime]
    delay: int = 0
    status: str
    booked_via: str
    token_number: Optional[str]
    numeric_token: Optional[int] = None
    cancelled_by_break: bool = False
    patient_name: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class WalkInOut(BaseModel):
    appointment: AppointmentOut
    details: WalkInDetails


class QueueEntryOut(BaseModel):
    token_number: Optional[str]
    status: str
    arrive_by_at: datetime


@router.post("/clinics", response_model=ClinicOut)
def upsert_clinic(req: ClinicIn, s: Session = Depends(get_session)):
    c = s.get(Clinic, req.id) or Clinic(id=req.id)
    c.name = req.name
    c.walk_in_token_allotment = req.walk_in_token_allotment
    c.walk_in_capacity_threshold = req.walk_in_capacity_threshold
    c.walk_in_reserve_ratio = req.walk_in_reserve_ratio
    s.add(c)
    s.commit()
    s.refresh(c)
    return c


@router.post("/doctors", response_model=DoctorOut)
def create_doctor(req: DoctorIn, s: Session = Depends(get_session)):
    d = Doctor(clinic_id=req.clinic_id, name=req.name.strip(), average_consulting_minutes=req.average_consulting_minutes)
    s.add(d)
    s.commit()
    s.refresh(d)
    return d


@router.put("/doctors/{doctor_id}/sessions", response_model=List[SessionBlock])
def set_doctor_sessions(doctor_id: int, blocks: List[SessionBlock], s: Session = Depends(get_session)):
    with _http_errors():
        ScheduleRepository(s).get_doctor(doctor_id)
        by_day = {}
        for b in blocks:
            start_m = parse_hhmm(b.start_time)
            end_m = parse_hhmm(b.end_time)
            if end_m <= start_m:
                raise HTTPException(status_code=400, detail="end_time must be after start_time")
            by_day.setdefault(b.weekday, []).append((start_m, end_m))
    for spans in by_day.values():
        spans.sort()
        for prev, cur in zip(spans, spans[1:]):
            if cur[0] < prev[1]:
                raise HTTPException(status_code=400, detail="sessions overlap")
    # replace existing
    for e in s.execute(select(DoctorSession).where(DoctorSession.doctor_id == doctor_id)).scalars().all():
        s.delete(e)
    s.flush()
    for weekday, spans in by_day.items():
        for pos, (start_m, end_m) in enumerate(spans):
            s.add(DoctorSession(doctor_id=doctor_id, weekday=weekday, position=pos, start_minute=start_m, end_minute=end_m))
    s.commit()
    return blocks


@router.get("/doctors/{doctor_id}/sessions/current", response_model=Optional[SessionInfo])
def get_current_session(doctor_id: int, at_iso: Optional[str] = None, fallback: bool = False, s: Session = Depends(get_session)):
    now = _parse_local_iso(at_iso)
    with _http_errors():
        schedule = ScheduleRepository(s).load_schedule(doctor_id, now.date())
        if fallback:
            return select_session(schedule, now)
        return get_current_active_session(schedule, now)


@router.get("/doctors/{doctor_id}/slots", response_model=List[SlotInfo])
def get_session_slots(doctor_id: int, session_index: int = 0, date: Optional[str] = None, s: Session = Depends(get_session)):
    day = _parse_day(date)
    with _http_errors():
        repo = ScheduleRepository(s)
        schedule = repo.load_schedule(doctor_id, day)
        appts = repo.list_appointments(doctor_id, day, active_only=True)
        return list_session_slots(schedule, session_index, appts)


@router.get("/doctors/{doctor_id}/break-slots", response_model=List[SlotInfo])
def get_break_slots(doctor_id: int, at_iso: Optional[str] = None, s: Session = Depends(get_session)):
    now = _parse_local_iso(at_iso)
    with _http_errors():
        schedule = ScheduleRepository(s).load_schedule(doctor_id, now.date())
        return get_available_break_slots(schedule, now)


def _start_workflow(doctor_id: int, req: BreakRequest, s: Session) -> BreakInsertionWorkflow:
    start = _parse_local_iso(req.start_iso)
    end = _parse_local_iso(req.end_iso)
    day = _parse_day(req.date) if req.date else start.date()
    wf = BreakInsertionWorkflow(s, doctor_id, day)
    wf.select(start, end, req.session_index)
    return wf


@router.post("/doctors/{doctor_id}/breaks/preview", response_model=ExtensionOptions)
def preview_break(doctor_id: int, req: BreakRequest, s: Session = Depends(get_session)):
    with _http_errors():
        return _start_workflow(doctor_id, req, s).validate()


@router.post("/doctors/{doctor_id}/breaks", response_model=BreakCommitResult)
def add_break(doctor_id: int, req: BreakRequest, s: Session = Depends(get_session)):
    with _http_errors():
        wf = _start_workflow(doctor_id, req, s)
        wf.validate()
        return wf.confirm(req.extension_minutes)


@router.delete("/doctors/{doctor_id}/breaks/{break_id}", response_model=BreakRemovalResult)
def delete_break(
    doctor_id: int,
    break_id: str,
    date: Optional[str] = None,
    open_slots: bool = True,
    retract_extension: bool = False,
    s: Session = Depends(get_session),
):
    day = _parse_day(date)
    with _http_errors():
        return remove_break(s, doctor_id, day, break_id, open_slots=open_slots, retract_extension=retract_extension)


@router.post("/doctors/{doctor_id}/sessions/{session_index}/reconcile")
def reconcile(doctor_id: int, session_index: int, date: Optional[str] = None, s: Session = Depends(get_session)):
    day = _parse_day(date)
    with _http_errors():
        schedule = ScheduleRepository(s).load_schedule(doctor_id, day)
        return {"shifted": reconcile_session(s, schedule, session_index)}


@router.get("/doctors/{doctor_id}/walk-in/estimate", response_model=WalkInDetails)
def walk_in_estimate(doctor_id: int, at_iso: Optional[str] = None, s: Session = Depends(get_session)):
    now = _parse_local_iso(at_iso)
    with _http_errors():
        return calculate_walk_in_details(s, doctor_id, now)


@router.post("/doctors/{doctor_id}/walk-in", response_model=WalkInOut)
def create_walk_in(doctor_id: int, req: WalkInRequest, s: Session = Depends(get_session)):
    now = _parse_local_iso(req.now_iso)
    with _http_errors():
        appt, details = book_walk_in(s, doctor_id, now, patient_name=req.patient_name.strip(), patient_phone=req.patient_phone)
        return WalkInOut(appointment=AppointmentOut.model_validate(appt), details=details)


@router.post("/doctors/{doctor_id}/book", response_model=AppointmentOut)
def book_doctor_slot(doctor_id: int, req: BookRequest, s: Session = Depends(get_session)):
    slot = _parse_local_iso(req.slot_iso)
    now = _parse_local_iso(req.now_iso)
    with _http_errors():
        return book_advance(s, doctor_id, slot.date(), slot, now, patient_name=req.patient_name.strip(), patient_phone=req.patient_phone)


@router.get("/doctors/{doctor_id}/queue", response_model=List[QueueEntryOut])
def get_queue(doctor_id: int, session_index: int = 0, date: Optional[str] = None, s: Session = Depends(get_session)):
    day = _parse_day(date)
    with _http_errors():
        repo = ScheduleRepository(s)
        clinic = repo.get_clinic(repo.get_doctor(doctor_id).clinic_id)
        appts = repo.list_appointments(doctor_id, day, session_index=session_index, active_only=True)
        advance, walk_ins = queue_entries(appts)
        queue = build_token_queue(advance, walk_ins, clinic.walk_in_token_allotment if clinic else 0)
        return [QueueEntryOut(token_number=a.token_number, status=a.status, arrive_by_at=a.arrive_by_at) for a in queue]


@router.post("/appointments/{appt_id}/cancel", response_model=AppointmentOut)
def cancel_appointment(appt_id: str, s: Session = Depends(get_session)):
    with _http_errors():
        return _cancel_appointment(s, appt_id)


@router.post("/admin/blocks/release")
def release_blocks(at_iso: Optional[str] = None, s: Session = Depends(get_session)):
    return {"released": release_expired_blocks(s, _parse_local_iso(at_iso))}


app.include_router(router)
