from datetime import date, datetime
from typing import Optional

from sqlalchemy import Boolean, Date, DateTime, Float, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from . import config


DB_SCHEMA = config.DB_SCHEMA


def _table_args(*constraints):
    return tuple(constraints) + (({"schema": DB_SCHEMA} if DB_SCHEMA else {}),)


class Base(DeclarativeBase):
    pass


class Clinic(Base):
    __tablename__ = "clinics"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    walk_in_token_allotment: Mapped[int] = mapped_column(Integer, default=0)
    walk_in_capacity_threshold: Mapped[float] = mapped_column(Float, default=0.0)  # 0 disables the check
    walk_in_reserve_ratio: Mapped[float] = mapped_column(Float, default=config.WALK_IN_RESERVE_RATIO)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Doctor(Base):
    __tablename__ = "doctors"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    clinic_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(200))
    average_consulting_minutes: Mapped[int] = mapped_column(Integer, default=config.DEFAULT_SLOT_MINUTES)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DoctorSession(Base):
    __tablename__ = "doctor_sessions"
    __table_args__ = _table_args(UniqueConstraint("doctor_id", "weekday", "position", name="uq_doctor_session"))
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[int] = mapped_column(Integer, index=True)
    weekday: Mapped[int] = mapped_column(Integer)  # 0=Monday, 6=Sunday
    position: Mapped[int] = mapped_column(Integer, default=0)  # session index within the weekday
    start_minute: Mapped[int] = mapped_column(Integer)  # minutes from midnight
    end_minute: Mapped[int] = mapped_column(Integer)


class BreakPeriodRow(Base):
    __tablename__ = "break_periods"
    __table_args__ = _table_args(UniqueConstraint("doctor_id", "day", "break_id", name="uq_break_period"))
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[int] = mapped_column(Integer, index=True)
    day: Mapped[date] = mapped_column(Date, index=True)
    break_id: Mapped[str] = mapped_column(String(255))
    session_index: Mapped[int] = mapped_column(Integer)
    start_at: Mapped[datetime] = mapped_column(DateTime)
    end_at: Mapped[datetime] = mapped_column(DateTime)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    slot_minutes: Mapped[int] = mapped_column(Integer)
    kind: Mapped[str] = mapped_column(String(32), default="break")
    members: Mapped[str] = mapped_column(String(1000), default="")  # comma-separated break ids
    shift_mode: Mapped[str] = mapped_column(String(16), default="full")  # full|gap_aware


class SessionExtensionRow(Base):
    __tablename__ = "session_extensions"
    __table_args__ = _table_args(UniqueConstraint("doctor_id", "day", "session_index", name="uq_session_extension"))
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[int] = mapped_column(Integer, index=True)
    day: Mapped[date] = mapped_column(Date, index=True)
    session_index: Mapped[int] = mapped_column(Integer)
    total_extended_by: Mapped[int] = mapped_column(Integer, default=0)
    original_end_at: Mapped[datetime] = mapped_column(DateTime)
    new_end_at: Mapped[datetime] = mapped_column(DateTime)


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    clinic_id: Mapped[str] = mapped_column(String(64))
    doctor_id: Mapped[int] = mapped_column(Integer, index=True)
    doctor_name: Mapped[str] = mapped_column(String(200))
    day: Mapped[date] = mapped_column(Date, index=True)
    session_index: Mapped[int] = mapped_column(Integer)
    slot_index: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    arrive_by_at: Mapped[datetime] = mapped_column(DateTime)
    cut_off_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    no_show_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    # position before any break shifted it
    base_slot_index: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    base_arrive_by_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    delay: Mapped[int] = mapped_column(Integer, default=0)  # minutes moved by breaks
    status: Mapped[str] = mapped_column(String(16), default="Pending")  # Pending|Confirmed|Completed|Cancelled|No-show|Skipped
    booked_via: Mapped[str] = mapped_column(String(32), default="Advanced Booking")  # Advanced Booking|Walk-in|Online|BreakBlock
    token_number: Mapped[Optional[str]] = mapped_column(String(16), default=None)
    numeric_token: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    cancelled_by_break: Mapped[bool] = mapped_column(Boolean, default=False)
    break_id: Mapped[Optional[str]] = mapped_column(String(255), default=None)  # set on break-block rows
    blocked_until: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    patient_name: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    patient_phone: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SlotReservation(Base):
    __tablename__ = "slot_reservations"
    __table_args__ = _table_args(
        UniqueConstraint("clinic_id", "doctor_name", "day", "slot_index", name="uq_slot_reservation")
    )
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    clinic_id: Mapped[str] = mapped_column(String(64))
    doctor_name: Mapped[str] = mapped_column(String(200))
    day: Mapped[date] = mapped_column(Date)
    slot_index: Mapped[int] = mapped_column(Integer)
    appointment_id: Mapped[str] = mapped_column(String(36), index=True)
    reserved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AppointmentShift(Base):
    __tablename__ = "appointment_shifts"
    __table_args__ = _table_args(UniqueConstraint("appointment_id", "break_id", name="uq_appointment_shift"))
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    appointment_id: Mapped[str] = mapped_column(String(36), index=True)
    break_id: Mapped[str] = mapped_column(String(255))
    doctor_id: Mapped[int] = mapped_column(Integer)
    day: Mapped[date] = mapped_column(Date)
    minutes: Mapped[int] = mapped_column(Integer)
    slots: Mapped[int] = mapped_column(Integer)


class ShiftRun(Base):
    """One row per break whose appointment shift has been applied."""

    __tablename__ = "shift_runs"
    __table_args__ = _table_args(UniqueConstraint("doctor_id", "day", "break_id", name="uq_shift_run"))
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[int] = mapped_column(Integer, index=True)
    day: Mapped[date] = mapped_column(Date)
    session_index: Mapped[int] = mapped_column(Integer)
    break_id: Mapped[str] = mapped_column(String(255))
    mode: Mapped[str] = mapped_column(String(16))
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
