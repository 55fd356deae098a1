from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest

from apps.clinic.app.breaks import create_break_period  # type: ignore[import]
from apps.clinic.app.domain import DoctorSchedule, SessionExtension, SessionTemplate  # type: ignore[import]
from apps.clinic.app.errors import NotFoundError  # type: ignore[import]
from apps.clinic.app.sessions import (  # type: ignore[import]
    get_available_break_slots,
    get_current_active_session,
    get_effective_session_end,
    get_session_end,
    list_session_slots,
    resolve_session_info,
    select_session,
)
from conftest import DAY, at


def _schedule(extension: int = 0, breaks=()):
    exts = ()
    if extension:
        exts = (
            SessionExtension(
                session_index=0,
                total_extended_by=extension,
                original_end_time=at("13:00"),
                new_end_time=at("13:00") + timedelta(minutes=extension),
            ),
        )
    return DoctorSchedule(
        doctor_id=1,
        doctor_name="Dr. Asha Rao",
        clinic_id="c1",
        day=DAY,
        slot_minutes=15,
        sessions=(SessionTemplate(start="09:00", end="13:00"), SessionTemplate(start="17:00", end="20:00")),
        breaks=tuple(breaks),
        extensions=exts,
    )


def test_effective_end_includes_extension():
    schedule = _schedule(extension=30)
    assert get_session_end(schedule, 0) == at("13:00")
    assert get_effective_session_end(schedule, 0) == at("13:30")
    assert get_effective_session_end(schedule, 1) == at("20:00")
    info = resolve_session_info(schedule, 0)
    assert info.original_end == at("13:00")
    assert info.extended_by == 30


def test_unknown_session_is_not_found():
    with pytest.raises(NotFoundError):
        resolve_session_info(_schedule(), 5)


def test_current_session_uses_effective_end():
    schedule = _schedule(extension=30)
    assert get_current_active_session(schedule, at("13:15")).session_index == 0
    assert get_current_active_session(schedule, at("14:00")) is None
    assert get_current_active_session(schedule, at("17:00")).session_index == 1


def test_select_session_falls_back_to_next_then_last():
    schedule = _schedule()
    assert select_session(schedule, at("07:00")).session_index == 0
    assert select_session(schedule, at("14:00")).session_index == 1
    assert select_session(schedule, at("21:00")).session_index == 1


def test_list_session_slots_marks_taken_and_break_slots():
    brk = create_break_period([at("10:00")], 0, 15)
    schedule = _schedule(breaks=[brk])
    appts = [
        SimpleNamespace(session_index=0, slot_index=36, status="Pending"),
        SimpleNamespace(session_index=0, slot_index=37, status="Cancelled"),
    ]
    slots = list_session_slots(schedule, 0, appts)
    assert len(slots) == 16
    by_index = {sl.slot_index: sl for sl in slots}
    assert by_index[36].is_taken
    assert not by_index[37].is_taken
    assert by_index[40].is_taken  # 10:00 is inside the break
    assert by_index[36].time_formatted == "09:00 AM"


def test_available_break_slots_skip_past_and_break_slots():
    brk = create_break_period([at("12:00"), at("12:15")], 0, 15)
    schedule = _schedule(breaks=[brk])
    slots = get_available_break_slots(schedule, at("11:30"))
    times = [sl.iso_instant for sl in slots]
    assert times[0] == at("11:30").isoformat()
    assert at("12:00").isoformat() not in times
    assert at("12:15").isoformat() not in times
    assert at("12:30").isoformat() in times
    # evening session is offered too
    assert at("17:00").isoformat() in times
    assert {sl.session_index for sl in slots} == {0, 1}
