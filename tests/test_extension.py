from __future__ import annotations

from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import List

from apps.clinic.app.breaks import create_break_period  # type: ignore[import]
from apps.clinic.app.domain import SessionInfo  # type: ignore[import]
from apps.clinic.app.extension import (  # type: ignore[import]
    calculate_session_extension,
    extension_options,
    reflow_queue,
)
from conftest import at


def _appts(first: str, count: int, status: str = "Pending") -> List[SimpleNamespace]:
    start = at(first)
    return [
        SimpleNamespace(
            arrive_by_at=start + timedelta(minutes=15 * i),
            status=status,
            booked_via="Advanced Booking",
            session_index=0,
        )
        for i in range(count)
    ]


def _info(end: str = "13:00", extended_by: int = 0, breaks=()) -> SessionInfo:
    original = at(end)
    return SessionInfo(
        session_index=0,
        session_start=at("09:00"),
        session_end=original,
        breaks=tuple(breaks),
        total_break_minutes=sum(b.duration_minutes for b in breaks),
        effective_end=original + timedelta(minutes=extended_by),
        original_end=original,
    )


def test_break_in_free_time_needs_no_extension():
    # 10 patients 09:00-11:15, break at 11:30
    appts = _appts("09:00", 10)
    brk = create_break_period([at("11:30")], 0, 15)
    res = calculate_session_extension(0, [brk], at("13:00"), appointments=appts, slot_minutes=15)
    assert res.total_break_minutes == 0
    assert res.new_session_end == at("13:00")
    assert res.break_minutes == 15


def test_without_appointments_every_break_minute_counts():
    breaks = [create_break_period([at("10:00"), at("10:15")], 0, 15), create_break_period([at("11:00")], 0, 15)]
    res = calculate_session_extension(0, breaks, at("13:00"))
    assert res.total_break_minutes == 45
    assert res.new_session_end == at("13:45")


def test_breaks_of_other_sessions_are_ignored():
    other = create_break_period([at("17:00")], 1, 15)
    res = calculate_session_extension(0, [other], at("13:00"))
    assert res.total_break_minutes == 0


def test_fully_booked_session_overruns_by_the_break():
    # 16 patients fill 09:00-13:00, break 10:00-10:30
    appts = _appts("09:00", 16)
    brk = create_break_period([at("10:00"), at("10:15")], 0, 15)
    opts = extension_options(_info(), brk, appts, 15)
    assert opts.has_overrun
    assert opts.minimal == 30
    assert opts.full == 30
    assert opts.last_before == at("12:45")
    assert opts.last_after == at("13:15")
    assert opts.estimated_finish == at("13:30")


def test_idle_slots_absorb_the_break():
    appts = _appts("09:00", 1) + _appts("10:00", 2)
    brk = create_break_period([at("10:00"), at("10:15")], 0, 15)
    opts = extension_options(_info(end="11:00"), brk, appts, 15)
    assert not opts.has_overrun
    assert opts.minimal == 0
    assert opts.full == 30


def test_options_build_on_existing_extension():
    appts = _appts("09:00", 16)
    first = create_break_period([at("09:30")], 0, 15)
    second = create_break_period([at("11:00")], 0, 15)
    info = _info(extended_by=15, breaks=[first])
    opts = extension_options(info, second, appts, 15)
    assert opts.minimal == 30
    assert opts.full == 30


def test_cancelled_and_no_show_do_not_need_time():
    appts = _appts("09:00", 15) + _appts("12:45", 1, status="Cancelled")
    appts[-2].status = "No-show"
    brk = create_break_period([at("10:00")], 0, 15)
    opts = extension_options(_info(), brk, appts, 15)
    # last queued patient (12:15) moves to 12:30 and finishes at 12:45
    assert opts.minimal == 0
    assert opts.estimated_finish == at("12:45")


def test_reflow_queue_never_lands_in_breaks_or_collides():
    breaks = [create_break_period([at("10:00")], 0, 15), create_break_period([at("10:30")], 0, 15)]
    out = reflow_queue([at("09:45"), at("10:00"), at("10:15")], breaks, 15)
    assert out == [at("09:45"), at("10:15"), at("10:45")]
    assert len(set(out)) == len(out)
    assert all(isinstance(t, datetime) for t in out)
