from __future__ import annotations

import pytest

from apps.clinic.app.breaks import (  # type: ignore[import]
    apply_break_offsets,
    build_break_intervals,
    create_break_period,
    merge_adjacent_breaks,
    skip_breaks,
    validate_break_overlap_with_next_session,
    validate_break_slots,
)
from apps.clinic.app.domain import DoctorSchedule, SessionTemplate  # type: ignore[import]
from apps.clinic.app.errors import ValidationError  # type: ignore[import]
from conftest import DAY, at


def _brk(*hhmm: str):
    return create_break_period([at(x) for x in hhmm], 0, 15)


def _schedule(*spans):
    return DoctorSchedule(
        doctor_id=1,
        doctor_name="Dr. Asha Rao",
        clinic_id="c1",
        day=DAY,
        slot_minutes=15,
        sessions=tuple(SessionTemplate(start=a, end=b) for a, b in spans),
    )


def test_create_break_period_from_contiguous_slots():
    b = _brk("10:00", "10:15")
    assert b.id == "break-202603021000"
    assert b.start_time == at("10:00")
    assert b.end_time == at("10:30")
    assert b.duration_minutes == 30
    assert b.member_ids == ("break-202603021000",)
    assert b.covers(at("10:15"))
    assert not b.covers(at("10:30"))


def test_create_break_period_rejects_gaps_and_empty():
    with pytest.raises(ValidationError):
        _brk("10:00", "10:30")
    with pytest.raises(ValidationError):
        create_break_period([], 0, 15)


def test_merge_adjacent_breaks_preserves_minutes_and_is_idempotent():
    parts = [_brk("10:00"), _brk("10:15", "10:30"), _brk("11:30")]
    merged = merge_adjacent_breaks(parts)
    assert len(merged) == 2
    first = merged[0]
    assert first.id == "break-202603021000_merged_break-202603021015"
    assert first.start_time == at("10:00") and first.end_time == at("10:45")
    assert first.member_ids == ("break-202603021000", "break-202603021015")
    assert sum(b.duration_minutes for b in merged) == sum(b.duration_minutes for b in parts)
    assert merge_adjacent_breaks(merged) == merged


def test_validate_break_slots_requires_selection_and_session_bounds():
    check = validate_break_slots([], [], 0, at("09:00"), at("13:00"), 15)
    assert not check.ok and check.reason == "Select at least one slot for the break"

    check = validate_break_slots([at("12:45"), at("13:00")], [], 0, at("09:00"), at("13:00"), 15)
    assert not check.ok
    assert check.reason.startswith("Break must be within session hours")


def test_validate_break_slots_rejects_overlap():
    existing = [_brk("10:00", "10:15")]
    check = validate_break_slots([at("10:15"), at("10:30")], existing, 0, at("09:00"), at("13:00"), 15)
    assert not check.ok
    assert check.reason == "This break overlaps with an existing break (10:00 AM - 10:30 AM)"


def test_fourth_separate_break_is_rejected():
    existing = [_brk("09:30"), _brk("10:30"), _brk("11:30")]
    check = validate_break_slots([at("12:15")], existing, 0, at("09:00"), at("13:00"), 15)
    assert not check.ok
    assert check.reason == "Maximum 3 breaks per session allowed"


def test_break_adjacent_to_existing_merges_under_the_cap():
    existing = [_brk("09:30"), _brk("10:30"), _brk("11:30")]
    check = validate_break_slots([at("11:45")], existing, 0, at("09:00"), at("13:00"), 15)
    assert check.ok


def test_breaks_in_other_sessions_do_not_count():
    other = create_break_period([at("17:00")], 1, 15)
    existing = [_brk("09:30"), _brk("10:30"), other]
    check = validate_break_slots([at("11:30")], existing, 0, at("09:00"), at("13:00"), 15)
    assert check.ok


def test_overlap_with_next_session():
    schedule = _schedule(("09:00", "13:00"), ("13:15", "16:00"))
    assert validate_break_overlap_with_next_session(schedule, 0, at("13:15")).ok
    check = validate_break_overlap_with_next_session(schedule, 0, at("13:30"))
    assert not check.ok
    assert check.reason == (
        "Extending this session (to 01:30 PM) overlaps with the next session starting at 01:15 PM."
    )
    # the last session has nothing after it
    assert validate_break_overlap_with_next_session(schedule, 1, at("18:00")).ok


def test_apply_break_offsets_accumulates_in_order():
    intervals = build_break_intervals([_brk("11:00"), _brk("10:00", "10:15")])
    assert intervals[0][0] == at("10:00")
    assert apply_break_offsets(at("09:45"), intervals) == at("09:45")
    assert apply_break_offsets(at("10:00"), intervals) == at("10:30")
    # pushed past the first break and onto the second one
    assert apply_break_offsets(at("10:30"), intervals) == at("11:15")


def test_skip_breaks_hops_chained_breaks():
    breaks = [_brk("10:00"), _brk("10:15", "10:30")]
    assert skip_breaks(at("10:00"), breaks) == at("10:45")
    assert skip_breaks(at("09:45"), breaks) == at("09:45")
