from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

import apps.clinic.app.models as models  # type: ignore[import]
import apps.clinic.app.workflow as workflow  # type: ignore[import]
from apps.clinic.app.errors import (  # type: ignore[import]
    NotFoundError,
    OverlapWithNextSessionError,
    ShiftApplicationError,
    ValidationError,
)
from apps.clinic.app.repository import ScheduleRepository  # type: ignore[import]
from apps.clinic.app.sessions import resolve_session_info  # type: ignore[import]
from apps.clinic.app.workflow import BreakInsertionWorkflow, BreakState  # type: ignore[import]
from conftest import DAY, arrive_times, at, book, seed_doctor


FULL_MORNING = [f"{h:02d}:{m:02d}" for h in range(9, 13) for m in (0, 15, 30, 45)]


def _count(s: Session, model) -> int:
    return s.execute(select(func.count()).select_from(model)).scalar() or 0


def _add_break(s: Session, doctor_id: int, first: str, last: str, extension: int = 0):
    wf = BreakInsertionWorkflow(s, doctor_id, DAY)
    wf.select(at(first), at(last))
    wf.validate()
    return wf.confirm(extension)


def test_workflow_walks_through_states(clinic_engine):
    with Session(clinic_engine) as s:
        doc = seed_doctor(s)
        for hhmm in FULL_MORNING:
            book(s, doc, hhmm)

        wf = BreakInsertionWorkflow(s, doc, DAY)
        assert wf.state == BreakState.SELECTING
        wf.select(at("10:00"), at("10:15"))
        assert wf.state == BreakState.VALIDATING
        opts = wf.validate()
        assert wf.state == BreakState.PENDING_CONFIRMATION
        assert opts.minimal == 30 and opts.full == 30
        # nothing is written before confirm
        assert _count(s, models.BreakPeriodRow) == 0

        result = wf.confirm(30)
        assert wf.state == BreakState.DONE
        assert result.extension_minutes == 30
        assert result.effective_end == at("13:30")
        assert not result.degraded
        assert result.shift.mode == "full"
        assert len(result.shift.shifted) == 12

        schedule = ScheduleRepository(s).load_schedule(doc, DAY)
        info = resolve_session_info(schedule, 0)
        assert info.effective_end == at("13:30")
        assert [b.id for b in info.breaks] == ["break-202603021000"]
        times = arrive_times(s, doc)
        assert times["Patient 09:45"] == at("09:45")
        assert times["Patient 10:00"] == at("10:30")
        assert times["Patient 12:45"] == at("13:15")


def test_steps_out_of_order_are_refused(clinic_engine):
    with Session(clinic_engine) as s:
        doc = seed_doctor(s)
        wf = BreakInsertionWorkflow(s, doc, DAY)
        with pytest.raises(ValidationError):
            wf.confirm(0)
        with pytest.raises(NotFoundError):
            wf.select(at("15:00"), at("15:15"))


def test_abandon_leaves_no_trace(clinic_engine):
    with Session(clinic_engine) as s:
        doc = seed_doctor(s)
        book(s, doc, "10:00")
        wf = BreakInsertionWorkflow(s, doc, DAY)
        wf.select(at("10:00"), at("10:15"))
        wf.validate()
        wf.abandon()
        assert wf.state == BreakState.REJECTED
        assert _count(s, models.BreakPeriodRow) == 0
        assert _count(s, models.SessionExtensionRow) == 0
        assert arrive_times(s, doc)["Patient 10:00"] == at("10:00")


def test_fourth_break_is_rejected(clinic_engine):
    with Session(clinic_engine) as s:
        doc = seed_doctor(s)
        for hhmm in ("09:30", "10:30", "11:30"):
            _add_break(s, doc, hhmm, hhmm)

        wf = BreakInsertionWorkflow(s, doc, DAY)
        wf.select(at("12:15"), at("12:15"))
        with pytest.raises(ValidationError) as exc:
            wf.validate()
        assert exc.value.message == "Maximum 3 breaks per session allowed"
        assert wf.state == BreakState.REJECTED
        assert wf.reason == "Maximum 3 breaks per session allowed"
        assert _count(s, models.BreakPeriodRow) == 3


def test_adjacent_break_merges(clinic_engine):
    with Session(clinic_engine) as s:
        doc = seed_doctor(s)
        for hhmm in ("09:30", "10:30", "11:30"):
            _add_break(s, doc, hhmm, hhmm)
        result = _add_break(s, doc, "11:45", "11:45")
        assert len(result.breaks) == 3
        merged = [b for b in result.breaks if "_merged_" in b.id]
        assert len(merged) == 1
        assert merged[0].duration_minutes == 30
        assert merged[0].member_ids == ("break-202603021130", "break-202603021145")


def test_extension_into_next_session_is_refused(clinic_engine):
    with Session(clinic_engine) as s:
        doc = seed_doctor(s, sessions=(("09:00", "13:00"), ("13:15", "16:00")))
        for hhmm in FULL_MORNING:
            book(s, doc, hhmm)

        wf = BreakInsertionWorkflow(s, doc, DAY)
        wf.select(at("10:00"), at("10:15"))
        opts = wf.validate()
        assert opts.minimal == 30
        with pytest.raises(OverlapWithNextSessionError) as exc:
            wf.confirm(30)
        assert exc.value.next_session_start == at("13:15").isoformat()
        assert wf.state == BreakState.PENDING_CONFIRMATION
        assert _count(s, models.BreakPeriodRow) == 0

        # the operator can still add the break without extending
        result = wf.confirm(0)
        assert result.extension_minutes == 0
        assert wf.state == BreakState.DONE


def test_extension_must_be_one_of_the_offered_values(clinic_engine):
    with Session(clinic_engine) as s:
        doc = seed_doctor(s)
        for hhmm in FULL_MORNING:
            book(s, doc, hhmm)
        wf = BreakInsertionWorkflow(s, doc, DAY)
        wf.select(at("10:00"), at("10:00"))
        wf.validate()
        with pytest.raises(ValidationError):
            wf.confirm(7)
        assert wf.state == BreakState.PENDING_CONFIRMATION


def test_minimal_extension_shifts_gap_aware(clinic_engine):
    with Session(clinic_engine) as s:
        doc = seed_doctor(s)
        for hhmm in ("09:00", "10:00", "11:00"):
            book(s, doc, hhmm)
        wf = BreakInsertionWorkflow(s, doc, DAY)
        wf.select(at("10:00"), at("10:15"))
        opts = wf.validate()
        assert opts.minimal == 0 and opts.full == 30
        result = wf.confirm(0)
        assert result.shift.mode == "gap_aware"
        times = arrive_times(s, doc)
        assert times["Patient 10:00"] == at("10:30")
        assert times["Patient 11:00"] == at("11:00")


def test_failed_shift_keeps_the_break(clinic_engine, monkeypatch):
    def _boom(*args, **kwargs):
        raise ShiftApplicationError("appointment shift failed", break_id="x")

    monkeypatch.setattr(workflow, "shift_appointments_for_new_break", _boom)
    with Session(clinic_engine) as s:
        doc = seed_doctor(s)
        book(s, doc, "10:00")
        result = _add_break(s, doc, "10:00", "10:15", extension=30)
        assert result.degraded
        assert result.notice == workflow.SHIFT_FAILED_NOTICE
        assert result.shift is None
        assert _count(s, models.BreakPeriodRow) == 1
        ext = ScheduleRepository(s).extension_row(doc, DAY, 0)
        assert ext is not None and ext.total_extended_by == 30
        # untouched until a reconcile runs
        assert arrive_times(s, doc)["Patient 10:00"] == at("10:00")
