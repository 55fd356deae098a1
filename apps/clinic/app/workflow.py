"""Adding and removing breaks on a live, partly booked session.

``BreakInsertionWorkflow`` walks one break through
Selecting -> Validating -> PendingConfirmation -> Committing -> Done, or
ends in Rejected. Nothing is written before ``confirm``. The break and the
session extension are committed together; moving appointments happens
afterwards and may fail on its own without undoing the break.
"""
import enum
import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .breaks import (
    create_break_period,
    merge_adjacent_breaks,
    validate_break_overlap_with_next_session,
    validate_break_slots,
)
from .domain import BreakPeriod, ExtensionOptions
from .errors import NotFoundError, OverlapWithNextSessionError, ShiftApplicationError, ValidationError
from .extension import BREAK_BLOCK, extension_options, is_queued
from .repository import ScheduleRepository
from .sessions import all_sessions, resolve_session_info
from .shifter import (
    FULL,
    GAP_AWARE,
    ShiftReport,
    drop_break_ledger,
    open_blocked_slots,
    reconcile_session,
    shift_appointments_for_new_break,
)
from .timegrid import clinic_now, expand_slots, format_time, minutes_between


log = logging.getLogger("clinic.workflow")

SHIFT_FAILED_NOTICE = "Break added, but some appointment times could not be adjusted. Run a session reconcile."
REOPEN_FAILED_NOTICE = "Break removed, but some appointment times could not be restored. Run a session reconcile."


class BreakState(str, enum.Enum):
    SELECTING = "Selecting"
    VALIDATING = "Validating"
    PENDING_CONFIRMATION = "PendingConfirmation"
    COMMITTING = "Committing"
    DONE = "Done"
    REJECTED = "Rejected"


class BreakCommitResult(BaseModel):
    break_period: BreakPeriod
    breaks: List[BreakPeriod]
    extension_minutes: int
    effective_end: datetime
    shift: Optional[ShiftReport] = None
    degraded: bool = False
    notice: Optional[str] = None


class BreakRemovalResult(BaseModel):
    break_id: str
    opened_slots: int = 0
    kept_blocked: int = 0
    blocked_until: Optional[datetime] = None
    extension_minutes: int = 0
    degraded: bool = False
    notice: Optional[str] = None


class BreakInsertionWorkflow:
    def __init__(self, s: Session, doctor_id: int, day: date):
        self.s = s
        self.repo = ScheduleRepository(s)
        self.schedule = self.repo.load_schedule(doctor_id, day)
        self.state = BreakState.SELECTING
        self.reason: Optional[str] = None
        self.info = None
        self.slots: List[datetime] = []
        self.candidate: Optional[BreakPeriod] = None
        self.options: Optional[ExtensionOptions] = None
        self.result: Optional[BreakCommitResult] = None

    def _expect(self, *states: BreakState) -> None:
        if self.state not in states:
            raise ValidationError(
                f"break workflow is {self.state.value}",
                expected=[s.value for s in states],
            )

    def _context(self) -> dict:
        return dict(
            doctor_id=self.schedule.doctor_id,
            date=self.schedule.day.isoformat(),
            session_index=self.info.session_index if self.info else None,
        )

    def select(self, start_slot: datetime, end_slot: datetime, session_index: Optional[int] = None) -> "BreakInsertionWorkflow":
        """Pick the slots from ``start_slot`` through ``end_slot`` (both inclusive)."""
        self._expect(BreakState.SELECTING)
        if session_index is None:
            self.info = next(
                (i for i in all_sessions(self.schedule) if i.session_start <= start_slot < i.effective_end),
                None,
            )
            if self.info is None:
                raise NotFoundError("no session at the selected time", slot=start_slot.isoformat())
        else:
            self.info = resolve_session_info(self.schedule, session_index)
        grid = expand_slots(self.info.session_start, self.info.effective_end, self.schedule.slot_minutes)
        self.slots = [t for t in grid if start_slot <= t <= end_slot]
        self.state = BreakState.VALIDATING
        return self

    def validate(self) -> ExtensionOptions:
        self._expect(BreakState.VALIDATING)
        info = self.info
        check = validate_break_slots(
            self.slots,
            info.breaks,
            info.session_index,
            info.session_start,
            info.effective_end,
            self.schedule.slot_minutes,
        )
        if not check.ok:
            self.state = BreakState.REJECTED
            self.reason = check.reason
            log.info("break rejected for doctor %s: %s", self.schedule.doctor_id, check.reason)
            raise ValidationError(check.reason, **self._context())

        self.candidate = create_break_period(self.slots, info.session_index, self.schedule.slot_minutes)
        appts = self.repo.list_appointments(
            self.schedule.doctor_id, self.schedule.day, session_index=info.session_index, active_only=True
        )
        self.options = extension_options(info, self.candidate, appts, self.schedule.slot_minutes)
        self.state = BreakState.PENDING_CONFIRMATION
        return self.options

    def confirm(self, extension_minutes: int = 0) -> BreakCommitResult:
        """Commit the break with the chosen extension (0, minimal or full).

        0 keeps whatever extension the session already has.
        """
        self._expect(BreakState.PENDING_CONFIRMATION)
        info, opts = self.info, self.options
        if extension_minutes not in {0, opts.minimal, opts.full}:
            raise ValidationError(
                f"extension must be 0, {opts.minimal} or {opts.full} minutes",
                extension_minutes=extension_minutes,
                **self._context(),
            )
        total = extension_minutes or info.extended_by
        new_end = info.original_end + timedelta(minutes=total)
        if extension_minutes > 0:
            check = validate_break_overlap_with_next_session(self.schedule, info.session_index, new_end)
            if not check.ok:
                nxt = self.schedule.session_start(info.session_index + 1)
                raise OverlapWithNextSessionError(check.reason, next_session_start=nxt.isoformat(), **self._context())

        mode = GAP_AWARE if extension_minutes == opts.minimal and opts.minimal < opts.full else FULL
        candidate = self.candidate.model_copy(update={"shift_mode": mode})
        merged = merge_adjacent_breaks(list(info.breaks) + [candidate])

        self.state = BreakState.COMMITTING
        try:
            self.repo.replace_session_breaks(self.schedule.doctor_id, self.schedule.day, info.session_index, merged)
            self.repo.set_extension(self.schedule.doctor_id, self.schedule.day, info.session_index, info.original_end, total)
            self.s.commit()
        except SQLAlchemyError:
            self.s.rollback()
            self.state = BreakState.PENDING_CONFIRMATION
            log.exception("break commit failed for doctor %s", self.schedule.doctor_id)
            raise
        log.info(
            "break %s (%s-%s) committed for doctor %s, session %s extended by %s min",
            candidate.id,
            format_time(candidate.start_time),
            format_time(candidate.end_time),
            self.schedule.doctor_id,
            info.session_index,
            total,
        )

        result = BreakCommitResult(
            break_period=candidate,
            breaks=merged,
            extension_minutes=total,
            effective_end=new_end,
        )
        fresh = self.repo.load_schedule(self.schedule.doctor_id, self.schedule.day)
        try:
            result.shift = shift_appointments_for_new_break(self.s, fresh, candidate, mode)
        except ShiftApplicationError as e:
            log.error("shift after break %s failed: %s %s", candidate.id, e, e.context)
            result.degraded = True
            result.notice = SHIFT_FAILED_NOTICE
        self.state = BreakState.DONE
        self.result = result
        return result

    def abandon(self) -> None:
        self._expect(BreakState.SELECTING, BreakState.VALIDATING, BreakState.PENDING_CONFIRMATION)
        self.state = BreakState.REJECTED
        self.reason = "abandoned"


def _required_extension(repo: ScheduleRepository, doctor_id: int, day: date, session_index: int) -> int:
    """Extension still needed for the session's booked patients to finish."""
    schedule = repo.load_schedule(doctor_id, day)
    info = resolve_session_info(schedule, session_index)
    appts = repo.list_appointments(doctor_id, day, session_index=session_index, active_only=True)
    step = timedelta(minutes=schedule.slot_minutes)
    finish = max((a.arrive_by_at + step for a in appts if is_queued(a)), default=None)
    if finish is None:
        return 0
    return max(0, minutes_between(info.original_end, finish))


def remove_break(
    s: Session,
    doctor_id: int,
    day: date,
    break_id: str,
    open_slots: bool = True,
    retract_extension: bool = False,
    now: Optional[datetime] = None,
) -> BreakRemovalResult:
    """Take a break off a session.

    ``open_slots`` frees the blocked slots and moves patients back; otherwise
    the slots stay blocked, for ``BREAK_BLOCK_RELEASE_MINUTES`` when set.
    ``retract_extension`` shrinks the extension to what booked patients
    still need.
    """
    repo = ScheduleRepository(s)
    schedule = repo.load_schedule(doctor_id, day)
    brk = next((b for b in schedule.breaks if b.id == break_id or break_id in b.member_ids), None)
    if brk is None:
        raise NotFoundError("break not found", doctor_id=doctor_id, date=day.isoformat(), break_id=break_id)
    idx = brk.session_index
    info = resolve_session_info(schedule, idx)
    ids = set(brk.member_ids) | {brk.id}
    remaining = [b for b in info.breaks if b.id != brk.id]
    blocks = [
        a
        for a in repo.list_appointments(doctor_id, day, session_index=idx, active_only=True)
        if a.booked_via == BREAK_BLOCK and a.break_id in ids
    ]
    result = BreakRemovalResult(break_id=brk.id, extension_minutes=info.extended_by)

    try:
        repo.replace_session_breaks(doctor_id, day, idx, remaining)
        if open_slots:
            result.opened_slots = open_blocked_slots(s, blocks)
        else:
            if config.BREAK_BLOCK_RELEASE_MINUTES is not None:
                result.blocked_until = (now or clinic_now()) + timedelta(minutes=config.BREAK_BLOCK_RELEASE_MINUTES)
            for a in blocks:
                a.blocked_until = result.blocked_until
                s.add(a)
            result.kept_blocked = len(blocks)
        drop_break_ledger(s, schedule, sorted(ids))
        s.commit()
    except SQLAlchemyError:
        s.rollback()
        log.exception("removing break %s failed", brk.id)
        raise
    log.info(
        "break %s removed for doctor %s (%s)",
        brk.id,
        doctor_id,
        "slots opened" if open_slots else "slots kept blocked",
    )

    if open_slots:
        try:
            reconcile_session(s, repo.load_schedule(doctor_id, day), idx)
        except ShiftApplicationError as e:
            log.error("restoring appointments after removing %s failed: %s %s", brk.id, e, e.context)
            result.degraded = True
            result.notice = REOPEN_FAILED_NOTICE

    if retract_extension and info.extended_by > 0:
        keep = min(info.extended_by, _required_extension(repo, doctor_id, day, idx))
        repo.set_extension(doctor_id, day, idx, info.original_end, keep)
        s.commit()
        result.extension_minutes = keep
        log.info("extension of session %s retracted to %s min", idx, keep)
    return result
