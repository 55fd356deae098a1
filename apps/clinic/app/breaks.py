from datetime import datetime, timedelta
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple

from . import config
from .domain import BreakPeriod, DoctorSchedule
from .errors import InvalidRangeError, ValidationError
from .timegrid import format_time


class BreakCheck(NamedTuple):
    ok: bool
    reason: Optional[str] = None


def create_break_period(
    slots: Sequence[datetime],
    session_index: int,
    slot_minutes: int,
    kind: str = "break",
    shift_mode: str = "full",
) -> BreakPeriod:
    """Build a break covering exactly ``slots``.

    The slots must be non-empty, strictly increasing and exactly one slot
    duration apart; the break ends one slot after the last of them.
    """
    if not slots:
        raise ValidationError("break needs at least one slot", session_index=session_index)
    if slot_minutes <= 0:
        raise InvalidRangeError("slot duration must be positive", slot_minutes=slot_minutes)
    step = timedelta(minutes=slot_minutes)
    ordered = list(slots)
    for prev, cur in zip(ordered, ordered[1:]):
        if cur - prev != step:
            raise ValidationError(
                "break slots must be contiguous",
                session_index=session_index,
                after=prev.isoformat(),
                slot=cur.isoformat(),
            )
    start = ordered[0]
    end = ordered[-1] + step
    break_id = f"break-{start:%Y%m%d%H%M}"
    return BreakPeriod(
        id=break_id,
        start_time=start,
        end_time=end,
        duration_minutes=int((end - start) / timedelta(minutes=1)),
        session_index=session_index,
        slot_minutes=slot_minutes,
        slots=tuple(ordered),
        kind=kind,
        members=(break_id,),
        shift_mode=shift_mode,
    )


def merge_adjacent_breaks(breaks: Iterable[BreakPeriod]) -> List[BreakPeriod]:
    """Collapse breaks that touch (one ends where the next starts) into one."""
    merged: List[BreakPeriod] = []
    for b in sorted(breaks, key=lambda x: (x.session_index, x.start_time)):
        prev = merged[-1] if merged else None
        if prev is not None and prev.session_index == b.session_index and prev.end_time == b.start_time:
            mode = "gap_aware" if prev.shift_mode == b.shift_mode == "gap_aware" else "full"
            merged[-1] = BreakPeriod(
                id=f"{prev.id}_merged_{b.id}",
                start_time=prev.start_time,
                end_time=b.end_time,
                duration_minutes=int((b.end_time - prev.start_time) / timedelta(minutes=1)),
                session_index=prev.session_index,
                slot_minutes=prev.slot_minutes,
                slots=tuple(sorted(set(prev.slots) | set(b.slots))),
                kind=prev.kind,
                members=prev.member_ids + b.member_ids,
                shift_mode=mode,
            )
        else:
            merged.append(b)
    return merged


def validate_break_slots(
    candidate: Sequence[datetime],
    existing: Sequence[BreakPeriod],
    session_index: int,
    session_start: datetime,
    session_end: datetime,
    slot_minutes: int,
    max_breaks: Optional[int] = None,
) -> BreakCheck:
    if not candidate:
        return BreakCheck(False, "Select at least one slot for the break")
    limit = max_breaks or config.MAX_BREAKS_PER_SESSION

    for slot in candidate:
        if slot < session_start or slot >= session_end:
            return BreakCheck(
                False,
                f"Break must be within session hours ({format_time(session_start)} - {format_time(session_end)})",
            )

    try:
        proposed = create_break_period(candidate, session_index, slot_minutes)
    except ValidationError as e:
        return BreakCheck(False, e.message)

    same_session = [b for b in existing if b.session_index == session_index]
    for b in same_session:
        if proposed.overlaps(b):
            return BreakCheck(
                False,
                f"This break overlaps with an existing break ({format_time(b.start_time)} - {format_time(b.end_time)})",
            )

    if len(merge_adjacent_breaks(same_session + [proposed])) > limit:
        return BreakCheck(False, f"Maximum {limit} breaks per session allowed")
    return BreakCheck(True)


def validate_break_overlap_with_next_session(
    schedule: DoctorSchedule,
    session_index: int,
    proposed_end: datetime,
) -> BreakCheck:
    nxt = session_index + 1
    if not schedule.has_session(nxt):
        return BreakCheck(True)
    next_start = schedule.session_start(nxt)
    if proposed_end > next_start:
        return BreakCheck(
            False,
            f"Extending this session (to {format_time(proposed_end)}) overlaps with the next session "
            f"starting at {format_time(next_start)}.",
        )
    return BreakCheck(True)


def build_break_intervals(breaks: Iterable[BreakPeriod]) -> List[Tuple[datetime, datetime]]:
    return sorted(((b.start_time, b.end_time) for b in breaks), key=lambda iv: iv[0])


def apply_break_offsets(t: datetime, intervals: Sequence[Tuple[datetime, datetime]]) -> datetime:
    """Push ``t`` by the length of every break starting at or before it.

    Intervals are walked in start order and the offset accumulates, so a
    time pushed past one break can be pushed again by a later one.
    """
    adjusted = t
    for start, end in sorted(intervals, key=lambda iv: iv[0]):
        if adjusted >= start:
            adjusted = adjusted + (end - start)
    return adjusted


def break_containing(t: datetime, breaks: Iterable[BreakPeriod]) -> Optional[BreakPeriod]:
    for b in breaks:
        if b.covers(t):
            return b
    return None


def skip_breaks(t: datetime, breaks: Sequence[BreakPeriod]) -> datetime:
    """First instant at or after ``t`` that is not inside a break."""
    hit = break_containing(t, breaks)
    while hit is not None:
        t = hit.end_time
        hit = break_containing(t, breaks)
    return t
