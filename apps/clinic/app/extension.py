from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from . import config
from .breaks import skip_breaks
from .domain import BreakPeriod, ExtensionOptions, ExtensionResult, SessionInfo
from .timegrid import minutes_between


INACTIVE_STATUSES = {"Cancelled", "No-show"}
BREAK_BLOCK = "BreakBlock"


def is_queued(a) -> bool:
    """Whether an appointment still needs the doctor's time."""
    return a.status not in INACTIVE_STATUSES and a.booked_via != BREAK_BLOCK


def reflow_queue(times: Sequence[datetime], breaks: Sequence[BreakPeriod], slot_minutes: int) -> List[datetime]:
    """Walk a queue in time order and push each entry out of the breaks.

    An entry only moves when a break or the entry before it forces it to;
    idle slots between bookings absorb the push.
    """
    step = timedelta(minutes=slot_minutes)
    out: List[datetime] = []
    cursor: Optional[datetime] = None
    for t in sorted(times):
        c = t if cursor is None or t >= cursor else cursor
        c = skip_breaks(c, breaks)
        out.append(c)
        cursor = c + step
    return out


def calculate_session_extension(
    session_index: int,
    breaks: Iterable[BreakPeriod],
    session_end: datetime,
    appointments: Optional[Iterable] = None,
    slot_minutes: Optional[int] = None,
) -> ExtensionResult:
    """How far ``session_end`` has to move for the given breaks.

    Without appointments every break minute is added. With appointments
    the queue is re-flowed around the breaks and only the overrun of the
    last booked patient counts.
    """
    session_breaks = [b for b in breaks if b.session_index == session_index]
    break_minutes = sum(b.duration_minutes for b in session_breaks)
    if appointments is None:
        return ExtensionResult(
            new_session_end=session_end + timedelta(minutes=break_minutes),
            total_break_minutes=break_minutes,
            break_minutes=break_minutes,
        )

    if slot_minutes is None:
        slot_minutes = session_breaks[0].slot_minutes if session_breaks else config.DEFAULT_SLOT_MINUTES
    times = [a.arrive_by_at for a in appointments if is_queued(a) and a.session_index == session_index]
    need = 0
    if times:
        finish = reflow_queue(times, session_breaks, slot_minutes)[-1] + timedelta(minutes=slot_minutes)
        need = max(0, minutes_between(session_end, finish))
    return ExtensionResult(
        new_session_end=session_end + timedelta(minutes=need),
        total_break_minutes=need,
        break_minutes=break_minutes,
    )


def extension_options(
    info: SessionInfo,
    candidate: BreakPeriod,
    appointments: Iterable,
    slot_minutes: int,
) -> ExtensionOptions:
    """Minimal and full extension for adding ``candidate`` to a session.

    Both are totals over the original session end, i.e. the value that
    replaces the stored extension when confirmed. Minimal is just enough
    for the booked patients to finish; full is the whole break.
    """
    queued = [a for a in appointments if is_queued(a) and a.session_index == info.session_index]
    breaks = list(info.breaks) + [candidate]
    current = info.extended_by

    last_before = max((a.arrive_by_at for a in queued), default=None)
    last_after = None
    finish = None
    if queued:
        last_after = reflow_queue([a.arrive_by_at for a in queued], breaks, slot_minutes)[-1]
        finish = last_after + timedelta(minutes=slot_minutes)

    need = calculate_session_extension(
        info.session_index, breaks, info.original_end, appointments=queued, slot_minutes=slot_minutes
    ).total_break_minutes
    minimal = max(current, need)
    full = max(current + candidate.duration_minutes, minimal)
    return ExtensionOptions(
        has_overrun=finish is not None and finish > info.effective_end,
        minimal=minimal,
        full=full,
        last_before=last_before,
        last_after=last_after,
        estimated_finish=finish,
        effective_end=info.effective_end,
    )
