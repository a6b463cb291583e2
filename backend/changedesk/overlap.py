"""Weekly time-slot overlap detection.

Slots are half-open intervals ``[start, end)`` on a weekday, so a class
ending at 10:00 and another starting at 10:00 on the same day never clash.
Everything here is a pure function of its arguments.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import time
from typing import Iterable, Optional

from .config import SATURDAY_TEACHING_END, TEACHING_DAY_START, WEEKDAY_TEACHING_END
from .errors import InvalidScheduleError
from .models import GroupTimeSlot, SessionType, Weekday


@dataclass(frozen=True)
class TimeSlot:
    """One weekly meeting, e.g. MONDAY 08:00-10:00 in room A101."""
    weekday: Weekday
    start: time
    end: time
    room: Optional[str] = None
    session_type: SessionType = SessionType.LECTURE
    group_id: Optional[str] = None

    def sort_key(self) -> tuple:
        return (int(self.weekday), self.start, self.end, self.room or "", self.group_id or "")

    def describe(self) -> str:
        where = f" ({self.group_id})" if self.group_id else ""
        return f"{self.weekday.name} {self.start:%H:%M}-{self.end:%H:%M}{where}"


@dataclass(frozen=True)
class SlotConflict:
    existing: TimeSlot
    candidate: TimeSlot

    @property
    def overlap_start(self) -> time:
        return max(self.existing.start, self.candidate.start)

    @property
    def overlap_end(self) -> time:
        return min(self.existing.end, self.candidate.end)

    def describe(self) -> str:
        return f"{self.existing.describe()} overlaps {self.candidate.describe()}"


def slot_from_row(row: GroupTimeSlot) -> TimeSlot:
    return TimeSlot(
        weekday=row.weekday,
        start=row.start_time,
        end=row.end_time,
        room=row.room,
        session_type=row.session_type,
        group_id=row.group_id,
    )


def slot_from_input(body) -> TimeSlot:
    """Build a slot from a request body carrying start_time/end_time."""
    return TimeSlot(
        weekday=body.weekday,
        start=body.start_time,
        end=body.end_time,
        room=body.room,
        session_type=body.session_type,
    )


def validate_slot(slot: TimeSlot) -> TimeSlot:
    if slot is None:
        raise InvalidScheduleError("Time slot is missing")
    if slot.weekday is None:
        raise InvalidScheduleError("Time slot has no weekday")
    try:
        Weekday(slot.weekday)
    except ValueError as exc:
        raise InvalidScheduleError(f"Unknown weekday {slot.weekday!r}") from exc
    if slot.start is None or slot.end is None:
        raise InvalidScheduleError("Time slot needs both a start and an end time")
    if not slot.start < slot.end:
        raise InvalidScheduleError(f"Time slot starts at {slot.start:%H:%M} but ends at {slot.end:%H:%M}")
    return slot


def overlaps(a: TimeSlot, b: TimeSlot) -> bool:
    validate_slot(a)
    validate_slot(b)
    if Weekday(a.weekday) != Weekday(b.weekday):
        return False
    return a.start < b.end and b.start < a.end


def find_conflicts(current: Iterable[TimeSlot], candidate: Iterable[TimeSlot]) -> list[SlotConflict]:
    """Every (current, candidate) pair that clashes, ordered by weekday then start time."""
    current = [validate_slot(s) for s in current]
    candidate = [validate_slot(s) for s in candidate]
    found = [SlotConflict(a, b) for a in current for b in candidate if overlaps(a, b)]
    found.sort(key=lambda c: (c.existing.sort_key(), c.candidate.sort_key()))
    return found


def is_within_institutional_hours(slot: TimeSlot) -> bool:
    validate_slot(slot)
    day = Weekday(slot.weekday)
    if day == Weekday.SUNDAY:
        return False
    if slot.start < TEACHING_DAY_START:
        return False
    if day == Weekday.SATURDAY:
        return slot.end <= SATURDAY_TEACHING_END
    return slot.end <= WEEKDAY_TEACHING_END
