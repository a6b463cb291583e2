"""Seat counters and waitlists for groups.

The ledger never commits. Every method runs inside whatever transaction the
caller opened, so a seat reservation and the request approval that needed it
land together or not at all.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .clock import Clock
from .config import NEAR_CAPACITY_THRESHOLD, SEAT_RESERVATION_RETRIES
from .errors import CapacityExceededError, ConcurrencyConflictError, NotFoundError
from .models import Group, WaitlistEntry

logger = logging.getLogger(__name__)


class CapacityLedger:
    def __init__(self, db: Session, clock: Clock, max_retries: int = SEAT_RESERVATION_RETRIES):
        self.db = db
        self.clock = clock
        self.max_retries = max(1, max_retries)

    def get_group(self, group_id: str) -> Group:
        self.db.flush()
        group = self.db.get(Group, group_id)
        if not group:
            raise NotFoundError(f"Group {group_id} not found")
        return group

    def _fresh(self, group_id: str) -> Group:
        self.db.flush()
        group = self.db.get(Group, group_id, populate_existing=True)
        if not group:
            raise NotFoundError(f"Group {group_id} not found")
        return group

    def has_available_capacity(self, group_id: str) -> bool:
        return self._fresh(group_id).has_available_capacity()

    def available_seats(self, group_id: str) -> int:
        return self._fresh(group_id).available_seats()

    def occupancy_percentage(self, group_id: str) -> float:
        return self._fresh(group_id).occupancy_percentage()

    def is_near_capacity(self, group_id: str) -> bool:
        return self._fresh(group_id).is_near_capacity()

    def reserve_seat(self, group_id: str) -> Group:
        """Take one seat, or raise CapacityExceededError without touching the counter.

        The write is a single UPDATE guarded on both the version read just
        before it and ``current < max``. Losing to a concurrent writer shows
        up as zero affected rows, which triggers a fresh read and another try.
        """
        for attempt in range(1, self.max_retries + 1):
            group = self._fresh(group_id)
            if not group.has_available_capacity():
                raise CapacityExceededError(
                    f"Group {group.code} is full ({group.current_enrollment}/{group.max_capacity})"
                )
            result = self.db.execute(
                update(Group)
                .where(
                    Group.id == group_id,
                    Group.version == group.version,
                    Group.current_enrollment < Group.max_capacity,
                )
                .values(current_enrollment=Group.current_enrollment + 1, version=Group.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                group = self._fresh(group_id)
                logger.info("Seat reserved in group %s (%s/%s)", group.code, group.current_enrollment, group.max_capacity)
                return group
            logger.warning("Lost seat race on group %s (attempt %s of %s)", group_id, attempt, self.max_retries)
        raise ConcurrencyConflictError(f"Could not reserve a seat in group {group_id} after {self.max_retries} attempts")

    def release_seat(self, group_id: str) -> Group:
        """Give one seat back. Releasing from an empty group is a no-op."""
        result = self.db.execute(
            update(Group)
            .where(Group.id == group_id, Group.current_enrollment > 0)
            .values(current_enrollment=Group.current_enrollment - 1, version=Group.version + 1)
            .execution_options(synchronize_session=False)
        )
        group = self._fresh(group_id)
        if result.rowcount == 1:
            logger.info("Seat released in group %s (%s/%s)", group.code, group.current_enrollment, group.max_capacity)
        return group

    def join_waitlist(self, group_id: str, student_id: str) -> int:
        """Append the student to the group's waitlist and return their position."""
        self.get_group(group_id)
        position = self.waitlist_position(group_id, student_id)
        if position is not None:
            return position
        self.db.add(WaitlistEntry(group_id=group_id, student_id=student_id, joined_at=self.clock.now()))
        try:
            self.db.flush()
        except IntegrityError as exc:
            # The same student was queued by another writer between our read and insert.
            raise ConcurrencyConflictError(f"Waitlist for group {group_id} changed concurrently, retry") from exc
        position = self.waitlist_position(group_id, student_id)
        logger.info("Student %s waitlisted for group %s at position %s", student_id, group_id, position)
        return position

    def leave_waitlist(self, group_id: str, student_id: str) -> bool:
        self.get_group(group_id)
        entry = self._entry(group_id, student_id)
        if not entry:
            return False
        self.db.delete(entry)
        self.db.flush()
        logger.info("Student %s left the waitlist of group %s", student_id, group_id)
        return True

    def waitlist_position(self, group_id: str, student_id: str) -> Optional[int]:
        """1-indexed FIFO position, or None when the student is not queued."""
        self.get_group(group_id)
        entry = self._entry(group_id, student_id)
        if not entry:
            return None
        ahead = self.db.scalar(
            select(func.count()).select_from(WaitlistEntry).where(
                WaitlistEntry.group_id == group_id, WaitlistEntry.seq < entry.seq
            )
        )
        return int(ahead or 0) + 1

    def waitlist(self, group_id: str) -> list[str]:
        self.get_group(group_id)
        rows = self.db.scalars(
            select(WaitlistEntry).where(WaitlistEntry.group_id == group_id).order_by(WaitlistEntry.seq)
        ).all()
        return [r.student_id for r in rows]

    def groups_with_capacity(self, course_id: Optional[str] = None, period_id: Optional[str] = None) -> list[Group]:
        stmt = select(Group).where(Group.active.is_(True), Group.current_enrollment < Group.max_capacity)
        if course_id:
            stmt = stmt.where(Group.course_id == course_id)
        if period_id:
            stmt = stmt.where(Group.period_id == period_id)
        return list(self.db.scalars(stmt.order_by(Group.code)).all())

    def near_capacity_groups(self, threshold: float = NEAR_CAPACITY_THRESHOLD) -> list[Group]:
        groups = self.db.scalars(select(Group).where(Group.active.is_(True)).order_by(Group.code)).all()
        return [g for g in groups if g.is_near_capacity(threshold)]

    def _entry(self, group_id: str, student_id: str) -> Optional[WaitlistEntry]:
        self.db.flush()
        return self.db.scalar(
            select(WaitlistEntry).where(WaitlistEntry.group_id == group_id, WaitlistEntry.student_id == student_id)
        )
