"""Group setup and student enrollments.

Course setup proper lives elsewhere; this is the slice of it the change
desk needs: groups with their weekly slots, and who currently sits in them.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .capacity import CapacityLedger
from .clock import Clock
from .errors import BusinessRuleError, InvalidScheduleError, NotFoundError
from .models import AcademicPeriod, Enrollment, EnrollmentStatus, Group, GroupTimeSlot
from .overlap import find_conflicts, is_within_institutional_hours, slot_from_input
from .schemas import EnrollmentIn, GroupIn

logger = logging.getLogger(__name__)


class RosterService:
    def __init__(self, db: Session, clock: Clock, ledger: Optional[CapacityLedger] = None):
        self.db = db
        self.clock = clock
        self.ledger = ledger or CapacityLedger(db, clock)

    def create_group(self, payload: GroupIn) -> Group:
        if not self.db.get(AcademicPeriod, payload.period_id):
            raise NotFoundError(f"Period {payload.period_id} not found")
        if payload.current_enrollment > payload.max_capacity:
            raise BusinessRuleError("Current enrollment cannot exceed the group's capacity")

        slots = [slot_from_input(s) for s in payload.time_slots]
        for slot in slots:
            if not is_within_institutional_hours(slot):
                raise InvalidScheduleError(f"{slot.describe()} is outside teaching hours")
        clashes = [c for c in find_conflicts(slots, slots) if c.existing is not c.candidate]
        if clashes:
            raise InvalidScheduleError(f"Group {payload.code} overlaps itself: {clashes[0].describe()}")

        group = Group(
            code=payload.code,
            course_id=payload.course_id,
            period_id=payload.period_id,
            instructor_id=payload.instructor_id,
            max_capacity=payload.max_capacity,
            current_enrollment=payload.current_enrollment,
            active=payload.active,
            version=0,
        )
        for position, s in enumerate(payload.time_slots):
            group.time_slots.append(
                GroupTimeSlot(
                    position=position,
                    weekday=s.weekday,
                    start_time=s.start_time,
                    end_time=s.end_time,
                    room=s.room,
                    session_type=s.session_type,
                )
            )
        self.db.add(group)
        self.db.commit()
        self.db.refresh(group)
        logger.info("Created group %s for course %s", group.code, group.course_id)
        return group

    def find_groups(self, course_id: Optional[str] = None, period_id: Optional[str] = None) -> list[Group]:
        stmt = select(Group)
        if course_id:
            stmt = stmt.where(Group.course_id == course_id)
        if period_id:
            stmt = stmt.where(Group.period_id == period_id)
        return list(self.db.scalars(stmt.order_by(Group.code)).all())

    def enroll(self, payload: EnrollmentIn) -> Enrollment:
        """Seat a student in a group, taking the seat through the ledger."""
        group = self.ledger.get_group(payload.group_id)
        already = self.db.scalar(
            select(Enrollment).where(
                Enrollment.student_id == payload.student_id,
                Enrollment.group_id == group.id,
                Enrollment.status == EnrollmentStatus.ENROLLED,
            )
        )
        if already:
            raise BusinessRuleError(f"Student {payload.student_id} is already enrolled in group {group.code}")
        try:
            self.ledger.reserve_seat(group.id)
            enrollment = Enrollment(
                student_id=payload.student_id,
                group_id=group.id,
                period_id=group.period_id,
                status=EnrollmentStatus.ENROLLED,
                enrolled_at=self.clock.now(),
                notes=payload.notes,
            )
            self.db.add(enrollment)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(enrollment)
        return enrollment

    def get_enrollment(self, enrollment_id: str) -> Enrollment:
        enrollment = self.db.get(Enrollment, enrollment_id)
        if not enrollment:
            raise NotFoundError(f"Enrollment {enrollment_id} not found")
        return enrollment

    def find_enrollments(self, student_id: Optional[str] = None, active_only: bool = False) -> list[Enrollment]:
        stmt = select(Enrollment)
        if student_id:
            stmt = stmt.where(Enrollment.student_id == student_id)
        if active_only:
            stmt = stmt.where(Enrollment.status == EnrollmentStatus.ENROLLED)
        return list(self.db.scalars(stmt.order_by(Enrollment.enrolled_at)).all())
