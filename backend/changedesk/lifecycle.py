"""Change-request lifecycle.

A request moves through

    PENDING -> UNDER_REVIEW -> APPROVED | REJECTED
                     |
                     +-> NEEDS_MORE_INFO -> PENDING

and PENDING may also be rejected outright. APPROVED and REJECTED are final.

Every public mutating call is one unit of work: it commits once at the end
or rolls the session back and re-raises. Approval therefore either rechecks
capacity, takes the destination seat, gives back the origin seat and
records the new state together, or does none of those.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .capacity import CapacityLedger
from .clock import Clock
from .config import CODE_PREFIX, CODE_SUFFIX_LENGTH, DEFAULT_LOOKBACK_DAYS, RESPONSE_BUSINESS_DAYS
from .conflicts import SCHEDULE_OVERLAP, ConflictRegistry
from .errors import (
    BusinessRuleError,
    CapacityExceededError,
    ConcurrencyConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    PeriodClosedError,
    ScheduleConflictError,
)
from .models import (
    AcademicPeriod,
    ChangeRequest,
    Enrollment,
    EnrollmentStatus,
    Group,
    GroupTimeSlot,
    HistoryKind,
    RequestHistoryEntry,
    RequestState,
    RequestType,
)
from .overlap import SlotConflict, TimeSlot, find_conflicts, slot_from_row
from .periods import ensure_open_for_decisions, ensure_open_for_requests
from .schemas import ChangeRequestIn

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    RequestState.PENDING: frozenset({RequestState.UNDER_REVIEW, RequestState.REJECTED}),
    RequestState.UNDER_REVIEW: frozenset({RequestState.APPROVED, RequestState.REJECTED, RequestState.NEEDS_MORE_INFO}),
    RequestState.NEEDS_MORE_INFO: frozenset({RequestState.PENDING}),
    RequestState.APPROVED: frozenset(),
    RequestState.REJECTED: frozenset(),
}
EDITABLE_STATES = frozenset({RequestState.PENDING, RequestState.NEEDS_MORE_INFO})
TERMINAL_STATES = frozenset({RequestState.APPROVED, RequestState.REJECTED})


def can_transition(current: RequestState, target: RequestState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def add_business_days(start: datetime, days: int) -> datetime:
    """Move forward ``days`` working days, counting Monday to Friday only."""
    current = start
    added = 0
    while added < days:
        current += timedelta(days=1)
        if current.weekday() < 5:
            added += 1
    return current


def generate_code(at: datetime) -> str:
    suffix = uuid.uuid4().hex[:CODE_SUFFIX_LENGTH].upper()
    return f"{CODE_PREFIX}-{at:%Y%m%d%H%M%S}-{suffix}"


def _clean(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = text.strip()
    return text or None


class RequestLifecycle:
    def __init__(
        self,
        db: Session,
        clock: Clock,
        ledger: Optional[CapacityLedger] = None,
        conflicts: Optional[ConflictRegistry] = None,
        response_days: int = RESPONSE_BUSINESS_DAYS,
    ):
        self.db = db
        self.clock = clock
        self.ledger = ledger or CapacityLedger(db, clock)
        self.conflicts = conflicts or ConflictRegistry(db, clock)
        self.response_days = response_days

    # -- commands ---------------------------------------------------------

    def create(self, payload: ChangeRequestIn, actor_id: Optional[str] = None) -> ChangeRequest:
        now = self.clock.now()
        try:
            period = ensure_open_for_requests(self._target_period(payload.period_id), now)
            origin = self._check_origin(payload.origin_enrollment_id, payload.student_id, period.id)
            self._check_shape(payload.type, origin, payload.destination_group_id)
            if payload.destination_group_id:
                self._check_destination(payload, origin, period.id)

            days = period.max_response_days if period.max_response_days is not None else self.response_days
            req = ChangeRequest(
                code=self._unique_code(now),
                type=payload.type,
                state=RequestState.PENDING,
                student_id=payload.student_id,
                description=payload.description,
                notes=payload.notes,
                origin_enrollment_id=payload.origin_enrollment_id,
                destination_group_id=payload.destination_group_id,
                destination_course_id=payload.destination_course_id,
                period_id=period.id,
                priority=payload.priority,
                created_at=now,
                updated_at=now,
                response_deadline=add_business_days(now, days),
            )
            self._append_history(req, HistoryKind.CREATED, now, actor_id, payload.notes)
            self.db.add(req)
            self.db.flush()
            if req.destination_group_id:
                self._record_overlaps(req, self._detect_overlaps(req))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(req)
        logger.info("Created request %s (%s) for student %s", req.code, req.type.value, req.student_id)
        return req

    def update(self, request_id: str, payload: ChangeRequestIn, actor_id: Optional[str] = None) -> ChangeRequest:
        req = self.get(request_id)
        if req.state not in EDITABLE_STATES:
            raise InvalidStateTransitionError(f"Request {req.code} cannot be edited while {req.state.value}")
        if payload.student_id != req.student_id:
            raise BusinessRuleError("A request cannot be moved to another student")
        if payload.period_id and payload.period_id != req.period_id:
            raise BusinessRuleError("A request cannot be moved to another period")

        now = self.clock.now()
        destination_changed = payload.destination_group_id != req.destination_group_id
        try:
            origin = self._check_origin(payload.origin_enrollment_id, req.student_id, req.period_id)
            self._check_shape(payload.type, origin, payload.destination_group_id)
            if payload.destination_group_id and (destination_changed or payload.origin_enrollment_id != req.origin_enrollment_id):
                self._check_destination(payload, origin, req.period_id, recheck_capacity=destination_changed)

            req.type = payload.type
            req.description = payload.description
            req.notes = payload.notes
            req.origin_enrollment_id = payload.origin_enrollment_id
            req.destination_group_id = payload.destination_group_id
            req.destination_course_id = payload.destination_course_id
            req.priority = payload.priority
            req.updated_at = now
            self._append_history(req, HistoryKind.UPDATED, now, actor_id, payload.notes)
            self.db.flush()
            if destination_changed:
                self._retire_overlaps(req)
                if req.destination_group_id:
                    self._record_overlaps(req, self._detect_overlaps(req))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(req)
        logger.info("Updated request %s", req.code)
        return req

    def change_state(
        self,
        request_id: str,
        new_state: RequestState,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> ChangeRequest:
        req = self.get(request_id)
        current = req.state
        if new_state == current:
            raise BusinessRuleError(f"Request {req.code} is already {current.value}")
        if not can_transition(current, new_state):
            raise InvalidStateTransitionError(
                f"Request {req.code} cannot move from {current.value} to {new_state.value}"
            )

        now = self.clock.now()
        try:
            if new_state == RequestState.APPROVED:
                self._carry_out(req, now)
            req.state = new_state
            req.updated_at = now
            self._append_history(req, HistoryKind.STATE_CHANGE, now, actor_id, notes, from_state=current, to_state=new_state)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(req)
        logger.info("Request %s moved %s -> %s", req.code, current.value, new_state.value)
        return req

    def delete(self, request_id: str) -> None:
        req = self.get(request_id)
        if req.state != RequestState.PENDING:
            raise BusinessRuleError(f"Only pending requests can be deleted; {req.code} is {req.state.value}")
        code = req.code
        try:
            self.db.delete(req)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("Deleted request %s", code)

    # -- queries ----------------------------------------------------------

    def get(self, request_id: str) -> ChangeRequest:
        req = self.db.get(ChangeRequest, request_id)
        if not req:
            raise NotFoundError(f"Request {request_id} not found")
        return req

    def find_all(self) -> list[ChangeRequest]:
        return list(self.db.scalars(select(ChangeRequest).order_by(ChangeRequest.created_at.desc())).all())

    def find_by_student(self, student_id: str) -> list[ChangeRequest]:
        stmt = (
            select(ChangeRequest)
            .where(ChangeRequest.student_id == student_id)
            .order_by(ChangeRequest.created_at.desc(), ChangeRequest.code.desc())
        )
        return list(self.db.scalars(stmt).all())

    def find_by_states(self, states: Optional[Iterable[RequestState]] = None) -> list[ChangeRequest]:
        wanted = list(states or []) or list(RequestState)
        stmt = (
            select(ChangeRequest)
            .where(ChangeRequest.state.in_(wanted))
            .order_by(ChangeRequest.priority.asc(), ChangeRequest.created_at.asc())
        )
        return list(self.db.scalars(stmt).all())

    def count_by_state(self, state: RequestState) -> int:
        stmt = select(func.count()).select_from(ChangeRequest).where(ChangeRequest.state == state)
        return int(self.db.scalar(stmt) or 0)

    def find_by_period(
        self,
        period_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ChangeRequest]:
        now = self.clock.now()
        start = start if start is not None else now - timedelta(days=DEFAULT_LOOKBACK_DAYS)
        end = end if end is not None else now
        stmt = (
            select(ChangeRequest)
            .where(ChangeRequest.period_id == period_id, ChangeRequest.created_at.between(start, end))
            .order_by(ChangeRequest.created_at.asc())
        )
        return list(self.db.scalars(stmt).all())

    def find_overdue(self, now: Optional[datetime] = None) -> list[ChangeRequest]:
        """Undecided requests whose response deadline has already passed."""
        now = now if now is not None else self.clock.now()
        stmt = (
            select(ChangeRequest)
            .where(ChangeRequest.state.not_in(list(TERMINAL_STATES)), ChangeRequest.response_deadline < now)
            .order_by(ChangeRequest.response_deadline.asc())
        )
        return list(self.db.scalars(stmt).all())

    # -- approval ---------------------------------------------------------

    def _carry_out(self, req: ChangeRequest, now: datetime) -> None:
        ensure_open_for_decisions(self.db.get(AcademicPeriod, req.period_id), now)
        origin = self._check_origin(req.origin_enrollment_id, req.student_id, req.period_id)

        if req.destination_group_id:
            self._ensure_not_enrolled(req.student_id, self.ledger.get_group(req.destination_group_id))
            found = self._detect_overlaps(req)
            if found:
                raise ScheduleConflictError(
                    f"Request {req.code} clashes with the student's timetable: {found[0].describe()}"
                )
            self._reserve_destination(req.destination_group_id)
            self.db.add(
                Enrollment(
                    student_id=req.student_id,
                    group_id=req.destination_group_id,
                    period_id=req.period_id,
                    status=EnrollmentStatus.ENROLLED,
                    enrolled_at=now,
                    source_request_id=req.id,
                )
            )
            self.ledger.leave_waitlist(req.destination_group_id, req.student_id)

        if origin:
            self.ledger.release_seat(origin.group_id)
            origin.status = EnrollmentStatus.CANCELLED
            origin.status_changed_at = now
        self.db.flush()

    def _reserve_destination(self, group_id: str) -> Group:
        # One extra read-and-decide round after a lost race, then give up.
        for attempt in (1, 2):
            if not self.ledger.has_available_capacity(group_id):
                group = self.ledger.get_group(group_id)
                raise CapacityExceededError(f"Group {group.code} has no seats left")
            try:
                return self.ledger.reserve_seat(group_id)
            except ConcurrencyConflictError:
                if attempt == 2:
                    raise
                logger.warning("Retrying seat reservation on group %s after a concurrent update", group_id)
        raise AssertionError("unreachable")

    # -- validation -------------------------------------------------------

    def _target_period(self, period_id: Optional[str]) -> Optional[AcademicPeriod]:
        active = self.db.scalar(select(AcademicPeriod).where(AcademicPeriod.active.is_(True)))
        if period_id and (active is None or active.id != period_id):
            if not self.db.get(AcademicPeriod, period_id):
                raise NotFoundError(f"Period {period_id} not found")
            raise PeriodClosedError(f"Period {period_id} is not the active period")
        return active

    def _check_origin(self, enrollment_id: Optional[str], student_id: str, period_id: str) -> Optional[Enrollment]:
        if not enrollment_id:
            return None
        origin = self.db.get(Enrollment, enrollment_id)
        if not origin:
            raise NotFoundError(f"Enrollment {enrollment_id} not found")
        if origin.student_id != student_id:
            raise BusinessRuleError(f"Enrollment {enrollment_id} belongs to another student")
        if origin.period_id != period_id:
            raise BusinessRuleError(f"Enrollment {enrollment_id} is not in the request's period")
        if origin.status != EnrollmentStatus.ENROLLED:
            raise BusinessRuleError(f"Enrollment {enrollment_id} is {origin.status.value}, not active")
        return origin

    def _ensure_not_enrolled(self, student_id: str, group: Group) -> None:
        held = self.db.scalar(
            select(Enrollment.id).where(
                Enrollment.student_id == student_id,
                Enrollment.group_id == group.id,
                Enrollment.status == EnrollmentStatus.ENROLLED,
            )
        )
        if held:
            raise BusinessRuleError(f"Student {student_id} is already enrolled in group {group.code}")

    @staticmethod
    def _check_shape(kind: RequestType, origin: Optional[Enrollment], destination_group_id: Optional[str]) -> None:
        if kind == RequestType.WITHDRAWAL:
            if origin is None:
                raise BusinessRuleError("A withdrawal needs the enrollment being dropped")
            if destination_group_id:
                raise BusinessRuleError("A withdrawal cannot name a destination group")
        elif kind == RequestType.GROUP_CHANGE and not destination_group_id:
            raise BusinessRuleError("A group change needs a destination group")

    def _check_destination(
        self,
        payload: ChangeRequestIn,
        origin: Optional[Enrollment],
        period_id: str,
        recheck_capacity: bool = True,
    ) -> Group:
        group = self.ledger.get_group(payload.destination_group_id)
        if not group.active:
            raise BusinessRuleError(f"Group {group.code} is not open")
        if group.period_id != period_id:
            raise BusinessRuleError(f"Group {group.code} belongs to another period")
        if origin is not None and origin.group_id == group.id:
            raise BusinessRuleError(f"Student is already enrolled in group {group.code}")
        self._ensure_not_enrolled(payload.student_id, group)
        if payload.destination_course_id and group.course_id != payload.destination_course_id:
            raise BusinessRuleError(f"Group {group.code} does not teach course {payload.destination_course_id}")
        if payload.type == RequestType.GROUP_CHANGE and origin is not None:
            origin_group = self.ledger.get_group(origin.group_id)
            if origin_group.course_id != group.course_id:
                raise BusinessRuleError("A group change must stay within the same course")
        if recheck_capacity and not self.ledger.has_available_capacity(group.id):
            raise CapacityExceededError(
                f"Group {group.code} is full ({group.current_enrollment}/{group.max_capacity})"
            )
        return group

    # -- timetable checks -------------------------------------------------

    def _student_slots(self, req: ChangeRequest) -> list[TimeSlot]:
        stmt = (
            select(GroupTimeSlot)
            .join(Enrollment, Enrollment.group_id == GroupTimeSlot.group_id)
            .where(
                Enrollment.student_id == req.student_id,
                Enrollment.period_id == req.period_id,
                Enrollment.status == EnrollmentStatus.ENROLLED,
            )
        )
        if req.origin_enrollment_id:
            stmt = stmt.where(Enrollment.id != req.origin_enrollment_id)
        return [slot_from_row(row) for row in self.db.scalars(stmt).all()]

    def _destination_slots(self, group_id: str) -> list[TimeSlot]:
        stmt = select(GroupTimeSlot).where(GroupTimeSlot.group_id == group_id).order_by(GroupTimeSlot.position)
        return [slot_from_row(row) for row in self.db.scalars(stmt).all()]

    def _detect_overlaps(self, req: ChangeRequest) -> list[SlotConflict]:
        if not req.destination_group_id:
            return []
        return find_conflicts(self._student_slots(req), self._destination_slots(req.destination_group_id))

    def _record_overlaps(self, req: ChangeRequest, found: list[SlotConflict]) -> None:
        for pair in found:
            self.conflicts.record(
                category=SCHEDULE_OVERLAP,
                student_id=req.student_id,
                description=pair.describe(),
                request_id=req.id,
                group_id=req.destination_group_id,
            )

    def _retire_overlaps(self, req: ChangeRequest) -> None:
        for conflict in self.conflicts.find_unresolved_by_request(req.id):
            if conflict.category == SCHEDULE_OVERLAP:
                conflict.resolved = True
                conflict.resolution_notes = "Destination group changed"

    # -- helpers ----------------------------------------------------------

    def _unique_code(self, now: datetime) -> str:
        code = generate_code(now)
        while self.db.scalar(select(ChangeRequest.id).where(ChangeRequest.code == code)):
            code = generate_code(now)
        return code

    @staticmethod
    def _append_history(
        req: ChangeRequest,
        kind: HistoryKind,
        at: datetime,
        actor_id: Optional[str],
        notes: Optional[str],
        from_state: Optional[RequestState] = None,
        to_state: Optional[RequestState] = None,
    ) -> None:
        req.history.append(
            RequestHistoryEntry(
                kind=kind,
                from_state=from_state,
                to_state=to_state,
                actor_id=actor_id,
                notes=_clean(notes),
                at=at,
            )
        )
