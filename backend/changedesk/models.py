from __future__ import annotations

import enum
import uuid
from datetime import datetime, time
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum as SAEnum, ForeignKey, Integer, String, Text, Time, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .config import NEAR_CAPACITY_THRESHOLD
from .db import Base


def new_id() -> str:
    return str(uuid.uuid4())


def enum_column(enum_cls):
    return SAEnum(enum_cls, native_enum=False, length=32, validate_strings=True)


class Weekday(enum.IntEnum):
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


class SessionType(str, enum.Enum):
    LECTURE = "LECTURE"
    LAB = "LAB"


class RequestType(str, enum.Enum):
    GROUP_CHANGE = "GROUP_CHANGE"
    COURSE_CHANGE = "COURSE_CHANGE"
    SCHEDULE_ADJUSTMENT = "SCHEDULE_ADJUSTMENT"
    WITHDRAWAL = "WITHDRAWAL"


class RequestState(str, enum.Enum):
    PENDING = "PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    NEEDS_MORE_INFO = "NEEDS_MORE_INFO"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class HistoryKind(str, enum.Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    STATE_CHANGE = "STATE_CHANGE"


class EnrollmentStatus(str, enum.Enum):
    ENROLLED = "ENROLLED"
    CANCELLED = "CANCELLED"
    PASSED = "PASSED"
    FAILED = "FAILED"


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    actor_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)


class AcademicPeriod(Base):
    __tablename__ = "academic_periods"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    starts_at: Mapped[datetime] = mapped_column(DateTime)
    ends_at: Mapped[datetime] = mapped_column(DateTime)
    enrollment_opens_at: Mapped[datetime] = mapped_column(DateTime)
    request_deadline: Mapped[datetime] = mapped_column(DateTime)
    year: Mapped[int] = mapped_column(Integer)
    term: Mapped[int] = mapped_column(Integer)
    active: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    allow_changes: Mapped[bool] = mapped_column(Boolean, default=True)
    max_response_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    @property
    def label(self) -> str:
        return f"{self.year}-{self.term}"


class Group(Base):
    __tablename__ = "groups"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    code: Mapped[str] = mapped_column(String, index=True)
    course_id: Mapped[str] = mapped_column(String, index=True)
    period_id: Mapped[str] = mapped_column(String, ForeignKey("academic_periods.id"), index=True)
    instructor_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    max_capacity: Mapped[int] = mapped_column(Integer, default=0)
    current_enrollment: Mapped[int] = mapped_column(Integer, default=0)
    # Bumped by every seat mutation; reservations are conditional on it.
    version: Mapped[int] = mapped_column(Integer, default=0)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    time_slots: Mapped[list["GroupTimeSlot"]] = relationship(
        back_populates="group", cascade="all, delete-orphan", order_by="GroupTimeSlot.position"
    )
    waitlist: Mapped[list["WaitlistEntry"]] = relationship(
        back_populates="group", cascade="all, delete-orphan", order_by="WaitlistEntry.seq"
    )

    def has_available_capacity(self) -> bool:
        return self.current_enrollment < self.max_capacity

    def available_seats(self) -> int:
        return max(self.max_capacity - self.current_enrollment, 0)

    def occupancy_percentage(self) -> float:
        if self.max_capacity <= 0:
            return 0.0
        return min(self.current_enrollment * 100.0 / self.max_capacity, 100.0)

    def is_near_capacity(self, threshold: float = NEAR_CAPACITY_THRESHOLD) -> bool:
        return self.occupancy_percentage() >= threshold


class GroupTimeSlot(Base):
    __tablename__ = "group_time_slots"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    group_id: Mapped[str] = mapped_column(String, ForeignKey("groups.id"), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    weekday: Mapped[Weekday] = mapped_column(enum_column(Weekday))
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    room: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    session_type: Mapped[SessionType] = mapped_column(enum_column(SessionType), default=SessionType.LECTURE)

    group: Mapped[Group] = relationship(back_populates="time_slots")


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"
    __table_args__ = (UniqueConstraint("group_id", "student_id", name="uq_waitlist_group_student"),)
    # Autoincrement key doubles as the FIFO join order.
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(String, ForeignKey("groups.id"), index=True)
    student_id: Mapped[str] = mapped_column(String, index=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime)

    group: Mapped[Group] = relationship(back_populates="waitlist")


class Enrollment(Base):
    __tablename__ = "enrollments"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(String, index=True)
    group_id: Mapped[str] = mapped_column(String, ForeignKey("groups.id"), index=True)
    period_id: Mapped[str] = mapped_column(String, ForeignKey("academic_periods.id"), index=True)
    status: Mapped[EnrollmentStatus] = mapped_column(enum_column(EnrollmentStatus), default=EnrollmentStatus.ENROLLED)
    enrolled_at: Mapped[datetime] = mapped_column(DateTime)
    status_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    source_request_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ChangeRequest(Base):
    __tablename__ = "change_requests"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    code: Mapped[str] = mapped_column(String, unique=True, index=True)
    type: Mapped[RequestType] = mapped_column(enum_column(RequestType))
    state: Mapped[RequestState] = mapped_column(enum_column(RequestState), default=RequestState.PENDING, index=True)
    student_id: Mapped[str] = mapped_column(String, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    origin_enrollment_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("enrollments.id"), nullable=True)
    destination_group_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("groups.id"), nullable=True)
    destination_course_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    period_id: Mapped[str] = mapped_column(String, ForeignKey("academic_periods.id"), index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    response_deadline: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)

    history: Mapped[list["RequestHistoryEntry"]] = relationship(
        back_populates="request", cascade="all, delete-orphan", order_by="RequestHistoryEntry.seq"
    )


class RequestHistoryEntry(Base):
    __tablename__ = "request_history"
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String, ForeignKey("change_requests.id"), index=True)
    kind: Mapped[HistoryKind] = mapped_column(enum_column(HistoryKind))
    from_state: Mapped[Optional[RequestState]] = mapped_column(enum_column(RequestState), nullable=True)
    to_state: Mapped[Optional[RequestState]] = mapped_column(enum_column(RequestState), nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    at: Mapped[datetime] = mapped_column(DateTime)

    request: Mapped[ChangeRequest] = relationship(back_populates="history")

    @property
    def label(self) -> str:
        if self.kind == HistoryKind.STATE_CHANGE:
            return f"STATE:{self.to_state.value}"
        return self.kind.value


class Conflict(Base):
    __tablename__ = "conflicts"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    category: Mapped[str] = mapped_column(String, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    student_id: Mapped[str] = mapped_column(String, index=True)
    request_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    group_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
