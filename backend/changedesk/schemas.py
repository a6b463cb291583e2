from __future__ import annotations

from datetime import datetime, time
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import ChangeRequest, HistoryKind, RequestHistoryEntry, RequestState, RequestType, SessionType, Weekday


class TimeSlotIn(BaseModel):
    weekday: Weekday
    start_time: time
    end_time: time
    room: Optional[str] = None
    session_type: SessionType = SessionType.LECTURE

    @field_validator("weekday", mode="before")
    @classmethod
    def weekday_by_name(cls, value):
        if isinstance(value, str) and not value.isdigit():
            try:
                return Weekday[value.strip().upper()]
            except KeyError as exc:
                raise ValueError(f"Unknown weekday {value!r}") from exc
        return value


class TimeSlotOut(TimeSlotIn):
    model_config = ConfigDict(from_attributes=True)
    group_id: Optional[str] = None


class PeriodIn(BaseModel):
    starts_at: datetime
    ends_at: datetime
    enrollment_opens_at: datetime
    request_deadline: datetime
    year: int
    term: int = Field(ge=1)
    active: bool = False
    allow_changes: bool = True
    max_response_days: Optional[int] = Field(default=None, ge=0)


class PeriodOut(PeriodIn):
    model_config = ConfigDict(from_attributes=True)
    id: str
    label: str


class GroupIn(BaseModel):
    code: str
    course_id: str
    period_id: str
    instructor_id: Optional[str] = None
    max_capacity: int = Field(ge=0)
    current_enrollment: int = Field(default=0, ge=0)
    time_slots: list[TimeSlotIn] = Field(default_factory=list)
    active: bool = True


class GroupOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    code: str
    course_id: str
    period_id: str
    instructor_id: Optional[str] = None
    max_capacity: int
    current_enrollment: int
    version: int
    active: bool
    time_slots: list[TimeSlotOut] = Field(default_factory=list)


class OccupancyOut(BaseModel):
    group_id: str
    current_enrollment: int
    max_capacity: int
    available_seats: int
    occupancy_percentage: float
    near_capacity: bool


class WaitlistIn(BaseModel):
    student_id: str = Field(min_length=1)


class EnrollmentIn(BaseModel):
    student_id: str = Field(min_length=1)
    group_id: str
    notes: Optional[str] = None


class ChangeRequestIn(BaseModel):
    type: RequestType
    student_id: str = Field(min_length=1)
    description: Optional[str] = None
    notes: Optional[str] = None
    origin_enrollment_id: Optional[str] = None
    destination_group_id: Optional[str] = None
    destination_course_id: Optional[str] = None
    period_id: Optional[str] = None
    priority: int = Field(default=0, ge=0)


class StateChangeIn(BaseModel):
    state: RequestState
    notes: Optional[str] = None


class _HistoryEntryBase(BaseModel):
    seq: int
    label: str
    actor_id: Optional[str] = None
    notes: Optional[str] = None
    at: datetime


class CreatedEntryOut(_HistoryEntryBase):
    kind: Literal[HistoryKind.CREATED]


class UpdatedEntryOut(_HistoryEntryBase):
    kind: Literal[HistoryKind.UPDATED]


class StateChangeEntryOut(_HistoryEntryBase):
    kind: Literal[HistoryKind.STATE_CHANGE]
    from_state: RequestState
    to_state: RequestState


HistoryEntryOut = Annotated[
    Union[CreatedEntryOut, UpdatedEntryOut, StateChangeEntryOut],
    Field(discriminator="kind"),
]


class ChangeRequestOut(BaseModel):
    id: str
    code: str
    type: RequestType
    state: RequestState
    student_id: str
    description: Optional[str] = None
    notes: Optional[str] = None
    origin_enrollment_id: Optional[str] = None
    destination_group_id: Optional[str] = None
    destination_course_id: Optional[str] = None
    period_id: str
    priority: int
    created_at: datetime
    response_deadline: datetime
    updated_at: datetime
    history: list[HistoryEntryOut] = Field(default_factory=list)


class ConflictIn(BaseModel):
    category: str = Field(min_length=1)
    description: Optional[str] = None
    student_id: str = Field(min_length=1)
    request_id: Optional[str] = None
    group_id: Optional[str] = None
    resolution_notes: Optional[str] = None


class ConflictOut(ConflictIn):
    model_config = ConfigDict(from_attributes=True)
    id: str
    detected_at: datetime
    resolved: bool


class ConflictResolveIn(BaseModel):
    resolved: bool = True
    notes: Optional[str] = None


class OverlapCheckIn(BaseModel):
    current: list[TimeSlotIn]
    candidate: list[TimeSlotIn]


class SlotConflictOut(BaseModel):
    existing: TimeSlotOut
    candidate: TimeSlotOut
    overlap_start: time
    overlap_end: time
    description: str


def history_entry_dict(entry: RequestHistoryEntry) -> dict:
    row = {
        "seq": entry.seq,
        "kind": entry.kind,
        "label": entry.label,
        "actor_id": entry.actor_id,
        "notes": entry.notes,
        "at": entry.at,
    }
    if entry.kind == HistoryKind.STATE_CHANGE:
        row["from_state"] = entry.from_state
        row["to_state"] = entry.to_state
    return row


def request_out(req: ChangeRequest) -> ChangeRequestOut:
    return ChangeRequestOut(
        id=req.id,
        code=req.code,
        type=req.type,
        state=req.state,
        student_id=req.student_id,
        description=req.description,
        notes=req.notes,
        origin_enrollment_id=req.origin_enrollment_id,
        destination_group_id=req.destination_group_id,
        destination_course_id=req.destination_course_id,
        period_id=req.period_id,
        priority=req.priority,
        created_at=req.created_at,
        response_deadline=req.response_deadline,
        updated_at=req.updated_at,
        history=[history_entry_dict(e) for e in req.history],
    )
