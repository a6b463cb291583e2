from __future__ import annotations

import json
import logging
from datetime import datetime, time, timedelta
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.inspection import inspect
from sqlalchemy.orm import Session

from .capacity import CapacityLedger
from .clock import Clock, SystemClock
from .config import LOG_LEVEL
from .conflicts import ConflictRegistry
from .db import Base, SessionLocal, engine, get_db
from .errors import ChangeDeskError
from .lifecycle import RequestLifecycle
from .models import AcademicPeriod, AuditLog, Group, RequestState, Weekday
from .overlap import TimeSlot, find_conflicts, slot_from_input
from .periods import PeriodService
from .roster import RosterService
from .schemas import (
    ChangeRequestIn,
    ChangeRequestOut,
    ConflictIn,
    ConflictOut,
    ConflictResolveIn,
    EnrollmentIn,
    GroupIn,
    GroupOut,
    OccupancyOut,
    OverlapCheckIn,
    PeriodIn,
    PeriodOut,
    SlotConflictOut,
    StateChangeIn,
    TimeSlotIn,
    WaitlistIn,
    request_out,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Change Desk - schedule change requests")
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

_system_clock = SystemClock()


def get_clock() -> Clock:
    return _system_clock


def current_actor(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_actor_id or None


def write_audit(db: Session, clock: Clock, actor_id: Optional[str], action: str, entity: str, entity_id: str, payload: Optional[str] = None) -> None:
    db.add(AuditLog(actor_id=actor_id, action=action, entity_type=entity, entity_id=entity_id, payload=payload, created_at=clock.now()))
    db.commit()


def serialize(instance):
    return {c.key: getattr(instance, c.key) for c in inspect(instance).mapper.column_attrs}


def slot_dict(slot: TimeSlot) -> dict:
    return {
        "weekday": slot.weekday,
        "start_time": slot.start,
        "end_time": slot.end,
        "room": slot.room,
        "session_type": slot.session_type,
        "group_id": slot.group_id,
    }


@app.exception_handler(ChangeDeskError)
async def change_desk_error(request: Request, exc: ChangeDeskError):
    logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.error_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error_code": exc.error_code})


def seed_demo_data(db: Session, clock: Clock) -> dict:
    created = {"periods": 0, "groups": 0, "enrollments": 0}
    now = clock.now()
    period = db.scalar(select(AcademicPeriod).where(AcademicPeriod.active.is_(True)))
    if not period:
        period = PeriodService(db).create(
            PeriodIn(
                starts_at=now - timedelta(days=14),
                ends_at=now + timedelta(days=120),
                enrollment_opens_at=now - timedelta(days=30),
                request_deadline=now + timedelta(days=21),
                year=now.year,
                term=1 if now.month <= 6 else 2,
                active=True,
            )
        )
        created["periods"] += 1

    roster = RosterService(db, clock)
    demo_groups = [
        ("CALC-1-A", "CALC-1", 30, [(Weekday.MONDAY, time(8, 0), time(10, 0), "A101"), (Weekday.WEDNESDAY, time(8, 0), time(10, 0), "A101")]),
        ("CALC-1-B", "CALC-1", 30, [(Weekday.TUESDAY, time(10, 0), time(12, 0), "A102"), (Weekday.THURSDAY, time(10, 0), time(12, 0), "A102")]),
        ("PHYS-1-A", "PHYS-1", 25, [(Weekday.MONDAY, time(9, 0), time(11, 0), "B201"), (Weekday.FRIDAY, time(14, 0), time(16, 0), "LAB-3")]),
        ("PHYS-1-B", "PHYS-1", 2, [(Weekday.TUESDAY, time(14, 0), time(16, 0), "B202")]),
    ]
    groups = {}
    for code, course_id, capacity, slots in demo_groups:
        existing = db.scalar(select(Group).where(Group.code == code, Group.period_id == period.id))
        if existing:
            groups[code] = existing
            continue
        groups[code] = roster.create_group(
            GroupIn(
                code=code,
                course_id=course_id,
                period_id=period.id,
                max_capacity=capacity,
                time_slots=[TimeSlotIn(weekday=d, start_time=s, end_time=e, room=r) for d, s, e, r in slots],
            )
        )
        created["groups"] += 1

    if created["groups"]:
        for student_id, code in [("S1", "CALC-1-A"), ("S2", "CALC-1-A"), ("S2", "PHYS-1-B"), ("S3", "PHYS-1-B")]:
            roster.enroll(EnrollmentIn(student_id=student_id, group_id=groups[code].id))
            created["enrollments"] += 1
    return created


@app.on_event("startup")
def startup():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        active = db.scalars(select(AcademicPeriod).where(AcademicPeriod.active.is_(True))).all()
        if len(active) > 1:
            logger.warning("%s periods flagged active; activate one explicitly", len(active))


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/demo/load-data")
def load_demo_data(db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    summary = seed_demo_data(db, clock)
    write_audit(db, clock, actor, "SEED_DEMO_DATA", "System", "demo", json.dumps(summary))
    return {"status": "ok", "summary": summary}


# -- periods ---------------------------------------------------------------


@app.post("/periods", response_model=PeriodOut, status_code=201)
def create_period(payload: PeriodIn, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    period = PeriodService(db).create(payload)
    write_audit(db, clock, actor, "CREATE", "AcademicPeriod", period.id, payload.model_dump_json())
    return PeriodOut.model_validate(period)


@app.get("/periods", response_model=list[PeriodOut])
def list_periods(db: Session = Depends(get_db)):
    return [PeriodOut.model_validate(p) for p in PeriodService(db).find_all()]


@app.get("/periods/active", response_model=Optional[PeriodOut])
def active_period(db: Session = Depends(get_db)):
    period = PeriodService(db).find_active()
    return PeriodOut.model_validate(period) if period else None


@app.get("/periods/within")
def within_period(at: Optional[datetime] = None, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    instant = at or clock.now()
    return {"at": instant, "within": PeriodService(db).is_within_any_period(instant)}


@app.get("/periods/{period_id}", response_model=PeriodOut)
def get_period(period_id: str, db: Session = Depends(get_db)):
    return PeriodOut.model_validate(PeriodService(db).get(period_id))


@app.put("/periods/{period_id}", response_model=PeriodOut)
def update_period(period_id: str, payload: PeriodIn, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    period = PeriodService(db).update(period_id, payload)
    write_audit(db, clock, actor, "UPDATE", "AcademicPeriod", period.id, payload.model_dump_json())
    return PeriodOut.model_validate(period)


@app.post("/periods/{period_id}/activate", response_model=PeriodOut)
def activate_period(period_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    period = PeriodService(db).activate_period(period_id)
    write_audit(db, clock, actor, "ACTIVATE", "AcademicPeriod", period.id)
    return PeriodOut.model_validate(period)


@app.delete("/periods/{period_id}")
def delete_period(period_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    PeriodService(db).delete(period_id)
    write_audit(db, clock, actor, "DELETE", "AcademicPeriod", period_id)
    return {"status": "deleted"}


# -- groups, seats and waitlists -------------------------------------------


@app.post("/groups", response_model=GroupOut, status_code=201)
def create_group(payload: GroupIn, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    group = RosterService(db, clock).create_group(payload)
    write_audit(db, clock, actor, "CREATE", "Group", group.id, payload.model_dump_json())
    return GroupOut.model_validate(group)


@app.get("/groups", response_model=list[GroupOut])
def list_groups(
    course_id: Optional[str] = None,
    period_id: Optional[str] = None,
    with_capacity: bool = False,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    if with_capacity:
        groups = CapacityLedger(db, clock).groups_with_capacity(course_id, period_id)
    else:
        groups = RosterService(db, clock).find_groups(course_id, period_id)
    return [GroupOut.model_validate(g) for g in groups]


@app.get("/groups/near-capacity", response_model=list[GroupOut])
def near_capacity_groups(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return [GroupOut.model_validate(g) for g in CapacityLedger(db, clock).near_capacity_groups()]


@app.get("/groups/{group_id}", response_model=GroupOut)
def get_group(group_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return GroupOut.model_validate(CapacityLedger(db, clock).get_group(group_id))


@app.get("/groups/{group_id}/occupancy", response_model=OccupancyOut)
def group_occupancy(group_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    group = CapacityLedger(db, clock).get_group(group_id)
    return OccupancyOut(
        group_id=group.id,
        current_enrollment=group.current_enrollment,
        max_capacity=group.max_capacity,
        available_seats=group.available_seats(),
        occupancy_percentage=group.occupancy_percentage(),
        near_capacity=group.is_near_capacity(),
    )


@app.get("/groups/{group_id}/waitlist")
def group_waitlist(group_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return {"group_id": group_id, "students": CapacityLedger(db, clock).waitlist(group_id)}


@app.post("/groups/{group_id}/waitlist")
def join_waitlist(group_id: str, payload: WaitlistIn, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    position = CapacityLedger(db, clock).join_waitlist(group_id, payload.student_id)
    db.commit()
    write_audit(db, clock, actor, "WAITLIST_JOIN", "Group", group_id, payload.student_id)
    return {"group_id": group_id, "student_id": payload.student_id, "position": position}


@app.delete("/groups/{group_id}/waitlist/{student_id}")
def leave_waitlist(group_id: str, student_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    removed = CapacityLedger(db, clock).leave_waitlist(group_id, student_id)
    db.commit()
    if removed:
        write_audit(db, clock, actor, "WAITLIST_LEAVE", "Group", group_id, student_id)
    return {"group_id": group_id, "student_id": student_id, "removed": removed}


@app.get("/groups/{group_id}/waitlist/{student_id}")
def waitlist_position(group_id: str, student_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return {"group_id": group_id, "student_id": student_id, "position": CapacityLedger(db, clock).waitlist_position(group_id, student_id)}


# -- enrollments -----------------------------------------------------------


@app.post("/enrollments", status_code=201)
def create_enrollment(payload: EnrollmentIn, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    enrollment = RosterService(db, clock).enroll(payload)
    write_audit(db, clock, actor, "ENROLL", "Enrollment", enrollment.id, payload.model_dump_json())
    return serialize(enrollment)


@app.get("/enrollments")
def list_enrollments(student_id: Optional[str] = None, active_only: bool = False, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return [serialize(e) for e in RosterService(db, clock).find_enrollments(student_id, active_only)]


# -- change requests -------------------------------------------------------


@app.post("/requests", response_model=ChangeRequestOut, status_code=201)
def create_request(payload: ChangeRequestIn, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    req = RequestLifecycle(db, clock).create(payload, actor_id=actor)
    write_audit(db, clock, actor, "CREATE", "ChangeRequest", req.id, payload.model_dump_json())
    return request_out(req)


@app.get("/requests", response_model=list[ChangeRequestOut])
def list_requests(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return [request_out(r) for r in RequestLifecycle(db, clock).find_all()]


@app.get("/requests/overdue", response_model=list[ChangeRequestOut])
def overdue_requests(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return [request_out(r) for r in RequestLifecycle(db, clock).find_overdue()]


@app.get("/requests/states", response_model=list[ChangeRequestOut])
def requests_by_states(state: Optional[list[RequestState]] = Query(default=None), db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return [request_out(r) for r in RequestLifecycle(db, clock).find_by_states(state)]


@app.get("/requests/states/{state}/count")
def count_requests(state: RequestState, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return {"state": state, "count": RequestLifecycle(db, clock).count_by_state(state)}


@app.get("/requests/student/{student_id}", response_model=list[ChangeRequestOut])
def requests_by_student(student_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return [request_out(r) for r in RequestLifecycle(db, clock).find_by_student(student_id)]


@app.get("/requests/period/{period_id}", response_model=list[ChangeRequestOut])
def requests_by_period(
    period_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return [request_out(r) for r in RequestLifecycle(db, clock).find_by_period(period_id, start, end)]


@app.get("/requests/{request_id}", response_model=ChangeRequestOut)
def get_request(request_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return request_out(RequestLifecycle(db, clock).get(request_id))


@app.put("/requests/{request_id}", response_model=ChangeRequestOut)
def update_request(request_id: str, payload: ChangeRequestIn, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    req = RequestLifecycle(db, clock).update(request_id, payload, actor_id=actor)
    write_audit(db, clock, actor, "UPDATE", "ChangeRequest", req.id, payload.model_dump_json())
    return request_out(req)


@app.patch("/requests/{request_id}/state", response_model=ChangeRequestOut)
def change_request_state(request_id: str, payload: StateChangeIn, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    req = RequestLifecycle(db, clock).change_state(request_id, payload.state, payload.notes, actor_id=actor)
    write_audit(db, clock, actor, "STATE_CHANGE", "ChangeRequest", req.id, req.state.value)
    return request_out(req)


@app.delete("/requests/{request_id}")
def delete_request(request_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    RequestLifecycle(db, clock).delete(request_id)
    write_audit(db, clock, actor, "DELETE", "ChangeRequest", request_id)
    return {"status": "deleted"}


# -- conflicts -------------------------------------------------------------


@app.post("/conflicts", response_model=ConflictOut, status_code=201)
def register_conflict(payload: ConflictIn, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    conflict = ConflictRegistry(db, clock).register(payload)
    write_audit(db, clock, actor, "REPORT", "Conflict", conflict.id, payload.category)
    return ConflictOut.model_validate(conflict)


@app.get("/conflicts", response_model=list[ConflictOut])
def list_conflicts(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return [ConflictOut.model_validate(c) for c in ConflictRegistry(db, clock).find_all()]


@app.get("/conflicts/student/{student_id}", response_model=list[ConflictOut])
def conflicts_by_student(student_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return [ConflictOut.model_validate(c) for c in ConflictRegistry(db, clock).find_by_student(student_id)]


@app.get("/conflicts/request/{request_id}", response_model=list[ConflictOut])
def conflicts_by_request(request_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return [ConflictOut.model_validate(c) for c in ConflictRegistry(db, clock).find_by_request(request_id)]


@app.get("/conflicts/{conflict_id}", response_model=ConflictOut)
def get_conflict(conflict_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return ConflictOut.model_validate(ConflictRegistry(db, clock).find_by_id(conflict_id))


@app.put("/conflicts/{conflict_id}", response_model=ConflictOut)
def update_conflict(conflict_id: str, payload: ConflictIn, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    conflict = ConflictRegistry(db, clock).update(conflict_id, payload)
    write_audit(db, clock, actor, "UPDATE", "Conflict", conflict.id, payload.model_dump_json())
    return ConflictOut.model_validate(conflict)


@app.post("/conflicts/{conflict_id}/resolve", response_model=ConflictOut)
def resolve_conflict(conflict_id: str, payload: ConflictResolveIn, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    conflict = ConflictRegistry(db, clock).mark_resolved(conflict_id, payload.resolved, payload.notes)
    write_audit(db, clock, actor, "RESOLVE" if payload.resolved else "REOPEN", "Conflict", conflict.id, payload.notes)
    return ConflictOut.model_validate(conflict)


@app.delete("/conflicts/{conflict_id}")
def delete_conflict(conflict_id: str, db: Session = Depends(get_db), clock: Clock = Depends(get_clock), actor: Optional[str] = Depends(current_actor)):
    ConflictRegistry(db, clock).delete(conflict_id)
    write_audit(db, clock, actor, "DELETE", "Conflict", conflict_id)
    return {"status": "deleted"}


# -- timetable checks ------------------------------------------------------


@app.post("/schedule/overlaps", response_model=list[SlotConflictOut])
def schedule_overlaps(payload: OverlapCheckIn):
    found = find_conflicts([slot_from_input(s) for s in payload.current], [slot_from_input(s) for s in payload.candidate])
    return [
        {
            "existing": slot_dict(c.existing),
            "candidate": slot_dict(c.candidate),
            "overlap_start": c.overlap_start,
            "overlap_end": c.overlap_end,
            "description": c.describe(),
        }
        for c in found
    ]
