# shared fixtures: one in-memory SQLite database per test, a fixed clock,
# an active period and small builders for groups and enrollments

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from changedesk import models  # noqa: F401  (registers the tables on Base.metadata)
from changedesk.clock import FixedClock
from changedesk.db import Base, get_db, make_engine
from changedesk.main import app, get_clock
from changedesk.models import AcademicPeriod, Enrollment, EnrollmentStatus, Group, GroupTimeSlot

from builders import NOW


@pytest.fixture
def engine():
    eng = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def period(db):
    p = AcademicPeriod(
        starts_at=datetime(2025, 2, 3),
        ends_at=datetime(2025, 6, 27),
        enrollment_opens_at=datetime(2025, 1, 20),
        request_deadline=datetime(2025, 4, 30),
        year=2025,
        term=1,
        active=True,
        allow_changes=True,
    )
    db.add(p)
    db.commit()
    return p


@pytest.fixture
def make_group(db, period):
    def _make(code, course_id="CALC-1", max_capacity=30, current=0, slots=(), period_id=None, active=True):
        g = Group(
            code=code,
            course_id=course_id,
            period_id=period_id or period.id,
            max_capacity=max_capacity,
            current_enrollment=current,
            version=0,
            active=active,
        )
        for position, (day, start, end, room) in enumerate(slots):
            g.time_slots.append(GroupTimeSlot(position=position, weekday=day, start_time=start, end_time=end, room=room))
        db.add(g)
        db.commit()
        return g

    return _make


@pytest.fixture
def make_enrollment(db):
    # inserts the row only; seat counters are set on the group by make_group
    def _make(student_id, group, status=EnrollmentStatus.ENROLLED):
        e = Enrollment(
            student_id=student_id,
            group_id=group.id,
            period_id=group.period_id,
            status=status,
            enrolled_at=datetime(2025, 2, 1),
        )
        db.add(e)
        db.commit()
        return e

    return _make


@pytest.fixture
def client(session_factory, clock):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()

