# tests for the change-request lifecycle: creation, editing, transitions,
# approval side effects and the read queries

import re
from datetime import datetime, timedelta
from itertools import product

import pytest
from sqlalchemy import update

from changedesk.capacity import CapacityLedger
from changedesk.conflicts import SCHEDULE_OVERLAP, ConflictRegistry
from changedesk.errors import (
    BusinessRuleError,
    CapacityExceededError,
    ConcurrencyConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    PeriodClosedError,
    ScheduleConflictError,
)
from changedesk.lifecycle import ALLOWED_TRANSITIONS, RequestLifecycle, add_business_days, can_transition, generate_code
from changedesk.models import Enrollment, EnrollmentStatus, Group, HistoryKind, RequestState, RequestType, Weekday
from changedesk.schemas import ChangeRequestIn, request_out

from builders import NOW, slot

MON, TUE, WED = Weekday.MONDAY, Weekday.TUESDAY, Weekday.WEDNESDAY
S = RequestState


@pytest.fixture
def campus(make_group, make_enrollment):
    # S1 sits in G1 (Mon 08-10) and PHYS (Wed 08-10); G2 is the other CALC-1 group
    g1 = make_group("G1", course_id="CALC-1", max_capacity=30, current=25, slots=[slot(MON, "08:00", "10:00")])
    g2 = make_group("G2", course_id="CALC-1", max_capacity=30, current=20, slots=[slot(TUE, "08:00", "10:00")])
    phys = make_group("PHYS", course_id="PHYS-1", max_capacity=30, current=10, slots=[slot(WED, "08:00", "10:00")])
    origin = make_enrollment("S1", g1)
    make_enrollment("S1", phys)
    return {"g1": g1, "g2": g2, "phys": phys, "origin": origin}


def _group_change(campus, dest=None, **kw):
    data = dict(
        type=RequestType.GROUP_CHANGE,
        student_id="S1",
        origin_enrollment_id=campus["origin"].id,
        destination_group_id=(dest or campus["g2"]).id,
        description="work shift on Mondays",
    )
    data.update(kw)
    return ChangeRequestIn(**data)


def _approve(lifecycle, req_id):
    lifecycle.change_state(req_id, S.UNDER_REVIEW)
    return lifecycle.change_state(req_id, S.APPROVED, "ok")


# --- pure helpers ---


def test_transition_table_is_enforced_for_every_pair():
    allowed = {
        (S.PENDING, S.UNDER_REVIEW),
        (S.PENDING, S.REJECTED),
        (S.UNDER_REVIEW, S.APPROVED),
        (S.UNDER_REVIEW, S.REJECTED),
        (S.UNDER_REVIEW, S.NEEDS_MORE_INFO),
        (S.NEEDS_MORE_INFO, S.PENDING),
    }
    for current, target in product(list(S), repeat=2):
        assert can_transition(current, target) == ((current, target) in allowed)
    assert ALLOWED_TRANSITIONS[S.APPROVED] == frozenset()
    assert ALLOWED_TRANSITIONS[S.REJECTED] == frozenset()


def test_code_format():
    code = generate_code(datetime(2025, 3, 10, 9, 5, 7))
    assert re.fullmatch(r"SOL-\d{14}-[A-Z0-9]{8}", code)
    assert code.startswith("SOL-20250310090507-")


def test_business_days_skip_weekends():
    friday = datetime(2025, 3, 14, 16, 0)
    assert add_business_days(friday, 1) == datetime(2025, 3, 17, 16, 0)
    assert add_business_days(NOW, 5) == NOW + timedelta(days=7)
    saturday = datetime(2025, 3, 15, 10, 0)
    assert add_business_days(saturday, 1) == datetime(2025, 3, 17, 10, 0)
    assert add_business_days(NOW, 0) == NOW


# --- creation ---


def test_create_into_full_group_fails(db, clock, make_group, campus):
    full = make_group("G3", course_id="CALC-1", max_capacity=30, current=30, slots=[slot(TUE, "10:00", "12:00")])
    lifecycle = RequestLifecycle(db, clock)
    with pytest.raises(CapacityExceededError):
        lifecycle.create(_group_change(campus, dest=full))
    assert lifecycle.find_all() == []


def test_create_starts_pending_with_code_deadline_and_history(db, clock, campus):
    req = RequestLifecycle(db, clock).create(_group_change(campus), actor_id="coord-1")
    assert req.state == S.PENDING
    assert re.fullmatch(r"SOL-\d{14}-[A-Z0-9]{8}", req.code)
    assert req.created_at == NOW
    assert req.response_deadline == NOW + timedelta(days=7)
    assert req.period_id == campus["g1"].period_id
    assert [e.kind for e in req.history] == [HistoryKind.CREATED]
    assert req.history[0].actor_id == "coord-1"


def test_period_can_override_response_days(db, clock, period, campus):
    period.max_response_days = 2
    db.commit()
    req = RequestLifecycle(db, clock).create(_group_change(campus))
    assert req.response_deadline == datetime(2025, 3, 12, 9, 0)


def test_create_after_deadline_or_without_changes_is_closed(db, clock, period, campus):
    lifecycle = RequestLifecycle(db, clock)
    clock.set(period.request_deadline + timedelta(hours=1))
    with pytest.raises(PeriodClosedError):
        lifecycle.create(_group_change(campus))
    clock.set(NOW)
    period.allow_changes = False
    db.commit()
    with pytest.raises(PeriodClosedError):
        lifecycle.create(_group_change(campus))


def test_create_for_inactive_or_unknown_period(db, clock, period, campus):
    lifecycle = RequestLifecycle(db, clock)
    with pytest.raises(NotFoundError):
        lifecycle.create(_group_change(campus, period_id="no-such-period"))
    period.active = False
    db.commit()
    with pytest.raises(PeriodClosedError):
        lifecycle.create(_group_change(campus))


def test_request_shape_rules(db, clock, make_group, campus):
    lifecycle = RequestLifecycle(db, clock)
    with pytest.raises(BusinessRuleError):
        lifecycle.create(ChangeRequestIn(type=RequestType.WITHDRAWAL, student_id="S1"))
    with pytest.raises(BusinessRuleError):
        lifecycle.create(_group_change(campus, type=RequestType.WITHDRAWAL))
    with pytest.raises(BusinessRuleError):
        lifecycle.create(_group_change(campus, destination_group_id=None))
    # group change must stay in the course
    other_course = make_group("CHEM", course_id="CHEM-1", max_capacity=30, slots=[slot(TUE, "14:00", "16:00")])
    with pytest.raises(BusinessRuleError):
        lifecycle.create(_group_change(campus, dest=other_course))
    # cannot move into the group you are already in
    with pytest.raises(BusinessRuleError):
        lifecycle.create(_group_change(campus, dest=campus["g1"]))


def test_origin_must_belong_to_the_student(db, clock, campus):
    lifecycle = RequestLifecycle(db, clock)
    with pytest.raises(BusinessRuleError):
        lifecycle.create(_group_change(campus, student_id="S2"))
    with pytest.raises(NotFoundError):
        lifecycle.create(_group_change(campus, origin_enrollment_id="missing"))


def test_overlap_is_recorded_but_does_not_block_creation(db, clock, make_group, campus):
    clash = make_group("G4", course_id="CALC-1", max_capacity=30, current=0, slots=[slot(WED, "09:00", "11:00")])
    req = RequestLifecycle(db, clock).create(_group_change(campus, dest=clash))
    found = ConflictRegistry(db, clock).find_by_request(req.id)
    assert len(found) == 1
    assert found[0].category == SCHEDULE_OVERLAP
    assert found[0].group_id == clash.id
    assert "WEDNESDAY 08:00-10:00" in found[0].description


def test_origin_slots_are_not_counted_as_clashes(db, clock, make_group, campus):
    # same hours as the origin group: the origin seat is being given up
    same_time = make_group("G5", course_id="CALC-1", max_capacity=30, current=0, slots=[slot(MON, "08:00", "10:00")])
    req = RequestLifecycle(db, clock).create(_group_change(campus, dest=same_time))
    assert ConflictRegistry(db, clock).find_by_request(req.id) == []


# --- approval ---


def test_approval_moves_the_seat_and_records_history(db, clock, campus):
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus))
    assert req.state == S.PENDING
    approved = _approve(lifecycle, req.id)

    assert approved.state == S.APPROVED
    ledger = CapacityLedger(db, clock)
    assert ledger.get_group(campus["g2"].id).current_enrollment == 21
    assert ledger.get_group(campus["g1"].id).current_enrollment == 24
    assert [e.label for e in approved.history] == ["CREATED", "STATE:UNDER_REVIEW", "STATE:APPROVED"]
    last = approved.history[-1]
    assert (last.from_state, last.to_state, last.notes) == (S.UNDER_REVIEW, S.APPROVED, "ok")

    db.refresh(campus["origin"])
    assert campus["origin"].status == EnrollmentStatus.CANCELLED
    new = db.query(Enrollment).filter_by(source_request_id=req.id).one()
    assert new.group_id == campus["g2"].id
    assert new.status == EnrollmentStatus.ENROLLED


def test_terminal_states_reject_everything(db, clock, campus):
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus))
    _approve(lifecycle, req.id)
    for target in S:
        with pytest.raises(BusinessRuleError):
            lifecycle.change_state(req.id, target)

    other = lifecycle.create(ChangeRequestIn(type=RequestType.SCHEDULE_ADJUSTMENT, student_id="S9"))
    lifecycle.change_state(other.id, S.REJECTED)
    for target in S:
        with pytest.raises(BusinessRuleError):
            lifecycle.change_state(other.id, target)


def test_no_op_and_unlisted_transitions(db, clock, campus):
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus))
    with pytest.raises(BusinessRuleError):
        lifecycle.change_state(req.id, S.PENDING)
    with pytest.raises(InvalidStateTransitionError):
        lifecycle.change_state(req.id, S.APPROVED)
    with pytest.raises(InvalidStateTransitionError):
        lifecycle.change_state(req.id, S.NEEDS_MORE_INFO)
    assert lifecycle.get(req.id).state == S.PENDING
    assert len(lifecycle.get(req.id).history) == 1


def test_needs_more_info_round_trip(db, clock, campus):
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus))
    lifecycle.change_state(req.id, S.UNDER_REVIEW)
    lifecycle.change_state(req.id, S.NEEDS_MORE_INFO, "attach the work contract")
    back = lifecycle.change_state(req.id, S.PENDING)
    assert back.state == S.PENDING
    assert [e.label for e in back.history][-3:] == ["STATE:UNDER_REVIEW", "STATE:NEEDS_MORE_INFO", "STATE:PENDING"]


def test_approval_rechecks_capacity_and_changes_nothing_when_full(db, clock, campus):
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus))
    lifecycle.change_state(req.id, S.UNDER_REVIEW)
    g2 = campus["g2"]
    g2.current_enrollment = 30
    db.commit()

    with pytest.raises(CapacityExceededError):
        lifecycle.change_state(req.id, S.APPROVED)
    ledger = CapacityLedger(db, clock)
    assert ledger.get_group(g2.id).current_enrollment == 30
    assert ledger.get_group(campus["g1"].id).current_enrollment == 25
    assert lifecycle.get(req.id).state == S.UNDER_REVIEW
    db.refresh(campus["origin"])
    assert campus["origin"].status == EnrollmentStatus.ENROLLED


def test_approval_blocked_by_schedule_clash(db, clock, make_group, campus):
    clash = make_group("G4", course_id="CALC-1", max_capacity=30, current=0, slots=[slot(WED, "09:00", "11:00")])
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus, dest=clash))
    lifecycle.change_state(req.id, S.UNDER_REVIEW)
    with pytest.raises(ScheduleConflictError):
        lifecycle.change_state(req.id, S.APPROVED)
    assert CapacityLedger(db, clock).get_group(clash.id).current_enrollment == 0


def test_approval_outside_the_period_is_refused(db, clock, period, campus):
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus))
    lifecycle.change_state(req.id, S.UNDER_REVIEW)
    clock.set(period.ends_at + timedelta(days=1))
    with pytest.raises(PeriodClosedError):
        lifecycle.change_state(req.id, S.APPROVED)
    # rejection is still possible
    assert lifecycle.change_state(req.id, S.REJECTED).state == S.REJECTED


def test_approval_takes_student_off_the_waitlist(db, clock, campus):
    ledger = CapacityLedger(db, clock)
    ledger.join_waitlist(campus["g2"].id, "S1")
    ledger.join_waitlist(campus["g2"].id, "S7")
    db.commit()
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus))
    _approve(lifecycle, req.id)
    assert ledger.waitlist(campus["g2"].id) == ["S7"]


def test_cannot_target_a_group_already_held(db, clock, campus):
    # S1 already sits in PHYS through a second enrollment
    lifecycle = RequestLifecycle(db, clock)
    with pytest.raises(BusinessRuleError):
        lifecycle.create(_group_change(campus, dest=campus["phys"], type=RequestType.COURSE_CHANGE))
    assert lifecycle.find_all() == []


def test_approval_refused_when_student_joined_destination_meanwhile(db, clock, make_enrollment, campus):
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus))
    lifecycle.change_state(req.id, S.UNDER_REVIEW)
    make_enrollment("S1", campus["g2"])

    with pytest.raises(BusinessRuleError):
        lifecycle.change_state(req.id, S.APPROVED)
    held = db.query(Enrollment).filter_by(student_id="S1", group_id=campus["g2"].id, status=EnrollmentStatus.ENROLLED).count()
    assert held == 1
    assert CapacityLedger(db, clock).get_group(campus["g2"].id).current_enrollment == 20
    assert lifecycle.get(req.id).state == S.UNDER_REVIEW


class _SeatRaceLedger(CapacityLedger):
    """Loses the first reservation to a rival; optionally the rival fills the group."""

    def __init__(self, db, clock, fill_group=False):
        super().__init__(db, clock)
        self.fill_group = fill_group
        self.rounds = 0

    def reserve_seat(self, group_id):
        self.rounds += 1
        if self.rounds == 1:
            if self.fill_group:
                self.db.execute(
                    update(Group)
                    .where(Group.id == group_id)
                    .values(current_enrollment=Group.max_capacity, version=Group.version + 1)
                    .execution_options(synchronize_session=False)
                )
            raise ConcurrencyConflictError("seat taken concurrently")
        return super().reserve_seat(group_id)


def test_approval_retries_once_after_lost_seat_race(db, clock, campus):
    ledger = _SeatRaceLedger(db, clock)
    lifecycle = RequestLifecycle(db, clock, ledger=ledger)
    req = lifecycle.create(_group_change(campus))
    approved = _approve(lifecycle, req.id)
    assert approved.state == S.APPROVED
    assert ledger.rounds == 2
    assert ledger.get_group(campus["g2"].id).current_enrollment == 21


def test_lost_race_for_last_seat_reports_full_group(db, clock, campus):
    ledger = _SeatRaceLedger(db, clock, fill_group=True)
    lifecycle = RequestLifecycle(db, clock, ledger=ledger)
    req = lifecycle.create(_group_change(campus))
    lifecycle.change_state(req.id, S.UNDER_REVIEW)

    with pytest.raises(CapacityExceededError):
        lifecycle.change_state(req.id, S.APPROVED)
    assert ledger.rounds == 1
    assert lifecycle.get(req.id).state == S.UNDER_REVIEW
    assert db.query(Enrollment).filter_by(source_request_id=req.id).count() == 0
    db.refresh(campus["origin"])
    assert campus["origin"].status == EnrollmentStatus.ENROLLED


def test_withdrawal_only_gives_back_the_origin_seat(db, clock, campus):
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(
        ChangeRequestIn(type=RequestType.WITHDRAWAL, student_id="S1", origin_enrollment_id=campus["origin"].id)
    )
    _approve(lifecycle, req.id)
    ledger = CapacityLedger(db, clock)
    assert ledger.get_group(campus["g1"].id).current_enrollment == 24
    assert ledger.get_group(campus["g2"].id).current_enrollment == 20


# --- editing and deletion ---


def test_update_while_pending(db, clock, make_group, campus):
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus))
    clock.advance(hours=2)
    other = make_group("G6", course_id="CALC-1", max_capacity=30, current=3, slots=[slot(TUE, "14:00", "16:00")])
    updated = lifecycle.update(req.id, _group_change(campus, dest=other, priority=2, notes="  "), actor_id="S1")
    assert updated.destination_group_id == other.id
    assert updated.priority == 2
    assert updated.updated_at == NOW + timedelta(hours=2)
    assert [e.kind for e in updated.history] == [HistoryKind.CREATED, HistoryKind.UPDATED]
    assert updated.history[-1].notes is None


def test_update_into_full_group_fails(db, clock, make_group, campus):
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus))
    full = make_group("G3", course_id="CALC-1", max_capacity=5, current=5)
    with pytest.raises(CapacityExceededError):
        lifecycle.update(req.id, _group_change(campus, dest=full))
    assert lifecycle.get(req.id).destination_group_id == campus["g2"].id


def test_update_retires_stale_overlap_conflicts(db, clock, make_group, campus):
    clash = make_group("G4", course_id="CALC-1", max_capacity=30, current=0, slots=[slot(WED, "09:00", "11:00")])
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus, dest=clash))
    lifecycle.update(req.id, _group_change(campus))
    registry = ConflictRegistry(db, clock)
    assert registry.find_unresolved_by_request(req.id) == []
    assert len(registry.find_by_request(req.id)) == 1


def test_update_refused_outside_editable_states(db, clock, campus):
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus))
    lifecycle.change_state(req.id, S.UNDER_REVIEW)
    with pytest.raises(InvalidStateTransitionError):
        lifecycle.update(req.id, _group_change(campus, priority=1))
    lifecycle.change_state(req.id, S.NEEDS_MORE_INFO)
    assert lifecycle.update(req.id, _group_change(campus, priority=1)).priority == 1


def test_update_cannot_change_student(db, clock, campus):
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus))
    with pytest.raises(BusinessRuleError):
        lifecycle.update(req.id, _group_change(campus, student_id="S2"))


def test_delete_only_pending(db, clock, campus):
    lifecycle = RequestLifecycle(db, clock)
    keep = lifecycle.create(_group_change(campus))
    lifecycle.change_state(keep.id, S.UNDER_REVIEW)
    with pytest.raises(BusinessRuleError):
        lifecycle.delete(keep.id)

    gone = lifecycle.create(ChangeRequestIn(type=RequestType.SCHEDULE_ADJUSTMENT, student_id="S3"))
    lifecycle.delete(gone.id)
    with pytest.raises(NotFoundError):
        lifecycle.get(gone.id)
    with pytest.raises(NotFoundError):
        lifecycle.delete("missing")


def test_failed_delete_leaves_request_in_place(db, clock, campus, monkeypatch):
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus))

    def broken_commit():
        raise RuntimeError("database went away")

    monkeypatch.setattr(db, "commit", broken_commit)
    with pytest.raises(RuntimeError):
        lifecycle.delete(req.id)
    monkeypatch.undo()
    db.commit()
    assert lifecycle.get(req.id).state == S.PENDING


# --- queries ---


def _adjustment(student, priority=0):
    return ChangeRequestIn(type=RequestType.SCHEDULE_ADJUSTMENT, student_id=student, priority=priority)


def test_find_by_student_newest_first(db, clock, period):
    lifecycle = RequestLifecycle(db, clock)
    first = lifecycle.create(_adjustment("S1"))
    clock.advance(hours=1)
    second = lifecycle.create(_adjustment("S1"))
    lifecycle.create(_adjustment("S2"))
    assert [r.id for r in lifecycle.find_by_student("S1")] == [second.id, first.id]


def test_find_by_states_orders_by_priority(db, clock, period):
    lifecycle = RequestLifecycle(db, clock)
    low = lifecycle.create(_adjustment("S1", priority=5))
    high = lifecycle.create(_adjustment("S2", priority=1))
    reviewed = lifecycle.create(_adjustment("S3", priority=0))
    lifecycle.change_state(reviewed.id, S.UNDER_REVIEW)

    assert [r.id for r in lifecycle.find_by_states([S.PENDING])] == [high.id, low.id]
    assert [r.id for r in lifecycle.find_by_states([S.PENDING, S.UNDER_REVIEW])] == [reviewed.id, high.id, low.id]
    assert len(lifecycle.find_by_states([])) == 3
    assert lifecycle.count_by_state(S.PENDING) == 2
    assert lifecycle.count_by_state(S.APPROVED) == 0


def test_find_by_period_defaults_to_last_thirty_days(db, clock, period):
    lifecycle = RequestLifecycle(db, clock)
    old = lifecycle.create(_adjustment("S1"))
    clock.advance(days=40)
    recent = lifecycle.create(_adjustment("S2"))
    assert [r.id for r in lifecycle.find_by_period(period.id)] == [recent.id]
    assert [r.id for r in lifecycle.find_by_period(period.id, start=NOW - timedelta(days=1))] == [old.id, recent.id]


def test_overdue_lists_undecided_requests_past_deadline(db, clock, period):
    lifecycle = RequestLifecycle(db, clock)
    waiting = lifecycle.create(_adjustment("S1"))
    decided = lifecycle.create(_adjustment("S2"))
    lifecycle.change_state(decided.id, S.REJECTED)
    assert lifecycle.find_overdue() == []
    clock.advance(days=8)
    assert [r.id for r in lifecycle.find_overdue()] == [waiting.id]


def test_history_serializes_as_tagged_entries(db, clock, campus):
    lifecycle = RequestLifecycle(db, clock)
    req = lifecycle.create(_group_change(campus))
    lifecycle.change_state(req.id, S.UNDER_REVIEW, "looking")
    body = request_out(lifecycle.get(req.id)).model_dump(mode="json")
    created, moved = body["history"]
    assert created["kind"] == "CREATED"
    assert "from_state" not in created
    assert moved["kind"] == "STATE_CHANGE"
    assert (moved["from_state"], moved["to_state"], moved["label"]) == ("PENDING", "UNDER_REVIEW", "STATE:UNDER_REVIEW")
