from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import BusinessRuleError, NotFoundError, PeriodClosedError
from .models import AcademicPeriod
from .schemas import PeriodIn

logger = logging.getLogger(__name__)


# Window predicates. The instant is always passed in; none of these read a clock.

def is_within_period(instant: datetime, period: AcademicPeriod) -> bool:
    return period.starts_at <= instant <= period.ends_at


def can_accept_requests(period: AcademicPeriod, now: datetime) -> bool:
    return now <= period.request_deadline


def ensure_open_for_requests(period: Optional[AcademicPeriod], now: datetime) -> AcademicPeriod:
    if period is None or not period.active:
        raise PeriodClosedError("There is no active academic period")
    if not period.allow_changes:
        raise PeriodClosedError(f"Period {period.label} is not accepting schedule changes")
    if not can_accept_requests(period, now):
        raise PeriodClosedError(f"The request deadline for period {period.label} has passed")
    return period


def ensure_open_for_decisions(period: Optional[AcademicPeriod], now: datetime) -> AcademicPeriod:
    if period is None or not period.active:
        raise PeriodClosedError("The request's academic period is no longer active")
    if not is_within_period(now, period):
        raise PeriodClosedError(f"Period {period.label} is not in session")
    return period


class PeriodService:
    """Administration of academic periods, including the single active flag."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, period_id: str) -> AcademicPeriod:
        period = self.db.get(AcademicPeriod, period_id)
        if not period:
            raise NotFoundError(f"Period {period_id} not found")
        return period

    def find_all(self) -> list[AcademicPeriod]:
        stmt = select(AcademicPeriod).order_by(AcademicPeriod.year.desc(), AcademicPeriod.term.desc())
        return list(self.db.scalars(stmt).all())

    def find_active(self) -> Optional[AcademicPeriod]:
        return self.db.scalar(select(AcademicPeriod).where(AcademicPeriod.active.is_(True)))

    def is_within_any_period(self, instant: datetime) -> bool:
        stmt = select(AcademicPeriod.id).where(AcademicPeriod.starts_at <= instant, AcademicPeriod.ends_at >= instant)
        return self.db.scalar(stmt.limit(1)) is not None

    def create(self, payload: PeriodIn) -> AcademicPeriod:
        self._check_dates(payload)
        data = payload.model_dump()
        activate = data.pop("active")
        period = AcademicPeriod(**data, active=False)
        try:
            self.db.add(period)
            self.db.flush()
            if activate:
                self._activate(period.id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(period)
        logger.info("Created period %s (active=%s)", period.label, period.active)
        return period

    def update(self, period_id: str, payload: PeriodIn) -> AcademicPeriod:
        self._check_dates(payload)
        period = self.get(period_id)
        data = payload.model_dump()
        activate = data.pop("active")
        if not activate and period.active:
            raise BusinessRuleError("Activate another period instead of deactivating the active one")
        try:
            for k, v in data.items():
                setattr(period, k, v)
            self.db.flush()
            if activate and not period.active:
                self._activate(period.id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(period)
        return period

    def delete(self, period_id: str) -> None:
        period = self.get(period_id)
        if period.active:
            raise BusinessRuleError("The active period cannot be deleted")
        self.db.delete(period)
        self.db.commit()
        logger.info("Deleted period %s", period_id)

    def activate_period(self, period_id: str) -> AcademicPeriod:
        period = self.get(period_id)
        if period.active:
            return period
        try:
            self._activate(period_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(period)
        return period

    def _activate(self, period_id: str) -> None:
        # One statement flips every row, so two periods are never active at once.
        self.db.execute(
            update(AcademicPeriod)
            .values(active=(AcademicPeriod.id == period_id))
            .execution_options(synchronize_session=False)
        )
        self.db.expire_all()
        logger.info("Activated period %s", period_id)

    @staticmethod
    def _check_dates(payload: PeriodIn) -> None:
        if payload.starts_at >= payload.ends_at:
            raise BusinessRuleError("A period must start before it ends")
        if payload.request_deadline < payload.enrollment_opens_at:
            raise BusinessRuleError("The request deadline cannot precede the enrollment window")
