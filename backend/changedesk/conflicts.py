"""Ledger of detected or reported scheduling conflicts.

The registry only records findings. Automatic detection is run by the
request lifecycle, which hands each overlap it finds to ``register``; staff
can report conflicts by hand through the same call.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .clock import Clock
from .errors import NotFoundError
from .models import Conflict
from .schemas import ConflictIn

logger = logging.getLogger(__name__)

SCHEDULE_OVERLAP = "SCHEDULE_OVERLAP"
GROUP_FULL = "GROUP_FULL"
MISSING_PREREQUISITE = "MISSING_PREREQUISITE"
CREDIT_OVERLOAD = "CREDIT_OVERLOAD"


class ConflictRegistry:
    def __init__(self, db: Session, clock: Clock):
        self.db = db
        self.clock = clock

    def record(
        self,
        category: str,
        student_id: str,
        description: Optional[str] = None,
        request_id: Optional[str] = None,
        group_id: Optional[str] = None,
    ) -> Conflict:
        """Add a conflict to the caller's transaction without committing."""
        conflict = Conflict(
            category=category,
            description=description,
            student_id=student_id,
            request_id=request_id,
            group_id=group_id,
            detected_at=self.clock.now(),
            resolved=False,
        )
        self.db.add(conflict)
        self.db.flush()
        logger.info("Conflict %s recorded for student %s (request=%s)", category, student_id, request_id)
        return conflict

    def register(self, payload: ConflictIn) -> Conflict:
        try:
            conflict = self.record(
                category=payload.category,
                student_id=payload.student_id,
                description=payload.description,
                request_id=payload.request_id,
                group_id=payload.group_id,
            )
            conflict.resolution_notes = payload.resolution_notes
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(conflict)
        return conflict

    def update(self, conflict_id: str, payload: ConflictIn) -> Conflict:
        conflict = self.find_by_id(conflict_id)
        try:
            for k, v in payload.model_dump().items():
                setattr(conflict, k, v)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(conflict)
        return conflict

    def mark_resolved(self, conflict_id: str, resolved: bool, notes: Optional[str] = None) -> Conflict:
        conflict = self.find_by_id(conflict_id)
        try:
            conflict.resolved = resolved
            conflict.resolution_notes = notes
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(conflict)
        logger.info("Conflict %s marked resolved=%s", conflict_id, resolved)
        return conflict

    def find_by_id(self, conflict_id: str) -> Conflict:
        conflict = self.db.get(Conflict, conflict_id)
        if not conflict:
            raise NotFoundError(f"Conflict {conflict_id} not found")
        return conflict

    def find_all(self) -> list[Conflict]:
        return list(self.db.scalars(select(Conflict).order_by(Conflict.detected_at.desc())).all())

    def find_by_student(self, student_id: str) -> list[Conflict]:
        stmt = select(Conflict).where(Conflict.student_id == student_id).order_by(Conflict.detected_at.desc())
        return list(self.db.scalars(stmt).all())

    def find_by_request(self, request_id: str) -> list[Conflict]:
        stmt = select(Conflict).where(Conflict.request_id == request_id).order_by(Conflict.detected_at.desc())
        return list(self.db.scalars(stmt).all())

    def find_unresolved_by_request(self, request_id: str) -> list[Conflict]:
        stmt = select(Conflict).where(Conflict.request_id == request_id, Conflict.resolved.is_(False))
        return list(self.db.scalars(stmt).all())

    def delete(self, conflict_id: str) -> None:
        conflict = self.find_by_id(conflict_id)
        try:
            self.db.delete(conflict)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("Deleted conflict %s", conflict_id)
