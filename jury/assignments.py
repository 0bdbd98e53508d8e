"""Assignment manager: the (application, judge) review state machine.

::

    assigned ──start_review──> under_review ──complete_review / score──> completed
        │                            │
        └────────declare_conflict────┴──> conflict_declared

    reassign: any non-completed state -> assigned (audited)

Every transition is a conditional ``UPDATE ... WHERE status IN (...)`` so
two racing callers produce exactly one winner; the loser sees the status the
winner left behind.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from jury.errors import (
    CannotDeclareConflictOnCompleted,
    CannotReassignCompleted,
    CapacityExceeded,
    DuplicateAssignment,
    InvalidTransition,
    InvalidValue,
    JudgeInactive,
    NotFound,
    OutOfRange,
)
from jury.models import (
    PENDING_STATUSES,
    SCORING_ROUNDS,
    Application,
    ApplicationAssignment,
    ConflictDeclaration,
    Judge,
    JudgingHistoryEntry,
)
from jury.statistics import safe_recompute
from jury.utils import utcnow

log = logging.getLogger(__name__)

REASSIGNABLE_STATUSES = ("assigned", "under_review", "conflict_declared")


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_assignment(session: Session, assignment_id: int, judge_id: int | None = None) -> ApplicationAssignment:
    """Load an assignment, optionally requiring that *judge_id* owns it."""
    assignment = session.get(ApplicationAssignment, assignment_id)
    if assignment is None or (judge_id is not None and assignment.judge_id != judge_id):
        raise NotFound("Assignment", assignment_id)
    return assignment


def find_assignment(session: Session, application_id: int, judge_id: int) -> ApplicationAssignment | None:
    return session.scalars(
        select(ApplicationAssignment).where(
            ApplicationAssignment.application_id == application_id,
            ApplicationAssignment.judge_id == judge_id,
        )
    ).first()


def find_by_judge(session: Session, judge_id: int, status: str | None = None) -> list[ApplicationAssignment]:
    query = select(ApplicationAssignment).where(ApplicationAssignment.judge_id == judge_id)
    if status:
        query = query.where(ApplicationAssignment.status == status)
    return list(session.scalars(query.order_by(ApplicationAssignment.assigned_at.desc())).all())


def find_by_application(session: Session, application_id: int) -> list[ApplicationAssignment]:
    return list(session.scalars(
        select(ApplicationAssignment)
        .where(ApplicationAssignment.application_id == application_id)
        .order_by(ApplicationAssignment.assigned_at)
    ).all())


def find_pending(session: Session, judge_id: int | None = None) -> list[ApplicationAssignment]:
    query = select(ApplicationAssignment).where(
        ApplicationAssignment.status.in_(PENDING_STATUSES),
        ApplicationAssignment.conflict_declared.is_(False),
    )
    if judge_id is not None:
        query = query.where(ApplicationAssignment.judge_id == judge_id)
    return list(session.scalars(query.order_by(ApplicationAssignment.assigned_at)).all())


def find_completed(session: Session, judge_id: int | None = None) -> list[ApplicationAssignment]:
    query = select(ApplicationAssignment).where(ApplicationAssignment.status == "completed")
    if judge_id is not None:
        query = query.where(ApplicationAssignment.judge_id == judge_id)
    return list(session.scalars(query.order_by(ApplicationAssignment.completed_at.desc())).all())


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def _transition(
    session: Session,
    assignment: ApplicationAssignment,
    expected: tuple[str, ...],
    values: dict[str, Any],
) -> bool:
    """Conditionally update *assignment* if its status is still in *expected*."""
    result = session.execute(
        update(ApplicationAssignment)
        .where(ApplicationAssignment.id == assignment.id, ApplicationAssignment.status.in_(expected))
        .values(**values)
    )
    return result.rowcount == 1


def _lost_race(session: Session, assignment: ApplicationAssignment) -> str:
    """Roll back and return the status the winning caller left behind."""
    session.rollback()
    session.refresh(assignment)
    return assignment.status


def _reserve_capacity(session: Session, judge: Judge) -> None:
    reserved = session.execute(
        update(Judge)
        .where(
            Judge.id == judge.id,
            Judge.assigned_applications_count < Judge.max_applications_per_judge,
        )
        .values(assigned_applications_count=Judge.assigned_applications_count + 1)
    )
    if reserved.rowcount == 0:
        session.rollback()
        session.refresh(judge)
        raise CapacityExceeded(judge.id, judge.assigned_applications_count, judge.max_applications_per_judge)


def _active_judge(session: Session, judge_id: int) -> Judge:
    judge = session.get(Judge, judge_id)
    if judge is None:
        raise NotFound("Judge", judge_id)
    if not judge.is_active:
        raise JudgeInactive(judge_id)
    return judge


def assign_application(
    session: Session,
    application_id: int,
    judge_id: int,
    *,
    scoring_round: str = "first_round",
    is_anonymous: bool = True,
    now: datetime | None = None,
) -> ApplicationAssignment:
    now = now or utcnow()
    if scoring_round not in SCORING_ROUNDS:
        raise InvalidValue("scoring_round", scoring_round, list(SCORING_ROUNDS))
    application = session.get(Application, application_id)
    if application is None:
        raise NotFound("Application", application_id)
    judge = _active_judge(session, judge_id)
    if find_assignment(session, application_id, judge_id) is not None:
        raise DuplicateAssignment(application_id, judge_id)

    _reserve_capacity(session, judge)
    assignment = ApplicationAssignment(
        application_id=application_id,
        judge_id=judge_id,
        status="assigned",
        scoring_round=scoring_round,
        is_anonymous=is_anonymous,
        assigned_at=now,
    )
    session.add(assignment)
    session.add(JudgingHistoryEntry(
        judge_id=judge_id,
        application_id=application_id,
        category=application.category,
        created_at=now,
    ))
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise DuplicateAssignment(application_id, judge_id) from None

    log.info("Assigned application %s to judge %s (%s)", application_id, judge_id, scoring_round)
    safe_recompute(session, judge_id)
    return assignment


def start_review(
    session: Session, assignment_id: int, judge_id: int | None = None, now: datetime | None = None,
) -> ApplicationAssignment:
    now = now or utcnow()
    assignment = get_assignment(session, assignment_id, judge_id)
    if assignment.status != "assigned":
        raise InvalidTransition(assignment.id, assignment.status, "under_review")
    if not _transition(session, assignment, ("assigned",), {"status": "under_review", "started_at": now}):
        raise InvalidTransition(assignment.id, _lost_race(session, assignment), "under_review")
    session.commit()
    session.refresh(assignment)
    log.info("Assignment %s under review by judge %s", assignment.id, assignment.judge_id)
    return assignment


def complete_review(
    session: Session,
    assignment_id: int,
    notes: str | None = None,
    time_spent_minutes: float | None = None,
    judge_id: int | None = None,
    now: datetime | None = None,
) -> ApplicationAssignment:
    now = now or utcnow()
    if time_spent_minutes is not None and time_spent_minutes < 0:
        raise OutOfRange("time_spent_minutes", time_spent_minutes, 0)
    assignment = get_assignment(session, assignment_id, judge_id)
    if assignment.status != "under_review":
        raise InvalidTransition(assignment.id, assignment.status, "completed")
    values: dict[str, Any] = {"status": "completed", "reviewed_at": now, "completed_at": now}
    if notes is not None:
        values["review_notes"] = notes
    if time_spent_minutes is not None:
        values["time_spent_minutes"] = time_spent_minutes
    if not _transition(session, assignment, ("under_review",), values):
        raise InvalidTransition(assignment.id, _lost_race(session, assignment), "completed")
    session.commit()
    session.refresh(assignment)
    log.info("Assignment %s completed by judge %s", assignment.id, assignment.judge_id)
    safe_recompute(session, assignment.judge_id)
    return assignment


def declare_conflict(
    session: Session,
    assignment_id: int,
    reason: str,
    judge_id: int | None = None,
    now: datetime | None = None,
) -> ApplicationAssignment:
    """Record a conflict of interest; the judge's capacity is released by the
    statistics recompute unless they already scored the application."""
    now = now or utcnow()
    assignment = get_assignment(session, assignment_id, judge_id)
    if assignment.status == "completed":
        raise CannotDeclareConflictOnCompleted(assignment.id)
    if assignment.status not in PENDING_STATUSES:
        raise InvalidTransition(assignment.id, assignment.status, "conflict_declared")
    values = {"status": "conflict_declared", "conflict_declared": True, "conflict_reason": reason}
    if not _transition(session, assignment, PENDING_STATUSES, values):
        current = _lost_race(session, assignment)
        if current == "completed":
            raise CannotDeclareConflictOnCompleted(assignment.id)
        raise InvalidTransition(assignment.id, current, "conflict_declared")
    session.add(ConflictDeclaration(
        judge_id=assignment.judge_id,
        application_id=assignment.application_id,
        reason=reason,
        declared_at=now,
    ))
    session.commit()
    session.refresh(assignment)
    log.info("Judge %s declared a conflict on application %s", assignment.judge_id, assignment.application_id)
    safe_recompute(session, assignment.judge_id)
    return assignment


def reassign(
    session: Session,
    assignment_id: int,
    *,
    actor: str,
    reason: str,
    new_judge_id: int | None = None,
    now: datetime | None = None,
) -> ApplicationAssignment:
    """Reset an assignment to ``assigned``, optionally moving it to another judge.

    Review and conflict fields are cleared; who did it, why, when and the
    previous judge are recorded on the row.
    """
    now = now or utcnow()
    if not actor or not actor.strip():
        raise InvalidValue("actor", actor)
    assignment = get_assignment(session, assignment_id)
    if assignment.status == "completed":
        raise CannotReassignCompleted(assignment.id)

    previous_judge_id = assignment.judge_id
    target_id = new_judge_id if new_judge_id is not None else previous_judge_id
    moving = target_id != previous_judge_id
    # A conflict-declared assignment no longer counts against capacity.
    if moving or assignment.status == "conflict_declared":
        target = _active_judge(session, target_id)
        if moving and find_assignment(session, assignment.application_id, target_id) is not None:
            raise DuplicateAssignment(assignment.application_id, target_id)
        _reserve_capacity(session, target)

    values = {
        "judge_id": target_id,
        "status": "assigned",
        "assigned_at": now,
        "started_at": None,
        "reviewed_at": None,
        "completed_at": None,
        "review_notes": None,
        "time_spent_minutes": None,
        "conflict_declared": False,
        "conflict_reason": None,
        "reassigned_by": actor.strip(),
        "reassignment_reason": reason,
        "reassigned_at": now,
        "previous_judge_id": previous_judge_id,
    }
    try:
        if not _transition(session, assignment, REASSIGNABLE_STATUSES, values):
            _lost_race(session, assignment)
            raise CannotReassignCompleted(assignment.id)
        if moving:
            application = session.get(Application, assignment.application_id)
            session.add(JudgingHistoryEntry(
                judge_id=target_id,
                application_id=assignment.application_id,
                category=application.category if application else "",
                created_at=now,
            ))
        session.commit()
    except IntegrityError:
        session.rollback()
        raise DuplicateAssignment(assignment.application_id, target_id) from None
    session.refresh(assignment)

    log.info(
        "Assignment %s reassigned from judge %s to judge %s by %s: %s",
        assignment.id, previous_judge_id, target_id, actor, reason,
    )
    safe_recompute(session, previous_judge_id)
    if moving:
        safe_recompute(session, target_id)
    return assignment
