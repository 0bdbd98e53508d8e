"""Review workflow and serialization shared by the API and background jobs."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from jury import assignments, locks, rubric, scores
from jury.db import get_session
from jury.errors import ApplicationNotReviewable, AssignmentNotReviewable, JuryError, LockNotFound, NotFound
from jury.models import (
    PENDING_STATUSES,
    REVIEWABLE_STAGES,
    Application,
    ApplicationAssignment,
    ApplicationLock,
    Judge,
    Score,
)
from jury.utils import isoformat, utcnow

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

ASSIGNMENT_FIELDS = (
    "id", "application_id", "judge_id", "status", "scoring_round", "is_anonymous",
    "review_notes", "time_spent_minutes", "conflict_declared", "conflict_reason",
    "reassigned_by", "reassignment_reason", "previous_judge_id",
)
ASSIGNMENT_TIMESTAMPS = ("assigned_at", "started_at", "reviewed_at", "completed_at", "reassigned_at")

SCORE_FIELDS = (
    "id", "application_id", "judge_id", "assignment_id", "rubric", "total_score",
    "weighted_score", "grade", "comments", "review_notes", "time_spent_minutes",
    "scoring_round",
)

JUDGE_FIELDS = (
    "id", "user_id", "name", "email", "is_active", "assigned_applications_count",
    "max_applications_per_judge", "total_scores_submitted", "total_applications_reviewed",
    "average_score_given", "available_capacity", "completion_rate",
)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def lock_summary(lock: ApplicationLock, now: datetime | None = None) -> dict[str, Any]:
    return {
        "id": lock.id,
        "application_id": lock.application_id,
        "judge_id": lock.judge_id,
        "locked_by": lock.user_id,
        "lock_type": lock.lock_type,
        "session_id": lock.session_id,
        "is_active": lock.is_active,
        "locked_at": isoformat(lock.locked_at),
        "expires_at": isoformat(lock.expires_at),
        "last_activity": isoformat(lock.last_activity),
        "lock_duration_minutes": lock.lock_duration_minutes,
        "time_remaining": lock.time_remaining_minutes(now),
    }


def lock_status_dict(status: locks.LockStatus, judge_id: int | None = None) -> dict[str, Any]:
    result = {
        "application_id": status.application_id,
        "is_locked": status.is_locked,
        "locked_by_judge": status.judge_id,
        "locked_by": status.user_id,
        "lock_type": status.lock_type,
        "locked_at": isoformat(status.locked_at),
        "expires_at": isoformat(status.expires_at),
        "time_remaining": status.time_remaining,
    }
    if judge_id is not None:
        result["judge_has_lock"] = status.held_by(judge_id)
    return result


def assignment_summary(assignment: ApplicationAssignment, now: datetime | None = None) -> dict[str, Any]:
    result = {f: getattr(assignment, f) for f in ASSIGNMENT_FIELDS}
    result.update({f: isoformat(getattr(assignment, f)) for f in ASSIGNMENT_TIMESTAMPS})
    result["review_duration_hours"] = assignment.review_duration_hours
    result["days_since_assignment"] = assignment.days_since_assignment(now)
    return result


def score_summary(score: Score, with_judge: bool = False) -> dict[str, Any]:
    result = {f: getattr(score, f) for f in SCORE_FIELDS}
    result["criteria"] = score.criteria
    result["grade_description"] = rubric.grade_description(score.grade)
    result["scored_at"] = isoformat(score.scored_at)
    result["updated_at"] = isoformat(score.updated_at)
    scheme = rubric.SCHEMES.get(score.rubric)
    if scheme is not None:
        result["strengths"] = rubric.strengths(scheme, score.criteria)
        result["weaknesses"] = rubric.weaknesses(scheme, score.criteria)
        result["warnings"] = rubric.score_warnings(scheme, score.criteria)
    if with_judge and score.judge is not None:
        result["judge"] = {"id": score.judge.id, "name": score.judge.name, "email": score.judge.email}
    return result


def judge_summary(judge: Judge) -> dict[str, Any]:
    result = {f: getattr(judge, f) for f in JUDGE_FIELDS}
    result["expertise_sectors"] = judge.expertise_sectors
    return result


# ---------------------------------------------------------------------------
# Review workflow
# ---------------------------------------------------------------------------


@dataclass
class ReviewSession:
    lock: ApplicationLock
    assignment: ApplicationAssignment


def _set_stage(session: Session, application_id: int, stage: str, expected: tuple[str, ...], *criteria) -> bool:
    """Move the application to *stage* if it is still in one of *expected*. Caller must commit."""
    result = session.execute(
        update(Application)
        .where(Application.id == application_id, Application.workflow_stage.in_(expected), *criteria)
        .values(workflow_stage=stage)
    )
    return result.rowcount == 1


def _no_pending_assignments(application_id: int):
    return ~(
        select(ApplicationAssignment.id)
        .where(
            ApplicationAssignment.application_id == application_id,
            ApplicationAssignment.status.in_(PENDING_STATUSES),
        )
        .exists()
    )


def begin_review(
    session: Session,
    application_id: int,
    judge_id: int,
    user_id: int | None = None,
    *,
    duration_minutes: int | None = None,
    lock_type: str = "review",
    session_id: str | None = None,
    now: datetime | None = None,
) -> ReviewSession:
    """Lock the application for the judge and put their assignment under review.

    An assignment already under review is resumed. If the assignment cannot
    move, the freshly taken lock is released before the error propagates.
    """
    now = now or utcnow()
    application = session.get(Application, application_id)
    if application is None:
        raise NotFound("Application", application_id)
    if application.workflow_stage not in REVIEWABLE_STAGES:
        raise ApplicationNotReviewable(application_id, application.workflow_stage)
    judge = session.get(Judge, judge_id)
    if judge is None:
        raise NotFound("Judge", judge_id)
    assignment = assignments.find_assignment(session, application_id, judge_id)
    if assignment is None:
        raise NotFound("Assignment", f"{application_id}/{judge_id}",
                       application_id=application_id, judge_id=judge_id)
    if assignment.status not in PENDING_STATUSES:
        raise AssignmentNotReviewable(assignment.id, assignment.status)

    lock = locks.acquire_lock(
        session, application_id, judge_id, user_id if user_id is not None else judge.user_id,
        lock_type=lock_type, session_id=session_id, duration_minutes=duration_minutes, now=now,
    )
    if assignment.status == "assigned":
        try:
            assignments.start_review(session, assignment.id, judge_id, now=now)
        except JuryError:
            locks.release_lock(session, application_id, judge_id)
            raise

    _set_stage(session, application_id, "under_review", REVIEWABLE_STAGES)
    session.commit()
    log.info("Judge %s started reviewing application %s", judge_id, application_id)
    return ReviewSession(lock=lock, assignment=assignment)


def submit_review(
    session: Session,
    application_id: int,
    judge_id: int,
    criteria: dict[str, Any],
    *,
    rubric_name: str | None = None,
    comments: str = "",
    review_notes: str = "",
    time_spent_minutes: float | None = None,
    now: datetime | None = None,
) -> Score:
    """Score an application under a live lock, then release the lock.

    The application moves to ``reviewed`` once no assignment on it is still
    pending.
    """
    now = now or utcnow()
    locks.held_lock(session, application_id, judge_id, now)
    score = scores.submit_score(
        session, application_id, judge_id, criteria,
        rubric_name=rubric_name, comments=comments, review_notes=review_notes,
        time_spent_minutes=time_spent_minutes, now=now,
    )
    try:
        locks.release_lock(session, application_id, judge_id)
    except LockNotFound:
        log.warning("Lock on application %s vanished before release; score %s kept", application_id, score.id)
    # Reviewed only once every other assigned judge has finished too.
    _set_stage(session, application_id, "reviewed", ("under_review",), _no_pending_assignments(application_id))
    session.commit()
    return score


def sweep_expired_locks(
    session_factory: Callable[[], Session] | None = None, now: datetime | None = None,
) -> int:
    """Periodic job: release expired locks. Failures are logged; the next run retries."""
    session = (session_factory or get_session)()
    try:
        return locks.cleanup_expired_locks(session, now)
    except Exception as exc:
        session.rollback()
        log.warning("Lock sweep failed: %s", exc)
        return 0
    finally:
        session.close()
