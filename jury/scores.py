"""Score record manager.

Scores are written only here. Derived fields (``total_score``,
``weighted_score``, ``grade``) are computed by :func:`jury.rubric.derive`
immediately before every write, so a stored score always re-derives to the
same numbers from its stored criteria.
"""
from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import datetime
from statistics import fmean
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from jury import rubric
from jury.assignments import find_assignment
from jury.config import get_settings
from jury.errors import AssignmentNotReviewable, DuplicateScore, MissingComments, NotFound, NotOwner, OutOfRange
from jury.models import PENDING_STATUSES, Application, ApplicationAssignment, JudgingHistoryEntry, Score
from jury.statistics import safe_recompute
from jury.utils import apply_updates, utcnow

log = logging.getLogger(__name__)


def _require_comments(total_score: float, comments: str | None) -> None:
    threshold = get_settings().comments_threshold
    if rubric.comments_required(total_score, threshold) and not (comments or "").strip():
        raise MissingComments(total_score, threshold)


def _check_time_spent(time_spent_minutes: float | None) -> None:
    if time_spent_minutes is not None and time_spent_minutes < 0:
        raise OutOfRange("time_spent_minutes", time_spent_minutes, 0)


def _existing_score(session: Session, application_id: int, judge_id: int) -> Score | None:
    return session.scalars(
        select(Score).where(Score.application_id == application_id, Score.judge_id == judge_id)
    ).first()


def submit_score(
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
    """Validate, derive and persist a judge's score, completing the assignment.

    Statistics are recomputed after the commit; a failure there is logged and
    does not undo the score.
    """
    now = now or utcnow()
    scheme = rubric.get_scheme(rubric_name or get_settings().default_rubric)

    if _existing_score(session, application_id, judge_id) is not None:
        raise DuplicateScore(application_id, judge_id)
    assignment = find_assignment(session, application_id, judge_id)
    if assignment is None:
        raise NotFound("Assignment", f"{application_id}/{judge_id}",
                       application_id=application_id, judge_id=judge_id)

    values = rubric.validate_criteria(scheme, criteria)
    result = rubric.derive(scheme, values)
    _require_comments(result.total_score, comments)
    _check_time_spent(time_spent_minutes)
    if assignment.status not in PENDING_STATUSES:
        raise AssignmentNotReviewable(assignment.id, assignment.status)

    score = Score(
        application_id=application_id,
        judge_id=judge_id,
        assignment_id=assignment.id,
        rubric=scheme.name,
        criteria_json=json.dumps(values),
        total_score=result.total_score,
        weighted_score=result.weighted_score,
        grade=result.grade,
        comments=comments or "",
        review_notes=review_notes or "",
        time_spent_minutes=time_spent_minutes,
        scoring_round=assignment.scoring_round,
        scored_at=now,
        updated_at=now,
    )
    session.add(score)
    try:
        session.flush()
    except IntegrityError:
        session.rollback()
        raise DuplicateScore(application_id, judge_id) from None

    completion: dict[str, Any] = {"status": "completed", "reviewed_at": now, "completed_at": now}
    if review_notes:
        completion["review_notes"] = review_notes
    if time_spent_minutes is not None:
        completion["time_spent_minutes"] = time_spent_minutes
    advanced = session.execute(
        update(ApplicationAssignment)
        .where(ApplicationAssignment.id == assignment.id, ApplicationAssignment.status.in_(PENDING_STATUSES))
        .values(**completion)
    )
    if advanced.rowcount != 1:
        session.rollback()
        session.refresh(assignment)
        raise AssignmentNotReviewable(assignment.id, assignment.status)

    session.execute(
        update(JudgingHistoryEntry)
        .where(
            JudgingHistoryEntry.judge_id == judge_id,
            JudgingHistoryEntry.application_id == application_id,
            JudgingHistoryEntry.score_submitted.is_(False),
        )
        .values(score_submitted=True, scored_at=now)
    )
    session.commit()
    log.info(
        "Judge %s scored application %s: %.2f (%s, %s rubric)",
        judge_id, application_id, score.weighted_score, score.grade, scheme.name,
    )
    safe_recompute(session, judge_id)
    return score


def update_score(
    session: Session,
    score_id: int,
    judge_id: int,
    criteria: dict[str, Any] | None = None,
    *,
    comments: str | None = None,
    review_notes: str | None = None,
    time_spent_minutes: float | None = None,
    now: datetime | None = None,
) -> Score:
    """Merge *criteria* into a judge's own score and re-derive it."""
    now = now or utcnow()
    score = session.get(Score, score_id)
    if score is None:
        raise NotFound("Score", score_id)
    if score.judge_id != judge_id:
        raise NotOwner("Score", score_id, judge_id, score.judge_id)

    scheme = rubric.get_scheme(score.rubric)
    values = rubric.validate_criteria(scheme, {**score.criteria, **(criteria or {})})
    result = rubric.derive(scheme, values)
    new_comments = comments if comments is not None else score.comments
    _require_comments(result.total_score, new_comments)
    _check_time_spent(time_spent_minutes)

    score.criteria_json = json.dumps(values)
    score.total_score = result.total_score
    score.weighted_score = result.weighted_score
    score.grade = result.grade
    score.comments = new_comments or ""
    apply_updates(
        score,
        {"review_notes": review_notes, "time_spent_minutes": time_spent_minutes},
        ("review_notes", "time_spent_minutes"),
    )
    score.updated_at = now
    session.commit()
    log.info("Judge %s updated score %s: %.2f (%s)", judge_id, score.id, score.weighted_score, score.grade)
    safe_recompute(session, judge_id)
    return score


def get_score(session: Session, score_id: int) -> Score:
    score = session.get(Score, score_id)
    if score is None:
        raise NotFound("Score", score_id)
    return score


def list_scores_for_application(session: Session, application_id: int) -> list[Score]:
    """Scores on one application, newest first, with the judge loaded."""
    if session.get(Application, application_id) is None:
        raise NotFound("Application", application_id)
    return list(session.scalars(
        select(Score)
        .where(Score.application_id == application_id)
        .options(selectinload(Score.judge))
        .order_by(Score.scored_at.desc(), Score.id.desc())
    ).all())


def list_scores_for_judge(session: Session, judge_id: int) -> list[Score]:
    return list(session.scalars(
        select(Score)
        .where(Score.judge_id == judge_id)
        .options(selectinload(Score.judge), selectinload(Score.application))
        .order_by(Score.scored_at.desc(), Score.id.desc())
    ).all())


def application_score_summary(session: Session, application_id: int) -> dict[str, Any]:
    """Averages, per-criterion means and grade spread across judges."""
    scores = list_scores_for_application(session, application_id)
    if not scores:
        return {
            "application_id": application_id,
            "score_count": 0,
            "average_total_score": None,
            "average_weighted_score": None,
            "average_grade": None,
            "criteria_averages": {},
            "grade_distribution": {},
        }

    by_criterion: dict[str, list[float]] = {}
    for s in scores:
        for key, value in s.criteria.items():
            by_criterion.setdefault(key, []).append(value)
    average_weighted = round(fmean(s.weighted_score for s in scores), 2)
    return {
        "application_id": application_id,
        "score_count": len(scores),
        "average_total_score": round(fmean(s.total_score for s in scores), 2),
        "average_weighted_score": average_weighted,
        "average_grade": rubric.compute_grade(average_weighted),
        "criteria_averages": {key: round(fmean(vals), 2) for key, vals in by_criterion.items()},
        "grade_distribution": dict(Counter(s.grade for s in scores)),
    }
