"""Judge statistics: rollups recomputed from Score and Assignment state.

Counters on the Judge row are never incremented piecemeal by other modules
(except the capacity reservation in assignments); :func:`recompute_judge_statistics`
rebuilds them from the source rows after every relevant event.
"""
from __future__ import annotations

import logging
from collections import Counter
from statistics import fmean, pstdev
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from jury import rubric
from jury.errors import NotFound, UnknownRubric
from jury.models import Application, ApplicationAssignment, Judge, Score

log = logging.getLogger(__name__)

SCORE_BANDS: tuple[tuple[str, float], ...] = (
    ("90-100", 90),
    ("80-89", 80),
    ("70-79", 70),
    ("60-69", 60),
    ("50-59", 50),
    ("<50", float("-inf")),
)


def _get_judge(session: Session, judge_id: int) -> Judge:
    judge = session.get(Judge, judge_id)
    if judge is None:
        raise NotFound("Judge", judge_id)
    return judge


def _holding_count(judge_id: int):
    """Assignments counting against capacity, counted in SQL at write time."""
    scored = (
        select(Score.id)
        .where(Score.judge_id == judge_id, Score.application_id == ApplicationAssignment.application_id)
        .exists()
    )
    return (
        select(func.count(ApplicationAssignment.id))
        .where(
            ApplicationAssignment.judge_id == judge_id,
            # A conflict only frees capacity when the judge never scored the application.
            or_(ApplicationAssignment.status != "conflict_declared", scored),
        )
        .scalar_subquery()
    )


def recompute_judge_statistics(session: Session, judge_id: int) -> Judge:
    # Row lock serialises against a concurrent capacity reservation.
    judge = session.get(Judge, judge_id, with_for_update=True, populate_existing=True)
    if judge is None:
        raise NotFound("Judge", judge_id)

    completed = session.scalar(
        select(func.count()).select_from(ApplicationAssignment).where(
            ApplicationAssignment.judge_id == judge_id,
            ApplicationAssignment.status == "completed",
        )
    ) or 0
    weighted = session.scalars(select(Score.weighted_score).where(Score.judge_id == judge_id)).all()

    judge.total_applications_reviewed = completed
    judge.total_scores_submitted = len(weighted)
    judge.average_score_given = round(fmean(weighted), 2) if weighted else 0.0
    session.execute(
        update(Judge)
        .where(Judge.id == judge_id)
        .values(assigned_applications_count=_holding_count(judge_id))
        .execution_options(synchronize_session=False)
    )
    session.commit()
    session.refresh(judge)
    return judge


def safe_recompute(session: Session, judge_id: int) -> Judge | None:
    """Best-effort recompute; failures are logged, never raised."""
    try:
        return recompute_judge_statistics(session, judge_id)
    except Exception as exc:
        session.rollback()
        log.warning("Statistics recompute failed for judge %s: %s", judge_id, exc)
        return None


# ---------------------------------------------------------------------------
# Extended metrics (on demand)
# ---------------------------------------------------------------------------


def score_band(score: float) -> str:
    for label, floor in SCORE_BANDS:
        if score >= floor:
            return label
    return SCORE_BANDS[-1][0]


def _criteria_means(scores: list[Score]) -> dict[str, dict[str, Any]]:
    """Mean of each criterion normalised to 0-1 by its scheme maximum."""
    ratios: dict[str, list[float]] = {}
    labels: dict[str, str] = {}
    for s in scores:
        try:
            scheme = rubric.get_scheme(s.rubric)
        except UnknownRubric:
            log.warning("Score %s uses unknown rubric %r, skipped in criteria means", s.id, s.rubric)
            continue
        for c in scheme.criteria:
            value = s.criteria.get(c.key)
            if value is None:
                continue
            ratios.setdefault(c.key, []).append(value / c.max_score)
            labels[c.key] = c.label
    return {
        key: {"label": labels[key], "mean_ratio": round(fmean(values), 3)}
        for key, values in ratios.items()
    }


def judge_performance(session: Session, judge_id: int) -> dict[str, Any]:
    judge = _get_judge(session, judge_id)
    rows = session.execute(
        select(Score, Application.category)
        .join(Application, Application.id == Score.application_id)
        .where(Score.judge_id == judge_id)
        .order_by(Score.scored_at)
    ).all()
    scores = [s for s, _ in rows]

    distribution = {label: 0 for label, _ in SCORE_BANDS}
    for s in scores:
        distribution[score_band(s.weighted_score)] += 1

    sectors = {sector.lower() for sector in judge.expertise_sectors}
    utilization = Counter(category for _, category in rows if category and category.lower() in sectors)

    totals = [s.total_score for s in scores]
    consistency = round(max(0.0, 100 - 2 * pstdev(totals)), 2) if totals else None

    timed = [s.time_spent_minutes for s in scores if s.time_spent_minutes is not None]
    avg_minutes = round(fmean(timed), 2) if timed else None
    efficiency = round(max(0.0, 100 - avg_minutes / 2), 2) if avg_minutes is not None else None

    criteria = _criteria_means(scores)
    return {
        "judge_id": judge.id,
        "total_scores": len(scores),
        "average_weighted_score": round(fmean(s.weighted_score for s in scores), 2) if scores else 0.0,
        "score_distribution": distribution,
        "grade_distribution": dict(Counter(s.grade for s in scores)),
        "sector_utilization": dict(utilization),
        "consistency": consistency,
        "average_minutes_per_review": avg_minutes,
        "efficiency": efficiency,
        "total_time_spent_minutes": round(sum(timed), 2),
        "criteria": criteria,
        "strengths": [v["label"] for v in criteria.values() if v["mean_ratio"] >= rubric.STRENGTH_RATIO],
        "improvement_areas": [v["label"] for v in criteria.values() if v["mean_ratio"] < rubric.WEAKNESS_RATIO],
    }


def get_judge_statistics(session: Session, judge_id: int) -> dict[str, Any]:
    """Stored rollups plus extended metrics for one judge."""
    judge = _get_judge(session, judge_id)
    return {
        "judge_id": judge.id,
        "assigned_applications_count": judge.assigned_applications_count,
        "max_applications_per_judge": judge.max_applications_per_judge,
        "available_capacity": judge.available_capacity,
        "total_applications_reviewed": judge.total_applications_reviewed,
        "total_scores_submitted": judge.total_scores_submitted,
        "average_score_given": judge.average_score_given,
        "completion_rate": judge.completion_rate,
        "performance": judge_performance(session, judge_id),
    }
