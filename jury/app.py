from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Generator

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from jury import assignments, locks, rubric, scores, services, statistics
from jury.config import get_settings
from jury.db import init_db, session_generator
from jury.errors import (
    CONFLICT,
    NOT_FOUND,
    UNAUTHORIZED,
    VALIDATION,
    AlreadyLocked,
    JudgeInactive,
    JuryError,
    NotFound,
    NotOwner,
)
from jury.models import Judge
from jury.schemas import (
    ApplicationScoresOut,
    AssignmentCreate,
    AssignmentOut,
    ConflictDeclare,
    JudgeOut,
    LockExtendRequest,
    LockOut,
    LockRequest,
    LockStatusOut,
    Reassign,
    ReviewComplete,
    ReviewStartOut,
    ScoreOut,
    ScoreSubmit,
    ScoreUpdate,
    SweepResult,
)

log = logging.getLogger(__name__)

ERROR_STATUS = {NOT_FOUND: 404, CONFLICT: 409, VALIDATION: 422, UNAUTHORIZED: 403}


async def _sweep_forever(interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        await asyncio.to_thread(services.sweep_expired_locks)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    interval = get_settings().lock_sweep_seconds
    sweeper = asyncio.create_task(_sweep_forever(interval)) if interval > 0 else None
    yield
    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper


app = FastAPI(
    title="Jury",
    version="0.1.0",
    description=(
        "Judging core for award applications. Judges lock an application, "
        "score it against a fixed rubric, and release it. The caller's judge "
        "is identified by the X-Judge-Id header."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Locks", "description": "Exclusive, time-boxed review leases on applications."},
        {"name": "Reviews", "description": "Lock-guarded review workflow: start and submit."},
        {"name": "Assignments", "description": "Judge assignments and their review state machine."},
        {"name": "Scores", "description": "Rubric scores and their derived fields."},
        {"name": "Judges", "description": "Judge profiles and statistics."},
        {"name": "Rubrics", "description": "Scoring schemes and grade bands."},
        {"name": "Admin", "description": "Administrative operations."},
    ],
)


@app.exception_handler(JuryError)
async def jury_error_handler(request: Request, exc: JuryError) -> JSONResponse:
    status = 423 if isinstance(exc, AlreadyLocked) else ERROR_STATUS.get(exc.category, 400)
    return JSONResponse(exc.to_dict(), status_code=status)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def current_judge(
    x_judge_id: int = Header(..., description="Authenticated judge id"),
    session: Session = Depends(db_session),
) -> Judge:
    judge = session.get(Judge, x_judge_id)
    if judge is None:
        raise NotFound("Judge", x_judge_id)
    if not judge.is_active:
        raise JudgeInactive(judge.id)
    return judge


# ---------------------------------------------------------------------------
# Routes: Rubrics
# ---------------------------------------------------------------------------


@app.get("/api/rubrics", tags=["Rubrics"], summary="Criteria, weights and grade bands for every scheme")
def get_rubrics():
    return rubric.criteria_catalog(get_settings().comments_threshold)


# ---------------------------------------------------------------------------
# Routes: Locks
# ---------------------------------------------------------------------------


@app.post("/api/applications/{application_id}/lock", response_model=LockOut,
          tags=["Locks"], summary="Acquire the review lock on an application")
def acquire_lock(application_id: int, body: LockRequest | None = None,
                 judge: Judge = Depends(current_judge), session: Session = Depends(db_session)):
    body = body or LockRequest()
    lock = locks.acquire_lock(
        session, application_id, judge.id, judge.user_id,
        lock_type=body.lock_type, session_id=body.session_id, duration_minutes=body.lock_duration,
    )
    return services.lock_summary(lock)


@app.delete("/api/applications/{application_id}/lock",
            tags=["Locks"], summary="Release the caller's lock on an application")
def release_lock(application_id: int, judge: Judge = Depends(current_judge),
                 session: Session = Depends(db_session)):
    locks.release_lock(session, application_id, judge.id)
    return {"ok": True}


@app.get("/api/applications/{application_id}/lock", response_model=LockStatusOut,
         tags=["Locks"], summary="Current lock status of an application")
def lock_status(application_id: int, judge: Judge = Depends(current_judge),
                session: Session = Depends(db_session)):
    status = locks.check_lock_status(session, application_id)
    return services.lock_status_dict(status, judge.id)


@app.put("/api/applications/{application_id}/lock/extend", response_model=LockOut,
         tags=["Locks"], summary="Extend the caller's lock")
def extend_lock(application_id: int, body: LockExtendRequest | None = None,
                judge: Judge = Depends(current_judge), session: Session = Depends(db_session)):
    extend_by = body.extend_by if body else None
    lock = locks.extend_lock(session, application_id, judge.id, extend_by)
    return services.lock_summary(lock)


@app.post("/api/applications/{application_id}/lock/activity", response_model=LockOut,
          tags=["Locks"], summary="Record activity under the caller's lock")
def touch_lock(application_id: int, judge: Judge = Depends(current_judge),
               session: Session = Depends(db_session)):
    lock = locks.touch_lock(session, application_id, judge.id)
    return services.lock_summary(lock)


@app.get("/api/locks/active", response_model=list[LockOut],
         tags=["Locks"], summary="Locks the caller currently holds")
def active_locks(judge: Judge = Depends(current_judge), session: Session = Depends(db_session)):
    return [services.lock_summary(lock) for lock in locks.get_judge_active_locks(session, judge.id)]


@app.post("/api/locks/cleanup", response_model=SweepResult,
          tags=["Admin"], summary="Release every expired lock now")
def cleanup_locks(session: Session = Depends(db_session)):
    return {"released": locks.cleanup_expired_locks(session)}


# ---------------------------------------------------------------------------
# Routes: Reviews
# ---------------------------------------------------------------------------


@app.post("/api/applications/{application_id}/review/start", response_model=ReviewStartOut,
          tags=["Reviews"], summary="Lock an application and start reviewing it")
def start_review(application_id: int, body: LockRequest | None = None,
                 judge: Judge = Depends(current_judge), session: Session = Depends(db_session)):
    body = body or LockRequest()
    review = services.begin_review(
        session, application_id, judge.id, judge.user_id,
        duration_minutes=body.lock_duration, lock_type=body.lock_type, session_id=body.session_id,
    )
    return {
        "lock": services.lock_summary(review.lock),
        "assignment": services.assignment_summary(review.assignment),
    }


@app.post("/api/applications/{application_id}/score", response_model=ScoreOut, status_code=201,
          tags=["Reviews", "Scores"], summary="Submit a score under the caller's lock")
def submit_review(application_id: int, body: ScoreSubmit,
                  judge: Judge = Depends(current_judge), session: Session = Depends(db_session)):
    score = services.submit_review(
        session, application_id, judge.id, body.criteria,
        rubric_name=body.rubric, comments=body.comments, review_notes=body.review_notes,
        time_spent_minutes=body.time_spent_minutes,
    )
    return services.score_summary(score)


# ---------------------------------------------------------------------------
# Routes: Assignments
# ---------------------------------------------------------------------------


@app.post("/api/assignments", response_model=AssignmentOut, status_code=201,
          tags=["Assignments", "Admin"], summary="Assign an application to a judge")
def create_assignment(body: AssignmentCreate, session: Session = Depends(db_session)):
    assignment = assignments.assign_application(
        session, body.application_id, body.judge_id,
        scoring_round=body.scoring_round, is_anonymous=body.is_anonymous,
    )
    return services.assignment_summary(assignment)


@app.get("/api/assignments", response_model=list[AssignmentOut],
         tags=["Assignments"], summary="The caller's assignments")
def list_my_assignments(status: str | None = Query(None), judge: Judge = Depends(current_judge),
                        session: Session = Depends(db_session)):
    return [services.assignment_summary(a) for a in assignments.find_by_judge(session, judge.id, status)]


@app.get("/api/assignments/pending", response_model=list[AssignmentOut],
         tags=["Assignments"], summary="Assignments still awaiting a score")
def list_pending(judge_id: int | None = Query(None), session: Session = Depends(db_session)):
    return [services.assignment_summary(a) for a in assignments.find_pending(session, judge_id)]


@app.get("/api/assignments/completed", response_model=list[AssignmentOut],
         tags=["Assignments"], summary="Completed assignments")
def list_completed(judge_id: int | None = Query(None), session: Session = Depends(db_session)):
    return [services.assignment_summary(a) for a in assignments.find_completed(session, judge_id)]


@app.get("/api/applications/{application_id}/assignments", response_model=list[AssignmentOut],
         tags=["Assignments"], summary="Every judge assignment for one application")
def list_application_assignments(application_id: int, session: Session = Depends(db_session)):
    return [services.assignment_summary(a) for a in assignments.find_by_application(session, application_id)]


@app.get("/api/assignments/{assignment_id}", response_model=AssignmentOut,
         tags=["Assignments"], summary="One of the caller's assignments")
def get_assignment(assignment_id: int, judge: Judge = Depends(current_judge),
                   session: Session = Depends(db_session)):
    return services.assignment_summary(assignments.get_assignment(session, assignment_id, judge.id))


@app.post("/api/assignments/{assignment_id}/start", response_model=AssignmentOut,
          tags=["Assignments"], summary="Move an assignment to under_review")
def start_assignment(assignment_id: int, judge: Judge = Depends(current_judge),
                     session: Session = Depends(db_session)):
    return services.assignment_summary(assignments.start_review(session, assignment_id, judge.id))


@app.post("/api/assignments/{assignment_id}/complete", response_model=AssignmentOut,
          tags=["Assignments"], summary="Mark an assignment under review as completed")
def complete_assignment(assignment_id: int, body: ReviewComplete | None = None,
                        judge: Judge = Depends(current_judge), session: Session = Depends(db_session)):
    body = body or ReviewComplete()
    assignment = assignments.complete_review(
        session, assignment_id, body.review_notes, body.time_spent_minutes, judge_id=judge.id,
    )
    return services.assignment_summary(assignment)


@app.post("/api/assignments/{assignment_id}/conflict", response_model=AssignmentOut,
          tags=["Assignments"], summary="Declare a conflict of interest")
def declare_conflict(assignment_id: int, body: ConflictDeclare, judge: Judge = Depends(current_judge),
                     session: Session = Depends(db_session)):
    assignment = assignments.declare_conflict(session, assignment_id, body.reason, judge_id=judge.id)
    return services.assignment_summary(assignment)


@app.post("/api/assignments/{assignment_id}/reassign", response_model=AssignmentOut,
          tags=["Assignments", "Admin"], summary="Reset an assignment, optionally to another judge")
def reassign_assignment(assignment_id: int, body: Reassign, session: Session = Depends(db_session)):
    assignment = assignments.reassign(
        session, assignment_id, actor=body.actor, reason=body.reason, new_judge_id=body.new_judge_id,
    )
    return services.assignment_summary(assignment)


@app.post("/api/assignments/{assignment_id}/score", response_model=ScoreOut, status_code=201,
          tags=["Assignments", "Scores"], summary="Score an assignment without a lock")
def score_assignment(assignment_id: int, body: ScoreSubmit, judge: Judge = Depends(current_judge),
                     session: Session = Depends(db_session)):
    assignment = assignments.get_assignment(session, assignment_id, judge.id)
    score = scores.submit_score(
        session, assignment.application_id, judge.id, body.criteria,
        rubric_name=body.rubric, comments=body.comments, review_notes=body.review_notes,
        time_spent_minutes=body.time_spent_minutes,
    )
    return services.score_summary(score)


# ---------------------------------------------------------------------------
# Routes: Scores
# ---------------------------------------------------------------------------


@app.put("/api/scores/{score_id}", response_model=ScoreOut,
         tags=["Scores"], summary="Update the caller's score and re-derive it")
def update_score(score_id: int, body: ScoreUpdate, judge: Judge = Depends(current_judge),
                 session: Session = Depends(db_session)):
    score = scores.update_score(
        session, score_id, judge.id, body.criteria,
        comments=body.comments, review_notes=body.review_notes, time_spent_minutes=body.time_spent_minutes,
    )
    return services.score_summary(score)


@app.get("/api/applications/{application_id}/scores", response_model=ApplicationScoresOut,
         tags=["Scores"], summary="All scores on an application with a summary")
def application_scores(application_id: int, session: Session = Depends(db_session)):
    return {
        "scores": [services.score_summary(s, with_judge=True)
                   for s in scores.list_scores_for_application(session, application_id)],
        "summary": scores.application_score_summary(session, application_id),
    }


@app.get("/api/scores/{score_id}", response_model=ScoreOut, tags=["Scores"], summary="One of the caller's scores")
def get_score(score_id: int, judge: Judge = Depends(current_judge), session: Session = Depends(db_session)):
    score = scores.get_score(session, score_id)
    if score.judge_id != judge.id:
        raise NotOwner("Score", score_id, judge.id, score.judge_id)
    return services.score_summary(score, with_judge=True)


# ---------------------------------------------------------------------------
# Routes: Judges
# ---------------------------------------------------------------------------


@app.get("/api/judges/me", response_model=JudgeOut, tags=["Judges"], summary="The caller's judge profile")
def get_me(judge: Judge = Depends(current_judge)):
    return services.judge_summary(judge)


@app.get("/api/judges/me/scores", response_model=list[ScoreOut],
         tags=["Judges", "Scores"], summary="Scores the caller has submitted")
def my_scores(judge: Judge = Depends(current_judge), session: Session = Depends(db_session)):
    return [services.score_summary(s, with_judge=True) for s in scores.list_scores_for_judge(session, judge.id)]


@app.get("/api/judges/me/statistics", tags=["Judges"], summary="The caller's rollups and performance metrics")
def my_statistics(judge: Judge = Depends(current_judge), session: Session = Depends(db_session)):
    return statistics.get_judge_statistics(session, judge.id)


@app.get("/api/judges/{judge_id}/statistics", tags=["Judges", "Admin"], summary="Rollups and performance for a judge")
def judge_statistics(judge_id: int, session: Session = Depends(db_session)):
    return statistics.get_judge_statistics(session, judge_id)


@app.post("/api/judges/{judge_id}/statistics/recompute", response_model=JudgeOut,
          tags=["Judges", "Admin"], summary="Rebuild a judge's counters from scores and assignments")
def recompute_statistics(judge_id: int, session: Session = Depends(db_session)):
    return services.judge_summary(statistics.recompute_judge_statistics(session, judge_id))


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn

    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("jury.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
