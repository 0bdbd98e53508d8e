"""Pydantic request/response schemas for the Jury API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------


class LockRequest(BaseModel):
    lock_type: str = "review"
    lock_duration: int | None = Field(default=None, ge=1, le=480)
    session_id: str | None = Field(default=None, max_length=64)


class LockExtendRequest(BaseModel):
    extend_by: int | None = Field(default=None, ge=1, le=240)


class LockOut(BaseModel):
    id: int
    application_id: int
    judge_id: int
    locked_by: int
    lock_type: str
    session_id: str
    is_active: bool
    locked_at: str
    expires_at: str
    last_activity: str | None = None
    lock_duration_minutes: int
    time_remaining: int


class LockStatusOut(BaseModel):
    application_id: int
    is_locked: bool
    locked_by_judge: int | None = None
    locked_by: int | None = None
    lock_type: str | None = None
    locked_at: str | None = None
    expires_at: str | None = None
    time_remaining: int = 0
    judge_has_lock: bool | None = None


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


class AssignmentCreate(BaseModel):
    application_id: int
    judge_id: int
    scoring_round: str = "first_round"
    is_anonymous: bool = True


class ReviewComplete(BaseModel):
    review_notes: str | None = Field(default=None, max_length=2000)
    time_spent_minutes: float | None = Field(default=None, ge=0)


class ConflictDeclare(BaseModel):
    reason: str = Field(max_length=1000)

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reason must not be empty")
        return v


class Reassign(BaseModel):
    actor: str = Field(max_length=200)
    reason: str = Field(max_length=1000)
    new_judge_id: int | None = None


class AssignmentOut(BaseModel):
    id: int
    application_id: int
    judge_id: int
    status: str
    scoring_round: str
    is_anonymous: bool
    review_notes: str | None = None
    time_spent_minutes: float | None = None
    conflict_declared: bool
    conflict_reason: str | None = None
    reassigned_by: str | None = None
    reassignment_reason: str | None = None
    previous_judge_id: int | None = None
    assigned_at: str | None = None
    started_at: str | None = None
    reviewed_at: str | None = None
    completed_at: str | None = None
    reassigned_at: str | None = None
    review_duration_hours: float | None = None
    days_since_assignment: int = 0


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


class ScoreSubmit(BaseModel):
    criteria: dict[str, Any]
    rubric: str | None = None
    comments: str = Field(default="", max_length=1000)
    review_notes: str = Field(default="", max_length=2000)
    time_spent_minutes: float | None = Field(default=None, ge=0)


class ScoreUpdate(BaseModel):
    criteria: dict[str, Any] | None = None
    comments: str | None = Field(default=None, max_length=1000)
    review_notes: str | None = Field(default=None, max_length=2000)
    time_spent_minutes: float | None = Field(default=None, ge=0)


class JudgeRef(BaseModel):
    id: int
    name: str
    email: str


class ScoreOut(BaseModel):
    id: int
    application_id: int
    judge_id: int
    assignment_id: int
    rubric: str
    criteria: dict[str, float]
    total_score: float
    weighted_score: float
    grade: str
    grade_description: str
    comments: str
    review_notes: str
    time_spent_minutes: float | None = None
    scoring_round: str
    scored_at: str
    updated_at: str
    strengths: list[str] = []
    weaknesses: list[str] = []
    warnings: list[str] = []
    judge: JudgeRef | None = None


class ApplicationScoresOut(BaseModel):
    scores: list[ScoreOut]
    summary: dict[str, Any]


# ---------------------------------------------------------------------------
# Judges
# ---------------------------------------------------------------------------


class JudgeOut(BaseModel):
    id: int
    user_id: int
    name: str
    email: str
    is_active: bool
    expertise_sectors: list[str] = []
    assigned_applications_count: int
    max_applications_per_judge: int
    total_scores_submitted: int
    total_applications_reviewed: int
    average_score_given: float
    available_capacity: int
    completion_rate: float


class ReviewStartOut(BaseModel):
    lock: LockOut
    assignment: AssignmentOut


class SweepResult(BaseModel):
    released: int
