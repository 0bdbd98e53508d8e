from __future__ import annotations

import math
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from jury.config import get_settings
from jury.utils import json_parse, utcnow

WORKFLOW_STAGES = (
    "submitted", "pre_screening", "under_review", "reviewed",
    "shortlisted", "finalist", "winner", "rejected",
)
REVIEWABLE_STAGES = ("submitted", "under_review")

ASSIGNMENT_STATUSES = ("assigned", "under_review", "completed", "conflict_declared")
PENDING_STATUSES = ("assigned", "under_review")
SCORING_ROUNDS = ("first_round", "final_round")

LOCK_TYPES = ("review", "scoring", "final_review")


class Base(DeclarativeBase):
    pass


class Application(Base):
    __tablename__ = "applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_name: Mapped[str] = mapped_column(String(300), nullable=False)
    category: Mapped[str] = mapped_column(String(100), default="")  # sector
    business_description: Mapped[str] = mapped_column(Text, default="")
    workflow_stage: Mapped[str] = mapped_column(String(30), default="submitted")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    assignments: Mapped[list[ApplicationAssignment]] = relationship(
        "ApplicationAssignment", back_populates="application", cascade="all, delete-orphan"
    )
    locks: Mapped[list[ApplicationLock]] = relationship(
        "ApplicationLock", back_populates="application", cascade="all, delete-orphan"
    )
    scores: Mapped[list[Score]] = relationship(
        "Score", back_populates="application", cascade="all, delete-orphan"
    )


def _default_capacity() -> int:
    return get_settings().max_applications_per_judge


class Judge(Base):
    __tablename__ = "judges"
    __table_args__ = (
        CheckConstraint("max_applications_per_judge >= 1", name="ck_judges_max_positive"),
        CheckConstraint("assigned_applications_count >= 0", name="ck_judges_assigned_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), default="")
    email: Mapped[str] = mapped_column(String(300), default="")
    expertise_sectors_json: Mapped[str] = mapped_column(Text, default="[]")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    assigned_applications_count: Mapped[int] = mapped_column(Integer, default=0)
    max_applications_per_judge: Mapped[int] = mapped_column(Integer, default=_default_capacity)
    total_scores_submitted: Mapped[int] = mapped_column(Integer, default=0)
    total_applications_reviewed: Mapped[int] = mapped_column(Integer, default=0)
    average_score_given: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    history: Mapped[list[JudgingHistoryEntry]] = relationship(
        "JudgingHistoryEntry", back_populates="judge", order_by="JudgingHistoryEntry.id"
    )
    conflict_declarations: Mapped[list[ConflictDeclaration]] = relationship(
        "ConflictDeclaration", back_populates="judge", order_by="ConflictDeclaration.id"
    )

    @property
    def expertise_sectors(self) -> list[str]:
        return json_parse(self.expertise_sectors_json, [])

    @property
    def available_capacity(self) -> int:
        return max(0, (self.max_applications_per_judge or 0) - (self.assigned_applications_count or 0))

    @property
    def completion_rate(self) -> float:
        if not self.assigned_applications_count:
            return 0.0
        return round(self.total_scores_submitted / self.assigned_applications_count * 100, 2)


class JudgingHistoryEntry(Base):
    __tablename__ = "judging_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    judge_id: Mapped[int] = mapped_column(Integer, ForeignKey("judges.id"), nullable=False, index=True)
    application_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("applications.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[str] = mapped_column(String(100), default="")
    score_submitted: Mapped[bool] = mapped_column(Boolean, default=False)
    scored_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    judge: Mapped[Judge] = relationship("Judge", back_populates="history")


class ConflictDeclaration(Base):
    __tablename__ = "conflict_declarations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    judge_id: Mapped[int] = mapped_column(Integer, ForeignKey("judges.id"), nullable=False, index=True)
    application_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("applications.id", ondelete="CASCADE"), nullable=False
    )
    reason: Mapped[str] = mapped_column(Text, default="")
    declared_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    judge: Mapped[Judge] = relationship("Judge", back_populates="conflict_declarations")


class ApplicationAssignment(Base):
    __tablename__ = "application_assignments"
    __table_args__ = (
        UniqueConstraint("application_id", "judge_id", name="uq_assignment_application_judge"),
        Index("ix_assignments_judge_status", "judge_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("applications.id", ondelete="CASCADE"), nullable=False
    )
    judge_id: Mapped[int] = mapped_column(Integer, ForeignKey("judges.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="assigned")  # see ASSIGNMENT_STATUSES
    scoring_round: Mapped[str] = mapped_column(String(30), default="first_round")
    is_anonymous: Mapped[bool] = mapped_column(Boolean, default=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    time_spent_minutes: Mapped[float | None] = mapped_column(Float, nullable=True)
    conflict_declared: Mapped[bool] = mapped_column(Boolean, default=False)
    conflict_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Audit trail for reassignment
    reassigned_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    reassignment_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reassigned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    previous_judge_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    application: Mapped[Application] = relationship("Application", back_populates="assignments")
    judge: Mapped[Judge] = relationship("Judge")
    score: Mapped[Score | None] = relationship(
        "Score", back_populates="assignment", uselist=False, passive_deletes=True
    )

    @property
    def review_duration_hours(self) -> float | None:
        if self.reviewed_at is None or self.assigned_at is None:
            return None
        return round((self.reviewed_at - self.assigned_at).total_seconds() / 3600, 2)

    def days_since_assignment(self, now: datetime | None = None) -> int:
        return ((now or utcnow()) - self.assigned_at).days


class ApplicationLock(Base):
    __tablename__ = "application_locks"
    __table_args__ = (
        # One active lock per application; released locks are kept for audit.
        Index(
            "uq_application_locks_active",
            "application_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("ix_application_locks_judge_active", "judge_id", "is_active"),
        Index("ix_application_locks_expiry", "is_active", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("applications.id", ondelete="CASCADE"), nullable=False
    )
    judge_id: Mapped[int] = mapped_column(Integer, ForeignKey("judges.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    lock_type: Mapped[str] = mapped_column(String(30), default="review")
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_activity: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    application: Mapped[Application] = relationship("Application", back_populates="locks")

    @property
    def lock_duration_minutes(self) -> int:
        return math.floor((self.expires_at - self.locked_at).total_seconds() / 60)

    def time_remaining_minutes(self, now: datetime | None = None) -> int:
        if not self.is_active:
            return 0
        remaining = (self.expires_at - (now or utcnow())).total_seconds()
        return max(0, math.floor(remaining / 60))


class Score(Base):
    __tablename__ = "scores"
    __table_args__ = (
        UniqueConstraint("application_id", "judge_id", name="uq_score_application_judge"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("applications.id", ondelete="CASCADE"), nullable=False
    )
    judge_id: Mapped[int] = mapped_column(Integer, ForeignKey("judges.id"), nullable=False, index=True)
    assignment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("application_assignments.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    rubric: Mapped[str] = mapped_column(String(30), nullable=False)  # "percentage" | "points"
    criteria_json: Mapped[str] = mapped_column(Text, default="{}")
    total_score: Mapped[float] = mapped_column(Float, nullable=False)
    weighted_score: Mapped[float] = mapped_column(Float, nullable=False)
    grade: Mapped[str] = mapped_column(String(3), nullable=False)
    comments: Mapped[str] = mapped_column(Text, default="")
    review_notes: Mapped[str] = mapped_column(Text, default="")
    time_spent_minutes: Mapped[float | None] = mapped_column(Float, nullable=True)
    scoring_round: Mapped[str] = mapped_column(String(30), default="first_round")
    scored_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    application: Mapped[Application] = relationship("Application", back_populates="scores")
    judge: Mapped[Judge] = relationship("Judge")
    assignment: Mapped[ApplicationAssignment] = relationship("ApplicationAssignment", back_populates="score")

    @property
    def criteria(self) -> dict[str, float]:
        return json_parse(self.criteria_json, {})
