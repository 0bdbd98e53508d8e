"""End-to-end review workflow: lock, review, score, release."""
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import LOW_CRITERIA, PERCENTAGE_CRITERIA, T0, make_application
from jury import assignments, locks, services
from jury.errors import (
    AlreadyLocked,
    ApplicationNotReviewable,
    AssignmentNotReviewable,
    LockExpired,
    LockNotFound,
    MissingCriterion,
    NotFound,
)
from jury.models import ApplicationLock


class TestBeginReview:
    def test_begin(self, session, application, judge, assignment):
        review = services.begin_review(session, application.id, judge.id, now=T0)
        assert review.lock.judge_id == judge.id
        assert review.lock.user_id == judge.user_id
        assert review.assignment.status == "under_review"
        assert review.assignment.started_at == T0
        session.refresh(application)
        assert application.workflow_stage == "under_review"

    def test_resume(self, session, application, judge, assignment):
        first = services.begin_review(session, application.id, judge.id, now=T0)
        again = services.begin_review(session, application.id, judge.id, now=T0 + timedelta(minutes=5))
        assert again.lock.id == first.lock.id
        assert again.assignment.status == "under_review"

    def test_locked_by_other_judge(self, session, application, judge, other_judge, assignment):
        other_assignment = assignments.assign_application(session, application.id, other_judge.id)
        services.begin_review(session, application.id, judge.id, now=T0)
        with pytest.raises(AlreadyLocked) as exc:
            services.begin_review(session, application.id, other_judge.id, now=T0 + timedelta(minutes=10))
        assert exc.value.time_remaining == 50
        session.refresh(other_assignment)
        assert other_assignment.status == "assigned"

    def test_stage_not_reviewable(self, session, judge):
        app = make_application(session, workflow_stage="shortlisted")
        assignments.assign_application(session, app.id, judge.id)
        with pytest.raises(ApplicationNotReviewable):
            services.begin_review(session, app.id, judge.id, now=T0)
        assert not locks.check_lock_status(session, app.id, now=T0).is_locked

    def test_no_assignment(self, session, application, judge):
        with pytest.raises(NotFound):
            services.begin_review(session, application.id, judge.id, now=T0)

    def test_conflicted_assignment(self, session, application, judge, assignment):
        assignments.declare_conflict(session, assignment.id, "Relative")
        with pytest.raises(AssignmentNotReviewable):
            services.begin_review(session, application.id, judge.id, now=T0)
        assert not locks.check_lock_status(session, application.id, now=T0).is_locked


class TestSubmitReview:
    def test_full_flow(self, session, application, judge, assignment):
        services.begin_review(session, application.id, judge.id, now=T0)
        score = services.submit_review(session, application.id, judge.id, PERCENTAGE_CRITERIA,
                                       time_spent_minutes=25, now=T0 + timedelta(minutes=25))
        assert score.weighted_score == 78.25

        session.refresh(assignment)
        session.refresh(application)
        session.refresh(judge)
        assert assignment.status == "completed"
        assert application.workflow_stage == "reviewed"
        assert not locks.check_lock_status(session, application.id, now=T0).is_locked
        assert judge.total_scores_submitted == 1
        assert judge.total_applications_reviewed == 1
        assert judge.average_score_given == 78.25

    def test_second_judge_reviews_after_first_submits(self, session, application, judge, other_judge, assignment):
        second = assignments.assign_application(session, application.id, other_judge.id, now=T0)
        services.begin_review(session, application.id, judge.id, now=T0)
        services.submit_review(session, application.id, judge.id, PERCENTAGE_CRITERIA, now=T0 + timedelta(minutes=20))
        session.refresh(application)
        assert application.workflow_stage == "under_review"

        review = services.begin_review(session, application.id, other_judge.id, now=T0 + timedelta(minutes=30))
        assert review.assignment.id == second.id
        assert review.assignment.status == "under_review"
        services.submit_review(session, application.id, other_judge.id, LOW_CRITERIA, comments="Thin traction",
                               now=T0 + timedelta(minutes=50))
        session.refresh(application)
        assert application.workflow_stage == "reviewed"

    def test_conflicted_judge_does_not_hold_back_reviewed(self, session, application, judge, other_judge,
                                                          assignment):
        second = assignments.assign_application(session, application.id, other_judge.id, now=T0)
        assignments.declare_conflict(session, second.id, "Former employer")
        services.begin_review(session, application.id, judge.id, now=T0)
        services.submit_review(session, application.id, judge.id, PERCENTAGE_CRITERIA, now=T0)
        session.refresh(application)
        assert application.workflow_stage == "reviewed"

    def test_requires_lock(self, session, application, judge, assignment):
        with pytest.raises(LockNotFound):
            services.submit_review(session, application.id, judge.id, PERCENTAGE_CRITERIA, now=T0)

    def test_expired_lock(self, session, application, judge, assignment):
        services.begin_review(session, application.id, judge.id, duration_minutes=30, now=T0)
        with pytest.raises(LockExpired):
            services.submit_review(session, application.id, judge.id, PERCENTAGE_CRITERIA,
                                   now=T0 + timedelta(minutes=31))
        session.refresh(assignment)
        assert assignment.status == "under_review"
        lock = session.scalars(select(ApplicationLock)).one()
        assert not lock.is_active

    def test_lock_kept_when_score_rejected(self, session, application, judge, assignment):
        services.begin_review(session, application.id, judge.id, now=T0)
        with pytest.raises(MissingCriterion):
            services.submit_review(session, application.id, judge.id, {"impact_job_creation": 50}, now=T0)
        assert locks.check_lock_status(session, application.id, now=T0).held_by(judge.id)


class TestSweep:
    def test_sweep_uses_its_own_session(self, session, session_factory, application, judge):
        locks.acquire_lock(session, application.id, judge.id, judge.user_id, duration_minutes=5, now=T0)
        assert services.sweep_expired_locks(session_factory, now=T0 + timedelta(minutes=6)) == 1
        assert not locks.check_lock_status(session, application.id, now=T0).is_locked

    def test_sweep_swallows_errors(self, session_factory, caplog, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(locks, "cleanup_expired_locks", broken)
        assert services.sweep_expired_locks(session_factory) == 0
        assert "Lock sweep failed" in caplog.text


class TestSerialization:
    def test_lock_summary(self, session, application, judge):
        lock = locks.acquire_lock(session, application.id, judge.id, judge.user_id, now=T0)
        data = services.lock_summary(lock, now=T0 + timedelta(minutes=15))
        assert data["locked_by"] == judge.user_id
        assert data["time_remaining"] == 45
        assert data["expires_at"] == (T0 + timedelta(minutes=60)).isoformat()

    def test_assignment_summary(self, session, assignment):
        data = services.assignment_summary(assignment, now=T0 + timedelta(days=3))
        assert data["status"] == "assigned"
        assert data["days_since_assignment"] == 3
        assert data["started_at"] is None

    def test_score_summary_with_judge(self, session, application, judge, assignment):
        services.begin_review(session, application.id, judge.id, now=T0)
        score = services.submit_review(session, application.id, judge.id, PERCENTAGE_CRITERIA, now=T0)
        data = services.score_summary(score, with_judge=True)
        assert data["grade_description"] == "Good"
        assert data["judge"] == {"id": judge.id, "name": judge.name, "email": judge.email}
        assert "Impact & Job Creation" in data["strengths"]
        assert "High score for Impact & Job Creation: 90/100" in data["warnings"]

    def test_judge_summary(self, judge):
        data = services.judge_summary(judge)
        assert data["expertise_sectors"] == ["Agribusiness", "Manufacturing"]
        assert data["available_capacity"] == 10
