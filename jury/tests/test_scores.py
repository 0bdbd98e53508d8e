from __future__ import annotations

import json
from datetime import timedelta

import pytest
from sqlalchemy import event, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import set_committed_value

from conftest import LOW_CRITERIA, PERCENTAGE_CRITERIA, POINTS_CRITERIA, T0, make_application, make_judge
from jury import assignments, rubric, scores
from jury.errors import (
    AssignmentNotReviewable,
    DuplicateScore,
    MissingComments,
    NotFound,
    NotOwner,
    OutOfRange,
    UnknownRubric,
)
from jury.models import ApplicationAssignment, JudgingHistoryEntry, Score


def _assert_consistent(score: Score):
    result = rubric.derive(rubric.get_scheme(score.rubric), score.criteria)
    assert (score.total_score, score.weighted_score, score.grade) == (
        result.total_score, result.weighted_score, result.grade,
    )


class TestSubmit:
    def test_submit(self, session, application, judge, assignment):
        score = scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA,
                                    review_notes="Solid", time_spent_minutes=40, now=T0 + timedelta(hours=2))
        assert score.weighted_score == 78.25
        assert score.grade == "B+"
        assert score.rubric == "percentage"
        assert score.assignment_id == assignment.id
        assert score.scored_at == T0 + timedelta(hours=2)
        _assert_consistent(score)

        session.refresh(assignment)
        assert assignment.status == "completed"
        assert assignment.completed_at == T0 + timedelta(hours=2)
        assert assignment.time_spent_minutes == 40
        assert assignment.review_notes == "Solid"

        entry = session.scalars(select(JudgingHistoryEntry)).one()
        assert entry.score_submitted
        assert entry.scored_at == T0 + timedelta(hours=2)

    def test_points_rubric(self, session, application, judge, assignment):
        score = scores.submit_score(session, application.id, judge.id, POINTS_CRITERIA, rubric_name="points")
        assert score.total_score == 83
        assert score.weighted_score == 83
        assert score.grade == "A"
        _assert_consistent(score)

    def test_unknown_rubric(self, session, application, judge, assignment):
        with pytest.raises(UnknownRubric):
            scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA, rubric_name="stars")

    def test_missing_comments_then_resubmit(self, session, application, judge, assignment):
        with pytest.raises(MissingComments) as exc:
            scores.submit_score(session, application.id, judge.id, LOW_CRITERIA)
        assert exc.value.context == {"total_score": 65.0, "threshold": 70.0}
        assert session.scalars(select(Score)).all() == []

        score = scores.submit_score(session, application.id, judge.id, LOW_CRITERIA,
                                    comments="Weak traction, promising team")
        assert score.total_score == 65
        assert score.grade == "B"

    def test_blank_comments_count_as_missing(self, session, application, judge, assignment):
        with pytest.raises(MissingComments):
            scores.submit_score(session, application.id, judge.id, LOW_CRITERIA, comments="   ")

    def test_out_of_range(self, session, application, judge, assignment):
        with pytest.raises(OutOfRange):
            scores.submit_score(session, application.id, judge.id,
                                {**PERCENTAGE_CRITERIA, "impact_job_creation": 101})
        session.refresh(assignment)
        assert assignment.status == "assigned"

    def test_negative_time(self, session, application, judge, assignment):
        with pytest.raises(OutOfRange):
            scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA, time_spent_minutes=-5)

    def test_duplicate(self, session, application, judge, assignment):
        scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA)
        with pytest.raises(DuplicateScore):
            scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA)
        assert len(session.scalars(select(Score)).all()) == 1

    def test_duplicate_detected_by_storage(self, session, application, judge, assignment, monkeypatch):
        scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA)
        # Simulate a concurrent submit that passed the existence check.
        monkeypatch.setattr(scores, "_existing_score", lambda *args: None)
        set_committed_value(assignment, "status", "under_review")
        with pytest.raises(DuplicateScore):
            scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA)
        assert len(session.scalars(select(Score)).all()) == 1

    def test_two_sessions_one_score(self, file_session_factory):
        seed = file_session_factory()
        app = make_application(seed)
        judge = make_judge(seed, 11)
        assignments.assign_application(seed, app.id, judge.id, now=T0)
        seed.close()
        winner, loser = file_session_factory(), file_session_factory()

        # Both submissions pass the existence check; the winner commits first.
        def winner_commits_first(session, flush_context, instances):
            scores.submit_score(winner, app.id, judge.id, PERCENTAGE_CRITERIA, now=T0)

        event.listen(loser, "before_flush", winner_commits_first, once=True)
        try:
            with pytest.raises(DuplicateScore):
                scores.submit_score(loser, app.id, judge.id, LOW_CRITERIA, comments="Second opinion", now=T0)
        finally:
            winner.close()
            loser.close()

        check = file_session_factory()
        assert [s.weighted_score for s in check.scalars(select(Score)).all()] == [78.25]
        assert check.scalars(select(ApplicationAssignment)).one().status == "completed"
        check.close()

    def test_without_assignment(self, session, application, judge):
        with pytest.raises(NotFound):
            scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA)

    def test_conflicted_assignment_not_reviewable(self, session, application, judge, assignment):
        assignments.declare_conflict(session, assignment.id, "Relative")
        with pytest.raises(AssignmentNotReviewable) as exc:
            scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA)
        assert exc.value.context["status"] == "conflict_declared"
        assert session.scalars(select(Score)).all() == []

    def test_storage_unique_pair(self, session, application, judge, assignment):
        score = scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA)
        session.add(Score(
            application_id=application.id, judge_id=judge.id, assignment_id=score.assignment_id,
            rubric="percentage", criteria_json=score.criteria_json, total_score=1, weighted_score=1, grade="F",
        ))
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()


class TestUpdate:
    def test_update_rederives(self, session, application, judge, assignment):
        score = scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA)
        updated = scores.update_score(session, score.id, judge.id, {"impact_job_creation": 100},
                                      now=T0 + timedelta(days=1))
        assert updated.criteria["impact_job_creation"] == 100
        assert updated.criteria["market_traction_growth"] == 70
        assert updated.weighted_score == 80.75
        assert updated.grade == "A"
        assert updated.updated_at == T0 + timedelta(days=1)
        _assert_consistent(updated)

        stored = json.loads(session.get(Score, score.id).criteria_json)
        assert stored["impact_job_creation"] == 100

    def test_update_requires_comments_when_dropping_below_70(self, session, application, judge, assignment):
        score = scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA)
        with pytest.raises(MissingComments):
            scores.update_score(session, score.id, judge.id, LOW_CRITERIA)
        updated = scores.update_score(session, score.id, judge.id, LOW_CRITERIA, comments="Revised down")
        assert updated.total_score == 65
        _assert_consistent(updated)

    def test_update_out_of_range_leaves_score(self, session, application, judge, assignment):
        score = scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA)
        with pytest.raises(OutOfRange):
            scores.update_score(session, score.id, judge.id, {"impact_job_creation": -1})
        session.refresh(score)
        assert score.weighted_score == 78.25
        _assert_consistent(score)

    def test_update_not_owner(self, session, application, judge, other_judge, assignment):
        score = scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA)
        with pytest.raises(NotOwner):
            scores.update_score(session, score.id, other_judge.id, {"impact_job_creation": 10})

    def test_update_missing(self, session, judge):
        with pytest.raises(NotFound):
            scores.update_score(session, 999, judge.id, {})


class TestListing:
    def test_lists_and_summary(self, session, application, judge, other_judge):
        third = make_judge(session, 303)
        for j in (judge, other_judge, third):
            assignments.assign_application(session, application.id, j.id)
        scores.submit_score(session, application.id, judge.id, PERCENTAGE_CRITERIA, now=T0)
        scores.submit_score(session, application.id, other_judge.id, LOW_CRITERIA, comments="Average",
                            now=T0 + timedelta(hours=1))

        listed = scores.list_scores_for_application(session, application.id)
        assert [s.judge_id for s in listed] == [other_judge.id, judge.id]
        assert listed[0].judge.name == "Judge 202"
        assert [s.judge_id for s in scores.list_scores_for_judge(session, judge.id)] == [judge.id]

        summary = scores.application_score_summary(session, application.id)
        assert summary["score_count"] == 2
        assert summary["average_weighted_score"] == 71.62
        assert summary["average_grade"] == "B+"
        assert summary["criteria_averages"]["impact_job_creation"] == 77.5
        assert summary["grade_distribution"] == {"B+": 1, "B": 1}

    def test_empty_summary(self, session, application):
        summary = scores.application_score_summary(session, application.id)
        assert summary["score_count"] == 0
        assert summary["average_grade"] is None

    def test_unknown_application(self, session):
        with pytest.raises(NotFound):
            scores.list_scores_for_application(session, 999)
