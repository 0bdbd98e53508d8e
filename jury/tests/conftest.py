from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy.orm import Session, sessionmaker

from jury.config import get_settings
from jury.db import create_db_engine
from jury.models import Application, ApplicationAssignment, Base, Judge

T0 = datetime(2026, 3, 2, 9, 0, 0)

PERCENTAGE_CRITERIA = {
    "innovation_differentiation": 80,
    "market_traction_growth": 70,
    "impact_job_creation": 90,
    "financial_health_governance": 75,
    "inclusion_sustainability": 60,
    "scalability_award_use": 85,
}

LOW_CRITERIA = {key: 65 for key in PERCENTAGE_CRITERIA}

POINTS_CRITERIA = {
    "business_viability_financial_health": 20,
    "market_opportunity_traction": 16,
    "social_impact_job_creation": 18,
    "innovation_technology_adoption": 12,
    "sustainability_environmental_impact": 8,
    "management_leadership": 9,
}


@pytest.fixture(autouse=True)
def _settings(monkeypatch):
    """Fresh settings per test so env overrides never leak."""
    monkeypatch.setenv("JURY_DATABASE_URL", "sqlite://")
    monkeypatch.setenv("JURY_LOCK_SWEEP_SECONDS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_db_engine("sqlite://")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def file_session_factory(tmp_path):
    """Sessions on a file-backed database, each with its own connection."""
    eng = create_db_engine(f"sqlite:///{tmp_path / 'jury.db'}")
    Base.metadata.create_all(eng)
    yield sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)
    eng.dispose()


def make_application(session: Session, **overrides) -> Application:
    fields = {"business_name": "Mama Njeri Foods", "category": "Agribusiness"}
    fields.update(overrides)
    app = Application(**fields)
    session.add(app)
    session.commit()
    return app


def make_judge(session: Session, user_id: int, **overrides) -> Judge:
    fields = {
        "user_id": user_id,
        "name": f"Judge {user_id}",
        "email": f"judge{user_id}@example.org",
        "expertise_sectors_json": '["Agribusiness", "Manufacturing"]',
    }
    fields.update(overrides)
    judge = Judge(**fields)
    session.add(judge)
    session.commit()
    return judge


@pytest.fixture()
def application(session) -> Application:
    return make_application(session)


@pytest.fixture()
def judge(session) -> Judge:
    return make_judge(session, 101)


@pytest.fixture()
def other_judge(session) -> Judge:
    return make_judge(session, 202)


@pytest.fixture()
def assignment(session, application, judge) -> ApplicationAssignment:
    from jury.assignments import assign_application

    return assign_application(session, application.id, judge.id, now=T0)
