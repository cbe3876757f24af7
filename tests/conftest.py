import pytest
from fastapi.testclient import TestClient

from assessment_service import crud, models  # noqa: F401  (registers tables)
from assessment_service.config import Settings
from assessment_service.main import create_app
from shared.database import Base, make_engine, make_session_factory

MC_OPTIONS = [
    {"value": "a", "label": "Never", "is_correct": False, "score": 0},
    {"value": "b", "label": "Sometimes", "is_correct": False, "score": 5},
    {"value": "c", "label": "Always", "is_correct": True, "score": 10},
]


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'assessment.db'}"


@pytest.fixture
def SessionLocal(db_url):
    engine = make_engine(db_url)
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(SessionLocal):
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def app(db_url):
    return create_app(Settings(database_url=db_url, timer_tick_seconds=0.05))


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def api_db(app, client):
    s = app.state.SessionLocal()
    try:
        yield s
    finally:
        s.close()


def build_test(db, questions, *, duration_minutes=None, user_id=7):
    """
    Create a test with the given questions plus one pending assignment.
    `questions` is a list of (question_type, kwargs) pairs.
    Returns (test, [question, ...], assignment).
    """
    t = crud.create_test(db, "Skills check", duration_minutes=duration_minutes)
    qs = [crud.add_question(db, t.id, qtype, f"Q{i + 1}", **kw) for i, (qtype, kw) in enumerate(questions)]
    a = crud.create_assignment(db, t.id, user_id)
    return t, qs, a
