import os, tempfile
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from main import app, get_engine, get_hub, get_judge, get_aggregator
from db import Base, get_db
from security import TokenIdentity, get_identity
from schemas import FollowUpResult
from realtime import EventHub
from interview_engine import InterviewEngine
from analysis import AnalysisAggregator

RESEARCHER = "researcher-1"
IDENTITY = TokenIdentity(secret="test-secret")

def auth_header(user_id: str = RESEARCHER) -> dict:
    return {"Authorization": f"Bearer {IDENTITY.issue(user_id)}"}

HDR = auth_header()

class ScriptedJudge:
    """Follow-up judge stand-in: pops queued results, else says no."""

    def __init__(self):
        self.queue = []
        self.always = None
        self.calls = []

    def judge(self, question_text, answer, survey_goal):
        self.calls.append((question_text, answer, survey_goal))
        if self.always is not None:
            return self.always
        if self.queue:
            return self.queue.pop(0)
        return FollowUpResult(should_follow_up=False, reason="scripted")

class RecordingHub(EventHub):
    def __init__(self):
        super().__init__()
        self.events = []

    def emit(self, survey_id, event, data):
        self.events.append((survey_id, event, data))
        super().emit(survey_id, event, data)

    def of(self, survey_id, event=None):
        return [e for e in self.events if e[0] == survey_id and (event is None or e[1] == event)]

@pytest.fixture(scope="session")
def tmp_db_path():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    return path

@pytest.fixture(scope="session")
def test_engine(tmp_db_path):
    url = f"sqlite:///{tmp_db_path}"
    engine = create_engine(url, connect_args={"check_same_thread": False})

    # SQLite force foreign key constraints
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    return engine

@pytest.fixture(scope="session")
def TestingSessionLocal(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

@pytest.fixture
def db(TestingSessionLocal):
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
def judge():
    return ScriptedJudge()

@pytest.fixture
def hub():
    return RecordingHub()

@pytest.fixture
def interview(judge, hub):
    return InterviewEngine(judge=judge, hub=hub)

@pytest.fixture(autouse=True)
def override_di(TestingSessionLocal, judge, hub, interview):
    def _get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_identity] = lambda: IDENTITY
    app.dependency_overrides[get_judge] = lambda: judge
    app.dependency_overrides[get_hub] = lambda: hub
    app.dependency_overrides[get_engine] = lambda: interview
    app.dependency_overrides[get_aggregator] = lambda: AnalysisAggregator(hub=hub)
    yield
    app.dependency_overrides.clear()

@pytest.fixture
def client():
    return TestClient(app)

def make_survey(client, questions=None, fields=None, goal="a note-taking app", headers=HDR):
    """Create a survey, optionally with questions/fields; returns the detail dict."""
    r = client.post("/surveys", json={"title": "Flow", "goal": goal, "target_audience": "students"},
                    headers=headers)
    assert r.status_code == 200, r.text
    sid = r.json()["id"]
    if fields is not None:
        assert client.post(f"/surveys/{sid}/fields", json={"fields": fields}, headers=headers).status_code == 200
    if questions is not None:
        assert client.post(f"/surveys/{sid}/questions", json={"questions": questions},
                           headers=headers).status_code == 200
    return client.get(f"/surveys/{sid}", headers=headers).json()

def three_questions():
    return [
        {"text": "What do you use it for?", "category": "usage"},
        {"text": "What frustrates you?", "category": "friction"},
        {"text": "What would you change?", "category": "ideas"},
    ]
