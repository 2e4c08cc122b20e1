import json
import os

# Configure before any skillport import reads settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LEADERBOARD_RECOMPUTE_MODE"] = "sync"
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

import skillport.models  # noqa: F401
from skillport.db.base import Base
from skillport.db.session import SessionLocal, engine, get_db
from skillport.models import Contest, ContestStatus, Participant, Problem, Submission, Verdict
from skillport.services.broadcast import PUBLISH_IF_NEWER_SCRIPT, SUPERSEDED, leaderboard_broadcaster


class FakeRedis:
    """In-process stand-in for the synchronous Redis client used by the broadcaster."""

    def __init__(self):
        self.store = {}
        self.published = []
        self.fail = False

    def ping(self):
        return True

    def set(self, key, value, ex=None):
        if self.fail:
            raise ConnectionError("redis down")
        self.store[key] = value.encode("utf-8") if isinstance(value, str) else value

    def get(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        return self.store.get(key)

    def publish(self, channel, payload):
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, payload))
        return 0

    def register_script(self, script):
        assert script == PUBLISH_IF_NEWER_SCRIPT

        def publish_if_newer(keys, args):
            latest_key, channel = keys
            payload, computed_at, ttl = args
            current = self.get(latest_key)
            if current is not None and json.loads(current)["computed_at"] > computed_at:
                return SUPERSEDED
            self.set(latest_key, payload, ex=ttl)
            return self.publish(channel, payload)

        return publish_if_newer


@pytest.fixture(autouse=True)
def fake_redis():
    fake = FakeRedis()
    previous = leaderboard_broadcaster.redis_client
    leaderboard_broadcaster.redis_client = fake
    yield fake
    leaderboard_broadcaster.redis_client = previous


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    from skillport.main import app

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def now():
    return datetime.utcnow()


@pytest.fixture
def make_contest(db, now):
    def _make(**kwargs):
        fields = {
            "title": "Weekly Contest",
            "start_date": now - timedelta(hours=1),
            "end_date": now + timedelta(hours=1),
            "status": ContestStatus.ACTIVE,
        }
        fields.update(kwargs)
        contest = Contest(**fields)
        db.add(contest)
        db.commit()
        return contest
    return _make


@pytest.fixture
def make_problem(db):
    def _make(contest, points=100, title="Two Sum"):
        problem = Problem(contest_id=contest.id, title=title, points=points)
        db.add(problem)
        db.commit()
        return problem
    return _make


@pytest.fixture
def make_participant(db, now):
    def _make(contest, user_id, score=0.0, joined_at=None, completed_at=None, name=None):
        participant = Participant(
            contest_id=contest.id,
            user_id=user_id,
            user_name=name or user_id.title(),
            score=score,
            joined_at=joined_at or now - timedelta(minutes=30),
            completed_at=completed_at,
        )
        db.add(participant)
        db.commit()
        return participant
    return _make


@pytest.fixture
def make_submission(db, now):
    def _make(contest, problem, user_id, verdict=Verdict.ACCEPTED, score=100.0, submitted_at=None):
        submission = Submission(
            contest_id=contest.id,
            problem_id=problem.id,
            user_id=user_id,
            verdict=verdict,
            score=score,
            submitted_at=submitted_at or now,
        )
        db.add(submission)
        db.commit()
        return submission
    return _make
