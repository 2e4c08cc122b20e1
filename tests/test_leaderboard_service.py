import json
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from skillport.core.errors import ConflictError, NotFoundError, TransientError, ValidationError
from skillport.db.session import SessionLocal
from skillport.models import Contest, ContestScoring, Participant, Submission, Verdict
from skillport.schemas.leaderboard import LeaderboardEntry, LeaderboardSnapshot
from skillport.services import leaderboard as leaderboard_service
from skillport.services.broadcast import LeaderboardBroadcaster, channel_for, latest_key_for, leaderboard_broadcaster
from skillport.services.leaderboard import LeaderboardCalculator


def ranks(db, contest):
    db.expire_all()
    rows = db.query(Participant).filter(Participant.contest_id == contest.id).all()
    return {p.user_id: p.rank for p in rows}


def test_unknown_contest_is_not_found(db):
    with pytest.raises(NotFoundError):
        LeaderboardCalculator(db).recompute("missing")


def test_empty_contest_gives_empty_snapshot(db, make_contest):
    contest = make_contest()
    snapshot = LeaderboardCalculator(db).recompute(contest.id)
    assert snapshot.entries == []
    assert snapshot.contest_id == contest.id


def test_manual_scores_ranked_with_completion_tiebreak(db, now, make_contest, make_participant):
    contest = make_contest(scoring=ContestScoring.MANUAL)
    make_participant(contest, "a", score=90, completed_at=now - timedelta(minutes=20))
    make_participant(contest, "b", score=90, completed_at=now - timedelta(minutes=10))
    make_participant(contest, "c", score=70)

    snapshot = LeaderboardCalculator(db).recompute(contest.id)

    assert [(e.user_id, e.rank) for e in snapshot.entries] == [("a", 1), ("b", 2), ("c", 3)]
    assert ranks(db, contest) == {"a": 1, "b": 2, "c": 3}


def test_scores_derived_from_best_accepted_submission_per_problem(
    db, make_contest, make_problem, make_participant, make_submission
):
    contest = make_contest()
    p1 = make_problem(contest, title="P1")
    p2 = make_problem(contest, title="P2")
    make_participant(contest, "alice")
    make_participant(contest, "bob")
    make_submission(contest, p1, "alice", score=40)
    make_submission(contest, p1, "alice", score=60)
    make_submission(contest, p2, "alice", verdict=Verdict.REJECTED, score=0)
    make_submission(contest, p1, "bob", score=50)
    make_submission(contest, p2, "bob", score=30)

    snapshot = LeaderboardCalculator(db).recompute(contest.id)
    by_user = {e.user_id: e for e in snapshot.entries}

    assert by_user["bob"].score == 80
    assert by_user["bob"].problems_solved == 2
    assert by_user["alice"].score == 60
    assert by_user["alice"].problems_solved == 1
    assert by_user["alice"].last_submission_time is not None
    assert [e.user_id for e in snapshot.entries] == ["bob", "alice"]


def test_recompute_is_idempotent(db, make_contest, make_participant):
    contest = make_contest(scoring=ContestScoring.MANUAL)
    for i, score in enumerate([10, 10, 30, 0]):
        make_participant(contest, f"user{i}", score=score)

    calculator = LeaderboardCalculator(db)
    first = calculator.recompute(contest.id)
    second = calculator.recompute(contest.id)

    assert [(e.user_id, e.rank) for e in first.entries] == [(e.user_id, e.rank) for e in second.entries]
    assert sorted(ranks(db, contest).values()) == [1, 2, 3, 4]


def test_conflict_is_retried_once(db, make_contest, make_participant, monkeypatch):
    contest = make_contest(scoring=ContestScoring.MANUAL)
    make_participant(contest, "a", score=5)
    calculator = LeaderboardCalculator(db)
    real = calculator._recompute_once
    calls = []

    def flaky(contest_id):
        calls.append(contest_id)
        if len(calls) == 1:
            raise StaleDataError("version mismatch")
        return real(contest_id)

    monkeypatch.setattr(calculator, "_recompute_once", flaky)
    snapshot = calculator.recompute(contest.id)

    assert len(calls) == 2
    assert snapshot.entries[0].rank == 1


def test_persistent_conflict_surfaces(db, make_contest, monkeypatch):
    contest = make_contest()
    calculator = LeaderboardCalculator(db)

    def always_stale(contest_id):
        raise StaleDataError("version mismatch")

    monkeypatch.setattr(calculator, "_recompute_once", always_stale)
    with pytest.raises(ConflictError):
        calculator.recompute(contest.id)


def test_store_failure_is_transient_and_keeps_previous_ranks(db, make_contest, make_participant, monkeypatch):
    contest = make_contest(scoring=ContestScoring.MANUAL)
    make_participant(contest, "a", score=1)
    make_participant(contest, "b", score=2)
    calculator = LeaderboardCalculator(db)
    calculator.recompute(contest.id)
    before = ranks(db, contest)

    db.query(Participant).filter(Participant.user_id == "a").update({"score": 100})
    db.commit()

    def store_down(contest_id):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(calculator, "_recompute_once", store_down)
    with pytest.raises(TransientError):
        calculator.recompute(contest.id)
    assert ranks(db, contest) == before == {"b": 1, "a": 2}


def test_concurrent_writer_trips_version_check(db, make_contest, make_participant):
    contest = make_contest(scoring=ContestScoring.MANUAL)
    make_participant(contest, "a", score=1)

    other = SessionLocal()
    try:
        stale = other.query(Contest).get(contest.id)
        LeaderboardCalculator(db).recompute(contest.id)
        stale.title = "Renamed while ranking"
        with pytest.raises(StaleDataError):
            other.commit()
    finally:
        other.rollback()
        other.close()


def test_snapshot_is_broadcast_after_commit(db, fake_redis, make_contest, make_participant):
    contest = make_contest(scoring=ContestScoring.MANUAL)
    make_participant(contest, "a", score=3, name="Ada")

    LeaderboardCalculator(db, leaderboard_broadcaster).recompute(contest.id)

    channel, payload = fake_redis.published[-1]
    assert channel == channel_for(contest.id)
    message = json.loads(payload)
    assert message["leaderboard"] == [
        {"rank": 1, "user_id": "a", "user_name": "Ada", "score": 3.0, "problems_solved": 0}
    ]
    assert json.loads(fake_redis.store[latest_key_for(contest.id)]) == message


def test_broadcast_is_limited_to_top_n(db, fake_redis, make_contest, make_participant):
    contest = make_contest(scoring=ContestScoring.MANUAL)
    for i in range(5):
        make_participant(contest, f"user{i}", score=i)

    broadcaster = LeaderboardBroadcaster(redis_client=fake_redis, top_n=2)
    LeaderboardCalculator(db, broadcaster).recompute(contest.id)

    message = json.loads(fake_redis.published[-1][1])
    assert [row["user_id"] for row in message["leaderboard"]] == ["user4", "user3"]


def test_broadcast_failure_does_not_undo_ranks(db, fake_redis, make_contest, make_participant):
    contest = make_contest(scoring=ContestScoring.MANUAL)
    make_participant(contest, "a", score=1)
    make_participant(contest, "b", score=2)
    fake_redis.fail = True

    snapshot = LeaderboardCalculator(db, leaderboard_broadcaster).recompute(contest.id)

    assert len(snapshot.entries) == 2
    assert fake_redis.published == []
    assert ranks(db, contest) == {"b": 1, "a": 2}


def test_get_leaderboard_validates_before_reading(db):
    calculator = LeaderboardCalculator(db)
    with pytest.raises(ValidationError):
        calculator.get_leaderboard("whatever", page=0)
    with pytest.raises(ValidationError):
        calculator.get_leaderboard("whatever", limit=1000)
    with pytest.raises(ValidationError):
        calculator.get_leaderboard("whatever", sort_by="email")


def test_get_leaderboard_paginates_persisted_ranks(db, make_contest, make_participant):
    contest = make_contest(scoring=ContestScoring.MANUAL)
    for i in range(5):
        make_participant(contest, f"user{i}", score=10 * i)
    LeaderboardCalculator(db).recompute(contest.id)

    page = LeaderboardCalculator(db).get_leaderboard(contest.id, page=2, limit=2)

    assert [e.rank for e in page.leaderboard] == [3, 4]
    assert [e.user_id for e in page.leaderboard] == ["user2", "user1"]
    assert page.pagination.total == 5
    assert page.pagination.total_pages == 3
    assert page.computed_at is not None


def test_export_csv_lists_participants_by_rank(db, make_contest, make_participant):
    contest = make_contest(scoring=ContestScoring.MANUAL)
    make_participant(contest, "a", score=1, name="Ada")
    make_participant(contest, "b", score=9, name="Bo")
    LeaderboardCalculator(db).recompute(contest.id)

    lines = LeaderboardCalculator(db).export_csv(contest.id).strip().splitlines()

    assert lines[0] == "rank,user_id,name,score,problems_solved,last_submission_time"
    assert lines[1].startswith("1,b,Bo,9.0,0")
    assert lines[2].startswith("2,a,Ada,1.0,0")


def test_interleaved_recomputes_keep_both_submissions(
    db, make_contest, make_problem, make_participant, make_submission, monkeypatch
):
    contest = make_contest()
    problem = make_problem(contest)
    make_participant(contest, "alice")
    make_participant(contest, "bob")
    make_submission(contest, problem, "alice", score=70)

    other = SessionLocal()
    real_rank = leaderboard_service.rank_participants
    calls = []

    def rank_while_bob_submits(rows):
        calls.append(1)
        if len(calls) == 1:
            # Alice's recompute has read its inputs; bob's submission and recompute commit first
            other.add(Submission(
                contest_id=contest.id, problem_id=problem.id, user_id="bob",
                verdict=Verdict.ACCEPTED, score=90,
            ))
            other.commit()
            LeaderboardCalculator(other).recompute(contest.id)
        return real_rank(rows)

    monkeypatch.setattr(leaderboard_service, "rank_participants", rank_while_bob_submits)
    try:
        snapshot = LeaderboardCalculator(db).recompute(contest.id)
    finally:
        other.close()

    # alice's first pass, bob's recompute, alice's retry after the version check
    assert len(calls) == 3
    assert [(e.user_id, e.score) for e in snapshot.entries] == [("bob", 90.0), ("alice", 70.0)]
    db.expire_all()
    persisted = {p.user_id: (p.rank, p.score, p.problems_solved) for p in db.query(Participant)}
    assert persisted == {"bob": (1, 90.0, 1), "alice": (2, 70.0, 1)}


def test_older_snapshot_never_replaces_newer_one(fake_redis, now):
    broadcaster = LeaderboardBroadcaster(redis_client=fake_redis)
    entry = LeaderboardEntry(rank=1, user_id="a", name="Ada", score=2.0)
    newer = LeaderboardSnapshot(contest_id="c1", computed_at=now, entries=[entry])
    older = LeaderboardSnapshot(
        contest_id="c1",
        computed_at=now - timedelta(seconds=1),
        entries=[entry.model_copy(update={"score": 1.0})],
    )

    assert broadcaster.publish(newer) is True
    assert broadcaster.publish(older) is False

    stored = json.loads(fake_redis.store[latest_key_for("c1")])
    assert stored["leaderboard"][0]["score"] == 2.0
    assert len(fake_redis.published) == 1


def test_participant_registered_after_recompute_is_unranked(db, make_contest, make_participant):
    contest = make_contest(scoring=ContestScoring.MANUAL)
    make_participant(contest, "a", score=5)
    calculator = LeaderboardCalculator(db)
    calculator.recompute(contest.id)
    make_participant(contest, "late", score=50)

    page = calculator.get_leaderboard(contest.id)
    assert [(e.user_id, e.rank) for e in page.leaderboard] == [("a", 1), ("late", None)]
    assert page.pagination.total == 2

    beyond = calculator.get_leaderboard(contest.id, page=5, limit=1)
    assert beyond.leaderboard == []
    assert beyond.pagination.total == 2
    assert beyond.pagination.total_pages == 2

    assert calculator.export_csv(contest.id).strip().splitlines()[2].startswith(",late,")
