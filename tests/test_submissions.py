import pytest

from skillport.core.errors import ConflictError, NotFoundError
from skillport.db.session import SessionLocal
from skillport.models import Submission, Verdict
from skillport.services.submissions import finalize_verdict


def test_second_finalization_conflicts_even_from_stale_session(
    db, make_contest, make_problem, make_participant, make_submission
):
    contest = make_contest()
    problem = make_problem(contest)
    make_participant(contest, "u1")
    pending = make_submission(contest, problem, "u1", verdict=Verdict.PENDING, score=0)

    other = SessionLocal()
    try:
        # The second judge read the row while it was still pending
        assert other.query(Submission).get(pending.id).verdict == Verdict.PENDING
        finalize_verdict(db, pending.id, Verdict.ACCEPTED, score=80)
        with pytest.raises(ConflictError):
            finalize_verdict(other, pending.id, Verdict.REJECTED)
    finally:
        other.close()

    db.expire_all()
    stored = db.query(Submission).get(pending.id)
    assert (stored.verdict, stored.score) == (Verdict.ACCEPTED, 80.0)


def test_finalize_unknown_submission_is_not_found(db):
    with pytest.raises(NotFoundError):
        finalize_verdict(db, "missing", Verdict.ACCEPTED, score=1)


def test_rejected_verdict_stores_zero_score(db, make_contest, make_problem, make_participant, make_submission):
    contest = make_contest()
    problem = make_problem(contest)
    make_participant(contest, "u1")
    pending = make_submission(contest, problem, "u1", verdict=Verdict.PENDING, score=0)

    finalized = finalize_verdict(db, pending.id, Verdict.REJECTED, score=50, execution_time_ms=12)

    assert (finalized.verdict, finalized.score, finalized.execution_time_ms) == (Verdict.REJECTED, 0.0, 12)
