import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from skillport.core.errors import ConflictError, NotFoundError, ValidationError
from skillport.core.metrics import SUBMISSIONS_RECORDED_TOTAL
from skillport.models import ContestStatus, Problem, Submission, Verdict
from skillport.services.contests import get_contest, get_participant

logger = logging.getLogger(__name__)


def record_submission(
    db: Session,
    contest_id: str,
    user_id: str,
    problem_id: str,
    verdict: str = Verdict.PENDING,
    score: float = 0.0,
    language: Optional[str] = None,
    execution_time_ms: Optional[int] = None,
) -> Submission:
    """Append one attempt to the contest's submission log.

    Only registered participants of a running contest may submit, and only
    for problems of that contest.
    """
    if verdict not in Verdict.ALL:
        raise ValidationError(f"Unknown verdict {verdict}")

    contest = get_contest(db, contest_id)
    if contest.status_at(datetime.utcnow()) != ContestStatus.ACTIVE:
        raise ConflictError(f"Contest {contest_id} is not accepting submissions")
    get_participant(db, contest_id, user_id)

    problem = db.query(Problem).get(problem_id)
    if problem is None or problem.contest_id != contest_id:
        raise NotFoundError(f"Problem {problem_id} not found in contest {contest_id}")

    submission = Submission(
        user_id=user_id,
        problem_id=problem_id,
        contest_id=contest_id,
        verdict=verdict,
        score=score if verdict == Verdict.ACCEPTED else 0.0,
        language=language,
        execution_time_ms=execution_time_ms,
    )
    db.add(submission)
    db.commit()
    db.refresh(submission)

    SUBMISSIONS_RECORDED_TOTAL.labels(verdict=verdict).inc()
    logger.info(
        "submission_recorded",
        extra={
            "contest_id": contest_id,
            "user_id": user_id,
            "submission_id": submission.id,
            "stage": verdict,
        },
    )
    return submission


def finalize_verdict(
    db: Session,
    submission_id: str,
    verdict: str,
    score: float = 0.0,
    execution_time_ms: Optional[int] = None,
) -> Submission:
    """Set the final verdict of a pending submission. Final verdicts never change.

    The update is conditional on the stored verdict still being PENDING, so of
    two concurrent finalizations exactly one wins and the other gets a conflict.
    """
    if verdict not in Verdict.FINAL:
        raise ValidationError("verdict must be ACCEPTED or REJECTED")

    values = {
        Submission.verdict: verdict,
        Submission.score: score if verdict == Verdict.ACCEPTED else 0.0,
    }
    if execution_time_ms is not None:
        values[Submission.execution_time_ms] = execution_time_ms
    updated = (
        db.query(Submission)
        .filter(Submission.id == submission_id, Submission.verdict == Verdict.PENDING)
        .update(values, synchronize_session=False)
    )
    if not updated:
        db.rollback()
        current = db.query(Submission).get(submission_id)
        if current is None:
            raise NotFoundError(f"Submission {submission_id} not found")
        raise ConflictError(f"Submission {submission_id} already has final verdict {current.verdict}")
    db.commit()

    submission = db.query(Submission).get(submission_id)
    db.refresh(submission)

    SUBMISSIONS_RECORDED_TOTAL.labels(verdict=verdict).inc()
    logger.info(
        "submission_verdict_finalized",
        extra={
            "contest_id": submission.contest_id,
            "user_id": submission.user_id,
            "submission_id": submission_id,
            "stage": verdict,
        },
    )
    return submission


def affects_leaderboard(submission: Submission) -> bool:
    return submission.contest_id is not None and submission.verdict == Verdict.ACCEPTED
