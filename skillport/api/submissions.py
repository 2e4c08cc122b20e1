from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from skillport.core.errors import LeaderboardError, to_http_exception
from skillport.db.session import get_db
from skillport.schemas.participation import SubmissionCreate, SubmissionOut, SubmissionVerdictUpdate
from skillport.services import submissions
from skillport.services.leaderboard import schedule_recompute
import logging

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/contests/{contest_id}/submissions", response_model=SubmissionOut, status_code=201)
def create_submission(contest_id: str, body: SubmissionCreate, db: Session = Depends(get_db)):
    """
    Record one attempt for a registered participant.

    An ACCEPTED verdict triggers a leaderboard recompute; PENDING attempts wait
    for their verdict via PATCH /submissions/{id}.
    """
    try:
        submission = submissions.record_submission(
            db,
            contest_id,
            user_id=body.user_id,
            problem_id=body.problem_id,
            verdict=body.verdict,
            score=body.score,
            language=body.language,
            execution_time_ms=body.execution_time_ms,
        )
    except LeaderboardError as e:
        raise to_http_exception(e)

    if submissions.affects_leaderboard(submission):
        schedule_recompute(db, contest_id)
    return submission


@router.patch("/submissions/{submission_id}", response_model=SubmissionOut)
def update_verdict(submission_id: str, body: SubmissionVerdictUpdate, db: Session = Depends(get_db)):
    try:
        submission = submissions.finalize_verdict(
            db,
            submission_id,
            verdict=body.verdict,
            score=body.score,
            execution_time_ms=body.execution_time_ms,
        )
    except LeaderboardError as e:
        raise to_http_exception(e)

    if submissions.affects_leaderboard(submission):
        schedule_recompute(db, submission.contest_id)
    return submission
