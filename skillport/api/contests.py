from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from skillport.core.errors import LeaderboardError, to_http_exception
from skillport.db.session import get_db
from skillport.schemas.leaderboard import ContestDetail
from skillport.schemas.participation import ParticipantOut, ParticipantRegister
from skillport.services import contests
from skillport.services.leaderboard import schedule_recompute
import logging

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{contest_id}", response_model=ContestDetail)
def get_contest(contest_id: str, db: Session = Depends(get_db)):
    try:
        return contests.contest_detail(db, contest_id)
    except LeaderboardError as e:
        raise to_http_exception(e)


@router.post("/{contest_id}/participants", response_model=ParticipantOut, status_code=201)
def register_participant(contest_id: str, body: ParticipantRegister, db: Session = Depends(get_db)):
    """Register a user; the new participant is ranked by the triggered recompute."""
    try:
        participant = contests.register_participant(db, contest_id, body.user_id, body.user_name)
    except LeaderboardError as e:
        raise to_http_exception(e)
    schedule_recompute(db, contest_id)
    db.refresh(participant)
    return participant


@router.post("/{contest_id}/participants/{user_id}/complete", response_model=ParticipantOut)
def complete_contest(contest_id: str, user_id: str, db: Session = Depends(get_db)):
    try:
        participant = contests.mark_completed(db, contest_id, user_id)
    except LeaderboardError as e:
        raise to_http_exception(e)
    schedule_recompute(db, contest_id)
    db.refresh(participant)
    return participant


@router.delete("/{contest_id}/participants/{user_id}", status_code=204)
def remove_participant(contest_id: str, user_id: str, db: Session = Depends(get_db)):
    """Remove a participant and re-rank the rest so ranks stay contiguous."""
    try:
        contests.remove_participant(db, contest_id, user_id)
    except LeaderboardError as e:
        raise to_http_exception(e)
    schedule_recompute(db, contest_id)
