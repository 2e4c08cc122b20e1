import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from skillport.core.errors import ConflictError, NotFoundError
from skillport.core.metrics import CONTEST_STATUS_TRANSITIONS_TOTAL, PARTICIPANT_REGISTRATIONS_TOTAL
from skillport.models import Contest, ContestStatus, Participant
from skillport.schemas.leaderboard import ContestDetail

logger = logging.getLogger(__name__)


def get_contest(db: Session, contest_id: str) -> Contest:
    contest = db.query(Contest).get(contest_id)
    if contest is None:
        raise NotFoundError(f"Contest {contest_id} not found")
    return contest


def get_participant(db: Session, contest_id: str, user_id: str) -> Participant:
    participant = (
        db.query(Participant)
        .filter(Participant.contest_id == contest_id, Participant.user_id == user_id)
        .one_or_none()
    )
    if participant is None:
        raise NotFoundError(f"User {user_id} is not a participant of contest {contest_id}")
    return participant


def contest_detail(db: Session, contest_id: str) -> ContestDetail:
    contest = get_contest(db, contest_id)
    count = (
        db.query(func.count(Participant.id))
        .filter(Participant.contest_id == contest_id)
        .scalar()
    ) or 0
    return ContestDetail(
        id=contest.id,
        title=contest.title,
        description=contest.description,
        status=contest.status,
        start_date=contest.start_date,
        end_date=contest.end_date,
        max_participants=contest.max_participants,
        scoring=contest.scoring,
        participant_count=count,
        leaderboard_updated_at=contest.leaderboard_updated_at,
    )


def refresh_contest_statuses(db: Session, now: Optional[datetime] = None) -> List[Tuple[str, str, str]]:
    """Move non-terminal contests along their time window.

    Returns ``(contest_id, old_status, new_status)`` for every contest that changed.
    """
    now = now or datetime.utcnow()
    changed = []
    contests = (
        db.query(Contest)
        .filter(Contest.status.in_([ContestStatus.UPCOMING, ContestStatus.ACTIVE]))
        .all()
    )
    for contest in contests:
        new_status = contest.status_at(now)
        if new_status != contest.status:
            changed.append((contest.id, contest.status, new_status))
            contest.status = new_status
    if changed:
        db.commit()
        for contest_id, old, new in changed:
            CONTEST_STATUS_TRANSITIONS_TOTAL.labels(to_status=new).inc()
            logger.info(
                f"Contest status {old} -> {new}",
                extra={"contest_id": contest_id, "stage": "status"},
            )
    return changed


def register_participant(db: Session, contest_id: str, user_id: str, user_name: str) -> Participant:
    """Register ``user_id`` for a contest that is still open and not full."""
    contest = (
        db.query(Contest)
        .filter(Contest.id == contest_id)
        .with_for_update()
        .one_or_none()
    )
    if contest is None:
        raise NotFoundError(f"Contest {contest_id} not found")

    if contest.status_at(datetime.utcnow()) in ContestStatus.TERMINAL:
        db.rollback()
        PARTICIPANT_REGISTRATIONS_TOTAL.labels(outcome="closed").inc()
        raise ConflictError(f"Contest {contest_id} is closed for registration")

    existing = (
        db.query(Participant.id)
        .filter(Participant.contest_id == contest_id, Participant.user_id == user_id)
        .first()
    )
    if existing is not None:
        db.rollback()
        PARTICIPANT_REGISTRATIONS_TOTAL.labels(outcome="duplicate").inc()
        raise ConflictError(f"User {user_id} is already registered for contest {contest_id}")

    if contest.max_participants is not None:
        count = (
            db.query(func.count(Participant.id))
            .filter(Participant.contest_id == contest_id)
            .scalar()
        ) or 0
        if count >= contest.max_participants:
            db.rollback()
            PARTICIPANT_REGISTRATIONS_TOTAL.labels(outcome="full").inc()
            raise ConflictError(f"Contest {contest_id} has reached its participant limit")

    participant = Participant(contest_id=contest_id, user_id=user_id, user_name=user_name)
    db.add(participant)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race against a concurrent registration of the same user
        db.rollback()
        PARTICIPANT_REGISTRATIONS_TOTAL.labels(outcome="duplicate").inc()
        raise ConflictError(f"User {user_id} is already registered for contest {contest_id}")
    db.refresh(participant)

    PARTICIPANT_REGISTRATIONS_TOTAL.labels(outcome="registered").inc()
    logger.info("participant_registered", extra={"contest_id": contest_id, "user_id": user_id})
    return participant


def mark_completed(db: Session, contest_id: str, user_id: str, at: Optional[datetime] = None) -> Participant:
    """Record the participant's completion time; the first completion wins."""
    get_contest(db, contest_id)
    participant = get_participant(db, contest_id, user_id)
    if participant.completed_at is None:
        participant.completed_at = at or datetime.utcnow()
        db.commit()
        db.refresh(participant)
        logger.info("participant_completed", extra={"contest_id": contest_id, "user_id": user_id})
    return participant


def remove_participant(db: Session, contest_id: str, user_id: str) -> None:
    get_contest(db, contest_id)
    participant = get_participant(db, contest_id, user_id)
    db.delete(participant)
    db.commit()
    logger.info("participant_removed", extra={"contest_id": contest_id, "user_id": user_id})
