import csv
import io
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from skillport.core.config import settings
from skillport.core.errors import ConflictError, LeaderboardError, NotFoundError, TransientError, ValidationError
from skillport.core.metrics import (
    LEADERBOARD_CONFLICT_RETRIES_TOTAL,
    LEADERBOARD_QUERIES_TOTAL,
    LEADERBOARD_QUERY_DURATION_SECONDS,
    LEADERBOARD_RANKED_PARTICIPANTS,
    LEADERBOARD_RECOMPUTATIONS_TOTAL,
    LEADERBOARD_RECOMPUTE_DURATION_SECONDS,
    DurationTimer,
)
from skillport.models import Contest, ContestScoring, Participant, Submission, Verdict
from skillport.schemas.leaderboard import LeaderboardEntry, LeaderboardPage, LeaderboardSnapshot, Pagination

logger = logging.getLogger(__name__)

SORT_FIELDS = ("rank", "score", "name", "joined_at")
SORT_ORDERS = ("asc", "desc")

_TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)


@dataclass
class RankingRow:
    """One participant's inputs to the ranking."""

    user_id: str
    name: str
    score: float
    joined_at: datetime
    completed_at: Optional[datetime] = None
    problems_solved: int = 0
    last_submission_time: Optional[datetime] = None


def ranking_key(row: RankingRow):
    """Score desc, then completion asc (not completed last), then join time asc.

    ``user_id`` closes the order so exact duplicates never depend on storage order.
    """
    return (
        -float(row.score or 0.0),
        row.completed_at is None,
        row.completed_at or datetime.min,
        row.joined_at or datetime.min,
        row.user_id,
    )


def rank_participants(rows: Iterable[RankingRow]) -> List[LeaderboardEntry]:
    """Order participants and assign distinct consecutive ranks starting at 1."""
    ordered = sorted(rows, key=ranking_key)
    return [
        LeaderboardEntry(
            rank=position,
            user_id=row.user_id,
            name=row.name,
            score=float(row.score or 0.0),
            problems_solved=row.problems_solved,
            last_submission_time=row.last_submission_time,
        )
        for position, row in enumerate(ordered, start=1)
    ]


def _accepted_totals_subquery(db: Session, contest_id: str):
    """Per user: distinct accepted problems and the sum of best accepted score per problem."""
    best = (
        db.query(
            Submission.user_id.label("user_id"),
            Submission.problem_id.label("problem_id"),
            func.max(Submission.score).label("best_score"),
        )
        .filter(Submission.contest_id == contest_id)
        .filter(Submission.verdict == Verdict.ACCEPTED)
        .group_by(Submission.user_id, Submission.problem_id)
        .subquery()
    )
    return (
        db.query(
            best.c.user_id.label("user_id"),
            func.count(best.c.problem_id).label("problems_solved"),
            func.sum(best.c.best_score).label("accepted_score"),
        )
        .group_by(best.c.user_id)
        .subquery()
    )


def _last_submission_subquery(db: Session, contest_id: str):
    return (
        db.query(
            Submission.user_id.label("user_id"),
            func.max(Submission.submitted_at).label("last_submission_time"),
        )
        .filter(Submission.contest_id == contest_id)
        .group_by(Submission.user_id)
        .subquery()
    )


def _ranking_inputs_query(db: Session, contest_id: str):
    """Participants joined with their submission aggregates in a single statement."""
    totals = _accepted_totals_subquery(db, contest_id)
    last = _last_submission_subquery(db, contest_id)
    return (
        db.query(
            Participant,
            func.coalesce(totals.c.problems_solved, 0).label("problems_solved"),
            func.coalesce(totals.c.accepted_score, 0.0).label("accepted_score"),
            last.c.last_submission_time,
        )
        .outerjoin(totals, totals.c.user_id == Participant.user_id)
        .outerjoin(last, last.c.user_id == Participant.user_id)
        .filter(Participant.contest_id == contest_id)
    )


def _entry_from_participant(participant: Participant) -> LeaderboardEntry:
    # Every field comes from the last committed recompute
    return LeaderboardEntry(
        rank=participant.rank,
        user_id=participant.user_id,
        name=participant.user_name,
        score=float(participant.score or 0.0),
        problems_solved=participant.problems_solved or 0,
        last_submission_time=participant.last_submission_time,
    )


class LeaderboardCalculator:
    """Recomputes and serves contest rankings.

    The session is owned by the caller (request or task); the optional
    broadcaster receives each snapshot after it has been committed.
    """

    def __init__(self, db: Session, broadcaster=None):
        self.db = db
        self.broadcaster = broadcaster

    def recompute(self, contest_id: str) -> LeaderboardSnapshot:
        """Recompute, persist and broadcast the ranking of one contest.

        A concurrent write on the same contest is retried once before
        ``ConflictError`` is raised. Store failures are rolled back and raised
        as ``TransientError`` without retrying.
        """
        attempts = 0
        with DurationTimer() as timer:
            while True:
                attempts += 1
                try:
                    snapshot = self._recompute_once(contest_id)
                    break
                except StaleDataError:
                    self.db.rollback()
                    if attempts >= 2:
                        LEADERBOARD_RECOMPUTATIONS_TOTAL.labels(outcome="conflict").inc()
                        logger.warning(
                            "leaderboard_recompute_conflict",
                            extra={"contest_id": contest_id, "stage": "persist"},
                        )
                        raise ConflictError(f"Concurrent leaderboard update for contest {contest_id}")
                    LEADERBOARD_CONFLICT_RETRIES_TOTAL.inc()
                    logger.info(
                        "leaderboard_recompute_retry",
                        extra={"contest_id": contest_id, "stage": "persist"},
                    )
                except NotFoundError:
                    self.db.rollback()
                    LEADERBOARD_RECOMPUTATIONS_TOTAL.labels(outcome="not_found").inc()
                    raise
                except _TRANSIENT_DB_ERRORS as e:
                    self.db.rollback()
                    LEADERBOARD_RECOMPUTATIONS_TOTAL.labels(outcome="transient").inc()
                    logger.error(
                        f"Leaderboard recompute failed on data store: {str(e)}",
                        extra={"contest_id": contest_id},
                    )
                    raise TransientError(f"Data store unavailable while ranking contest {contest_id}") from e
                except Exception:
                    self.db.rollback()
                    LEADERBOARD_RECOMPUTATIONS_TOTAL.labels(outcome="error").inc()
                    raise

        LEADERBOARD_RECOMPUTATIONS_TOTAL.labels(outcome="committed").inc()
        LEADERBOARD_RECOMPUTE_DURATION_SECONDS.observe(timer.seconds)
        LEADERBOARD_RANKED_PARTICIPANTS.observe(len(snapshot.entries))
        logger.info(
            "leaderboard_recomputed",
            extra={
                "contest_id": contest_id,
                "participants": len(snapshot.entries),
                "duration_ms": int(timer.seconds * 1000),
            },
        )

        # Broadcast only after commit; it never affects stored ranks
        if self.broadcaster is not None:
            try:
                self.broadcaster.publish(snapshot)
            except Exception as e:
                logger.error(
                    f"Leaderboard broadcast failed: {str(e)}",
                    extra={"contest_id": contest_id},
                )
        return snapshot

    def _recompute_once(self, contest_id: str) -> LeaderboardSnapshot:
        contest = (
            self.db.query(Contest)
            .filter(Contest.id == contest_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if contest is None:
            raise NotFoundError(f"Contest {contest_id} not found")

        derive_score = (contest.scoring or ContestScoring.SUBMISSIONS) == ContestScoring.SUBMISSIONS
        rows = _ranking_inputs_query(self.db, contest_id).populate_existing().all()

        participants: dict[str, Participant] = {}
        inputs: list[RankingRow] = []
        for participant, problems_solved, accepted_score, last_submission_time in rows:
            if derive_score:
                participant.score = float(accepted_score or 0.0)
            participant.problems_solved = int(problems_solved or 0)
            participant.last_submission_time = last_submission_time
            participants[participant.user_id] = participant
            inputs.append(
                RankingRow(
                    user_id=participant.user_id,
                    name=participant.user_name,
                    score=float(participant.score or 0.0),
                    joined_at=participant.joined_at,
                    completed_at=participant.completed_at,
                    problems_solved=participant.problems_solved,
                    last_submission_time=last_submission_time,
                )
            )

        entries = rank_participants(inputs)
        for entry in entries:
            participants[entry.user_id].rank = entry.rank

        computed_at = datetime.utcnow()
        # Touching the contest row bumps leaderboard_version; a concurrent writer fails the version check
        contest.leaderboard_updated_at = computed_at
        self.db.commit()

        return LeaderboardSnapshot(contest_id=contest_id, computed_at=computed_at, entries=entries)

    def get_leaderboard(
        self,
        contest_id: str,
        page: int = 1,
        limit: int = 50,
        sort_by: str = "rank",
        order: str = "asc",
    ) -> LeaderboardPage:
        """Return the last committed ranking, paginated.

        Reads only persisted participant columns, so every row belongs to one
        committed computation, and never waits for an in-flight recompute.
        """
        if page < 1:
            raise ValidationError("page must be >= 1")
        if limit < 1 or limit > settings.LEADERBOARD_MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {settings.LEADERBOARD_MAX_PAGE_SIZE}")
        if sort_by not in SORT_FIELDS:
            raise ValidationError(f"sort_by must be one of {', '.join(SORT_FIELDS)}")
        if order not in SORT_ORDERS:
            raise ValidationError("order must be asc or desc")

        with DurationTimer() as timer:
            contest = self.db.query(Contest).get(contest_id)
            if contest is None:
                raise NotFoundError(f"Contest {contest_id} not found")

            # The total rides along with the page rows so both come from one statement
            rows = (
                self.db.query(Participant, func.count().over().label("total"))
                .filter(Participant.contest_id == contest_id)
                .order_by(*self._ordering(sort_by, order))
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            if rows:
                total = rows[0].total
            else:
                # Past the last page there is no row to carry the count
                total = (
                    self.db.query(func.count(Participant.id))
                    .filter(Participant.contest_id == contest_id)
                    .scalar()
                ) or 0
            entries = [_entry_from_participant(participant) for participant, _ in rows]

        LEADERBOARD_QUERIES_TOTAL.labels(sort_by=sort_by).inc()
        LEADERBOARD_QUERY_DURATION_SECONDS.observe(timer.seconds)
        return LeaderboardPage(
            contest_id=contest_id,
            leaderboard=entries,
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                total_pages=math.ceil(total / limit) if total else 0,
            ),
            computed_at=contest.leaderboard_updated_at,
        )

    @staticmethod
    def _ordering(sort_by: str, order: str):
        # Unranked rows sort after ranked ones; joined_at/user_id make the order total
        column = {
            "rank": Participant.rank,
            "score": Participant.score,
            "name": Participant.user_name,
            "joined_at": Participant.joined_at,
        }[sort_by]
        primary = column.desc() if order == "desc" else column.asc()
        clauses = []
        if sort_by == "rank":
            clauses.append(Participant.rank.is_(None).asc())
        clauses.extend([primary, Participant.joined_at.asc(), Participant.user_id.asc()])
        return clauses

    def get_user_entry(self, contest_id: str, user_id: str) -> LeaderboardEntry:
        if self.db.query(Contest).get(contest_id) is None:
            raise NotFoundError(f"Contest {contest_id} not found")
        participant = (
            self.db.query(Participant)
            .filter(Participant.contest_id == contest_id, Participant.user_id == user_id)
            .one_or_none()
        )
        if participant is None:
            raise NotFoundError(f"User {user_id} is not a participant of contest {contest_id}")
        return _entry_from_participant(participant)

    def export_csv(self, contest_id: str) -> str:
        """Persisted ranking as CSV, ordered by rank."""
        if self.db.query(Contest).get(contest_id) is None:
            raise NotFoundError(f"Contest {contest_id} not found")
        participants = (
            self.db.query(Participant)
            .filter(Participant.contest_id == contest_id)
            .order_by(*self._ordering("rank", "asc"))
            .all()
        )

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["rank", "user_id", "name", "score", "problems_solved", "last_submission_time"])
        for participant in participants:
            entry = _entry_from_participant(participant)
            writer.writerow([
                entry.rank if entry.rank is not None else "",
                entry.user_id,
                entry.name,
                entry.score,
                entry.problems_solved,
                entry.last_submission_time.isoformat() if entry.last_submission_time else "",
            ])
        return buffer.getvalue()


def schedule_recompute(db: Session, contest_id: str) -> None:
    """Trigger a leaderboard recompute after a committed write.

    In ``sync`` mode the recompute runs inline on the caller's session;
    otherwise it is queued on Celery. Failures are logged and never undo or
    fail the triggering write.
    """
    if settings.LEADERBOARD_RECOMPUTE_MODE == "sync":
        from skillport.services.broadcast import leaderboard_broadcaster
        try:
            LeaderboardCalculator(db, leaderboard_broadcaster).recompute(contest_id)
        except LeaderboardError as e:
            logger.error(
                f"Inline leaderboard recompute failed: {e.message}",
                extra={"contest_id": contest_id},
            )
        except Exception:
            logger.exception(
                "Inline leaderboard recompute crashed",
                extra={"contest_id": contest_id},
            )
        return

    from skillport.core.celery import recompute_leaderboard_task
    try:
        recompute_leaderboard_task.delay(contest_id)
        logger.info("leaderboard_recompute_queued", extra={"contest_id": contest_id})
    except Exception as e:
        logger.error(
            f"Failed to queue leaderboard recompute: {str(e)}",
            extra={"contest_id": contest_id},
        )
