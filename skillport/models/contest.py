import uuid
from datetime import datetime

from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey
from sqlalchemy.orm import relationship
from skillport.db.base import Base


class ContestStatus:
    UPCOMING = "UPCOMING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    TERMINAL = (COMPLETED, CANCELLED)


class ContestScoring:
    # Participant score is derived from accepted submissions on every recompute
    SUBMISSIONS = "submissions"
    # Participant score is written by mentors/admins and only ranked here
    MANUAL = "manual"


class Contest(Base):
    __tablename__ = "contests"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    status = Column(String, default=ContestStatus.UPCOMING, index=True)
    max_participants = Column(Integer, nullable=True)
    scoring = Column(String, default=ContestScoring.SUBMISSIONS)
    created_by = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Bumped on every committed recomputation; concurrent writers get StaleDataError
    leaderboard_version = Column(Integer, nullable=False, default=0)
    leaderboard_updated_at = Column(DateTime, nullable=True)

    participants = relationship(
        "Participant",
        back_populates="contest",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    problems = relationship(
        "Problem",
        back_populates="contest",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __mapper_args__ = {"version_id_col": leaderboard_version}

    def status_at(self, now: datetime) -> str:
        """Status implied by the contest window at ``now``.

        Terminal states never move; otherwise the window decides.
        """
        if self.status in ContestStatus.TERMINAL:
            return self.status
        if now >= self.end_date:
            return ContestStatus.COMPLETED
        if now >= self.start_date:
            return ContestStatus.ACTIVE
        return ContestStatus.UPCOMING


class Problem(Base):
    __tablename__ = "problems"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    contest_id = Column(String, ForeignKey("contests.id", ondelete="CASCADE"), nullable=True, index=True)
    title = Column(String, nullable=False)
    difficulty = Column(String, default="EASY")
    points = Column(Integer, default=100)
    created_by = Column(String, nullable=True)

    contest = relationship("Contest", back_populates="problems")
