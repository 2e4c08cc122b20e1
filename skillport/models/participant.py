import uuid
from datetime import datetime

from sqlalchemy import Column, String, Float, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from skillport.db.base import Base


class Participant(Base):
    """A user registered for one contest; rank is written only by the leaderboard calculator."""

    __tablename__ = "contest_participants"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    contest_id = Column(String, ForeignKey("contests.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    user_name = Column(String, nullable=False, default="Anonymous")
    score = Column(Float, nullable=False, default=0.0)
    rank = Column(Integer, nullable=True)  # null until the first recompute
    # Submission aggregates as of the last recompute, so reads match rank and score
    problems_solved = Column(Integer, nullable=False, default=0)
    last_submission_time = Column(DateTime, nullable=True)
    joined_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    contest = relationship("Contest", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("contest_id", "user_id", name="uq_contest_participant"),
    )

    def __repr__(self):
        return f"<Participant(contest_id={self.contest_id}, user_id={self.user_id}, score={self.score}, rank={self.rank})>"
