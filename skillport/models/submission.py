import uuid
from datetime import datetime

from sqlalchemy import Column, String, Float, Integer, DateTime, ForeignKey
from skillport.db.base import Base


class Verdict:
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"

    FINAL = (ACCEPTED, REJECTED)
    ALL = (PENDING, ACCEPTED, REJECTED)


class Submission(Base):
    __tablename__ = "submissions"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    problem_id = Column(String, ForeignKey("problems.id", ondelete="CASCADE"), nullable=False, index=True)
    contest_id = Column(String, ForeignKey("contests.id", ondelete="CASCADE"), nullable=True, index=True)
    verdict = Column(String, nullable=False, default=Verdict.PENDING, index=True)  # PENDING, ACCEPTED, REJECTED
    score = Column(Float, nullable=False, default=0.0)
    language = Column(String, nullable=True)
    execution_time_ms = Column(Integer, nullable=True)
    submitted_at = Column(DateTime, nullable=False, default=datetime.utcnow)
