from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class LeaderboardEntry(BaseModel):
    rank: Optional[int] = None  # None until the participant is first ranked
    user_id: str
    name: str
    score: float
    problems_solved: int = 0
    last_submission_time: Optional[datetime] = None


class LeaderboardSnapshot(BaseModel):
    """Result of one completed computation, tagged with its computation time."""

    contest_id: str
    computed_at: datetime
    entries: List[LeaderboardEntry] = []


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class LeaderboardPage(BaseModel):
    contest_id: str
    leaderboard: List[LeaderboardEntry]
    pagination: Pagination
    computed_at: Optional[datetime] = None


class LiveLeaderboardRow(BaseModel):
    rank: int
    user_id: str
    user_name: str
    score: float
    problems_solved: int = 0


class LiveLeaderboardMessage(BaseModel):
    """Payload pushed to live viewers of a contest."""

    contest_id: str
    computed_at: datetime
    leaderboard: List[LiveLeaderboardRow]

    @classmethod
    def from_snapshot(cls, snapshot: LeaderboardSnapshot, top_n: int) -> "LiveLeaderboardMessage":
        return cls(
            contest_id=snapshot.contest_id,
            computed_at=snapshot.computed_at,
            leaderboard=[
                LiveLeaderboardRow(
                    rank=e.rank,
                    user_id=e.user_id,
                    user_name=e.name,
                    score=e.score,
                    problems_solved=e.problems_solved,
                )
                for e in snapshot.entries[:top_n]
            ],
        )


class ContestDetail(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    status: str
    start_date: datetime
    end_date: datetime
    max_participants: Optional[int] = None
    scoring: str
    participant_count: int = 0
    leaderboard_updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
