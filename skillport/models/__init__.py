from skillport.models.contest import Contest, ContestScoring, ContestStatus, Problem
from skillport.models.participant import Participant
from skillport.models.submission import Submission, Verdict

__all__ = [
    "Contest",
    "ContestScoring",
    "ContestStatus",
    "Problem",
    "Participant",
    "Submission",
    "Verdict",
]
