from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse, Response
from sqlalchemy.orm import Session
from skillport.core.config import settings
from skillport.core.errors import LeaderboardError, to_http_exception
from skillport.db.session import get_db
from skillport.schemas.leaderboard import LeaderboardEntry, LeaderboardPage, LeaderboardSnapshot
from skillport.services.broadcast import leaderboard_broadcaster
from skillport.services.leaderboard import LeaderboardCalculator
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{contest_id}/leaderboard", response_model=LeaderboardPage)
def get_leaderboard(
    contest_id: str,
    page: int = Query(1, ge=1, description="1-based page number"),
    limit: int = Query(50, ge=1, le=settings.LEADERBOARD_MAX_PAGE_SIZE, description="Rows per page"),
    sort_by: str = Query("rank", pattern="^(rank|score|name|joined_at)$", description="rank | score | name | joined_at"),
    order: str = Query("asc", pattern="^(asc|desc)$", description="asc | desc"),
    db: Session = Depends(get_db),
):
    """
    Last committed leaderboard of a contest.
    Reads persisted ranks, so an in-flight recompute never blocks or tears the result.
    """
    try:
        result = LeaderboardCalculator(db).get_leaderboard(
            contest_id, page=page, limit=limit, sort_by=sort_by, order=order
        )
    except LeaderboardError as e:
        raise to_http_exception(e)
    logger.info("leaderboard_query", extra={"contest_id": contest_id})
    return result


@router.get("/{contest_id}/leaderboard/users/{user_id}", response_model=LeaderboardEntry)
def get_user_ranking(contest_id: str, user_id: str, db: Session = Depends(get_db)):
    try:
        return LeaderboardCalculator(db).get_user_entry(contest_id, user_id)
    except LeaderboardError as e:
        raise to_http_exception(e)


@router.get("/{contest_id}/leaderboard/export", response_class=PlainTextResponse)
def export_leaderboard(contest_id: str, db: Session = Depends(get_db)):
    """Persisted ranking as a CSV download."""
    try:
        content = LeaderboardCalculator(db).export_csv(contest_id)
    except LeaderboardError as e:
        raise to_http_exception(e)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="leaderboard-{contest_id}.csv"'},
    )


@router.get("/{contest_id}/leaderboard/snapshot")
def get_latest_snapshot(contest_id: str):
    """Latest broadcast snapshot, for clients that poll instead of holding a WebSocket."""
    try:
        payload = leaderboard_broadcaster.latest(contest_id)
    except Exception as e:
        logger.error(f"Snapshot lookup failed: {str(e)}", extra={"contest_id": contest_id})
        raise HTTPException(503, "Live leaderboard unavailable")
    if payload is None:
        raise HTTPException(404, "No leaderboard snapshot published yet")
    return Response(content=payload, media_type="application/json")


@router.post("/{contest_id}/leaderboard/recompute", response_model=LeaderboardSnapshot)
def recompute_leaderboard(contest_id: str, db: Session = Depends(get_db)):
    """Recompute now and return the committed snapshot."""
    try:
        return LeaderboardCalculator(db, leaderboard_broadcaster).recompute(contest_id)
    except LeaderboardError as e:
        raise to_http_exception(e)
