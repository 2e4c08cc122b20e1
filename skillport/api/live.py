import asyncio
import logging

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from skillport.core.config import settings
from skillport.core.metrics import LIVE_VIEWERS
from skillport.services.broadcast import channel_for, latest_key_for

logger = logging.getLogger(__name__)
router = APIRouter()


async def get_async_redis():
    client = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=5)
    try:
        yield client
    finally:
        await client.aclose()


def _as_text(data) -> str:
    return data.decode("utf-8") if isinstance(data, bytes) else data


async def _forward_snapshots(websocket: WebSocket, pubsub) -> None:
    async for message in pubsub.listen():
        if message.get("type") == "message":
            await websocket.send_text(_as_text(message["data"]))


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Viewers do not send anything meaningful; reading only detects the close
    while True:
        await websocket.receive_text()


@router.websocket("/ws/contests/{contest_id}/leaderboard")
async def live_leaderboard(websocket: WebSocket, contest_id: str, client=Depends(get_async_redis)):
    """Push every committed leaderboard snapshot of a contest to this viewer.

    The latest stored snapshot is sent first; older snapshots are never replayed.
    """
    await websocket.accept()
    LIVE_VIEWERS.inc()
    pubsub = client.pubsub()
    tasks = []
    try:
        # Subscribe before reading the latest snapshot so nothing published in between is missed
        await pubsub.subscribe(channel_for(contest_id))
        latest = await client.get(latest_key_for(contest_id))
        if latest is not None:
            await websocket.send_text(_as_text(latest))

        tasks = [
            asyncio.create_task(_forward_snapshots(websocket, pubsub)),
            asyncio.create_task(_wait_for_disconnect(websocket)),
        ]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error(f"Live leaderboard stream failed: {str(exc)}", extra={"contest_id": contest_id})
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Live leaderboard subscription failed: {str(e)}", extra={"contest_id": contest_id})
        await websocket.close(code=1011)
    finally:
        for task in tasks:
            task.cancel()
        LIVE_VIEWERS.dec()
        try:
            await pubsub.unsubscribe(channel_for(contest_id))
            await pubsub.aclose()
        except Exception as e:
            logger.debug("live_pubsub_cleanup_failed", extra={"contest_id": contest_id, "error": str(e)})
