import json
import logging
from typing import Optional

import redis

from skillport.core.config import settings
from skillport.core.metrics import LEADERBOARD_BROADCASTS_TOTAL
from skillport.schemas.leaderboard import LeaderboardSnapshot, LiveLeaderboardMessage

logger = logging.getLogger(__name__)

CHANNEL_KEY = "leaderboard:contest:{contest_id}"
LATEST_KEY = "leaderboard:contest:{contest_id}:latest"

# Store and publish only when no newer snapshot is already stored.
# KEYS: latest key, channel. ARGV: payload, computed_at, ttl seconds.
# Returns the receiver count, or -1 when the stored snapshot is newer.
PUBLISH_IF_NEWER_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current then
    local stored_at = cjson.decode(current)['computed_at']
    if stored_at and stored_at > ARGV[2] then
        return -1
    end
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[3])
return redis.call('PUBLISH', KEYS[2], ARGV[1])
"""
SUPERSEDED = -1


def channel_for(contest_id: str) -> str:
    return CHANNEL_KEY.format(contest_id=contest_id)


def latest_key_for(contest_id: str) -> str:
    return LATEST_KEY.format(contest_id=contest_id)


class LeaderboardBroadcaster:
    """Fire-and-forget fan-out of committed leaderboard snapshots over Redis pub/sub.

    The latest snapshot per contest is also stored so that viewers who
    subscribe later get the current state first.
    """

    def __init__(self, redis_client=None, top_n: Optional[int] = None, ttl_seconds: Optional[int] = None):
        self.redis_client = redis_client
        self.top_n = top_n or settings.LEADERBOARD_BROADCAST_TOP_N
        self.ttl_seconds = ttl_seconds or settings.LEADERBOARD_SNAPSHOT_TTL_SECONDS

    def connect(self):
        """Connect to Redis with proper configuration"""
        try:
            self.redis_client = redis.from_url(
                settings.REDIS_URL,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True
            )
            self.redis_client.ping()
            logger.info("Connected to Redis leaderboard broadcaster")
        except Exception as e:
            self.redis_client = None
            logger.critical(f"Failed to connect to Redis: {str(e)}")
            raise

    def publish(self, snapshot: LeaderboardSnapshot) -> bool:
        """Store and publish the top rows of ``snapshot``.

        A snapshot older than the stored one is dropped, so a slow recompute
        never replaces a newer one. Returns False when the snapshot was dropped
        or the transport failed; errors are logged only.
        """
        message = LiveLeaderboardMessage.from_snapshot(snapshot, self.top_n)
        payload = message.model_dump_json()
        # Same serialization as the stored payload, so the script compares like with like
        computed_at = json.loads(payload)["computed_at"]
        try:
            if self.redis_client is None:
                self.connect()
            publish_if_newer = self.redis_client.register_script(PUBLISH_IF_NEWER_SCRIPT)
            receivers = publish_if_newer(
                keys=[latest_key_for(snapshot.contest_id), channel_for(snapshot.contest_id)],
                args=[payload, computed_at, self.ttl_seconds],
            )
        except Exception as e:
            LEADERBOARD_BROADCASTS_TOTAL.labels(outcome="failed").inc()
            logger.error(
                f"Failed to broadcast leaderboard snapshot: {str(e)}",
                extra={"contest_id": snapshot.contest_id},
            )
            return False

        if receivers == SUPERSEDED:
            LEADERBOARD_BROADCASTS_TOTAL.labels(outcome="superseded").inc()
            logger.info(
                "leaderboard_snapshot_superseded",
                extra={"contest_id": snapshot.contest_id},
            )
            return False

        LEADERBOARD_BROADCASTS_TOTAL.labels(outcome="published").inc()
        logger.info(
            "leaderboard_snapshot_published",
            extra={
                "contest_id": snapshot.contest_id,
                "participants": len(snapshot.entries),
                "receivers": receivers,
            },
        )
        return True

    def latest(self, contest_id: str) -> Optional[str]:
        """Latest stored snapshot as JSON text, if any."""
        if self.redis_client is None:
            self.connect()
        raw = self.redis_client.get(latest_key_for(contest_id))
        if raw is None:
            return None
        return raw.decode("utf-8") if isinstance(raw, bytes) else raw


# Global instance
leaderboard_broadcaster = LeaderboardBroadcaster()
