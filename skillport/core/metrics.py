import os
import time
import logging
from typing import Optional

from prometheus_client import Counter, Histogram, Gauge, start_http_server

logger = logging.getLogger(__name__)


# ----------
# Core metrics
# ----------

# Leaderboard computation
LEADERBOARD_RECOMPUTATIONS_TOTAL = Counter(
    "leaderboard_recomputations_total",
    "Total leaderboard recomputations by outcome",
    labelnames=("outcome",),  # committed | not_found | conflict | transient | error
)

LEADERBOARD_RECOMPUTE_DURATION_SECONDS = Histogram(
    "leaderboard_recompute_duration_seconds",
    "Time spent recomputing and persisting a contest leaderboard",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

LEADERBOARD_CONFLICT_RETRIES_TOTAL = Counter(
    "leaderboard_conflict_retries_total",
    "Recomputations retried after a concurrent write was detected",
)

LEADERBOARD_RANKED_PARTICIPANTS = Histogram(
    "leaderboard_ranked_participants",
    "Participants ranked per recomputation",
    buckets=(0, 1, 10, 50, 100, 500, 1000, 5000),
)

# Read API
LEADERBOARD_QUERIES_TOTAL = Counter(
    "leaderboard_queries_total",
    "Total leaderboard queries",
    labelnames=("sort_by",),
)

LEADERBOARD_QUERY_DURATION_SECONDS = Histogram(
    "leaderboard_query_duration_seconds",
    "Duration of leaderboard page retrieval",
)

# Live broadcast
LEADERBOARD_BROADCASTS_TOTAL = Counter(
    "leaderboard_broadcasts_total",
    "Leaderboard snapshot broadcasts by outcome",
    labelnames=("outcome",),  # published | failed
)

LIVE_VIEWERS = Gauge(
    "leaderboard_live_viewers",
    "WebSocket viewers currently subscribed to a contest leaderboard",
)

# Submissions and participation
SUBMISSIONS_RECORDED_TOTAL = Counter(
    "submissions_recorded_total",
    "Total contest submissions recorded",
    labelnames=("verdict",),
)

PARTICIPANT_REGISTRATIONS_TOTAL = Counter(
    "participant_registrations_total",
    "Contest registrations by outcome",
    labelnames=("outcome",),  # registered | duplicate | full | closed
)

CONTEST_STATUS_TRANSITIONS_TOTAL = Counter(
    "contest_status_transitions_total",
    "Contest status transitions applied by the periodic refresh",
    labelnames=("to_status",),
)

# System health metrics
DATABASE_HEALTH = Gauge(
    "database_health",
    "Database connection health status (1=healthy, 0=unhealthy)",
)

REDIS_HEALTH = Gauge(
    "redis_health",
    "Redis connection health status (1=healthy, 0=unhealthy)",
)

DATABASE_HEALTH.set(0)  # Start as unhealthy until checked
REDIS_HEALTH.set(0)  # Start as unhealthy until checked


def check_database_health() -> bool:
    """Check database health and update metrics"""
    try:
        from skillport.db.session import engine
        from sqlalchemy import text
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        DATABASE_HEALTH.set(1)
        return True
    except Exception as e:
        DATABASE_HEALTH.set(0)
        logger.error(f"Database health check failed: {str(e)}")
        return False


def check_redis_health() -> bool:
    """Check Redis health and update metrics"""
    try:
        import redis
        from skillport.core.config import settings
        r = redis.from_url(settings.REDIS_URL, socket_timeout=2)
        r.ping()
        REDIS_HEALTH.set(1)
        return True
    except Exception as e:
        REDIS_HEALTH.set(0)
        logger.error(f"Redis health check failed: {str(e)}")
        return False


def init_fastapi_instrumentation(app) -> None:
    """Attach Prometheus HTTP instrumentation and expose /metrics.

    Imported lazily so worker processes don't need the FastAPI instrumentator.
    """
    try:
        from prometheus_fastapi_instrumentator import Instrumentator  # type: ignore
        from prometheus_client import REGISTRY
    except Exception as e:
        logger.warning("fastapi_instrumentator_unavailable", extra={"error": str(e)})
        return

    instrumentator = Instrumentator(registry=REGISTRY)
    instrumentator.instrument(app)
    instrumentator.expose(app, include_in_schema=False)


def start_worker_metrics_server(port: Optional[int] = None) -> None:
    """Start a Prometheus metrics HTTP server for the Celery worker process."""
    p = int(port or os.getenv("WORKER_METRICS_PORT", "9101"))
    try:
        start_http_server(p, addr="0.0.0.0")
        logger.info(f"Worker metrics server started on port {p}")
    except OSError as e:
        # Port already in use; ignore to prevent crash in forked workers
        logger.error(f"Failed to start worker metrics server on port {p}: {str(e)}")


class DurationTimer:
    """Simple context manager to measure durations with perf_counter."""

    def __init__(self):
        self._start = 0.0
        self.seconds = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.seconds = max(0.0, time.perf_counter() - self._start)
        return False
