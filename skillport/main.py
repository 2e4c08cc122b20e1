from fastapi import FastAPI
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from skillport.api import contests, leaderboard, live, submissions
from skillport.db.session import init_db
from skillport.core.config import settings
from skillport.core.metrics import check_database_health, check_redis_health, init_fastapi_instrumentation
from skillport.core.logging_config import setup_logging
from skillport.services.broadcast import leaderboard_broadcaster
import datetime
import logging
import time
from uuid import uuid4

# Configure logging (JSON)
setup_logging()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="SkillPort Contest Leaderboard",
    description="Contest participation, ranking and live leaderboard API",
    version="1.0.0"
)

# Expose Prometheus /metrics immediately (not only on startup)
try:
    init_fastapi_instrumentation(app)
except Exception as _e:
    logger.exception("Prometheus metrics init failed", extra={"error": str(_e)})

_cors_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if "*" in _cors_origins else _cors_origins,
    allow_credentials=False if "*" in _cors_origins else True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event():
    init_db()
    logger.info("Database initialized successfully")

    # Broadcast is best-effort; the API keeps serving persisted ranks without Redis
    try:
        leaderboard_broadcaster.connect()
    except Exception as e:
        logger.warning("Live leaderboard broadcaster unavailable at startup", extra={"error": str(e)})


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_logger = logging.getLogger("request")
    start = time.perf_counter()
    request_id = str(uuid4())
    client = request.client.host if request.client else "-"

    try:
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)
        request_logger.info(
            "request_completed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": getattr(response, "status_code", 0),
                "duration_ms": duration_ms,
                "client": client,
            },
        )
        response.headers["X-Request-ID"] = request_id
        return response
    except Exception:
        duration_ms = int((time.perf_counter() - start) * 1000)
        request_logger.exception(
            "request_failed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": 500,
                "duration_ms": duration_ms,
                "client": client,
            },
        )
        raise


# Include API routes
app.include_router(contests.router, prefix="/api/contests", tags=["contests"])
app.include_router(leaderboard.router, prefix="/api/contests", tags=["leaderboard"])
app.include_router(submissions.router, prefix="/api", tags=["submissions"])
app.include_router(live.router, tags=["live"])


@app.get("/health")
def health_check():
    """Liveness + readiness: database is required, Redis only degrades live updates."""
    statuses = {
        "database": "ok" if check_database_health() else "error",
        "redis": "ok" if check_redis_health() else "error",
    }
    healthy = statuses["database"] == "ok"
    status = "healthy" if healthy and statuses["redis"] == "ok" else ("degraded" if healthy else "unhealthy")
    timestamp = datetime.datetime.utcnow().isoformat()

    if status != "healthy":
        logger.error("health_check_failed", extra={"status": status, "components": statuses})
    else:
        logger.info("health_check_passed", extra={"status": status, "components": statuses})

    return {"status": status, "components": statuses, "timestamp": timestamp}
