from celery import Celery
from celery.signals import task_prerun, task_postrun, task_failure, task_retry, worker_init
from skillport.core.config import settings
import logging
from skillport.core.metrics import start_worker_metrics_server
from skillport.core.logging_config import setup_logging

celery_app = Celery(
    "leaderboard",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_time_limit=120,
    task_reject_on_worker_lost=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
    task_routes={
        "skillport.core.celery.recompute_leaderboard_task": {"queue": "leaderboard"},
        "skillport.core.celery.refresh_active_leaderboards_task": {"queue": "leaderboard"},
    },
    beat_schedule={
        "refresh-active-leaderboards": {
            "task": "skillport.core.celery.refresh_active_leaderboards_task",
            "schedule": float(settings.LEADERBOARD_REFRESH_INTERVAL_SECONDS),
        },
    },
)


@worker_init.connect
def setup_observability(sender=None, **kwargs):
    # Structured JSON logging and /metrics for the worker process
    setup_logging()
    logger = logging.getLogger(__name__)
    logger.info("Setting up observability for Celery worker")
    start_worker_metrics_server()


# ---- Celery task lifecycle structured logs ----

def _contest_id_from(args, kwargs):
    if isinstance(kwargs, dict) and kwargs.get("contest_id"):
        return kwargs.get("contest_id")
    if isinstance(args, (list, tuple)) and len(args) > 0 and isinstance(args[0], str):
        return args[0]
    return None


@task_prerun.connect
def _on_task_start(task_id=None, task=None, args=None, kwargs=None, **extra_kwargs):
    logging.getLogger("celery.task").info(
        "task_started",
        extra={
            "task_name": getattr(task, "name", None),
            "task_id": task_id,
            "contest_id": _contest_id_from(args, kwargs),
        },
    )


@task_postrun.connect
def _on_task_success(task_id=None, task=None, args=None, kwargs=None, retval=None, state=None, **extra_kwargs):
    logging.getLogger("celery.task").info(
        "task_finished",
        extra={
            "task_name": getattr(task, "name", None),
            "task_id": task_id,
            "contest_id": _contest_id_from(args, kwargs),
            "stage": state,
        },
    )


@task_failure.connect
def _on_task_failure(task_id=None, exception=None, args=None, kwargs=None, traceback=None, einfo=None, sender=None, **extra_kwargs):
    logging.getLogger("celery.task").error(
        f"task_failed: {str(exception)}",
        extra={
            "task_name": getattr(sender, "name", None),
            "task_id": task_id,
            "contest_id": _contest_id_from(args, kwargs),
        },
    )


@task_retry.connect
def _on_task_retry(request=None, reason=None, einfo=None, **extra_kwargs):
    logging.getLogger("celery.task").warning(
        f"task_retry: {str(reason)}",
        extra={
            "task_name": getattr(getattr(request, "task", None), "name", None),
            "task_id": getattr(request, "id", None),
            "contest_id": _contest_id_from(getattr(request, "args", None), getattr(request, "kwargs", None)),
        },
    )


@celery_app.task(bind=True, max_retries=3)
def recompute_leaderboard_task(self, contest_id: str):
    """Celery task to recompute, persist and broadcast one contest leaderboard"""
    from skillport.core.errors import ConflictError, NotFoundError, TransientError
    from skillport.db.session import SessionLocal
    from skillport.services.broadcast import leaderboard_broadcaster
    from skillport.services.leaderboard import LeaderboardCalculator

    db = SessionLocal()
    try:
        snapshot = LeaderboardCalculator(db, leaderboard_broadcaster).recompute(contest_id)
        return {
            "status": "committed",
            "contest_id": contest_id,
            "participants": len(snapshot.entries),
            "computed_at": snapshot.computed_at.isoformat(),
        }
    except NotFoundError as exc:
        return {"status": "not_found", "contest_id": contest_id, "error": exc.message}
    except (TransientError, ConflictError) as exc:
        raise self.retry(exc=exc, countdown=5)
    finally:
        db.close()


@celery_app.task
def refresh_active_leaderboards_task():
    """Periodic refresh: apply contest status transitions, then re-rank running contests.

    Contests that just completed get one final recompute for their closing standings.
    """
    from skillport.db.session import SessionLocal
    from skillport.models import Contest, ContestStatus
    from skillport.services.contests import refresh_contest_statuses

    logger = logging.getLogger(__name__)
    db = SessionLocal()
    try:
        changed = refresh_contest_statuses(db)
        just_completed = {cid for cid, _, new in changed if new == ContestStatus.COMPLETED}
        active = {
            cid for (cid,) in db.query(Contest.id).filter(Contest.status == ContestStatus.ACTIVE).all()
        }
    finally:
        db.close()

    contest_ids = sorted(active | just_completed)
    for contest_id in contest_ids:
        recompute_leaderboard_task.delay(contest_id)
    logger.info(f"Queued {len(contest_ids)} leaderboard refreshes", extra={"stage": "refresh"})
    return {"transitions": len(changed), "queued": contest_ids}
