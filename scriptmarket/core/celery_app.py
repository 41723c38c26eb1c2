"""
Celery application: broker and result backend from settings.
Beat drives the marketplace sweeps; assignment dispatch runs on demand.
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging, worker_process_init

from scriptmarket.core.config import settings
from scriptmarket.core.logging import configure_logging
from scriptmarket.db.session import use_worker_pool

celery_app = Celery(
    "scriptmarket",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "scriptmarket.workers.tasks.assignments",
        "scriptmarket.workers.tasks.trial_cleanup",
        "scriptmarket.workers.tasks.tradingview_health",
        "scriptmarket.workers.tasks.payouts",
        "scriptmarket.ledger.tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=900,
    result_expires=86400,
    beat_schedule={
        "trial-cleanup": {
            "task": "scriptmarket.workers.tasks.trial_cleanup.expire_trials",
            "schedule": crontab(minute=0),
        },
        "tradingview-health": {
            "task": "scriptmarket.workers.tasks.tradingview_health.check_tradingview_sessions",
            "schedule": crontab(minute=30),
        },
        "settle-balances": {
            "task": "scriptmarket.ledger.tasks.settle_balances",
            "schedule": crontab(hour=2, minute=0),
        },
        "process-payouts": {
            "task": "scriptmarket.workers.tasks.payouts.process_payouts",
            "schedule": crontab(hour=4, minute=0, day_of_week="mon"),
        },
    },
)

celery_app.conf.task_routes = {
    "scriptmarket.workers.tasks.assignments.dispatch_assignment": {"queue": "assignments"},
}


@setup_logging.connect
def _configure_worker_logging(**_kwargs) -> None:
    configure_logging()


@worker_process_init.connect
def _init_worker_db_pool(**_kwargs) -> None:
    use_worker_pool()
