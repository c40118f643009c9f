from celery import Celery
from celery.schedules import crontab

from core.config import settings

# Use Redis for production/development
broker_url = settings.REDIS_URL
backend_url = settings.REDIS_URL

# Create Celery app
celery_app = Celery(
    "marketplace_core",
    broker=broker_url,
    backend=backend_url,
    include=[
        "tasks.notification_tasks",
        "tasks.disbursement_tasks",
        "tasks.maintenance_tasks",
    ],
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    task_always_eager=False,
    task_eager_propagates=False,
    beat_schedule={
        "release-balances": {
            "task": "tasks.maintenance_tasks.release_balances_task",
            "schedule": crontab(minute=0),  # hourly
        },
        "auto-confirm-delivery": {
            "task": "tasks.maintenance_tasks.auto_confirm_delivery_task",
            "schedule": crontab(minute=30, hour="*/6"),
        },
        "check-stale-payouts": {
            "task": "tasks.maintenance_tasks.check_stale_payouts_task",
            "schedule": crontab(minute=15, hour="*/12"),
        },
        "low-stock-alerts": {
            "task": "tasks.maintenance_tasks.check_low_stock_task",
            "schedule": crontab(minute=45, hour="*/4"),
        },
    },
)
