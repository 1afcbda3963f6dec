"""delivery_monitor/workers/celery_app.py — Celery application instance and configuration.

The single `celery_app` object is imported by:
  - delivery_monitor/workers/tasks.py    (task definitions)
  - CLI startup commands                 (celery -A delivery_monitor.workers.celery_app worker -Q deliveries)
"""
from celery import Celery

from delivery_monitor.config import settings

celery_app = Celery(
    "delivery_monitor",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["delivery_monitor.workers.tasks"],
)

celery_app.conf.update(
    # Serialisation
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # All monitor wakes go through one queue
    task_default_queue=settings.CELERY_TASK_QUEUE,
    # Time limits — soft limit abandons the cycle; hard limit terminates the task
    task_soft_time_limit=120,  # seconds
    task_time_limit=180,       # seconds
    # Ack after the cycle; a lost worker redelivers the wake
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Must exceed the longest countdown
    broker_transport_options={"visibility_timeout": 43200},
    task_ignore_result=True,
    # Timezone
    timezone="UTC",
    enable_utc=True,
    task_always_eager=False,
)
