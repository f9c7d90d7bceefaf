from celery import Celery

from invitemarket.core.config import settings

celery = Celery(
    "market-worker",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    accept_content=["json"],
    task_ignore_result=True,
    broker_connection_retry_on_startup=True,
    task_default_queue="default",
    # notification delivery only; purchases never go through the broker
    task_routes={"worker.tasks.process_outbox_event": {"queue": "outbox"}},
)
