from celery import Celery

from delisting_hub.core.config import settings


DELISTING_QUEUE = "delisting"

celery = Celery(
    "delisting-worker",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "worker.tasks.execute_delisting_job": {"queue": DELISTING_QUEUE},
    },
)


def enqueue_delisting_job(job_id: str) -> None:
    celery.send_task("worker.tasks.execute_delisting_job", args=[job_id], queue=DELISTING_QUEUE)
