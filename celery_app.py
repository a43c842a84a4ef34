"""Celery configuration for out-of-process memory writes."""
from celery import Celery

from config import Settings

settings = Settings.from_env()

MEMORY_QUEUE = 'memory'

# Create Celery instance
celery = Celery(
    'chat_memory',
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=['services.memory_tasks']  # Include task modules
)

# Memory writes are best-effort and must never run twice for one turn, so
# messages are acked on receipt and nothing is retried.
celery.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_ignore_result=True,
    task_acks_late=False,
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,
    task_routes={'write_memories': {'queue': MEMORY_QUEUE}},
    worker_prefetch_multiplier=4,
)

if __name__ == '__main__':
    celery.start()
