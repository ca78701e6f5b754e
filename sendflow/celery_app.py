"""
SendFlow Celery Configuration
=============================
"""
from celery import Celery

from sendflow.config.settings import settings

celery_app = Celery(
    'sendflow',
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=['sendflow.tasks.workflow_tasks']
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    task_acks_late=True,
    worker_prefetch_multiplier=4,
    task_soft_time_limit=3600,
    task_time_limit=7200,
    result_expires=86400,

    beat_schedule={
        'sweep-workflow-executions': {
            'task': 'sendflow.tasks.workflow_tasks.sweep_due_executions',
            'schedule': settings.WORKFLOW_SWEEP_INTERVAL,
        },
    },
)
