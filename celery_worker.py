#!/usr/bin/env python3
from sendflow.celery_app import celery_app
from sendflow import create_app

app = create_app()
app.app_context().push()

# Register tasks with the worker
import sendflow.tasks.workflow_tasks  # noqa: E402,F401

if __name__ == '__main__':
    celery_app.start()
