"""SendFlow Celery tasks"""
