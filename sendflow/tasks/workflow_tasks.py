"""
SendFlow Workflow Tasks
Periodic sweep of due executions and background bulk enrollment.
Tasks expect an application context (see celery_worker.py).
"""
import logging

from flask import current_app

from sendflow.celery_app import celery_app
from sendflow.exceptions import SendFlowError
from sendflow.services.automation.enrollment import get_enrollment_manager
from sendflow.services.automation.workflow_engine import get_step_executor

logger = logging.getLogger(__name__)


# ============================================
# PERIODIC TASKS
# ============================================
@celery_app.task
def sweep_due_executions():
    """Advance every due execution by one node"""
    executor = get_step_executor()

    if current_app.config.get('WORKFLOW_SWEEP_FANOUT'):
        execution_ids = executor.due_execution_ids()
        for execution_id in execution_ids:
            advance_execution.delay(execution_id)
        return {'queued': len(execution_ids)}

    return executor.sweep()


@celery_app.task
def advance_execution(execution_id):
    """Single tick, used when the sweep fans out"""
    return get_step_executor().advance(execution_id)


# ============================================
# BULK ENROLLMENT
# ============================================
@celery_app.task(bind=True)
def process_bulk_enrollment(self, workflow_id, contact_filter, batch_size=None):
    """Enroll every contact matching the filter in the background"""
    batch_size = batch_size or current_app.config.get('BULK_ENROLL_BATCH_SIZE', 50)
    logger.info(f"Starting bulk enrollment into {workflow_id} (task {self.request.id})")

    try:
        result = get_enrollment_manager().enroll_all_by_filter(
            workflow_id, contact_filter, batch_size=batch_size)
    except SendFlowError as e:
        logger.error(f"Bulk enrollment into {workflow_id} failed: {e}")
        return {'success': False, 'error': str(e)}

    logger.info(f"Bulk enrollment into {workflow_id} done: {result['enrolled']} enrolled, "
                f"{result['skipped']} skipped")
    return {'success': True, **result}
