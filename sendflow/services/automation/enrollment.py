"""
Enrollment Manager
Puts contacts into workflows (single, bulk list, bulk by filter), cancels
executions, and answers operator questions about who is where.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from sendflow import db
from sendflow.exceptions import EnrollmentError, NotFoundError, WorkflowValidationError
from sendflow.models.ab_tests import WorkflowNodeABTest
from sendflow.models.contacts import Contact
from sendflow.models.workflows import (
    Workflow, WorkflowVersion, WorkflowExecution, DeliveryReceipt, ACTIVE_STATUSES
)
from sendflow.services.automation.graph import WorkflowGraph
from sendflow.services.automation.validator import validate
from sendflow.services.contact_store import get_contact_store
from sendflow.utils import utcnow

logger = logging.getLogger(__name__)

CANCEL_ATTEMPTS = 3


def parse_datetime(value) -> Optional[datetime]:
    """ISO string or epoch milliseconds to naive UTC"""
    if value is None or value == '':
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc).replace(tzinfo=None)
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class EnrollmentManager:
    def __init__(self, contacts=None, clock=None):
        self.contacts = contacts or get_contact_store()
        self.clock = clock or utcnow

    # ==================== ENROLLMENT ====================

    def _load_enrollable(self, workflow_id: str):
        workflow = db.session.get(Workflow, workflow_id)
        if not workflow:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        if not workflow.is_active:
            raise EnrollmentError(f"Workflow {workflow.name} is not active")

        version = db.session.get(WorkflowVersion, workflow.current_version_id) \
            if workflow.current_version_id else None
        if version is None:
            raise EnrollmentError(f"Workflow {workflow.name} has no published version")

        errors = validate(version.nodes_list, version.edges_list)
        if errors:
            raise WorkflowValidationError(errors)

        trigger = WorkflowGraph.from_json(version.nodes_list, version.edges_list).trigger()
        return workflow, version, trigger

    def _initial_schedule(self, workflow: Workflow, now: datetime) -> datetime:
        if workflow.trigger_type == 'date_time':
            config = workflow.trigger_config_dict
            target = parse_datetime(config.get('dateTime') or config.get('scheduledAt'))
            if target and target > now:
                return target
        return now

    def _active_execution(self, workflow_id: str, contact_id: str) -> Optional[WorkflowExecution]:
        return WorkflowExecution.query.filter(
            WorkflowExecution.workflow_id == workflow_id,
            WorkflowExecution.contact_id == contact_id,
            WorkflowExecution.status.in_(ACTIVE_STATUSES),
        ).first()

    def _new_execution(self, workflow, version, trigger, contact, now, trigger_data=None):
        name = f"{contact.first_name or ''} {contact.last_name or ''}".strip()
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            workflow_version_id=version.id,
            contact_id=contact.id,
            contact_email=contact.email,
            status='pending',
            current_node_id=trigger.id,
            scheduled_for=self._initial_schedule(workflow, now),
        )
        execution.data = {
            'trigger_type': workflow.trigger_type,
            'trigger_data': trigger_data or {},
            'contact_name': name or None,
            'enrolled_at': now.isoformat(),
        }
        return execution

    def _bump_enrolled(self, workflow_id: str, count: int, now: datetime):
        if count:
            Workflow.query.filter_by(id=workflow_id).update({
                Workflow.total_enrolled: Workflow.total_enrolled + count,
                Workflow.last_executed_at: now,
            }, synchronize_session=False)

    def enroll(self, workflow_id: str, contact_id: str, trigger_data: Dict = None) -> WorkflowExecution:
        """Enroll one contact; returns the already-active execution when there is one"""
        workflow, version, trigger = self._load_enrollable(workflow_id)

        contact = self.contacts.get_contact(contact_id)
        if not contact:
            raise NotFoundError(f"Contact {contact_id} not found")
        if contact.is_unsubscribed:
            raise EnrollmentError(f"Contact {contact.email} is unsubscribed")

        existing = self._active_execution(workflow_id, contact_id)
        if existing:
            logger.info(f"Contact {contact.email} already enrolled in {workflow.name}")
            return existing

        now = self.clock()
        execution = self._new_execution(workflow, version, trigger, contact, now, trigger_data)
        db.session.add(execution)
        try:
            db.session.flush()
        except IntegrityError:
            # Lost a race with a concurrent enrollment of the same contact
            db.session.rollback()
            return self._active_execution(workflow_id, contact_id)

        self._bump_enrolled(workflow_id, 1, now)
        db.session.commit()

        logger.info(f"Enrolled {contact.email} in workflow {workflow.name}")
        return execution

    def _enroll_contacts(self, workflow, version, trigger, contacts: Iterable[Contact],
                         seen: set, result: Dict, now: datetime):
        contacts = [(c.id, c) for c in contacts]
        if not contacts:
            return

        for attempt in range(2):
            active = {
                row[0] for row in db.session.query(WorkflowExecution.contact_id).filter(
                    WorkflowExecution.workflow_id == workflow.id,
                    WorkflowExecution.contact_id.in_([cid for cid, _ in contacts]),
                    WorkflowExecution.status.in_(ACTIVE_STATUSES),
                ).all()
            }

            batch_seen = set()
            skipped = 0
            errors = []
            new_executions = []
            for contact_id, contact in contacts:
                if contact_id in active or contact_id in seen or contact_id in batch_seen:
                    skipped += 1
                    continue
                batch_seen.add(contact_id)
                if contact.is_unsubscribed:
                    errors.append(f"Contact {contact_id} is unsubscribed")
                    continue
                new_executions.append(self._new_execution(workflow, version, trigger, contact, now))

            db.session.add_all(new_executions)
            try:
                db.session.flush()
            except IntegrityError:
                # A concurrent enrollment landed in between; recompute the batch once
                db.session.rollback()
                if attempt:
                    raise
                logger.warning(f"Enrollment race on workflow {workflow.id}, retrying batch")
                contacts = [(cid, db.session.get(Contact, cid)) for cid, _ in contacts]
                contacts = [(cid, c) for cid, c in contacts if c is not None]
                continue
            break

        seen.update(batch_seen)
        self._bump_enrolled(workflow.id, len(new_executions), now)
        result['enrolled'] += len(new_executions)
        result['skipped'] += skipped
        result['errors'].extend(errors)

    def enroll_bulk(self, workflow_id: str, contact_ids: List[str]) -> Dict:
        """Enroll a list of contacts; already-active pairs are skipped"""
        workflow, version, trigger = self._load_enrollable(workflow_id)
        result = {'enrolled': 0, 'skipped': 0, 'errors': []}

        contacts = []
        for contact_id in contact_ids:
            contact = self.contacts.get_contact(contact_id)
            if not contact:
                result['errors'].append(f"Contact {contact_id} not found")
                continue
            contacts.append(contact)

        self._enroll_contacts(workflow, version, trigger, contacts, set(), result, self.clock())
        db.session.commit()

        logger.info(f"Bulk enrollment into {workflow.name}: {result['enrolled']} enrolled, "
                    f"{result['skipped']} skipped, {len(result['errors'])} errors")
        return result

    def enroll_all_by_filter(self, workflow_id: str, contact_filter: Dict,
                             batch_size: int = 50) -> Dict:
        """Stream every contact matching the filter into the workflow, committing per batch"""
        workflow, version, trigger = self._load_enrollable(workflow_id)
        result = {'enrolled': 0, 'skipped': 0, 'errors': [], 'batches': 0}
        seen = set()

        for batch in self.contacts.iter_contact_batches(contact_filter, batch_size=batch_size):
            self._enroll_contacts(workflow, version, trigger, batch, seen, result, self.clock())
            db.session.commit()
            result['batches'] += 1
            logger.info(f"Enrolled batch {result['batches']} into {workflow.name}: "
                        f"{result['enrolled']} total")

        return result

    # ==================== CANCELLATION ====================

    def _cancel_execution(self, execution: WorkflowExecution, reason: str) -> bool:
        if execution.is_terminal:
            return False
        execution.status = 'cancelled'
        execution.completed_at = self.clock()
        execution.error_message = reason
        Workflow.query.filter_by(id=execution.workflow_id).update(
            {Workflow.cancelled: Workflow.cancelled + 1}, synchronize_session=False)
        return True

    def cancel(self, execution_id: str, reason: str = 'Cancelled') -> WorkflowExecution:
        """Cancel an execution; terminal executions are left as they are"""
        for _ in range(CANCEL_ATTEMPTS):
            execution = db.session.get(WorkflowExecution, execution_id)
            if not execution:
                raise NotFoundError(f"Execution {execution_id} not found")
            changed = self._cancel_execution(execution, reason)
            try:
                db.session.commit()
            except StaleDataError:
                # A tick advanced it meanwhile; reload and decide again
                db.session.rollback()
                continue
            if changed:
                logger.info(f"Cancelled execution {execution_id}")
            return execution
        raise EnrollmentError(f"Execution {execution_id} kept changing; cancel not applied")

    def cancel_for_contact(self, contact_id: str, workflow_id: str = None,
                           reason: str = 'Contact unsubscribed') -> int:
        query = WorkflowExecution.query.filter(
            WorkflowExecution.contact_id == contact_id,
            WorkflowExecution.status.in_(ACTIVE_STATUSES),
        )
        if workflow_id:
            query = query.filter(WorkflowExecution.workflow_id == workflow_id)

        cancelled = 0
        for execution_id in [e.id for e in query.all()]:
            execution = self.cancel(execution_id, reason)
            if execution.status == 'cancelled':
                cancelled += 1
        return cancelled

    def skip_delay(self, execution_id: str) -> WorkflowExecution:
        """Make a waiting execution due now"""
        execution = db.session.get(WorkflowExecution, execution_id)
        if not execution:
            raise NotFoundError(f"Execution {execution_id} not found")
        if not execution.is_active:
            raise EnrollmentError(f"Execution {execution_id} is {execution.status}")
        execution.scheduled_for = self.clock()
        data = execution.data
        data.pop('wait', None)
        execution.data = data
        db.session.commit()
        return execution

    # ==================== VISIBILITY ====================

    def get_executions_at_node(self, workflow_id: str, node_id: str, limit: int = 100) -> List[Dict]:
        rows = (
            db.session.query(WorkflowExecution, Contact)
            .outerjoin(Contact, Contact.id == WorkflowExecution.contact_id)
            .filter(
                WorkflowExecution.workflow_id == workflow_id,
                WorkflowExecution.current_node_id == node_id,
                WorkflowExecution.status.in_(ACTIVE_STATUSES),
            )
            .order_by(WorkflowExecution.scheduled_for)
            .limit(limit)
            .all()
        )

        results = []
        for execution, contact in rows:
            name = None
            if contact and contact.first_name:
                name = f"{contact.first_name} {contact.last_name or ''}".strip()
            results.append({
                'execution_id': execution.id,
                'contact_id': execution.contact_id,
                'email': execution.contact_email,
                'name': name,
                'status': execution.status,
                'scheduled_for': execution.scheduled_for.isoformat() if execution.scheduled_for else None,
                'started_at': execution.started_at.isoformat() if execution.started_at else None,
            })
        return results

    def get_status_summary(self, workflow_id: str) -> Dict:
        now = self.clock()
        counts = dict(
            db.session.query(WorkflowExecution.status, func.count(WorkflowExecution.id))
            .filter(WorkflowExecution.workflow_id == workflow_id)
            .group_by(WorkflowExecution.status)
            .all()
        )

        pending = WorkflowExecution.query.filter(
            WorkflowExecution.workflow_id == workflow_id,
            WorkflowExecution.status.in_(ACTIVE_STATUSES),
        )
        overdue = pending.filter(WorkflowExecution.scheduled_for <= now).count()

        by_node = dict(
            db.session.query(WorkflowExecution.current_node_id, func.count(WorkflowExecution.id))
            .filter(
                WorkflowExecution.workflow_id == workflow_id,
                WorkflowExecution.status.in_(ACTIVE_STATUSES),
            )
            .group_by(WorkflowExecution.current_node_id)
            .all()
        )

        active_total = counts.get('pending', 0) + counts.get('running', 0)
        return {
            'total': sum(counts.values()),
            'pending': counts.get('pending', 0),
            'running': counts.get('running', 0),
            'completed': counts.get('completed', 0),
            'failed': counts.get('failed', 0),
            'cancelled': counts.get('cancelled', 0),
            'overdue': overdue,
            'scheduled': active_total - overdue,
            'by_node': by_node,
        }

    # ==================== DELETION ====================

    def delete_workflow(self, workflow_id: str) -> Dict:
        """Cancel then delete every execution, then the workflow itself"""
        workflow = db.session.get(Workflow, workflow_id)
        if not workflow:
            raise NotFoundError(f"Workflow {workflow_id} not found")

        workflow.is_active = False
        execution_ids = [row[0] for row in db.session.query(WorkflowExecution.id).filter(
            WorkflowExecution.workflow_id == workflow_id).all()]

        WorkflowExecution.query.filter(
            WorkflowExecution.workflow_id == workflow_id,
            WorkflowExecution.status.in_(ACTIVE_STATUSES),
        ).update({'status': 'cancelled', 'completed_at': self.clock()}, synchronize_session=False)

        if execution_ids:
            DeliveryReceipt.query.filter(DeliveryReceipt.execution_id.in_(execution_ids)).delete(
                synchronize_session=False)
        WorkflowExecution.query.filter_by(workflow_id=workflow_id).delete(synchronize_session=False)

        for test in WorkflowNodeABTest.query.filter_by(workflow_id=workflow_id).all():
            db.session.delete(test)
        workflow.current_version_id = None
        db.session.flush()
        WorkflowVersion.query.filter_by(workflow_id=workflow_id).delete(synchronize_session=False)
        db.session.delete(workflow)
        db.session.commit()

        logger.info(f"Deleted workflow {workflow_id} and {len(execution_ids)} executions")
        return {'deleted': True, 'executions_deleted': len(execution_ids)}


_enrollment_manager = None


def get_enrollment_manager() -> EnrollmentManager:
    global _enrollment_manager
    if _enrollment_manager is None:
        _enrollment_manager = EnrollmentManager()
    return _enrollment_manager
