"""
Workflow Step Executor
======================
Advances due executions one node per tick.

A tick:
1. claims the execution row (FOR UPDATE SKIP LOCKED where supported)
2. runs the node handler, which returns a Transition
3. writes the transition under the optimistic version check

External side effects go through ``_run_once``: a DeliveryReceipt keyed by
(execution, node, step) is committed before the effect runs, so a tick that
is replayed after a crash skips the effect instead of repeating it.
"""
import logging
from datetime import timedelta
from functools import partial
from typing import Dict, List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from sendflow import db
from sendflow.exceptions import (
    EnrollmentError, ExecutionError, NotFoundError, TransientDeliveryError,
    WorkflowValidationError
)
from sendflow.models.course_cycles import CourseCycleEmail
from sendflow.models.workflows import (
    Workflow, WorkflowVersion, WorkflowExecution, DeliveryReceipt, EmailTemplate, ACTIVE_STATUSES
)
from sendflow.services.automation.ab_testing import get_ab_test_controller, stable_bucket
from sendflow.services.automation.conditions import resolve
from sendflow.services.automation.course_cycle import get_course_cycle_controller
from sendflow.services.automation.enrollment import get_enrollment_manager, parse_datetime
from sendflow.services.automation.graph import WorkflowGraph
from sendflow.services.automation.transitions import (
    COMPLETE, STAY, StepContext, Transition, delay_for
)
from sendflow.services.contact_store import get_contact_store
from sendflow.services.email_tracker import prepare_email_for_tracking
from sendflow.services.mail_dispatcher import get_mail_dispatcher
from sendflow.services.notifications import get_notification_dispatcher
from sendflow.services.webhook_client import get_webhook_client
from sendflow.utils import utcnow
from sendflow.utils.template_engine import personalize

logger = logging.getLogger(__name__)


class StepExecutor:
    """Runs ticks against due executions"""

    def __init__(self, contacts=None, mailer=None, notifier=None, webhooks=None,
                 ab=None, course=None, enrollment=None, clock=None):
        self.contacts = contacts or get_contact_store()
        self.ab = ab or get_ab_test_controller()
        self.course = course or get_course_cycle_controller()
        self.enrollment = enrollment or get_enrollment_manager()
        self.clock = clock or utcnow
        self._mailer = mailer
        self._notifier = notifier
        self._webhooks = webhooks

        self.handlers = {
            'trigger': self._handle_trigger,
            'email': self._handle_email,
            'delay': self._handle_delay,
            'condition': self._handle_condition,
            'action': self._handle_action,
            'webhook': self._handle_webhook,
            'notify': self._handle_notify,
            'split': self._handle_split,
            'goal': self._handle_goal,
            'stop': self._handle_stop,
            'courseCycle': self.course.handle_course_cycle,
            'courseEmail': self.course.handle_course_email,
            'purchaseCheck': self.course.handle_purchase_check,
            'cycleLoop': self.course.handle_cycle_loop,
        }

    # Collaborators resolve late so a swapped dispatcher is picked up
    @property
    def mailer(self):
        return self._mailer or get_mail_dispatcher()

    @property
    def notifier(self):
        return self._notifier or get_notification_dispatcher()

    @property
    def webhooks(self):
        return self._webhooks or get_webhook_client()

    # ==================== SWEEP ====================

    def due_execution_ids(self, limit: int = None) -> List[str]:
        limit = limit or current_app.config.get('WORKFLOW_SWEEP_BATCH_SIZE', 200)
        rows = db.session.query(WorkflowExecution.id).filter(
            WorkflowExecution.status.in_(ACTIVE_STATUSES),
            WorkflowExecution.scheduled_for <= self.clock(),
        ).order_by(WorkflowExecution.scheduled_for).limit(limit).all()
        return [r[0] for r in rows]

    def sweep(self, limit: int = None) -> Dict:
        """Advance every due execution by one node"""
        counts = {'processed': 0, 'errors': 0}
        for execution_id in self.due_execution_ids(limit):
            try:
                outcome = self.advance(execution_id)
            except Exception as e:
                # One bad execution never stops the sweep
                db.session.rollback()
                logger.error(f"Error advancing execution {execution_id}: {e}", exc_info=True)
                counts['errors'] += 1
                continue
            counts['processed'] += 1
            counts[outcome] = counts.get(outcome, 0) + 1

        if counts['processed'] or counts['errors']:
            logger.info(f"Workflow sweep: {counts}")
        return counts

    # ==================== TICK ====================

    def advance(self, execution_id: str) -> str:
        """Run one tick; returns what happened to the execution"""
        now = self.clock()
        execution = (
            WorkflowExecution.query
            .filter_by(id=execution_id)
            .with_for_update(skip_locked=True)
            .populate_existing()
            .first()
        )
        if execution is None or not execution.is_active:
            db.session.rollback()
            return 'skipped'
        if execution.scheduled_for and execution.scheduled_for > now:
            db.session.rollback()
            return 'not_due'

        try:
            return self._tick(execution, now)
        except StaleDataError:
            # Another worker (or a cancel) moved it first
            db.session.rollback()
            logger.info(f"Execution {execution_id} changed during tick, dropped")
            return 'stale'

    def _tick(self, execution: WorkflowExecution, now) -> str:
        workflow = db.session.get(Workflow, execution.workflow_id)
        if workflow is None:
            self._fail(execution, f"Workflow {execution.workflow_id} not found", now)
            db.session.commit()
            return 'failed'

        if self.contacts.is_unsubscribed(execution.contact_id):
            self._cancel(execution, 'Contact unsubscribed', now)
            db.session.commit()
            logger.info(f"Cancelled execution {execution.id}: contact unsubscribed")
            return 'cancelled'

        version = db.session.get(WorkflowVersion, execution.workflow_version_id)
        graph = WorkflowGraph.from_json(version.nodes_list if version else workflow.nodes_list,
                                        version.edges_list if version else workflow.edges_list)
        node = graph.node(execution.current_node_id)
        if node is None:
            self._fail(execution, f"Node {execution.current_node_id} not found in workflow", now)
            db.session.commit()
            return 'failed'

        ctx = StepContext(
            execution=execution,
            workflow=workflow,
            graph=graph,
            node=node,
            now=now,
            step=execution.step_count or 0,
            data=execution.data,
        )
        ctx.send_email = partial(self._send_email, ctx)
        claimed_version = execution.version

        try:
            handler = self.handlers.get(node.type)
            if handler is None:
                raise ExecutionError(f"Unknown node type: {node.type}")
            transition = handler(ctx)
        except TransientDeliveryError as e:
            db.session.rollback()
            if not self._reclaim(execution.id, claimed_version):
                return 'stale'
            return self._handle_transient(execution, node, e, now)
        except ExecutionError as e:
            db.session.rollback()
            if not self._reclaim(execution.id, claimed_version):
                return 'stale'
            logger.error(f"Execution {execution.id} failed at {node.type} node {node.id}: {e}")
            self._fail(execution, str(e), now)
            db.session.commit()
            return 'failed'

        if not self._reclaim(execution.id, claimed_version):
            return 'stale'
        outcome = self._apply(ctx, transition)
        db.session.commit()
        return outcome

    def _reclaim(self, execution_id: str, claimed_version: int) -> Optional[WorkflowExecution]:
        """Lock the row again before writing the tick's result.

        Receipts and goal chaining commit mid-tick, which releases the claim
        and reloads the row. Anything that moved the execution since the
        claim (a cancel, another worker) wins and this tick is dropped.
        """
        execution = (
            WorkflowExecution.query
            .filter_by(id=execution_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if execution is None or execution.version != claimed_version or not execution.is_active:
            db.session.rollback()
            logger.info(f"Execution {execution_id} changed during tick, dropped")
            return None
        return execution

    def _apply(self, ctx: StepContext, transition: Transition) -> str:
        execution = ctx.execution
        now = ctx.now

        execution.data = ctx.data
        if execution.status == 'pending':
            execution.status = 'running'
            execution.started_at = execution.started_at or now
        execution.step_count = (execution.step_count or 0) + 1
        execution.retry_count = 0
        execution.error_message = None

        Workflow.query.filter_by(id=execution.workflow_id).update(
            {Workflow.last_executed_at: now}, synchronize_session=False)

        if transition.kind == COMPLETE:
            self._complete(execution, now)
            logger.info(f"Execution {execution.id} completed: {transition.reason}")
            return 'completed'

        if transition.kind == STAY:
            execution.scheduled_for = now + (transition.delay or timedelta(0))
            return 'stayed'

        next_node = ctx.graph.node(transition.next_node_id)
        if next_node is None:
            raise ExecutionError(f"Node {transition.next_node_id} not found in workflow")
        execution.current_node_id = next_node.id

        delay = self.arrival_delay(ctx, next_node)
        if delay is None:
            delay = transition.delay or timedelta(0)
        execution.scheduled_for = now + delay
        logger.debug(f"Execution {execution.id} -> {next_node.type} node {next_node.id} "
                     f"at {execution.scheduled_for}")
        return 'advanced'

    def arrival_delay(self, ctx: StepContext, node) -> Optional[timedelta]:
        """Wait owed on arriving at ``node``; None defers to the transition"""
        if node.type == 'delay':
            return delay_for(node.data)
        if node.type == 'purchaseCheck':
            return self.course.purchase_check_delay(ctx)
        return None

    def _handle_transient(self, execution, node, error, now) -> str:
        retries = (execution.retry_count or 0) + 1
        max_retries = current_app.config.get('WORKFLOW_MAX_RETRIES', 3)
        if retries > max_retries:
            logger.error(f"Execution {execution.id} failed after {max_retries} retries: {error}")
            self._fail(execution, f"Retries exhausted: {error}", now)
            db.session.commit()
            return 'failed'

        base = current_app.config.get('WORKFLOW_RETRY_BASE_SECONDS', 60)
        backoff = timedelta(seconds=base * 2 ** (retries - 1))
        execution.retry_count = retries
        execution.error_message = str(error)
        execution.scheduled_for = now + backoff
        db.session.commit()
        logger.warning(f"Transient failure on execution {execution.id} node {node.id}, "
                       f"retry {retries}/{max_retries} in {backoff}")
        return 'retry'

    # ==================== TERMINAL STATES ====================

    def _complete(self, execution, now):
        execution.status = 'completed'
        execution.completed_at = now
        Workflow.query.filter_by(id=execution.workflow_id).update(
            {Workflow.completed: Workflow.completed + 1}, synchronize_session=False)

    def _fail(self, execution, message, now):
        execution.status = 'failed'
        execution.error_message = message
        execution.completed_at = now
        Workflow.query.filter_by(id=execution.workflow_id).update(
            {Workflow.failed: Workflow.failed + 1}, synchronize_session=False)

    def _cancel(self, execution, reason, now):
        execution.status = 'cancelled'
        execution.error_message = reason
        execution.completed_at = now
        Workflow.query.filter_by(id=execution.workflow_id).update(
            {Workflow.cancelled: Workflow.cancelled + 1}, synchronize_session=False)

    # ==================== SIDE EFFECTS ====================

    def _run_once(self, ctx: StepContext, effect, after=None, soft=False):
        """Run ``effect`` at most once for this (execution, node, step)"""
        receipt = DeliveryReceipt(
            execution_id=ctx.execution.id,
            node_id=ctx.node.id,
            step=ctx.step,
            node_type=ctx.node.type,
            status='pending',
        )
        db.session.add(receipt)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info(f"{ctx.node.type} node {ctx.node.id} already ran for execution "
                        f"{ctx.execution.id} step {ctx.step}, skipping")
            return None

        try:
            result = effect()
        except TransientDeliveryError:
            db.session.rollback()
            db.session.delete(receipt)
            db.session.commit()
            raise
        except ExecutionError as e:
            db.session.rollback()
            receipt.status = 'failed'
            receipt.result = str(e)[:1000]
            db.session.commit()
            if not soft:
                raise
            logger.warning(f"{ctx.node.type} node {ctx.node.id} failed, continuing: {e}")
            return None

        receipt.status = 'delivered'
        receipt.result = str(result)[:1000] if result is not None else None
        if after is not None:
            after()
        db.session.commit()
        return result

    def _send_email(self, ctx: StepContext, subject: str, html_body: str,
                    variant_id: str = None, course_email_id: str = None, after=None):
        contact = self.contacts.get_contact(ctx.contact_id)
        recipient = contact.email if contact else ctx.contact_email
        if not recipient:
            raise ExecutionError(f"Contact {ctx.contact_id} has no email address")
        merge = contact.to_dict() if contact else {'email': recipient}

        execution_id = ctx.execution.id
        workflow_id = ctx.workflow.id
        contact_id = ctx.contact_id
        node_id = ctx.node.id
        step = ctx.step

        def send():
            html, tracking_id = prepare_email_for_tracking(
                personalize(html_body or '', merge),
                execution_id, workflow_id, node_id, step, contact_id, recipient,
                variant_id=variant_id, course_email_id=course_email_id,
            )
            message_id = self.mailer.send(
                personalize(subject or '', merge),
                html,
                recipient,
                headers={
                    'X-SendFlow-Execution': execution_id,
                    'X-SendFlow-Node': node_id,
                    'X-SendFlow-Tracking': tracking_id,
                },
            )
            logger.info(f"Workflow email sent to {recipient} (node {node_id})")
            return message_id

        def sent():
            self.contacts.record_activity(contact_id, 'email_sent', workflow_id=workflow_id,
                                          execution_id=execution_id, node_id=node_id)
            if course_email_id:
                CourseCycleEmail.query.filter_by(id=course_email_id).update(
                    {CourseCycleEmail.sent_count: CourseCycleEmail.sent_count + 1},
                    synchronize_session=False)
            if after is not None:
                after()

        return self._run_once(ctx, send, after=sent)

    # ==================== NODE HANDLERS ====================

    def _handle_trigger(self, ctx: StepContext) -> Transition:
        return Transition.follow(ctx.graph, ctx.node)

    def _handle_stop(self, ctx: StepContext) -> Transition:
        return Transition.complete('Stop node reached')

    def _handle_delay(self, ctx: StepContext) -> Transition:
        # The wait was applied on arrival
        return Transition.follow(ctx.graph, ctx.node)

    def _email_content(self, data: Dict):
        if (data.get('mode') or 'custom') == 'template':
            template = db.session.get(EmailTemplate, data.get('templateId')) if data.get('templateId') else None
            if not template:
                raise ExecutionError(f"Email template {data.get('templateId')} not found")
            return data.get('subject') or template.subject, template.html_content
        return data.get('subject'), data.get('content') or data.get('body') or ''

    def _handle_email(self, ctx: StepContext) -> Transition:
        subject, body = self._email_content(ctx.node.data)

        variant_key = None
        after = None
        test = self.ab.get_test(ctx.workflow.id, ctx.node.id)
        if test and test.is_enabled:
            variant = self.ab.assign_variant(ctx.data, ctx.execution.id, ctx.node.id, test)
            if variant is not None:
                variant_key = variant.variant_key
                subject = variant.subject or subject
                body = variant.body or body
                after = partial(self.ab.record, test.id, variant_key, 'sent')

        if not subject:
            raise ExecutionError(f"Email node {ctx.node.id} has no subject")

        ctx.send_email(subject, body, variant_id=variant_key, after=after)
        return Transition.follow(ctx.graph, ctx.node)

    def _handle_condition(self, ctx: StepContext) -> Transition:
        data = ctx.node.data
        snapshot = self.contacts.snapshot(
            ctx.contact_id,
            enrolled_at=parse_datetime(ctx.data.get('enrolled_at')),
            now=ctx.now,
            execution_id=ctx.execution.id,
        )
        result = resolve(data.get('conditionType'), data, snapshot)
        logger.info(f"Condition {data.get('conditionType')} for {ctx.contact_email}: {result}")
        return Transition.follow(ctx.graph, ctx.node, handle='yes' if result else 'no')

    def _handle_action(self, ctx: StepContext) -> Transition:
        data = ctx.node.data
        action_type = data.get('actionType')
        tag_id = data.get('tagId')
        tag_name = data.get('tagName') or data.get('value')

        if action_type == 'add_tag':
            effect = partial(self.contacts.add_tag, ctx.contact_id, tag_id=tag_id, tag_name=tag_name)
        elif action_type == 'remove_tag':
            effect = partial(self.contacts.remove_tag, ctx.contact_id, tag_id=tag_id, tag_name=tag_name)
        else:
            raise ExecutionError(f"Unknown action type: {action_type}")

        self._run_once(ctx, lambda: effect().name)
        return Transition.follow(ctx.graph, ctx.node)

    def _handle_webhook(self, ctx: StepContext) -> Transition:
        data = ctx.node.data
        url = data.get('webhookUrl')
        if not url:
            logger.warning(f"Webhook node {ctx.node.id} has no URL, skipping")
            return Transition.follow(ctx.graph, ctx.node)

        contact = self.contacts.get_contact(ctx.contact_id)
        payload = {
            'event': 'workflow_webhook',
            'workflowId': ctx.workflow.id,
            'workflowName': ctx.workflow.name,
            'executionId': ctx.execution.id,
            'contact': {
                'email': ctx.contact_email,
                'firstName': contact.first_name if contact else None,
                'lastName': contact.last_name if contact else None,
            },
            'executionData': ctx.data,
            'timestamp': ctx.now.isoformat(),
        }

        self._run_once(
            ctx,
            partial(self.webhooks.call, url, payload, method=data.get('method') or 'POST',
                    secret=data.get('secret')),
            soft=True,
        )
        return Transition.follow(ctx.graph, ctx.node)

    def _handle_notify(self, ctx: StepContext) -> Transition:
        data = ctx.node.data
        self._run_once(
            ctx,
            partial(
                self.notifier.send,
                data.get('notifyMethod') or 'email',
                data.get('message') or 'Workflow notification triggered',
                ctx.contact_email,
                ctx.data.get('contact_name'),
                ctx.workflow.name,
                ctx.data.get('trigger_type'),
            ),
            soft=True,
        )
        return Transition.follow(ctx.graph, ctx.node)

    def _handle_split(self, ctx: StepContext) -> Transition:
        splits = ctx.data.setdefault('splits', {})
        path = splits.get(ctx.node.id)
        if path not in ('a', 'b'):
            percentage = float(ctx.node.data.get('splitPercentage', 50))
            path = 'a' if stable_bucket(ctx.execution.id, ctx.node.id) < percentage else 'b'
            splits[ctx.node.id] = path
        logger.info(f"Split {ctx.node.id}: {ctx.contact_email} -> path {path.upper()}")
        return Transition.follow(ctx.graph, ctx.node, handle=path, any_edge=True)

    def _handle_goal(self, ctx: StepContext) -> Transition:
        next_workflow_id = ctx.node.data.get('nextWorkflowId')
        if next_workflow_id:
            try:
                self.enrollment.enroll(next_workflow_id, ctx.contact_id,
                                       trigger_data={'source_workflow_id': ctx.workflow.id})
            except (EnrollmentError, NotFoundError, WorkflowValidationError) as e:
                logger.warning(f"Goal chaining to workflow {next_workflow_id} skipped: {e}")

        goals = ctx.data.setdefault('goals', {})
        if ctx.node.id not in goals:
            goals[ctx.node.id] = ctx.now.isoformat()
            Workflow.query.filter_by(id=ctx.workflow.id).update(
                {Workflow.goal_reached: Workflow.goal_reached + 1}, synchronize_session=False)
            logger.info(f"Goal {ctx.node.id} reached by {ctx.contact_email}")

        return Transition.follow(ctx.graph, ctx.node)


_step_executor = None


def get_step_executor() -> StepExecutor:
    global _step_executor
    if _step_executor is None:
        _step_executor = StepExecutor()
    return _step_executor
