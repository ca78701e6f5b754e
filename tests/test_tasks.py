from sendflow import db
from sendflow.models import WorkflowExecution
from sendflow.tasks.workflow_tasks import process_bulk_enrollment, sweep_due_executions
from tests.factories import chain, email, node


def test_sweep_task_advances_due_executions(app, make_workflow, enrollments, make_contact, mailer):
    workflow = make_workflow([node('t', 'trigger'), email('e1')], chain('t', 'e1'))
    execution = enrollments.enroll(workflow.id, make_contact().id)

    counts = sweep_due_executions.delay().get()

    assert counts['processed'] == 1
    assert counts['advanced'] == 1
    assert db.session.get(WorkflowExecution, execution.id, populate_existing=True).current_node_id == 'e1'


def test_sweep_task_fans_out(app, make_workflow, enrollments, make_contact, mailer):
    app.config['WORKFLOW_SWEEP_FANOUT'] = True
    workflow = make_workflow([node('t', 'trigger'), email('e1')], chain('t', 'e1'))
    for _ in range(2):
        enrollments.enroll(workflow.id, make_contact().id)

    assert sweep_due_executions.delay().get() == {'queued': 2}
    assert WorkflowExecution.query.filter_by(current_node_id='e1').count() == 2


def test_bulk_enrollment_task(app, make_workflow, make_contact):
    workflow = make_workflow([node('t', 'trigger'), email('e1')], chain('t', 'e1'))
    for _ in range(3):
        make_contact()

    result = process_bulk_enrollment.delay(workflow.id, {'type': 'all'}, 2).get()

    assert result['success'] is True
    assert result['enrolled'] == 3
    assert result['batches'] == 2


def test_bulk_enrollment_task_reports_failure(app, make_workflow):
    draft = make_workflow([node('t', 'trigger'), email('e1')], chain('t', 'e1'), activate=False)

    result = process_bulk_enrollment.delay(draft.id, {'type': 'all'}).get()

    assert result['success'] is False
    assert 'not active' in result['error']
