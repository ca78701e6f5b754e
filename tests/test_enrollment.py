from datetime import timedelta

import pytest

from sendflow import db
from sendflow.exceptions import EnrollmentError, NotFoundError, WorkflowValidationError
from sendflow.models import ContactTag, Tag, Workflow, WorkflowExecution, WorkflowVersion
from sendflow.services.automation.enrollment import parse_datetime
from tests.factories import chain, email, node


@pytest.fixture
def workflow(make_workflow):
    nodes = [node('t', 'trigger'), email('e1'), node('d', 'delay', delay=1), email('e2')]
    return make_workflow(nodes, chain('t', 'e1', 'd', 'e2'))


def test_enroll_creates_pending_execution_at_trigger(workflow, enrollments, make_contact, clock):
    contact = make_contact(first_name='Grace', last_name='Hopper')
    execution = enrollments.enroll(workflow.id, contact.id)

    assert execution.status == 'pending'
    assert execution.current_node_id == 't'
    assert execution.scheduled_for == clock.now
    assert execution.contact_email == contact.email
    assert execution.data['contact_name'] == 'Grace Hopper'
    assert execution.data['enrolled_at'] == clock.now.isoformat()
    assert db.session.get(Workflow, workflow.id).total_enrolled == 1


def test_enroll_is_idempotent(workflow, enrollments, make_contact):
    contact = make_contact()
    first = enrollments.enroll(workflow.id, contact.id)
    second = enrollments.enroll(workflow.id, contact.id)

    assert first.id == second.id
    assert WorkflowExecution.query.filter_by(workflow_id=workflow.id).count() == 1
    assert db.session.get(Workflow, workflow.id).total_enrolled == 1


def test_enroll_after_completion_creates_new_execution(workflow, enrollments, make_contact):
    contact = make_contact()
    first = enrollments.enroll(workflow.id, contact.id)
    first.status = 'completed'
    db.session.commit()

    second = enrollments.enroll(workflow.id, contact.id)
    assert second.id != first.id


def test_enroll_rejects_inactive_missing_and_unsubscribed(make_workflow, enrollments, make_contact):
    draft = make_workflow([node('t', 'trigger'), email('e1')], chain('t', 'e1'), activate=False)
    contact = make_contact()

    with pytest.raises(EnrollmentError):
        enrollments.enroll(draft.id, contact.id)
    with pytest.raises(NotFoundError):
        enrollments.enroll('missing', contact.id)

    live = make_workflow([node('t', 'trigger'), email('e1')], chain('t', 'e1'))
    with pytest.raises(NotFoundError):
        enrollments.enroll(live.id, 'no-such-contact')

    gone = make_contact(status='unsubscribed')
    with pytest.raises(EnrollmentError):
        enrollments.enroll(live.id, gone.id)


def test_enroll_rejects_invalid_pinned_version(workflow, enrollments, make_contact):
    version = db.session.get(WorkflowVersion, workflow.current_version_id)
    version.nodes = '[]'
    db.session.commit()

    with pytest.raises(WorkflowValidationError):
        enrollments.enroll(workflow.id, make_contact().id)


def test_date_time_trigger_schedules_for_target(make_workflow, enrollments, make_contact, clock):
    target = clock.now + timedelta(days=3)
    workflow = make_workflow(
        [node('t', 'trigger'), email('e1')], chain('t', 'e1'),
        trigger={'type': 'date_time', 'config': {'dateTime': target.isoformat() + 'Z'}},
    )
    execution = enrollments.enroll(workflow.id, make_contact().id)
    assert execution.scheduled_for == target


def test_bulk_enrollment_skips_duplicates(workflow, enrollments, make_contact):
    a, b, c = make_contact(), make_contact(), make_contact()
    enrollments.enroll(workflow.id, a.id)

    result = enrollments.enroll_bulk(workflow.id, [a.id, b.id, b.id, c.id, 'ghost'])

    assert result['enrolled'] == 2
    assert result['skipped'] == 2
    assert result['errors'] == ['Contact ghost not found']
    assert WorkflowExecution.query.filter_by(workflow_id=workflow.id).count() == 3

    again = enrollments.enroll_bulk(workflow.id, [b.id])
    assert again == {'enrolled': 0, 'skipped': 1, 'errors': []}


def test_bulk_enrollment_reports_unsubscribed(workflow, enrollments, make_contact):
    gone = make_contact(status='unsubscribed')
    result = enrollments.enroll_bulk(workflow.id, [gone.id])
    assert result['enrolled'] == 0
    assert result['errors'] == [f"Contact {gone.id} is unsubscribed"]


def test_enroll_all_by_filter_streams_batches(workflow, enrollments, make_contact):
    for _ in range(7):
        make_contact()
    make_contact(status='unsubscribed')

    result = enrollments.enroll_all_by_filter(workflow.id, {'type': 'all'}, batch_size=3)

    assert result['enrolled'] == 7
    assert result['batches'] == 3
    assert db.session.get(Workflow, workflow.id).total_enrolled == 7

    rerun = enrollments.enroll_all_by_filter(workflow.id, {'type': 'all'}, batch_size=3)
    assert rerun['enrolled'] == 0
    assert rerun['skipped'] == 7


def test_enroll_by_tag_filter(workflow, enrollments, make_contact):
    tag = Tag(name='vip')
    db.session.add(tag)
    tagged, _ = make_contact(), make_contact()
    db.session.add(ContactTag(contact_id=tagged.id, tag_id=tag.id))
    db.session.commit()

    result = enrollments.enroll_all_by_filter(workflow.id, {'type': 'tag', 'tagId': tag.id})
    assert result['enrolled'] == 1
    assert WorkflowExecution.query.one().contact_id == tagged.id


def test_cancel_is_idempotent(workflow, enrollments, make_contact):
    execution = enrollments.enroll(workflow.id, make_contact().id)

    enrollments.cancel(execution.id, 'Removed by operator')
    enrollments.cancel(execution.id, 'Again')

    execution = db.session.get(WorkflowExecution, execution.id)
    assert execution.status == 'cancelled'
    assert execution.error_message == 'Removed by operator'
    assert db.session.get(Workflow, workflow.id).cancelled == 1


def test_cancel_leaves_terminal_executions_alone(workflow, enrollments, make_contact):
    execution = enrollments.enroll(workflow.id, make_contact().id)
    execution.status = 'completed'
    db.session.commit()

    assert enrollments.cancel(execution.id).status == 'completed'


def test_cancel_for_contact(workflow, make_workflow, enrollments, make_contact):
    other = make_workflow([node('t', 'trigger'), email('e1')], chain('t', 'e1'), name='Other')
    contact = make_contact()
    enrollments.enroll(workflow.id, contact.id)
    enrollments.enroll(other.id, contact.id)

    assert enrollments.cancel_for_contact(contact.id) == 2
    assert WorkflowExecution.query.filter_by(status='cancelled').count() == 2


def test_visibility_queries(workflow, enrollments, make_contact, clock):
    for _ in range(3):
        enrollments.enroll(workflow.id, make_contact().id)
    execution = WorkflowExecution.query.first()
    execution.scheduled_for = clock.now + timedelta(hours=1)
    db.session.commit()

    at_trigger = enrollments.get_executions_at_node(workflow.id, 't')
    assert len(at_trigger) == 3
    assert at_trigger[0]['name'] == 'Ada Lovelace'

    summary = enrollments.get_status_summary(workflow.id)
    assert summary['total'] == 3
    assert summary['pending'] == 3
    assert summary['overdue'] == 2
    assert summary['scheduled'] == 1
    assert summary['by_node'] == {'t': 3}


def test_skip_delay_makes_execution_due(workflow, enrollments, make_contact, clock):
    execution = enrollments.enroll(workflow.id, make_contact().id)
    execution.scheduled_for = clock.now + timedelta(days=5)
    db.session.commit()

    assert enrollments.skip_delay(execution.id).scheduled_for == clock.now


def test_delete_workflow_cascades(workflow, enrollments, make_contact):
    enrollments.enroll(workflow.id, make_contact().id)

    result = enrollments.delete_workflow(workflow.id)

    assert result == {'deleted': True, 'executions_deleted': 1}
    assert db.session.get(Workflow, workflow.id) is None
    assert WorkflowExecution.query.count() == 0
    assert WorkflowVersion.query.count() == 0


def test_parse_datetime():
    assert parse_datetime(None) is None
    assert parse_datetime('2025-01-06T09:00:00Z').isoformat() == '2025-01-06T09:00:00'
    assert parse_datetime('2025-01-06T10:00:00+01:00').isoformat() == '2025-01-06T09:00:00'
    assert parse_datetime(0).isoformat() == '1970-01-01T00:00:00'
