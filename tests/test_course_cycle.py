from datetime import timedelta

import pytest

from sendflow import db
from sendflow.exceptions import ConfigError, NotFoundError
from sendflow.models import Course, CourseCycleEmail, WorkflowExecution
from sendflow.services.contact_store import get_contact_store
from tests.factories import chain, edge, node


@pytest.fixture
def catalog(app):
    courses = [Course(title=title) for title in ('Python', 'Rust', 'Go')]
    db.session.add_all(courses)
    db.session.commit()
    return courses


def timing(course, **overrides):
    data = {
        'courseId': course.id,
        'timingMode': 'fixed',
        'nurtureEmailCount': 1,
        'nurtureDelayDays': 0,
        'pitchEmailCount': 1,
        'pitchDelayDays': 0,
        'purchaseCheckDelayDays': 0,
    }
    data.update(overrides)
    return data


def cycle_workflow(make_workflow, config_id, check=None, extra_nodes=(), extra_edges=()):
    nodes = [
        node('t', 'trigger'),
        node('cc', 'courseCycle', courseCycleConfigId=config_id),
        node('n', 'courseEmail', emailPhase='nurture'),
        node('p', 'courseEmail', emailPhase='pitch'),
        node('pc', 'purchaseCheck', **(check or {})),
        node('loop', 'cycleLoop'),
    ] + list(extra_nodes)
    edges = chain('t', 'cc', 'n', 'p', 'pc') + [
        edge('pc', 'loop', 'purchased'),
        edge('pc', 'loop', 'not_purchased'),
        edge('loop', 'n', 'next'),
    ] + list(extra_edges)
    return make_workflow(nodes, edges)


def run(executor, sweeps):
    for _ in range(sweeps):
        executor.sweep()


def reload(execution):
    return db.session.get(WorkflowExecution, execution.id, populate_existing=True)


def subjects(mailer):
    return [m['subject'] for m in mailer.outbox]


def test_rotates_through_courses_and_loops(catalog, courses, executor, enrollments,
                                           make_workflow, make_contact, mailer, generator):
    config = courses.save_config({
        'name': 'Evergreen',
        'courseTimings': [timing(c) for c in catalog],
        'loopOnCompletion': True,
        'differentContentOnSecondCycle': True,
    })
    workflow = cycle_workflow(make_workflow, config.id)
    execution = enrollments.enroll(workflow.id, make_contact().id)

    # trigger and courseCycle, then four nodes per course, then the first email of cycle two
    run(executor, 2 + 4 * 3 + 1)

    assert subjects(mailer) == [
        'Python nurture #1 (set 1)', 'Python pitch #1 (set 1)',
        'Rust nurture #1 (set 1)', 'Rust pitch #1 (set 1)',
        'Go nurture #1 (set 1)', 'Go pitch #1 (set 1)',
        'Python nurture #1 (set 2)',
    ]
    state = reload(execution).data['course_cycle']
    assert state['course_index'] == 0
    assert state['cycle_count'] == 1
    assert state['content_set'] == 2
    assert generator.requests[-1] == (catalog[0].id, 'nurture', 0, 2)


def test_generated_content_is_stored_and_reused(catalog, courses, executor, enrollments,
                                                make_workflow, make_contact, mailer, generator):
    config = courses.save_config({'courseTimings': [timing(catalog[0])], 'loopOnCompletion': True})
    workflow = cycle_workflow(make_workflow, config.id)
    enrollments.enroll(workflow.id, make_contact().id)

    run(executor, 2 + 4 + 1)

    assert len(generator.requests) == 2
    stored = CourseCycleEmail.query.filter_by(email_type='nurture').one()
    assert stored.generated is True
    assert stored.sent_count == 2
    assert subjects(mailer).count('Python nurture #1 (set 1)') == 2


def test_saved_email_content_wins(catalog, courses, executor, enrollments,
                                  make_workflow, make_contact, mailer, generator):
    config = courses.save_config({'courseTimings': [timing(catalog[0])]})
    courses.save_email(config.id, {
        'courseId': catalog[0].id,
        'emailType': 'nurture',
        'emailIndex': 0,
        'subject': 'Why Python, {{first_name}}?',
        'htmlContent': '<p>Learn Python</p>',
    })
    workflow = cycle_workflow(make_workflow, config.id)
    enrollments.enroll(workflow.id, make_contact().id)

    run(executor, 3)

    assert subjects(mailer) == ['Why Python, Ada?']
    assert generator.requests == []


def test_skips_purchased_courses(catalog, courses, executor, enrollments,
                                 make_workflow, make_contact, make_purchase, mailer):
    config = courses.save_config({'courseTimings': [timing(c) for c in catalog]})
    workflow = cycle_workflow(make_workflow, config.id)
    contact = make_contact()
    make_purchase(contact, course_id=catalog[0].id)
    execution = enrollments.enroll(workflow.id, contact.id)

    run(executor, 3)

    assert subjects(mailer) == ['Rust nurture #1 (set 1)']
    assert reload(execution).data['course_cycle']['course_index'] == 1


def test_all_courses_purchased_completes(catalog, courses, executor, enrollments,
                                         make_workflow, make_contact, make_purchase):
    config = courses.save_config({'courseTimings': [timing(c) for c in catalog[:2]]})
    workflow = cycle_workflow(make_workflow, config.id)
    contact = make_contact()
    make_purchase(contact, course_id=catalog[0].id)
    make_purchase(contact, course_id=catalog[1].id)
    execution = enrollments.enroll(workflow.id, contact.id)

    run(executor, 2)

    assert reload(execution).status == 'completed'


def test_purchase_tags_contact_and_takes_purchased_branch(catalog, courses, executor, enrollments,
                                                          make_workflow, make_contact, make_purchase):
    config = courses.save_config({'courseTimings': [timing(c) for c in catalog]})
    nodes = [
        node('t', 'trigger'),
        node('cc', 'courseCycle', courseCycleConfigId=config.id),
        node('n', 'courseEmail', emailPhase='nurture'),
        node('p', 'courseEmail', emailPhase='pitch'),
        node('pc', 'purchaseCheck'),
        node('done', 'stop'),
        node('loop', 'cycleLoop'),
    ]
    edges = chain('t', 'cc', 'n', 'p', 'pc') + [
        edge('pc', 'done', 'purchased'),
        edge('pc', 'loop', 'not_purchased'),
        edge('loop', 'n', 'next'),
    ]
    workflow = make_workflow(nodes, edges)
    contact = make_contact()
    execution = enrollments.enroll(workflow.id, contact.id)

    run(executor, 2)
    make_purchase(contact, course_id=catalog[0].id)
    run(executor, 3)

    assert reload(execution).current_node_id == 'done'
    assert 'purchased_course_Python' in get_contact_store().tag_names_for(contact.id)

    run(executor, 1)
    assert reload(execution).status == 'completed'


def test_repitch_once_then_moves_on(catalog, courses, executor, enrollments,
                                    make_workflow, make_contact, mailer):
    config = courses.save_config({'courseTimings': [timing(c) for c in catalog[:2]]})
    workflow = cycle_workflow(
        make_workflow, config.id,
        check={'notPurchasedAction': 'repitch', 'maxRepitches': 1},
        extra_edges=[edge('pc', 'p', 'repitch')],
    )
    execution = enrollments.enroll(workflow.id, make_contact().id)

    # t, cc, n, p, pc (repitch), p, pc (not purchased), loop, n
    run(executor, 9)

    assert subjects(mailer) == [
        'Python nurture #1 (set 1)', 'Python pitch #1 (set 1)',
        'Python pitch #1 (set 1)', 'Rust nurture #1 (set 1)',
    ]
    assert reload(execution).data['course_cycle']['repitch_count'] == 0


def test_end_of_playlist_without_loop_completes(catalog, courses, executor, enrollments,
                                                make_workflow, make_contact):
    config = courses.save_config({'courseTimings': [timing(catalog[0])], 'loopOnCompletion': False})
    workflow = cycle_workflow(make_workflow, config.id)
    execution = enrollments.enroll(workflow.id, make_contact().id)

    run(executor, 6)

    execution = reload(execution)
    assert execution.status == 'completed'
    assert execution.data['course_cycle']['cycle_count'] == 0


def test_fixed_timing_spaces_emails(catalog, courses, executor, enrollments,
                                    make_workflow, make_contact, mailer, clock):
    config = courses.save_config({'courseTimings': [
        timing(catalog[0], nurtureEmailCount=2, nurtureDelayDays=2, purchaseCheckDelayDays=3),
    ]})
    workflow = cycle_workflow(make_workflow, config.id)
    execution = enrollments.enroll(workflow.id, make_contact().id)
    start = clock.now

    run(executor, 3)
    assert len(mailer.outbox) == 1
    assert reload(execution).scheduled_for == start + timedelta(days=2)

    run(executor, 1)
    assert len(mailer.outbox) == 1

    clock.advance(days=2)
    run(executor, 1)
    assert len(mailer.outbox) == 2
    execution = reload(execution)
    assert execution.current_node_id == 'p'
    assert execution.scheduled_for == clock.now + timedelta(days=2)

    clock.advance(days=2)
    run(executor, 1)
    execution = reload(execution)
    assert execution.current_node_id == 'pc'
    assert execution.scheduled_for == clock.now + timedelta(days=3)


def test_engagement_wait_releases_on_activity(catalog, courses, executor, enrollments,
                                              make_workflow, make_contact, mailer):
    config = courses.save_config({'courseTimings': [
        timing(catalog[0], timingMode='engagement', nurtureEmailCount=2,
               engagementWaitDays=7, minEngagementActions=1),
    ]})
    workflow = cycle_workflow(make_workflow, config.id)
    contact = make_contact()
    execution = enrollments.enroll(workflow.id, contact.id)

    run(executor, 3)
    assert len(mailer.outbox) == 1
    assert reload(execution).data['wait']['node_id'] == 'n'

    run(executor, 2)
    assert len(mailer.outbox) == 1

    get_contact_store().record_activity(contact.id, 'email_opened', workflow_id=workflow.id)
    db.session.commit()
    run(executor, 1)
    assert len(mailer.outbox) == 2


def test_engagement_wait_releases_at_deadline(catalog, courses, executor, enrollments,
                                              make_workflow, make_contact, mailer, clock):
    config = courses.save_config({'courseTimings': [
        timing(catalog[0], timingMode='engagement', nurtureEmailCount=2,
               engagementWaitDays=7, minEngagementActions=3),
    ]})
    workflow = cycle_workflow(make_workflow, config.id)
    enrollments.enroll(workflow.id, make_contact().id)

    run(executor, 4)
    assert len(mailer.outbox) == 1

    clock.advance(days=7)
    run(executor, 1)
    assert len(mailer.outbox) == 2


def test_course_email_without_cycle_state_fails(courses, executor, enrollments, make_workflow, make_contact):
    workflow = make_workflow([node('t', 'trigger'), node('n', 'courseEmail')], chain('t', 'n'))
    execution = enrollments.enroll(workflow.id, make_contact().id)

    run(executor, 2)

    execution = reload(execution)
    assert execution.status == 'failed'
    assert 'courseCycle' in execution.error_message


@pytest.mark.parametrize('data', [
    {},
    {'courseTimings': [{'timingMode': 'fixed'}]},
    {'courseTimings': [{'courseId': 'c1', 'timingMode': 'whenever'}]},
    {'courseTimings': [{'courseId': 'c1', 'nurtureDelayDays': -1}]},
])
def test_invalid_configs_rejected(courses, data):
    with pytest.raises(ConfigError):
        courses.save_config(data)


def test_config_crud(courses, catalog):
    config = courses.save_config({'name': 'Evergreen', 'courseTimings': [{'courseId': catalog[0].id}]})
    assert config.timings[0]['nurtureEmailCount'] == 3
    assert config.loop_on_completion is True

    updated = courses.save_config({'courseTimings': [{'courseId': catalog[1].id}]}, config_id=config.id)
    assert updated.name == 'Evergreen'
    assert updated.course_ids == [catalog[1].id]
    assert [c.id for c in courses.list_configs()] == [config.id]

    courses.delete_config(config.id)
    with pytest.raises(NotFoundError):
        courses.get_config(config.id)
    with pytest.raises(NotFoundError):
        courses.save_config({'courseTimings': [{'courseId': 'x'}]}, config_id='missing')


def test_save_email_validates_and_upserts(courses, catalog):
    config = courses.save_config({'courseTimings': [{'courseId': catalog[0].id}]})

    with pytest.raises(ConfigError):
        courses.save_email(config.id, {'emailType': 'nurture'})
    with pytest.raises(ConfigError):
        courses.save_email(config.id, {'courseId': catalog[0].id, 'emailType': 'upsell'})

    first = courses.save_email(config.id, {'courseId': catalog[0].id, 'emailType': 'pitch',
                                           'subject': 'v1', 'htmlContent': '<p>1</p>'})
    second = courses.save_email(config.id, {'courseId': catalog[0].id, 'emailType': 'pitch',
                                            'subject': 'v2', 'htmlContent': '<p>2</p>'})
    assert first.id == second.id
    assert CourseCycleEmail.query.count() == 1
    assert second.subject == 'v2'
