from datetime import datetime, timedelta

import fakeredis
import pytest

from sendflow import create_app, db
from sendflow.celery_app import celery_app
from sendflow.exceptions import ExecutionError
from sendflow.models import Contact, Purchase
from sendflow.services import contact_store, content_generator, email_tracker
from sendflow.services import mail_dispatcher, notifications, webhook_client
from sendflow.services.automation import ab_testing, course_cycle, definitions, enrollment, workflow_engine
from sendflow.services.automation.ab_testing import ABTestController
from sendflow.services.automation.course_cycle import CourseCycleController
from sendflow.services.automation.definitions import WorkflowService
from sendflow.services.automation.enrollment import EnrollmentManager
from sendflow.services.automation.workflow_engine import StepExecutor
from sendflow.services.content_generator import ContentGenerator
from sendflow.services.mail_dispatcher import ConsoleMailDispatcher


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeWebhookClient:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def call(self, url, payload, method='POST', headers=None, secret=None):
        self.calls.append({'url': url, 'payload': payload, 'method': method, 'secret': secret})
        if self.fail:
            raise ExecutionError("Webhook failed: 500")
        return 200


class FakeNotifier:
    def __init__(self):
        self.sent = []

    def send(self, method, message, contact_email, contact_name, workflow_name, trigger_type=None):
        self.sent.append({
            'method': method,
            'message': message,
            'contact_email': contact_email,
            'contact_name': contact_name,
            'workflow_name': workflow_name,
            'trigger_type': trigger_type,
        })
        return True


class FakeGenerator(ContentGenerator):
    def __init__(self):
        super().__init__(url='')
        self.requests = []

    def generate(self, course, email_type, email_index, cycle_number):
        self.requests.append((course.get('id'), email_type, email_index, cycle_number))
        return {
            'subject': f"{course.get('title')} {email_type} #{email_index + 1} (set {cycle_number})",
            'html_content': f"<p>{email_type} {email_index} set {cycle_number}</p>",
        }


def _reset_singletons():
    contact_store._contact_store = None
    definitions._workflow_service = None
    enrollment._enrollment_manager = None
    ab_testing._ab_test_controller = None
    course_cycle._course_cycle_controller = None
    workflow_engine._step_executor = None
    email_tracker.set_redis(None)
    mail_dispatcher.set_mail_dispatcher(None)
    notifications.set_notification_dispatcher(None)
    webhook_client.set_webhook_client(None)
    content_generator.set_content_generator(None)


@pytest.fixture
def app():
    _reset_singletons()
    app = create_app('testing', TRACKING_DOMAIN='https://track.example.com')
    celery_app.conf.task_always_eager = True

    ctx = app.app_context()
    ctx.push()
    email_tracker.set_redis(fakeredis.FakeRedis(decode_responses=True))
    yield app

    db.session.remove()
    db.drop_all()
    ctx.pop()
    _reset_singletons()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 6, 9, 0, 0))


@pytest.fixture
def mailer(app):
    outbox = ConsoleMailDispatcher()
    mail_dispatcher.set_mail_dispatcher(outbox)
    return outbox


@pytest.fixture
def webhooks(app):
    fake = FakeWebhookClient()
    webhook_client.set_webhook_client(fake)
    return fake


@pytest.fixture
def notifier(app):
    fake = FakeNotifier()
    notifications.set_notification_dispatcher(fake)
    return fake


@pytest.fixture
def generator(app):
    fake = FakeGenerator()
    content_generator.set_content_generator(fake)
    return fake


@pytest.fixture
def workflows(app):
    return WorkflowService()


@pytest.fixture
def enrollments(app, clock):
    return EnrollmentManager(clock=clock)


@pytest.fixture
def ab(app, clock):
    return ABTestController(clock=clock)


@pytest.fixture
def courses(app, generator):
    return CourseCycleController(generator=generator)


@pytest.fixture
def executor(app, clock, mailer, webhooks, notifier, ab, courses, enrollments):
    return StepExecutor(
        mailer=mailer,
        notifier=notifier,
        webhooks=webhooks,
        ab=ab,
        course=courses,
        enrollment=enrollments,
        clock=clock,
    )


@pytest.fixture
def make_contact(app):
    counter = {'n': 0}

    def _make(email=None, **kwargs):
        counter['n'] += 1
        contact = Contact(
            email=email or f"contact{counter['n']}@example.com",
            first_name=kwargs.pop('first_name', 'Ada'),
            last_name=kwargs.pop('last_name', 'Lovelace'),
            **kwargs
        )
        db.session.add(contact)
        db.session.commit()
        return contact

    return _make


@pytest.fixture
def make_purchase(app):
    def _make(contact, course_id=None, product_id=None, status='completed'):
        purchase = Purchase(contact_id=contact.id, course_id=course_id, product_id=product_id, status=status)
        db.session.add(purchase)
        db.session.commit()
        return purchase

    return _make


@pytest.fixture
def make_workflow(workflows):
    def _make(nodes, edges, name='Test workflow', activate=True, trigger=None):
        workflow = workflows.create({
            'name': name,
            'trigger': trigger or {'type': 'manual', 'config': {}},
            'nodes': nodes,
            'edges': edges,
        })
        if activate:
            workflows.activate(workflow.id)
        return workflow

    return _make

