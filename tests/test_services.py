import json

import pytest
import requests

from sendflow.exceptions import ExecutionError, TransientDeliveryError
from sendflow.services import content_generator, mail_dispatcher, notifications, webhook_client
from sendflow.services.content_generator import ContentGenerator
from sendflow.services.mail_dispatcher import ConsoleMailDispatcher, RelayMailDispatcher
from sendflow.services.notifications import NotificationDispatcher
from sendflow.services.webhook_client import WebhookClient, sign_payload


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=''):
        self.status_code = status_code
        self._body = body
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("No JSON")
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


@pytest.fixture
def http(monkeypatch):
    """Capture outbound requests and answer with a queued response"""
    calls = []
    state = {'response': FakeResponse(200, {}), 'error': None}

    def fake(method, url, **kwargs):
        calls.append({'method': method, 'url': url, **kwargs})
        if state['error']:
            raise state['error']
        return state['response']

    monkeypatch.setattr(requests, 'request', fake)
    monkeypatch.setattr(requests, 'post', lambda url, **kwargs: fake('POST', url, **kwargs))
    return calls, state


def test_sign_payload_is_hmac_sha256():
    assert sign_payload('{"a": 1}', 'secret') == sign_payload('{"a": 1}', 'secret')
    assert sign_payload('{"a": 1}', 'secret') != sign_payload('{"a": 2}', 'secret')
    assert len(sign_payload('x', 'secret')) == 64


def test_webhook_posts_signed_json(http):
    calls, _ = http
    status = WebhookClient(timeout=5).call('https://hooks.example.com/in', {'event': 'workflow_webhook', 'n': 1},
                                           secret='s3cret')

    assert status == 200
    call = calls[0]
    assert call['method'] == 'POST'
    assert call['timeout'] == 5
    assert json.loads(call['data']) == {'event': 'workflow_webhook', 'n': 1}
    assert call['headers']['X-SendFlow-Signature'] == sign_payload(call['data'], 's3cret')


def test_webhook_non_2xx_and_transport_errors(http):
    _, state = http
    client = WebhookClient()

    state['response'] = FakeResponse(500)
    with pytest.raises(ExecutionError, match='500'):
        client.call('https://hooks.example.com/in', {})

    state['error'] = requests.ConnectionError('refused')
    with pytest.raises(ExecutionError):
        client.call('https://hooks.example.com/in', {})


@pytest.mark.parametrize('response,error', [
    (FakeResponse(503), TransientDeliveryError),
    (FakeResponse(429), TransientDeliveryError),
    (FakeResponse(400, text='bad address'), ExecutionError),
])
def test_relay_maps_status_codes(http, response, error):
    _, state = http
    state['response'] = response
    relay = RelayMailDispatcher('https://relay.example.com/send')

    with pytest.raises(error):
        relay.send('Hi', '<p>Hi</p>', 'ada@example.com')


def test_relay_timeout_is_transient(http):
    _, state = http
    state['error'] = requests.Timeout('slow')

    with pytest.raises(TransientDeliveryError):
        RelayMailDispatcher('https://relay.example.com/send').send('Hi', '<p>Hi</p>', 'ada@example.com')


def test_relay_success_returns_message_id(http):
    calls, state = http
    state['response'] = FakeResponse(200, {'message_id': '<abc@relay>'})
    relay = RelayMailDispatcher('https://relay.example.com/send', api_key='k',
                                from_email='news@example.com', from_name='News')

    assert relay.send('Hi', '<p>Hi</p>', 'ada@example.com', {'X-SendFlow-Node': 'e1'}) == '<abc@relay>'
    payload = json.loads(calls[0]['data'])
    assert payload['from'] == 'News <news@example.com>'
    assert payload['headers'] == {'X-SendFlow-Node': 'e1'}
    assert calls[0]['headers']['Authorization'] == 'Bearer k'


def test_dispatcher_selection_follows_config(app):
    mail_dispatcher.set_mail_dispatcher(None)
    assert isinstance(mail_dispatcher.get_mail_dispatcher(), ConsoleMailDispatcher)

    mail_dispatcher.set_mail_dispatcher(None)
    app.config.update(MAIL_DISPATCHER='relay', MAIL_RELAY_URL='https://relay.example.com/send')
    relay = mail_dispatcher.get_mail_dispatcher()
    assert isinstance(relay, RelayMailDispatcher)
    assert relay.url == 'https://relay.example.com/send'


def test_notifications_by_channel(http):
    calls, _ = http
    outbox = ConsoleMailDispatcher()
    dispatcher = NotificationDispatcher(mailer=outbox, slack_webhook_url='https://slack.example.com/hook',
                                        admin_email='team@example.com')

    assert dispatcher.send('slack', 'New lead', 'ada@example.com', 'Ada', 'Welcome') is True
    assert calls[0]['json']['blocks'][0]['text']['text'] == 'Workflow Notification'

    assert dispatcher.send('discord', 'New lead', 'ada@example.com', None, 'Welcome') is False

    assert dispatcher.send('email', 'New lead', 'ada@example.com', 'Ada', 'Welcome') is True
    assert outbox.outbox[0]['recipient'] == 'team@example.com'
    assert outbox.outbox[0]['subject'] == '[Workflow] New lead'
    assert 'Ada (ada@example.com)' in outbox.outbox[0]['html_body']


def test_notification_webhook_failure_raises(http):
    _, state = http
    state['response'] = FakeResponse(404)
    dispatcher = NotificationDispatcher(discord_webhook_url='https://discord.example.com/hook')

    with pytest.raises(ExecutionError):
        dispatcher.send('discord', 'New lead', 'ada@example.com', None, 'Welcome')


def test_content_generator(http):
    calls, state = http
    assert ContentGenerator().generate({'id': 'c1'}, 'nurture', 0) == {'subject': '', 'html_content': ''}
    assert calls == []

    generator = ContentGenerator(url='https://gen.example.com')
    state['response'] = FakeResponse(200, {'subject': 'Learn', 'htmlContent': '<p>Learn</p>'})
    assert generator.generate({'id': 'c1'}, 'pitch', 1, 2) == {'subject': 'Learn', 'html_content': '<p>Learn</p>'}
    assert calls[0]['json']['cycle_number'] == 2

    state['response'] = FakeResponse(502)
    assert generator.generate({'id': 'c1'}, 'pitch', 1) == {'subject': '', 'html_content': ''}


def test_singletons_read_app_config(app):
    app.config.update(WEBHOOK_TIMEOUT=3, CONTENT_GENERATOR_URL='https://gen.example.com',
                      SLACK_WEBHOOK_URL='https://slack.example.com/hook')
    webhook_client.set_webhook_client(None)
    content_generator.set_content_generator(None)
    notifications.set_notification_dispatcher(None)

    assert webhook_client.get_webhook_client().timeout == 3
    assert content_generator.get_content_generator().enabled
    assert notifications.get_notification_dispatcher().slack_webhook_url == 'https://slack.example.com/hook'
