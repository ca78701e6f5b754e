"""
SendFlow Mail Dispatcher
========================
Outbound mail for workflow email nodes. The relay dispatcher posts to an
HTTP mail relay; the console dispatcher logs and keeps an outbox, which is
what development and tests use.
"""
import json
import logging
import uuid
from typing import Dict, List, Optional

import requests
from flask import current_app

from sendflow.exceptions import ExecutionError, TransientDeliveryError

logger = logging.getLogger(__name__)


class MailDispatcher:
    def send(self, subject: str, html_body: str, recipient: str,
             headers: Optional[Dict] = None) -> str:
        """Send one message and return its message id"""
        raise NotImplementedError


class ConsoleMailDispatcher(MailDispatcher):
    """Logs messages instead of sending them"""

    def __init__(self):
        self.outbox: List[Dict] = []

    def send(self, subject, html_body, recipient, headers=None):
        message_id = f"<{uuid.uuid4()}@sendflow.local>"
        self.outbox.append({
            'message_id': message_id,
            'subject': subject,
            'html_body': html_body,
            'recipient': recipient,
            'headers': dict(headers or {}),
        })
        logger.info(f"[console mail] To: {recipient} Subject: {subject}")
        return message_id


class RelayMailDispatcher(MailDispatcher):
    """POSTs messages to an HTTP mail relay"""

    def __init__(self, url: str, api_key: str = '', timeout: int = 30,
                 from_email: str = None, from_name: str = None):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.from_email = from_email
        self.from_name = from_name

    def send(self, subject, html_body, recipient, headers=None):
        payload = {
            'from': f"{self.from_name} <{self.from_email}>" if self.from_name else self.from_email,
            'to': recipient,
            'subject': subject,
            'html_body': html_body,
            'headers': dict(headers or {}),
        }

        request_headers = {'Content-Type': 'application/json'}
        if self.api_key:
            request_headers['Authorization'] = f"Bearer {self.api_key}"

        try:
            response = requests.post(
                self.url, data=json.dumps(payload), headers=request_headers, timeout=self.timeout
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientDeliveryError(f"Mail relay unreachable: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientDeliveryError(f"Mail relay returned {response.status_code}")
        if response.status_code >= 400:
            raise ExecutionError(f"Mail relay rejected message: {response.status_code} {response.text[:200]}")

        try:
            message_id = response.json().get('message_id')
        except ValueError:
            message_id = None

        logger.info(f"Relayed email to {recipient}: {subject}")
        return message_id or f"<{uuid.uuid4()}@sendflow.local>"


_mail_dispatcher = None


def get_mail_dispatcher() -> MailDispatcher:
    global _mail_dispatcher
    if _mail_dispatcher is None:
        config = current_app.config
        if config.get('MAIL_DISPATCHER') == 'relay' and config.get('MAIL_RELAY_URL'):
            _mail_dispatcher = RelayMailDispatcher(
                url=config['MAIL_RELAY_URL'],
                api_key=config.get('MAIL_RELAY_API_KEY', ''),
                timeout=config.get('MAIL_RELAY_TIMEOUT', 30),
                from_email=config.get('DEFAULT_FROM_EMAIL'),
                from_name=config.get('DEFAULT_FROM_NAME'),
            )
        else:
            _mail_dispatcher = ConsoleMailDispatcher()
    return _mail_dispatcher


def set_mail_dispatcher(dispatcher: Optional[MailDispatcher]):
    global _mail_dispatcher
    _mail_dispatcher = dispatcher
