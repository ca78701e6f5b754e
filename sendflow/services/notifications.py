"""
Team Notifications
Used by notify workflow nodes: email to the admin address, Slack blocks,
or Discord embeds.
"""
import logging
from typing import Optional

import requests
from flask import current_app

from sendflow.exceptions import ExecutionError
from sendflow.utils import utcnow

logger = logging.getLogger(__name__)

NOTIFY_METHODS = ('email', 'slack', 'discord')


class NotificationDispatcher:
    def __init__(self, mailer=None, slack_webhook_url: str = '', discord_webhook_url: str = '',
                 admin_email: str = '', timeout: int = 10):
        self.mailer = mailer
        self.slack_webhook_url = slack_webhook_url
        self.discord_webhook_url = discord_webhook_url
        self.admin_email = admin_email
        self.timeout = timeout

    def send(self, method: str, message: str, contact_email: str, contact_name: Optional[str],
             workflow_name: str, trigger_type: Optional[str] = None) -> bool:
        """Returns False when the channel is not configured"""
        contact_display = f"{contact_name} ({contact_email})" if contact_name else contact_email
        trigger = trigger_type or 'manual'

        if method == 'slack':
            if not self.slack_webhook_url:
                logger.info("Slack notifications not configured")
                return False
            self._post(self.slack_webhook_url, self._slack_payload(
                message, contact_display, workflow_name, trigger))
        elif method == 'discord':
            if not self.discord_webhook_url:
                logger.info("Discord notifications not configured")
                return False
            self._post(self.discord_webhook_url, self._discord_payload(
                message, contact_display, workflow_name, trigger))
        else:
            if not self.admin_email or self.mailer is None:
                logger.info("No admin notification email configured")
                return False
            self.mailer.send(
                f"[Workflow] {message}",
                self._email_body(message, contact_display, workflow_name, trigger),
                self.admin_email,
            )

        logger.info(f"Team notification sent via {method} for {contact_email}")
        return True

    def _post(self, url, payload):
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise ExecutionError(f"Notification error: {e}") from e
        if not response.ok:
            raise ExecutionError(f"Notification webhook failed: {response.status_code}")

    @staticmethod
    def _slack_payload(message, contact, workflow, trigger):
        return {
            'blocks': [
                {'type': 'header', 'text': {'type': 'plain_text', 'text': 'Workflow Notification', 'emoji': True}},
                {'type': 'section', 'fields': [
                    {'type': 'mrkdwn', 'text': f"*Message:*\n{message}"},
                    {'type': 'mrkdwn', 'text': f"*Contact:*\n{contact}"},
                ]},
                {'type': 'section', 'fields': [
                    {'type': 'mrkdwn', 'text': f"*Workflow:*\n{workflow}"},
                    {'type': 'mrkdwn', 'text': f"*Trigger:*\n{trigger}"},
                ]},
                {'type': 'context', 'elements': [
                    {'type': 'mrkdwn', 'text': f"Sent from SendFlow at {utcnow().isoformat()}"},
                ]},
            ]
        }

    @staticmethod
    def _discord_payload(message, contact, workflow, trigger):
        return {
            'embeds': [{
                'title': 'Workflow Notification',
                'color': 0x5865F2,
                'fields': [
                    {'name': 'Message', 'value': message, 'inline': False},
                    {'name': 'Contact', 'value': contact, 'inline': True},
                    {'name': 'Workflow', 'value': workflow, 'inline': True},
                    {'name': 'Trigger', 'value': trigger, 'inline': True},
                ],
                'footer': {'text': 'SendFlow'},
                'timestamp': utcnow().isoformat(),
            }]
        }

    @staticmethod
    def _email_body(message, contact, workflow, trigger):
        return f'''
        <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto;">
            <h2 style="color: #333;">Workflow Notification</h2>
            <p style="font-size: 16px; color: #555;">{message}</p>
            <hr style="border: none; border-top: 1px solid #eee; margin: 20px 0;">
            <table style="width: 100%; border-collapse: collapse;">
                <tr><td style="padding: 8px 0; color: #888;">Contact:</td><td>{contact}</td></tr>
                <tr><td style="padding: 8px 0; color: #888;">Workflow:</td><td>{workflow}</td></tr>
                <tr><td style="padding: 8px 0; color: #888;">Trigger:</td><td>{trigger}</td></tr>
            </table>
        </div>
        '''


_notification_dispatcher = None


def get_notification_dispatcher() -> NotificationDispatcher:
    global _notification_dispatcher
    if _notification_dispatcher is None:
        from sendflow.services.mail_dispatcher import get_mail_dispatcher
        config = current_app.config
        _notification_dispatcher = NotificationDispatcher(
            mailer=get_mail_dispatcher(),
            slack_webhook_url=config.get('SLACK_WEBHOOK_URL', ''),
            discord_webhook_url=config.get('DISCORD_WEBHOOK_URL', ''),
            admin_email=config.get('ADMIN_NOTIFICATION_EMAIL', ''),
            timeout=config.get('WEBHOOK_TIMEOUT', 10),
        )
    return _notification_dispatcher


def set_notification_dispatcher(dispatcher: Optional[NotificationDispatcher]):
    global _notification_dispatcher
    _notification_dispatcher = dispatcher
