"""
Webhook Delivery
Outbound JSON webhooks for workflow webhook nodes
"""
import hmac
import hashlib
import json
import logging
from typing import Dict, Optional

import requests

from sendflow.exceptions import ExecutionError
from sendflow.utils import utcnow

logger = logging.getLogger(__name__)


def sign_payload(payload: str, secret: str) -> str:
    """Sign webhook payload with HMAC-SHA256"""
    return hmac.new(
        secret.encode('utf-8'),
        payload.encode('utf-8'),
        hashlib.sha256
    ).hexdigest()


class WebhookClient:
    def __init__(self, timeout: int = 10):
        self.timeout = timeout

    def call(self, url: str, payload: Dict, method: str = 'POST',
             headers: Optional[Dict] = None, secret: Optional[str] = None) -> int:
        """Deliver one webhook; raises ExecutionError on any non-2xx or transport failure"""
        payload_json = json.dumps(payload, default=str)

        request_headers = {
            'Content-Type': 'application/json',
            'X-SendFlow-Event': payload.get('event', 'workflow_webhook'),
            'X-SendFlow-Timestamp': str(int(utcnow().timestamp())),
        }
        if secret:
            request_headers['X-SendFlow-Signature'] = sign_payload(payload_json, secret)
        request_headers.update(headers or {})

        try:
            response = requests.request(
                method.upper(), url, data=payload_json, headers=request_headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise ExecutionError(f"Webhook error: {e}") from e

        if 200 <= response.status_code < 300:
            logger.info(f"Webhook delivered to {url}: {response.status_code}")
            return response.status_code

        raise ExecutionError(f"Webhook failed: {response.status_code}")


_webhook_client = None


def get_webhook_client() -> WebhookClient:
    global _webhook_client
    if _webhook_client is None:
        from flask import current_app
        _webhook_client = WebhookClient(timeout=current_app.config.get('WEBHOOK_TIMEOUT', 10))
    return _webhook_client


def set_webhook_client(client: Optional[WebhookClient]):
    global _webhook_client
    _webhook_client = client
