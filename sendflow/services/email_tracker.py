"""
SendFlow Email Tracking Service
===============================
Injects tracking pixels and rewrites links for open/click tracking.
Tracking ids map back to (execution, node, variant) through Redis.
"""
import re
import hashlib
import logging
from urllib.parse import quote

import redis
from flask import current_app

from sendflow.utils import utcnow

logger = logging.getLogger(__name__)

_redis_client = None


def get_redis():
    """Get Redis connection"""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(current_app.config['REDIS_URL'], decode_responses=True)
    return _redis_client


def set_redis(client):
    global _redis_client
    _redis_client = client


def _tracking_domain():
    return current_app.config.get('TRACKING_DOMAIN', '').rstrip('/')


def generate_tracking_id(execution_id: str, node_id: str, step: int) -> str:
    """Deterministic per send, so a replayed tick reuses the same id"""
    data = f"{execution_id}:{node_id}:{step}"
    return hashlib.sha256(data.encode()).hexdigest()[:32]


def create_tracking_record(tracking_id: str, execution_id: str, workflow_id: str, node_id: str,
                           contact_id: str, recipient: str, variant_id: str = None,
                           course_email_id: str = None) -> bool:
    """Create tracking record in Redis"""
    try:
        r = get_redis()

        tracking_data = {
            'execution_id': execution_id,
            'workflow_id': workflow_id,
            'node_id': node_id,
            'contact_id': contact_id or '',
            'variant_id': variant_id or '',
            'course_email_id': course_email_id or '',
            'recipient': recipient,
            'created_at': utcnow().isoformat(),
            'opened': 'false',
            'clicked': 'false',
            'delivered': 'false',
            'open_count': '0',
            'click_count': '0'
        }

        ttl_days = current_app.config.get('TRACKING_TTL_DAYS', 90)
        r.hset(f'tracking:{tracking_id}', mapping=tracking_data)
        r.expire(f'tracking:{tracking_id}', ttl_days * 24 * 60 * 60)

        return True
    except redis.RedisError as e:
        logger.error(f"Failed to create tracking record: {e}")
        return False


def get_tracking_record(tracking_id: str) -> dict:
    try:
        return get_redis().hgetall(f'tracking:{tracking_id}') or {}
    except redis.RedisError as e:
        logger.error(f"Failed to read tracking record {tracking_id}: {e}")
        return {}


def mark_event(tracking_id: str, event: str) -> bool:
    """Flag an open/click/delivery; returns True the first time only"""
    key = f'tracking:{tracking_id}'
    r = get_redis()
    first = r.hset(key, f'{event}_first', '1') == 1
    r.hset(key, mapping={event: 'true', f'last_{event}_at': utcnow().isoformat()})
    if event == 'opened':
        r.hincrby(key, 'open_count', 1)
    elif event == 'clicked':
        r.hincrby(key, 'click_count', 1)
    return first


def inject_tracking_pixel(html_body: str, tracking_id: str) -> str:
    """Inject invisible tracking pixel into HTML email"""
    if not html_body:
        return html_body

    pixel_url = f"{_tracking_domain()}/track/open/{tracking_id}"

    # 1x1 transparent image
    tracking_pixel = f'''<img src="{pixel_url}" width="1" height="1" border="0" style="display:block;width:1px;height:1px;border:0;" alt="" />'''

    if '</body>' in html_body.lower():
        pattern = re.compile(r'(</body>)', re.IGNORECASE)
        html_body = pattern.sub(f'{tracking_pixel}\\1', html_body, count=1)
    else:
        html_body += tracking_pixel

    return html_body


def rewrite_links(html_body: str, tracking_id: str) -> str:
    """Rewrite all links to go through click tracking"""
    if not html_body:
        return html_body

    domain = _tracking_domain()

    def replace_link(match):
        original_url = match.group(1)

        # Skip tracking URLs, anchors, mailto, tel
        if any(skip in original_url.lower() for skip in [
            '/track/', 'mailto:', 'tel:', 'javascript:', '#',
            'unsubscribe', tracking_id
        ]):
            return match.group(0)

        if not original_url.startswith(('http://', 'https://')):
            return match.group(0)

        encoded_url = quote(original_url, safe='')
        return f'href="{domain}/track/click/{tracking_id}?url={encoded_url}"'

    pattern = r'href=["\']([^"\']+)["\']'
    return re.sub(pattern, replace_link, html_body, flags=re.IGNORECASE)


def prepare_email_for_tracking(html_body: str, execution_id: str, workflow_id: str,
                               node_id: str, step: int, contact_id: str, recipient: str,
                               variant_id: str = None, course_email_id: str = None) -> tuple:
    """
    Prepare a workflow email with open/click tracking

    Returns:
        tuple: (processed_html, tracking_id)
    """
    tracking_id = generate_tracking_id(execution_id, node_id, step)
    create_tracking_record(tracking_id, execution_id, workflow_id, node_id,
                           contact_id, recipient, variant_id, course_email_id)

    if not html_body:
        return html_body, tracking_id

    processed_html = rewrite_links(html_body, tracking_id)
    # Pixel last so its URL is not rewritten
    processed_html = inject_tracking_pixel(processed_html, tracking_id)

    logger.debug(f"Prepared tracking for execution {execution_id} node {node_id}: {tracking_id}")

    return processed_html, tracking_id
