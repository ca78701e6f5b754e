"""
SendFlow Email Tracking Controller
==================================
Open pixel, click redirect and delivery callbacks for workflow emails
"""
import logging

from flask import Blueprint, Response, current_app, jsonify, redirect, request

from sendflow import db
from sendflow.services.automation.tracking_events import record_tracking_event

logger = logging.getLogger(__name__)

tracking_bp = Blueprint('tracking', __name__, url_prefix='/track')

# 1x1 transparent GIF
TRACKING_PIXEL = b'\x47\x49\x46\x38\x39\x61\x01\x00\x01\x00\x80\x00\x00\xff\xff\xff\x00\x00\x00\x21\xf9\x04\x01\x00\x00\x00\x00\x2c\x00\x00\x00\x00\x01\x00\x01\x00\x00\x02\x02\x44\x01\x00\x3b'


def _record(tracking_id, event, link_url=None):
    """Tracking must never break the pixel or the redirect"""
    try:
        return record_tracking_event(tracking_id, event, link_url=link_url)
    except Exception as e:
        db.session.rollback()
        logger.error(f"Track {event} error for {tracking_id}: {e}")
        return {}


@tracking_bp.route('/open/<tracking_id>')
def track_open(tracking_id):
    """Track email open via invisible pixel"""
    _record(tracking_id, 'opened')

    # Cache-busting headers so every open reaches us
    return Response(
        TRACKING_PIXEL,
        mimetype='image/gif',
        headers={
            'Cache-Control': 'no-store, no-cache, must-revalidate, max-age=0',
            'Pragma': 'no-cache',
            'Expires': '0'
        }
    )


@tracking_bp.route('/click/<tracking_id>')
def track_click(tracking_id):
    """Track link click and redirect"""
    fallback = current_app.config.get('TRACKING_DOMAIN') or '/'
    url = request.args.get('url') or ''
    if not url.startswith(('http://', 'https://')):
        url = fallback

    # Only links we sent are followed
    if not _record(tracking_id, 'clicked', link_url=url):
        url = fallback
    return redirect(url, code=302)


@tracking_bp.route('/delivered/<tracking_id>', methods=['POST'])
def track_delivered(tracking_id):
    """Delivery callback from the mail relay"""
    record = _record(tracking_id, 'delivered')
    return jsonify({'success': bool(record)})
