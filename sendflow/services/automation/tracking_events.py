"""
Correlates open/click/delivery callbacks back to the execution, node and
A/B variant that sent the email.
"""
import logging
from typing import Dict, Optional

from sendflow import db
from sendflow.models.course_cycles import CourseCycleEmail
from sendflow.services.automation.ab_testing import get_ab_test_controller
from sendflow.services.contact_store import get_contact_store
from sendflow.services.email_tracker import get_tracking_record, mark_event

logger = logging.getLogger(__name__)

ACTIVITY_TYPES = {
    'opened': 'email_opened',
    'clicked': 'email_clicked',
    'delivered': 'email_delivered',
}

COURSE_EMAIL_COUNTERS = {
    'opened': CourseCycleEmail.opened_count,
    'clicked': CourseCycleEmail.clicked_count,
}


def record_tracking_event(tracking_id: str, event: str, link_url: Optional[str] = None) -> Dict:
    """Record one callback; returns the tracking record, empty when unknown"""
    if event not in ACTIVITY_TYPES:
        raise ValueError(f"Unknown tracking event: {event}")

    record = get_tracking_record(tracking_id)
    if not record:
        logger.debug(f"Unknown tracking id {tracking_id}")
        return {}

    first = mark_event(tracking_id, event)

    if record.get('contact_id'):
        get_contact_store().record_activity(
            record['contact_id'],
            ACTIVITY_TYPES[event],
            workflow_id=record.get('workflow_id'),
            execution_id=record.get('execution_id'),
            node_id=record.get('node_id'),
            link_url=link_url,
        )

    # Counters move on the first event of each kind only
    if first:
        course_email_id = record.get('course_email_id')
        if course_email_id and event in COURSE_EMAIL_COUNTERS:
            column = COURSE_EMAIL_COUNTERS[event]
            CourseCycleEmail.query.filter_by(id=course_email_id).update(
                {column: column + 1}, synchronize_session=False)

        variant_id = record.get('variant_id')
        if variant_id:
            ab = get_ab_test_controller()
            test = ab.get_test(record.get('workflow_id'), record.get('node_id'))
            if test:
                ab.record(test.id, variant_id, event)

    db.session.commit()
    logger.info(f"Tracked {event} for {record.get('recipient')} (node {record.get('node_id')})")
    return record
