"""
Condition Evaluator
Pure branch resolution for ``condition`` nodes over a contact snapshot
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, Optional
import logging

from sendflow.exceptions import ExecutionError

logger = logging.getLogger(__name__)

DAY_NAMES = ['monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday']


@dataclass(frozen=True)
class ContactSnapshot:
    """Everything a condition may look at, captured at tick time"""
    contact_id: Optional[str]
    now: datetime
    enrolled_at: Optional[datetime] = None
    subscribed_at: Optional[datetime] = None
    tag_ids: FrozenSet[str] = frozenset()
    tag_names: FrozenSet[str] = frozenset()
    purchased_product_ids: FrozenSet[str] = frozenset()
    purchased_course_ids: FrozenSet[str] = frozenset()
    has_any_purchase: bool = False
    opened_node_ids: FrozenSet[str] = frozenset()
    clicked_node_ids: FrozenSet[str] = frozenset()
    clicked_links: FrozenSet[str] = frozenset()
    open_count: int = 0
    click_count: int = 0
    extra: Dict = field(default_factory=dict, hash=False, compare=False)


def _opened_email(data, snapshot):
    node_id = data.get('emailNodeId')
    if node_id and node_id != 'any':
        return node_id in snapshot.opened_node_ids
    return snapshot.open_count > 0


def _clicked_link(data, snapshot):
    link_url = data.get('linkUrl')
    if link_url:
        return any(link_url in clicked for clicked in snapshot.clicked_links)
    node_id = data.get('emailNodeId')
    if node_id and node_id != 'any':
        return node_id in snapshot.clicked_node_ids
    return snapshot.click_count > 0


def _has_tag(data, snapshot):
    tag_id = data.get('tagId')
    if tag_id:
        return tag_id in snapshot.tag_ids
    tag_name = data.get('tagName') or data.get('value')
    if tag_name:
        return tag_name in snapshot.tag_names
    return False


def _has_purchased_product(data, snapshot):
    product_id = data.get('productId')
    if product_id:
        return product_id in snapshot.purchased_product_ids
    course_id = data.get('courseId')
    if course_id:
        return course_id in snapshot.purchased_course_ids
    return snapshot.has_any_purchase


def _time_based(data, snapshot):
    time_field = data.get('timeField') or 'enrolledAt'

    if time_field == 'day_of_week':
        days = [str(d).lower() for d in data.get('days') or []]
        return DAY_NAMES[snapshot.now.weekday()] in days

    since = snapshot.subscribed_at if time_field == 'subscribedAt' else snapshot.enrolled_at
    if since is None:
        return False

    unit = data.get('timeUnit') or 'days'
    seconds = (snapshot.now - since).total_seconds()
    elapsed = seconds / 3600 if unit == 'hours' else seconds / 86400
    target = float(data.get('timeValue', data.get('timeDays', 0)) or 0)

    operator = data.get('timeOperator') or 'greater_than'
    if operator == 'greater_than':
        return elapsed > target
    if operator == 'less_than':
        return elapsed < target
    if operator == 'equals':
        return int(elapsed) == int(target)
    return False


CONDITION_RESOLVERS = {
    'opened_email': _opened_email,
    'clicked_link': _clicked_link,
    'has_tag': _has_tag,
    'has_purchased_product': _has_purchased_product,
    'time_based': _time_based,
}


def resolve(condition_type: Optional[str], condition_data: Optional[Dict],
            snapshot: ContactSnapshot) -> bool:
    """Evaluate a condition node; True takes the "yes" edge."""
    if not condition_type:
        return True

    resolver = CONDITION_RESOLVERS.get(condition_type)
    if resolver is None:
        raise ExecutionError(f"Unknown condition type: {condition_type}")

    result = bool(resolver(condition_data or {}, snapshot))
    logger.debug(f"Condition {condition_type} evaluated to {result}")
    return result
