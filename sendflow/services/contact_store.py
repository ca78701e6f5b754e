"""
SendFlow Contact Store
======================
Contact, tag, purchase and engagement lookups used by the workflow engine:
- Contact snapshots for condition evaluation
- Tag add/remove (auto-creating tags by name)
- Course/product purchase checks
- Engagement counting for course cycle waits
- Streaming contacts by filter or segment for bulk enrollment
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional

from sqlalchemy import func, or_, and_, exists

from sendflow import db
from sendflow.exceptions import ExecutionError, NotFoundError
from sendflow.models.contacts import (
    Contact, Tag, ContactTag, ContactActivity, Purchase, Segment
)
from sendflow.services.automation.conditions import ContactSnapshot
from sendflow.utils import utcnow

logger = logging.getLogger(__name__)

FILTER_TYPES = ('all', 'tag', 'no_tags', 'segment')


class ContactStore:
    """Reads and writes against the contact/tag/purchase tables"""

    # ==================== CONTACTS ====================

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        if not contact_id:
            return None
        return db.session.get(Contact, contact_id)

    def get_contact_by_email(self, email: str) -> Optional[Contact]:
        if not email:
            return None
        return Contact.query.filter(func.lower(Contact.email) == email.lower()).first()

    def is_unsubscribed(self, contact_id: str) -> bool:
        contact = self.get_contact(contact_id)
        return bool(contact and contact.is_unsubscribed)

    def unsubscribe(self, contact_id: str) -> Contact:
        contact = self.get_contact(contact_id)
        if not contact:
            raise NotFoundError(f"Contact {contact_id} not found")
        contact.status = 'unsubscribed'
        return contact

    # ==================== TAGS ====================

    def tag_ids_for(self, contact_id: str) -> List[str]:
        rows = db.session.query(ContactTag.tag_id).filter(ContactTag.contact_id == contact_id).all()
        return [r[0] for r in rows]

    def tag_names_for(self, contact_id: str) -> List[str]:
        rows = (
            db.session.query(Tag.name)
            .join(ContactTag, ContactTag.tag_id == Tag.id)
            .filter(ContactTag.contact_id == contact_id)
            .all()
        )
        return [r[0] for r in rows]

    def get_or_create_tag(self, name: str) -> Tag:
        tag = Tag.query.filter_by(name=name).first()
        if tag:
            return tag
        tag = Tag(name=name)
        db.session.add(tag)
        db.session.flush()
        logger.info(f"Created tag: {name}")
        return tag

    def _resolve_tag(self, tag_id: Optional[str], tag_name: Optional[str], create: bool) -> Tag:
        if tag_id:
            tag = db.session.get(Tag, tag_id)
            if not tag:
                raise ExecutionError(f"Tag {tag_id} not found")
            return tag
        if tag_name:
            if create:
                return self.get_or_create_tag(tag_name)
            tag = Tag.query.filter_by(name=tag_name).first()
            if not tag:
                raise ExecutionError(f"Tag '{tag_name}' not found")
            return tag
        raise ExecutionError("No tag configured for tag action")

    def add_tag(self, contact_id: str, tag_id: str = None, tag_name: str = None) -> Tag:
        tag = self._resolve_tag(tag_id, tag_name, create=True)
        existing = db.session.get(ContactTag, (contact_id, tag.id))
        if not existing:
            db.session.add(ContactTag(contact_id=contact_id, tag_id=tag.id))
            db.session.flush()
        return tag

    def remove_tag(self, contact_id: str, tag_id: str = None, tag_name: str = None) -> Tag:
        tag = self._resolve_tag(tag_id, tag_name, create=False)
        ContactTag.query.filter_by(contact_id=contact_id, tag_id=tag.id).delete()
        return tag

    # ==================== PURCHASES ====================

    def _completed_purchases(self, contact_id: str):
        return Purchase.query.filter_by(contact_id=contact_id, status='completed')

    def has_purchased_course(self, contact_id: str, course_id: str) -> bool:
        return db.session.query(
            self._completed_purchases(contact_id).filter(Purchase.course_id == course_id).exists()
        ).scalar()

    def purchased_course_ids(self, contact_id: str, course_ids: List[str] = None) -> List[str]:
        query = self._completed_purchases(contact_id).filter(Purchase.course_id.isnot(None))
        if course_ids is not None:
            query = query.filter(Purchase.course_id.in_(course_ids))
        return list({p.course_id for p in query.all()})

    # ==================== ENGAGEMENT ====================

    def record_activity(self, contact_id: str, activity_type: str, workflow_id: str = None,
                        execution_id: str = None, node_id: str = None, link_url: str = None):
        activity = ContactActivity(
            contact_id=contact_id,
            activity_type=activity_type,
            workflow_id=workflow_id,
            execution_id=execution_id,
            node_id=node_id,
            link_url=link_url,
        )
        db.session.add(activity)
        return activity

    def count_engagement(self, contact_id: str, since: datetime) -> int:
        """Opens plus clicks recorded at or after ``since``"""
        return ContactActivity.query.filter(
            ContactActivity.contact_id == contact_id,
            ContactActivity.activity_type.in_(('email_opened', 'email_clicked')),
            ContactActivity.created_at >= since,
        ).count()

    # ==================== SNAPSHOT ====================

    def snapshot(self, contact_id: str, enrolled_at: datetime = None,
                 now: datetime = None, execution_id: str = None) -> ContactSnapshot:
        """Point-in-time view used by condition nodes.

        With ``execution_id`` the per-node open and click sets only hold
        activity from that execution, so node ids reused across workflows
        never match. Counts and clicked links stay contact-wide.
        """
        now = now or utcnow()
        contact = self.get_contact(contact_id)
        if not contact:
            return ContactSnapshot(contact_id=contact_id, now=now, enrolled_at=enrolled_at)

        activity = ContactActivity.query.filter(
            ContactActivity.contact_id == contact_id,
            ContactActivity.activity_type.in_(('email_opened', 'email_clicked')),
        ).all()
        opens = [a for a in activity if a.activity_type == 'email_opened']
        clicks = [a for a in activity if a.activity_type == 'email_clicked']
        own_opens = [a for a in opens if not execution_id or a.execution_id == execution_id]
        own_clicks = [a for a in clicks if not execution_id or a.execution_id == execution_id]

        purchases = self._completed_purchases(contact_id).all()

        return ContactSnapshot(
            contact_id=contact_id,
            now=now,
            enrolled_at=enrolled_at,
            subscribed_at=contact.created_at,
            tag_ids=frozenset(self.tag_ids_for(contact_id)),
            tag_names=frozenset(self.tag_names_for(contact_id)),
            purchased_product_ids=frozenset(p.product_id for p in purchases if p.product_id),
            purchased_course_ids=frozenset(p.course_id for p in purchases if p.course_id),
            has_any_purchase=bool(purchases),
            opened_node_ids=frozenset(a.node_id for a in own_opens if a.node_id),
            clicked_node_ids=frozenset(a.node_id for a in own_clicks if a.node_id),
            clicked_links=frozenset(a.link_url for a in clicks if a.link_url),
            open_count=len(opens),
            click_count=len(clicks),
        )

    # ==================== FILTERS & SEGMENTS ====================

    def filter_query(self, contact_filter: Dict):
        """Build the contact query for a bulk enrollment filter"""
        filter_type = (contact_filter or {}).get('type', 'all')
        query = Contact.query.filter(Contact.status == 'active')

        if filter_type == 'all':
            return query

        if filter_type == 'tag':
            tag_id = contact_filter.get('tagId')
            if not tag_id:
                raise NotFoundError("Tag filter requires a tagId")
            return query.filter(exists().where(and_(
                ContactTag.contact_id == Contact.id, ContactTag.tag_id == tag_id)))

        if filter_type == 'no_tags':
            return query.filter(~exists().where(ContactTag.contact_id == Contact.id))

        if filter_type == 'segment':
            segment = db.session.get(Segment, contact_filter.get('segmentId'))
            if not segment:
                raise NotFoundError(f"Segment {contact_filter.get('segmentId')} not found")
            return self.segment_query(segment, query)

        raise NotFoundError(f"Unknown contact filter: {filter_type}")

    def segment_query(self, segment: Segment, query=None):
        """Get contacts matching segment conditions"""
        query = query if query is not None else Contact.query.filter(Contact.status == 'active')

        if segment.segment_type == 'static':
            return query.filter(Contact.id.in_(segment.static_member_ids or ['']))

        clauses = []
        for condition in segment.rules_list:
            clause = self._rule_clause(
                condition.get('field'), condition.get('operator'), condition.get('value'))
            if clause is not None:
                clauses.append(clause)

        if not clauses:
            return query
        if segment.rules_match == 'any':
            return query.filter(or_(*clauses))
        return query.filter(and_(*clauses))

    def _rule_clause(self, field, operator, value):
        if field in ('email', 'first_name', 'last_name', 'status', 'source'):
            column = getattr(Contact, field)
            if operator == 'equals':
                return column == value
            if operator == 'not_equals':
                return column != value
            if operator == 'contains':
                return column.contains(value)
            if operator == 'starts_with':
                return column.startswith(value)
            if operator == 'ends_with':
                return column.endswith(value)
            if operator == 'is_empty':
                return or_(column.is_(None), column == '')
            if operator == 'is_not_empty':
                return and_(column.isnot(None), column != '')

        elif field == 'tags':
            has_tag = exists().where(and_(
                ContactTag.contact_id == Contact.id, ContactTag.tag_id == value))
            if operator == 'has_tag':
                return has_tag
            if operator == 'not_has_tag':
                return ~has_tag

        elif field == 'created_at':
            if operator == 'in_last':
                return Contact.created_at >= utcnow() - timedelta(days=int(value))
            if operator in ('after', 'before'):
                date = datetime.strptime(value, '%Y-%m-%d')
                return Contact.created_at >= date if operator == 'after' else Contact.created_at <= date

        logger.warning(f"Ignoring unsupported segment rule: {field} {operator}")
        return None

    def iter_contact_batches(self, contact_filter: Dict, batch_size: int = 50) -> Iterator[List[Contact]]:
        """Keyset-paginate matching contacts without loading the full set"""
        query = self.filter_query(contact_filter)
        last_id = None
        while True:
            page = query
            if last_id is not None:
                page = page.filter(Contact.id > last_id)
            batch = page.order_by(Contact.id).limit(batch_size).all()
            if not batch:
                break
            yield batch
            last_id = batch[-1].id
            if len(batch) < batch_size:
                break


_contact_store = None


def get_contact_store() -> ContactStore:
    global _contact_store
    if _contact_store is None:
        _contact_store = ContactStore()
    return _contact_store
