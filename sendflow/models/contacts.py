"""
SendFlow Contact Models
Contacts, tags, engagement activity, purchases and segments
"""
import uuid
import json

from sendflow import db
from sendflow.utils import utcnow


ACTIVITY_TYPES = ['email_sent', 'email_delivered', 'email_opened', 'email_clicked']


class Contact(db.Model):
    __tablename__ = 'contacts'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    status = db.Column(db.String(20), default='active')  # active, unsubscribed, bounced, complained
    source = db.Column(db.String(100))
    custom_fields = db.Column(db.Text, default='{}')
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_unsubscribed(self):
        return self.status in ('unsubscribed', 'complained')

    @property
    def custom_fields_dict(self):
        try:
            return json.loads(self.custom_fields) if self.custom_fields else {}
        except (TypeError, ValueError):
            return {}

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'status': self.status,
            'source': self.source,
            'custom_fields': self.custom_fields_dict,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Tag(db.Model):
    __tablename__ = 'tags'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = db.Column(db.String(100), nullable=False, unique=True)
    color = db.Column(db.String(20), default='#6366f1')
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'color': self.color}


class ContactTag(db.Model):
    __tablename__ = 'contact_tags'

    contact_id = db.Column(db.String(36), db.ForeignKey('contacts.id'), primary_key=True)
    tag_id = db.Column(db.String(36), db.ForeignKey('tags.id'), primary_key=True)
    created_at = db.Column(db.DateTime, default=utcnow)


class ContactActivity(db.Model):
    """Engagement events correlated back from tracking tokens"""
    __tablename__ = 'contact_activity'
    __table_args__ = (
        db.Index('ix_contact_activity_contact_type', 'contact_id', 'activity_type'),
    )

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    contact_id = db.Column(db.String(36), nullable=False)
    activity_type = db.Column(db.String(30), nullable=False)
    workflow_id = db.Column(db.String(36))
    execution_id = db.Column(db.String(36))
    node_id = db.Column(db.String(100))
    link_url = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)


class Purchase(db.Model):
    __tablename__ = 'purchases'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    contact_id = db.Column(db.String(36), nullable=False, index=True)
    product_id = db.Column(db.String(36))
    course_id = db.Column(db.String(36))
    amount = db.Column(db.Numeric(10, 2))
    status = db.Column(db.String(20), default='completed')  # completed, refunded
    created_at = db.Column(db.DateTime, default=utcnow)


class Segment(db.Model):
    """Contact segment with dynamic query rules"""
    __tablename__ = 'segments'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)

    segment_type = db.Column(db.String(20), default='dynamic')  # dynamic, static

    # Query rules (JSON list of {field, operator, value}) - for dynamic segments
    rules = db.Column(db.Text, default='[]')
    rules_match = db.Column(db.String(10), default='all')  # all, any

    # Static member list (JSON array of contact IDs)
    static_members = db.Column(db.Text)

    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def rules_list(self):
        try:
            rules = json.loads(self.rules) if self.rules else []
        except (TypeError, ValueError):
            return []
        return rules if isinstance(rules, list) else []

    @property
    def static_member_ids(self):
        try:
            return json.loads(self.static_members) if self.static_members else []
        except (TypeError, ValueError):
            return []

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'segment_type': self.segment_type,
            'rules': self.rules_list,
            'rules_match': self.rules_match,
            'is_active': self.is_active,
        }


SEGMENT_FIELDS = ['email', 'first_name', 'last_name', 'status', 'source', 'tags', 'created_at']
