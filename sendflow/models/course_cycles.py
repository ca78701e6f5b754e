"""
SendFlow Course Cycle Models
Course rotation playlists and their nurture/pitch email content
"""
import uuid
import json

from sendflow import db
from sendflow.utils import utcnow


TIMING_DEFAULTS = {
    'timingMode': 'fixed',
    'nurtureEmailCount': 3,
    'nurtureDelayDays': 2,
    'pitchEmailCount': 2,
    'pitchDelayDays': 1,
    'purchaseCheckDelayDays': 3,
    'engagementWaitDays': 7,
    'minEngagementActions': 1,
}


class Course(db.Model):
    __tablename__ = 'courses'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {'id': self.id, 'title': self.title, 'description': self.description}


class CourseCycleConfig(db.Model):
    __tablename__ = 'course_cycle_configs'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)

    # Ordered JSON list of per-course timing dicts
    course_timings = db.Column(db.Text, default='[]')

    loop_on_completion = db.Column(db.Boolean, default=True, nullable=False)
    different_content_on_second_cycle = db.Column(db.Boolean, default=False, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def timings(self):
        try:
            raw = json.loads(self.course_timings) if self.course_timings else []
        except (TypeError, ValueError):
            return []
        return [dict(TIMING_DEFAULTS, **t) for t in raw]

    @timings.setter
    def timings(self, value):
        self.course_timings = json.dumps(value or [])

    @property
    def course_ids(self):
        return [t.get('courseId') for t in self.timings]

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'course_timings': self.timings,
            'loop_on_completion': self.loop_on_completion,
            'different_content_on_second_cycle': self.different_content_on_second_cycle,
            'is_active': self.is_active,
        }


class CourseCycleEmail(db.Model):
    __tablename__ = 'course_cycle_emails'
    __table_args__ = (
        db.Index('ix_course_cycle_email_lookup', 'config_id', 'course_id', 'email_type', 'cycle_number'),
    )

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    config_id = db.Column(db.String(36), db.ForeignKey('course_cycle_configs.id'), nullable=False)
    course_id = db.Column(db.String(36), nullable=False)
    email_type = db.Column(db.String(20), nullable=False)  # nurture, pitch
    email_index = db.Column(db.Integer, nullable=False, default=0)
    cycle_number = db.Column(db.Integer, nullable=False, default=1)  # 1 or 2

    subject = db.Column(db.String(500))
    html_content = db.Column(db.Text)
    generated = db.Column(db.Boolean, default=False)

    sent_count = db.Column(db.Integer, default=0, nullable=False)
    opened_count = db.Column(db.Integer, default=0, nullable=False)
    clicked_count = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'config_id': self.config_id,
            'course_id': self.course_id,
            'email_type': self.email_type,
            'email_index': self.email_index,
            'cycle_number': self.cycle_number,
            'subject': self.subject,
            'html_content': self.html_content,
            'generated': self.generated,
            'sent_count': self.sent_count,
            'opened_count': self.opened_count,
            'clicked_count': self.clicked_count,
        }
