"""
SendFlow A/B Test Models
Per-email-node variant tests and their counters
"""
import uuid

from sendflow import db
from sendflow.utils import utcnow


WINNER_METRICS = ['open_rate', 'click_rate']


class WorkflowNodeABTest(db.Model):
    __tablename__ = 'workflow_node_ab_tests'
    __table_args__ = (
        db.UniqueConstraint('workflow_id', 'node_id', name='uq_ab_test_node'),
    )

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    workflow_id = db.Column(db.String(36), db.ForeignKey('workflows.id'), nullable=False, index=True)
    node_id = db.Column(db.String(100), nullable=False)

    is_enabled = db.Column(db.Boolean, default=True, nullable=False)
    sample_size = db.Column(db.Integer, default=100, nullable=False)
    winner_metric = db.Column(db.String(20), default='open_rate', nullable=False)
    auto_select_winner = db.Column(db.Boolean, default=True, nullable=False)
    winner_threshold = db.Column(db.Float, default=5.0, nullable=False)  # percentage points

    winner_variant_id = db.Column(db.String(36))
    confidence = db.Column(db.Float)
    status = db.Column(db.String(20), default='active')  # active, completed
    completed_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    variants = db.relationship(
        'ABTestVariant', backref='test', lazy=True,
        cascade='all, delete-orphan', order_by='ABTestVariant.position'
    )

    def to_dict(self):
        return {
            'id': self.id,
            'workflow_id': self.workflow_id,
            'node_id': self.node_id,
            'is_enabled': self.is_enabled,
            'sample_size': self.sample_size,
            'winner_metric': self.winner_metric,
            'auto_select_winner': self.auto_select_winner,
            'winner_threshold': self.winner_threshold,
            'winner_variant_id': self.winner_variant_id,
            'confidence': self.confidence,
            'status': self.status,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'variants': [v.to_dict() for v in self.variants],
        }


class ABTestVariant(db.Model):
    """Variant definition plus its sent/delivered/opened/clicked counters"""
    __tablename__ = 'workflow_ab_variants'
    __table_args__ = (
        db.UniqueConstraint('test_id', 'variant_key', name='uq_ab_variant_key'),
    )

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    test_id = db.Column(db.String(36), db.ForeignKey('workflow_node_ab_tests.id'), nullable=False, index=True)
    variant_key = db.Column(db.String(50), nullable=False)  # 'A', 'B', ...
    name = db.Column(db.String(255))
    subject = db.Column(db.String(500))
    body = db.Column(db.Text)
    percentage = db.Column(db.Float, nullable=False, default=50.0)
    position = db.Column(db.Integer, default=0)

    sent = db.Column(db.Integer, default=0, nullable=False)
    delivered = db.Column(db.Integer, default=0, nullable=False)
    opened = db.Column(db.Integer, default=0, nullable=False)
    clicked = db.Column(db.Integer, default=0, nullable=False)

    @property
    def open_rate(self):
        return (self.opened / self.sent * 100) if self.sent else 0.0

    @property
    def click_rate(self):
        return (self.clicked / self.sent * 100) if self.sent else 0.0

    def metric(self, name):
        return self.click_rate if name == 'click_rate' else self.open_rate

    def to_dict(self):
        return {
            'id': self.variant_key,
            'name': self.name,
            'subject': self.subject,
            'body': self.body,
            'percentage': self.percentage,
            'stats': {
                'sent': self.sent or 0,
                'delivered': self.delivered or 0,
                'opened': self.opened or 0,
                'clicked': self.clicked or 0,
                'open_rate': round(self.open_rate, 2),
                'click_rate': round(self.click_rate, 2),
            },
        }
