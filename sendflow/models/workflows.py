"""
SendFlow Workflow Models
Workflow definitions, pinned graph versions, executions and delivery receipts
"""
import uuid
import json

from sqlalchemy import text

from sendflow import db
from sendflow.utils import utcnow


TRIGGER_TYPES = [
    'lead_signup', 'product_purchase', 'tag_added', 'time_delay',
    'date_time', 'customer_action', 'manual',
]

EXECUTION_STATUSES = ['pending', 'running', 'completed', 'failed', 'cancelled']
ACTIVE_STATUSES = ('pending', 'running')
TERMINAL_STATUSES = ('completed', 'failed', 'cancelled')


def _loads(value, default):
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


class Workflow(db.Model):
    """Campaign workflow: a directed graph of typed nodes"""
    __tablename__ = 'workflows'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)

    # Trigger
    trigger_type = db.Column(db.String(50), default='manual')
    trigger_config = db.Column(db.Text, default='{}')

    # Graph (JSON)
    nodes = db.Column(db.Text, default='[]')
    edges = db.Column(db.Text, default='[]')

    is_active = db.Column(db.Boolean, default=False, nullable=False)
    current_version_id = db.Column(db.String(36))

    # Stats
    total_enrolled = db.Column(db.Integer, default=0, nullable=False)
    completed = db.Column(db.Integer, default=0, nullable=False)
    failed = db.Column(db.Integer, default=0, nullable=False)
    cancelled = db.Column(db.Integer, default=0, nullable=False)
    goal_reached = db.Column(db.Integer, default=0, nullable=False)
    last_executed_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    activated_at = db.Column(db.DateTime)

    @property
    def nodes_list(self):
        return _loads(self.nodes, [])

    @nodes_list.setter
    def nodes_list(self, value):
        self.nodes = json.dumps(value or [])

    @property
    def edges_list(self):
        return _loads(self.edges, [])

    @edges_list.setter
    def edges_list(self, value):
        self.edges = json.dumps(value or [])

    @property
    def trigger_config_dict(self):
        return _loads(self.trigger_config, {})

    @trigger_config_dict.setter
    def trigger_config_dict(self, value):
        self.trigger_config = json.dumps(value or {})

    def to_dict(self, include_graph=True):
        total = self.total_enrolled or 0
        goal = self.goal_reached or 0
        data = {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'trigger_type': self.trigger_type,
            'trigger_config': self.trigger_config_dict,
            'is_active': self.is_active,
            'current_version_id': self.current_version_id,
            'stats': {
                'total_enrolled': total,
                'completed': self.completed or 0,
                'failed': self.failed or 0,
                'cancelled': self.cancelled or 0,
                'goal_reached': goal,
                'conversion_rate': round((goal / total * 100), 1) if total > 0 else 0,
            },
            'last_executed_at': self.last_executed_at.isoformat() if self.last_executed_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'activated_at': self.activated_at.isoformat() if self.activated_at else None,
        }
        if include_graph:
            data['nodes'] = self.nodes_list
            data['edges'] = self.edges_list
        return data


class WorkflowVersion(db.Model):
    """Immutable snapshot of a workflow graph. Executions pin to one."""
    __tablename__ = 'workflow_versions'
    __table_args__ = (
        db.UniqueConstraint('workflow_id', 'version', name='uq_workflow_version'),
    )

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    workflow_id = db.Column(db.String(36), db.ForeignKey('workflows.id'), nullable=False, index=True)
    version = db.Column(db.Integer, nullable=False)
    nodes = db.Column(db.Text, default='[]')
    edges = db.Column(db.Text, default='[]')
    created_at = db.Column(db.DateTime, default=utcnow)

    @property
    def nodes_list(self):
        return _loads(self.nodes, [])

    @property
    def edges_list(self):
        return _loads(self.edges, [])

    def to_dict(self):
        return {
            'id': self.id,
            'workflow_id': self.workflow_id,
            'version': self.version,
            'nodes': self.nodes_list,
            'edges': self.edges_list,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class WorkflowExecution(db.Model):
    """One contact's run through a workflow"""
    __tablename__ = 'workflow_executions'
    __table_args__ = (
        db.Index('ix_workflow_executions_due', 'status', 'scheduled_for'),
        db.Index('ix_workflow_executions_node', 'workflow_id', 'current_node_id'),
        # At most one active execution per (workflow, contact)
        db.Index(
            'uq_workflow_executions_active', 'workflow_id', 'contact_id',
            unique=True,
            postgresql_where=text("status IN ('pending', 'running')"),
            sqlite_where=text("status IN ('pending', 'running')"),
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    workflow_id = db.Column(db.String(36), db.ForeignKey('workflows.id'), nullable=False, index=True)
    workflow_version_id = db.Column(db.String(36), db.ForeignKey('workflow_versions.id'), nullable=False)
    contact_id = db.Column(db.String(36), nullable=False, index=True)
    contact_email = db.Column(db.String(255))

    status = db.Column(db.String(20), default='pending', nullable=False)
    current_node_id = db.Column(db.String(100))
    scheduled_for = db.Column(db.DateTime)

    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    error_message = db.Column(db.Text)
    retry_count = db.Column(db.Integer, default=0, nullable=False)
    step_count = db.Column(db.Integer, default=0, nullable=False)

    # Sticky split/variant choices, course cycle state, waits
    execution_data = db.Column(db.Text, default='{}')

    # Optimistic lock
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {'version_id_col': version}

    @property
    def data(self):
        return _loads(self.execution_data, {})

    @data.setter
    def data(self, value):
        self.execution_data = json.dumps(value or {})

    @property
    def is_active(self):
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return {
            'id': self.id,
            'workflow_id': self.workflow_id,
            'workflow_version_id': self.workflow_version_id,
            'contact_id': self.contact_id,
            'contact_email': self.contact_email,
            'status': self.status,
            'current_node_id': self.current_node_id,
            'scheduled_for': self.scheduled_for.isoformat() if self.scheduled_for else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'error_message': self.error_message,
            'retry_count': self.retry_count,
            'step_count': self.step_count,
            'execution_data': self.data,
        }


class DeliveryReceipt(db.Model):
    """Side-effect ledger keyed by (execution, node, step)"""
    __tablename__ = 'workflow_delivery_receipts'
    __table_args__ = (
        db.UniqueConstraint('execution_id', 'node_id', 'step', name='uq_delivery_receipt'),
    )

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    execution_id = db.Column(db.String(36), nullable=False, index=True)
    node_id = db.Column(db.String(100), nullable=False)
    step = db.Column(db.Integer, nullable=False)
    node_type = db.Column(db.String(50))
    status = db.Column(db.String(20), default='pending')  # pending, delivered, failed
    result = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


class EmailTemplate(db.Model):
    __tablename__ = 'email_templates'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = db.Column(db.String(255), nullable=False)
    subject = db.Column(db.String(500))
    html_content = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'subject': self.subject,
            'html_content': self.html_content,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
