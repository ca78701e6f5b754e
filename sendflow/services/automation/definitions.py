"""
Workflow Definition Store
Creates and edits workflows, snapshots graph versions, and gates activation
on validation.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy import func

from sendflow import db
from sendflow.exceptions import NotFoundError, WorkflowValidationError
from sendflow.models.workflows import Workflow, WorkflowVersion, TRIGGER_TYPES
from sendflow.services.automation.validator import ValidationError, validate
from sendflow.utils import utcnow

logger = logging.getLogger(__name__)


class WorkflowService:
    """Workflow CRUD and activation"""

    def get(self, workflow_id: str) -> Workflow:
        workflow = db.session.get(Workflow, workflow_id)
        if not workflow:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    def list(self, active: Optional[bool] = None) -> List[Workflow]:
        query = Workflow.query
        if active is not None:
            query = query.filter(Workflow.is_active == active)
        return query.order_by(Workflow.created_at.desc()).all()

    def create(self, data: Dict) -> Workflow:
        trigger = data.get('trigger') or {}
        trigger_type = trigger.get('type') or data.get('trigger_type') or 'manual'
        if trigger_type not in TRIGGER_TYPES:
            raise WorkflowValidationError([ValidationError(f"Unknown trigger type: {trigger_type}")])

        workflow = Workflow(
            name=data.get('name') or 'Untitled workflow',
            description=data.get('description'),
            trigger_type=trigger_type,
            is_active=False,
        )
        workflow.trigger_config_dict = trigger.get('config') or data.get('trigger_config') or {}
        workflow.nodes_list = data.get('nodes') or []
        workflow.edges_list = data.get('edges') or []

        db.session.add(workflow)
        db.session.flush()
        self.snapshot(workflow)
        db.session.commit()

        logger.info(f"Created workflow: {workflow.name}")
        return workflow

    def update(self, workflow_id: str, data: Dict) -> Workflow:
        workflow = self.get(workflow_id)

        if 'name' in data:
            workflow.name = data['name']
        if 'description' in data:
            workflow.description = data['description']
        trigger = data.get('trigger')
        if trigger:
            if trigger.get('type') not in TRIGGER_TYPES:
                raise WorkflowValidationError([ValidationError(f"Unknown trigger type: {trigger.get('type')}")])
            workflow.trigger_type = trigger['type']
            workflow.trigger_config_dict = trigger.get('config') or {}

        graph_changed = False
        if 'nodes' in data and data['nodes'] != workflow.nodes_list:
            workflow.nodes_list = data['nodes']
            graph_changed = True
        if 'edges' in data and data['edges'] != workflow.edges_list:
            workflow.edges_list = data['edges']
            graph_changed = True

        if graph_changed:
            # An active workflow must stay valid; in-flight executions keep their snapshot
            if workflow.is_active:
                errors = validate(workflow.nodes_list, workflow.edges_list)
                if errors:
                    db.session.rollback()
                    raise WorkflowValidationError(errors)
            self.snapshot(workflow)

        db.session.commit()
        return workflow

    def snapshot(self, workflow: Workflow) -> WorkflowVersion:
        """Freeze the current graph as a new version"""
        latest = db.session.query(func.max(WorkflowVersion.version)).filter(
            WorkflowVersion.workflow_id == workflow.id).scalar() or 0
        version = WorkflowVersion(
            workflow_id=workflow.id,
            version=latest + 1,
            nodes=workflow.nodes,
            edges=workflow.edges,
        )
        db.session.add(version)
        db.session.flush()
        workflow.current_version_id = version.id
        return version

    def validate(self, workflow_id: str):
        workflow = self.get(workflow_id)
        return validate(workflow.nodes_list, workflow.edges_list)

    def activate(self, workflow_id: str) -> Workflow:
        workflow = self.get(workflow_id)
        errors = validate(workflow.nodes_list, workflow.edges_list)
        if errors:
            raise WorkflowValidationError(errors)

        workflow.is_active = True
        workflow.activated_at = utcnow()
        db.session.commit()

        logger.info(f"Activated workflow: {workflow.name}")
        return workflow

    def deactivate(self, workflow_id: str) -> Workflow:
        workflow = self.get(workflow_id)
        workflow.is_active = False
        db.session.commit()
        logger.info(f"Deactivated workflow: {workflow.name}")
        return workflow


_workflow_service = None


def get_workflow_service() -> WorkflowService:
    global _workflow_service
    if _workflow_service is None:
        _workflow_service = WorkflowService()
    return _workflow_service
