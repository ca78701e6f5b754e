"""
Workflow Validator
Static checks run before a workflow may be activated
"""
from dataclasses import dataclass
from typing import Dict, List, Optional

from sendflow.services.automation.graph import NODE_TYPES, WorkflowGraph


BACK_TO_BACK_EMAIL = "Cannot send two emails back-to-back. Add a delay node between them."


@dataclass(frozen=True)
class ValidationError:
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {'node_id': self.node_id, 'edge_id': self.edge_id, 'message': self.message}


def validate(nodes: List[Dict], edges: List[Dict]) -> List[ValidationError]:
    """Return every problem found in the graph; empty means valid."""
    graph = WorkflowGraph.from_json(nodes, edges)
    errors = []

    triggers = [n for n in graph.nodes if n.type == 'trigger']
    if not triggers:
        errors.append(ValidationError("Workflow must have a trigger node."))
    elif len(triggers) > 1:
        for node in triggers[1:]:
            errors.append(ValidationError(
                "Workflow can only have one trigger node.", node_id=node.id))

    for node in triggers:
        for edge in graph.incoming(node.id):
            errors.append(ValidationError(
                "Trigger node cannot have incoming connections.",
                node_id=node.id, edge_id=edge.id))

    for edge in graph.edges:
        source = graph.node(edge.source)
        target = graph.node(edge.target)
        if source is None or target is None:
            errors.append(ValidationError(
                "Connection references a node that does not exist.", edge_id=edge.id))
            continue
        if source.type == 'email' and target.type == 'email':
            errors.append(ValidationError(BACK_TO_BACK_EMAIL, node_id=target.id, edge_id=edge.id))

    for node in graph.nodes:
        if node.type not in NODE_TYPES:
            errors.append(ValidationError(f'Unknown node type "{node.type}".', node_id=node.id))
            continue

        if node.type != 'trigger' and not graph.incoming(node.id) and not graph.outgoing(node.id):
            errors.append(ValidationError(
                f'Node "{node.type}" is not connected to the workflow.', node_id=node.id))

        if node.type == 'email':
            errors.extend(_validate_email_node(node))

    return errors


def _validate_email_node(node) -> List[ValidationError]:
    data = node.data
    mode = data.get('mode') or 'custom'
    if mode == 'template':
        if not data.get('templateId'):
            return [ValidationError(
                "Email node using template mode must have a template selected.", node_id=node.id)]
    elif not (data.get('subject') or '').strip():
        return [ValidationError(
            "Email node using custom mode must have a subject.", node_id=node.id)]
    return []


def is_valid(nodes: List[Dict], edges: List[Dict]) -> bool:
    return not validate(nodes, edges)
