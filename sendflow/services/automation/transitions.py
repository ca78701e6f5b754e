"""
Tick values shared by the step executor and node handlers
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sendflow.services.automation.graph import Node, WorkflowGraph

ADVANCE = 'advance'
STAY = 'stay'
COMPLETE = 'complete'

DELAY_UNITS = {
    'minutes': timedelta(minutes=1),
    'hours': timedelta(hours=1),
    'days': timedelta(days=1),
    'weeks': timedelta(weeks=1),
}


def delay_for(data: Dict) -> timedelta:
    """Duration configured on a delay node; defaults to 1 day"""
    value = data.get('delay') or data.get('delayValue') or 1
    unit = DELAY_UNITS.get(data.get('delayUnit') or 'days', DELAY_UNITS['days'])
    return unit * float(value)


@dataclass(frozen=True)
class Transition:
    """What a handler decided: move on, stay on the node, or finish"""
    kind: str
    next_node_id: Optional[str] = None
    delay: Optional[timedelta] = None
    reason: Optional[str] = None

    @classmethod
    def follow(cls, graph: WorkflowGraph, node: Node, handle: Optional[str] = None,
               delay: Optional[timedelta] = None, any_edge: bool = False) -> 'Transition':
        """Advance along an outgoing edge, or complete when there is none"""
        next_id = graph.next_node_id(node.id, handle)
        if next_id is None and any_edge:
            next_id = graph.next_node_id(node.id)
        if next_id is None:
            return cls(COMPLETE, reason='End of workflow')
        return cls(ADVANCE, next_node_id=next_id, delay=delay)

    @classmethod
    def stay(cls, delay: Optional[timedelta] = None) -> 'Transition':
        return cls(STAY, delay=delay)

    @classmethod
    def complete(cls, reason: str = 'Completed') -> 'Transition':
        return cls(COMPLETE, reason=reason)


@dataclass
class StepContext:
    """Everything a node handler sees during one tick"""
    execution: Any
    workflow: Any
    graph: WorkflowGraph
    node: Node
    now: datetime
    step: int
    data: Dict = field(default_factory=dict)
    send_email: Optional[Callable] = None

    @property
    def contact_id(self):
        return self.execution.contact_id

    @property
    def contact_email(self):
        return self.execution.contact_email
