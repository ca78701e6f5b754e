"""
Workflow graph values
Nodes are a tagged union keyed by ``type``; edges optionally carry a
``sourceHandle`` label used for branching ("yes"/"no", "a"/"b", ...).
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

NODE_TYPES = (
    'trigger', 'email', 'delay', 'condition', 'action', 'webhook', 'split',
    'notify', 'goal', 'courseCycle', 'courseEmail', 'purchaseCheck',
    'cycleLoop', 'stop',
)


@dataclass(frozen=True)
class Node:
    id: str
    type: str
    data: Dict = field(default_factory=dict, hash=False, compare=False)
    position: Optional[Dict] = field(default=None, hash=False, compare=False)

    @classmethod
    def from_dict(cls, raw: Dict) -> 'Node':
        return cls(
            id=str(raw.get('id')),
            type=raw.get('type') or '',
            data=dict(raw.get('data') or {}),
            position=raw.get('position'),
        )

    def to_dict(self) -> Dict:
        data = {'id': self.id, 'type': self.type, 'data': self.data}
        if self.position is not None:
            data['position'] = self.position
        return data


@dataclass(frozen=True)
class Edge:
    id: str
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict) -> 'Edge':
        source = raw.get('source')
        target = raw.get('target')
        return cls(
            id=str(raw.get('id') or f"e-{source}-{target}"),
            source=str(source),
            target=str(target),
            source_handle=raw.get('sourceHandle'),
            target_handle=raw.get('targetHandle'),
        )

    def to_dict(self) -> Dict:
        data = {'id': self.id, 'source': self.source, 'target': self.target}
        if self.source_handle is not None:
            data['sourceHandle'] = self.source_handle
        if self.target_handle is not None:
            data['targetHandle'] = self.target_handle
        return data


class WorkflowGraph:
    """Read-only view over a node/edge snapshot"""

    def __init__(self, nodes: List[Node], edges: List[Edge]):
        self.nodes = list(nodes)
        self.edges = list(edges)
        self._by_id = {n.id: n for n in self.nodes}
        self._outgoing: Dict[str, List[Edge]] = {}
        self._incoming: Dict[str, List[Edge]] = {}
        for edge in self.edges:
            self._outgoing.setdefault(edge.source, []).append(edge)
            self._incoming.setdefault(edge.target, []).append(edge)

    @classmethod
    def from_json(cls, nodes: List[Dict], edges: List[Dict]) -> 'WorkflowGraph':
        return cls(
            [Node.from_dict(n) for n in nodes or []],
            [Edge.from_dict(e) for e in edges or []],
        )

    def node(self, node_id: str) -> Optional[Node]:
        return self._by_id.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._by_id

    def trigger(self) -> Optional[Node]:
        for node in self.nodes:
            if node.type == 'trigger':
                return node
        return None

    def outgoing(self, node_id: str) -> List[Edge]:
        return self._outgoing.get(node_id, [])

    def incoming(self, node_id: str) -> List[Edge]:
        return self._incoming.get(node_id, [])

    def next_node_id(self, node_id: str, handle: Optional[str] = None,
                     fallback: bool = True) -> Optional[str]:
        """Target of the edge leaving ``node_id``.

        With a handle, the edge labelled with it wins; when none matches
        and ``fallback`` is set, an unlabelled edge is used instead.
        """
        edges = self.outgoing(node_id)
        if not edges:
            return None
        if handle is None:
            return edges[0].target
        for edge in edges:
            if edge.source_handle == handle:
                return edge.target
        if fallback:
            for edge in edges:
                if not edge.source_handle:
                    return edge.target
        return None
