"""
Navigation graph for floorplans.

A FloorplanGraph owns the nodes and edges of one floorplan and enforces the
structural invariants on every mutation. The GraphStore owns all floorplan
graphs and publishes them as frozen snapshots: readers take the current
snapshot without locking, the single writer of a floorplan edits a private
copy under that floorplan's lock and publishes it by swapping the reference.
"""
import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from .exceptions import (
    DuplicateEdge, DuplicateId, GraphBusy, GraphInputError, GraphInvariantViolation,
    InvalidExtent, NonPositiveWeight, NotFound, OutOfBounds, SelfLoop,
)

logger = logging.getLogger(__name__)

DEFAULT_EDIT_LOCK_TIMEOUT = 5.0  # seconds


def _real(value, error, label, **details):
    """Coordinates and weights are stored as floats; bools and text that is not a number are rejected"""
    if isinstance(value, bool):
        raise error(f'{label} must be a number, got {value!r}', **details)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise error(f'{label} must be a number, got {value!r}', **details)


class NodeKind(str, Enum):
    POI = 'poi'
    ENTRANCE = 'entrance'
    EXIT = 'exit'
    RESTROOM = 'restroom'
    ELEVATOR = 'elevator'
    STAIRS = 'stairs'
    EMERGENCY_EXIT = 'emergency_exit'
    FIRST_AID = 'first_aid'
    QR_ANCHOR = 'qr_anchor'

    @classmethod
    def choices(cls):
        return [(kind.value, kind.value.replace('_', ' ').title()) for kind in cls]


@dataclass(frozen=True)
class Node:
    id: str
    floorplan_id: str
    kind: NodeKind
    x: float
    y: float
    name: str = ''
    is_emergency_exit: bool = False
    is_first_aid: bool = False
    positioned: bool = True
    metadata: dict = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        object.__setattr__(self, 'id', str(self.id))
        object.__setattr__(self, 'floorplan_id', str(self.floorplan_id))
        for name in ('x', 'y'):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, _real(value, OutOfBounds, f'Node {self.id} {name}', node_id=self.id))
        if not isinstance(self.kind, NodeKind):
            try:
                object.__setattr__(self, 'kind', NodeKind(self.kind))
            except ValueError:
                raise GraphInputError(f'Unknown node kind {self.kind!r}', node_id=self.id)


@dataclass(frozen=True)
class Edge:
    id: str
    floorplan_id: str
    from_node_id: str
    to_node_id: str
    weight: float
    is_emergency_path: bool = False
    is_accessible: bool = True
    directed: bool = False

    def __post_init__(self):
        for name in ('id', 'floorplan_id', 'from_node_id', 'to_node_id'):
            object.__setattr__(self, name, str(getattr(self, name)))
        object.__setattr__(self, 'weight', _real(self.weight, NonPositiveWeight, f'Edge {self.id} weight', edge_id=self.id))

    @property
    def walks(self):
        """Ordered (from, to) pairs the edge can be walked along"""
        if self.directed:
            return frozenset([(self.from_node_id, self.to_node_id)])
        return frozenset([(self.from_node_id, self.to_node_id), (self.to_node_id, self.from_node_id)])

    @property
    def flags(self):
        return (self.is_accessible, self.is_emergency_path)

    def leaves(self, node_id: str) -> bool:
        """True when the edge can be walked starting from node_id"""
        return self.from_node_id == node_id or (not self.directed and self.to_node_id == node_id)

    def enters(self, node_id: str) -> bool:
        """True when the edge can be walked ending at node_id"""
        return self.to_node_id == node_id or (not self.directed and self.from_node_id == node_id)

    def other(self, node_id: str) -> str:
        if node_id == self.from_node_id:
            return self.to_node_id
        if node_id == self.to_node_id:
            return self.from_node_id
        raise GraphInvariantViolation(f'Edge {self.id} is not incident to node {node_id}')


@dataclass(frozen=True)
class RouteFilter:
    """Edge predicate applied while searching for routes"""
    accessible_only: bool = False
    emergency_only: bool = False
    exclude_emergency: bool = False

    def __post_init__(self):
        if self.emergency_only and self.exclude_emergency:
            raise GraphInputError('emergency_only and exclude_emergency cannot both be set')

    def allows(self, edge: Edge) -> bool:
        if self.accessible_only and not edge.is_accessible:
            return False
        if self.emergency_only and not edge.is_emergency_path:
            return False
        if self.exclude_emergency and edge.is_emergency_path:
            return False
        return True

    def without_emergency_restriction(self) -> 'RouteFilter':
        return replace(self, emergency_only=False)


def _positive_extent(value, label):
    try:
        extent = float(value)
    except (TypeError, ValueError):
        raise InvalidExtent(f'{label} must be a number, got {value!r}')
    if not math.isfinite(extent) or extent <= 0:
        raise InvalidExtent(f'{label} must be a positive finite number, got {value!r}')
    return extent


class FloorplanGraph:
    """Nodes and weighted edges of a single floorplan"""

    def __init__(self, floorplan_id, width: float, height: float):
        self.floorplan_id = str(floorplan_id)
        self.width = _positive_extent(width, 'width')
        self.height = _positive_extent(height, 'height')
        self._nodes: Dict[str, Node] = {}
        self._edges: Dict[str, Edge] = {}
        # node id -> ids of edges that can be walked away from the node
        self._outgoing: Dict[str, Set[str]] = {}
        # node id -> ids of every edge touching the node
        self._incident: Dict[str, Set[str]] = {}
        self._frozen = False

    def __repr__(self):
        return (f'<FloorplanGraph {self.floorplan_id} nodes={len(self._nodes)} '
                f'edges={len(self._edges)}{" frozen" if self._frozen else ""}>')

    def __len__(self):
        return len(self._nodes)

    def __contains__(self, node_id):
        return str(node_id) in self._nodes

    # ==================== LOOKUPS ====================

    @property
    def frozen(self) -> bool:
        return self._frozen

    def has_node(self, node_id) -> bool:
        return str(node_id) in self._nodes

    def has_edge(self, edge_id) -> bool:
        return str(edge_id) in self._edges

    def node(self, node_id) -> Node:
        try:
            return self._nodes[str(node_id)]
        except KeyError:
            raise NotFound(f'Node {node_id} not found in floorplan {self.floorplan_id}', node_id=str(node_id))

    def edge(self, edge_id) -> Edge:
        try:
            return self._edges[str(edge_id)]
        except KeyError:
            raise NotFound(f'Edge {edge_id} not found in floorplan {self.floorplan_id}', edge_id=str(edge_id))

    def nodes(self) -> List[Node]:
        return [self._nodes[key] for key in sorted(self._nodes)]

    def edges(self) -> List[Edge]:
        return [self._edges[key] for key in sorted(self._edges)]

    def edge_count(self) -> int:
        return len(self._edges)

    def neighbors(self, node_id, route_filter: Optional[RouteFilter] = None,
                  include_incoming: bool = False) -> List[Edge]:
        """
        Edges incident to a node, in ascending (weight, edge id) order.

        By default only edges that can be walked away from the node are
        returned; include_incoming adds directed edges pointing into it.
        """
        node_id = str(node_id)
        if node_id not in self._nodes:
            raise NotFound(f'Node {node_id} not found in floorplan {self.floorplan_id}', node_id=node_id)
        ids = self._incident[node_id] if include_incoming else self._outgoing[node_id]
        edges = [self._edges[edge_id] for edge_id in ids]
        if route_filter is not None:
            edges = [edge for edge in edges if route_filter.allows(edge)]
        edges.sort(key=lambda edge: (edge.weight, edge.id))
        return edges

    def incoming_edges(self, node_id, route_filter: Optional[RouteFilter] = None) -> List[Edge]:
        """Edges that can be walked ending at the node, in (weight, edge id) order"""
        node_id = str(node_id)
        if node_id not in self._nodes:
            raise NotFound(f'Node {node_id} not found in floorplan {self.floorplan_id}', node_id=node_id)
        edges = [self._edges[edge_id] for edge_id in self._incident[node_id]]
        edges = [edge for edge in edges if edge.enters(node_id)]
        if route_filter is not None:
            edges = [edge for edge in edges if route_filter.allows(edge)]
        edges.sort(key=lambda edge: (edge.weight, edge.id))
        return edges

    # ==================== VALIDATION ====================

    def _check_writable(self):
        if self._frozen:
            raise GraphInvariantViolation(f'Graph snapshot of floorplan {self.floorplan_id} is read-only')

    def _check_floorplan(self, element, label):
        if element.floorplan_id != self.floorplan_id:
            raise GraphInvariantViolation(
                f'{label} {element.id} belongs to floorplan {element.floorplan_id}, not {self.floorplan_id}'
            )

    def _check_position(self, node: Node, width=None, height=None):
        if not node.positioned:
            return
        width = self.width if width is None else width
        height = self.height if height is None else height
        try:
            x, y = float(node.x), float(node.y)
        except (TypeError, ValueError):
            raise OutOfBounds(f'Node {node.id} has non-numeric coordinates', node_id=node.id)
        if not (math.isfinite(x) and math.isfinite(y)) or not (0 <= x <= width and 0 <= y <= height):
            raise OutOfBounds(
                f'Node {node.id} at ({node.x}, {node.y}) lies outside the {width:g}x{height:g} floorplan',
                node_id=node.id,
            )

    def _check_edge(self, edge: Edge, replacing: Optional[str] = None):
        for endpoint in (edge.from_node_id, edge.to_node_id):
            if endpoint not in self._nodes:
                raise NotFound(f'Edge {edge.id} references unknown node {endpoint}', node_id=endpoint, edge_id=edge.id)
        try:
            weight = float(edge.weight)
        except (TypeError, ValueError):
            raise NonPositiveWeight(f'Edge {edge.id} has a non-numeric weight', edge_id=edge.id)
        if not math.isfinite(weight) or weight <= 0:
            raise NonPositiveWeight(f'Edge {edge.id} weight must be positive, got {edge.weight}', edge_id=edge.id)
        if edge.from_node_id == edge.to_node_id:
            raise SelfLoop(f'Edge {edge.id} starts and ends at node {edge.from_node_id}', edge_id=edge.id)
        for other_id in self._incident[edge.from_node_id]:
            if other_id == replacing:
                continue
            other = self._edges[other_id]
            if other.flags == edge.flags and other.walks & edge.walks:
                raise DuplicateEdge(
                    f'Edge {edge.id} duplicates edge {other.id} between the same nodes with the same flags',
                    edge_id=edge.id, existing_edge_id=other.id,
                )

    def _attach(self, edge: Edge):
        self._edges[edge.id] = edge
        for endpoint in (edge.from_node_id, edge.to_node_id):
            self._incident[endpoint].add(edge.id)
            if edge.leaves(endpoint):
                self._outgoing[endpoint].add(edge.id)

    def _detach(self, edge: Edge):
        del self._edges[edge.id]
        for endpoint in (edge.from_node_id, edge.to_node_id):
            self._incident[endpoint].discard(edge.id)
            self._outgoing[endpoint].discard(edge.id)

    # ==================== MUTATIONS ====================

    def add_node(self, node: Node) -> Node:
        self._check_writable()
        self._check_floorplan(node, 'Node')
        if node.id in self._nodes:
            raise DuplicateId(f'Node {node.id} already exists in floorplan {self.floorplan_id}', node_id=node.id)
        self._check_position(node)
        self._nodes[node.id] = node
        self._outgoing[node.id] = set()
        self._incident[node.id] = set()
        return node

    def update_node(self, node: Node) -> Node:
        """Replace a node (move, rename, change kind); its edges are kept"""
        self._check_writable()
        self._check_floorplan(node, 'Node')
        if node.id not in self._nodes:
            raise NotFound(f'Node {node.id} not found in floorplan {self.floorplan_id}', node_id=node.id)
        self._check_position(node)
        self._nodes[node.id] = node
        return node

    def remove_node(self, node_id) -> List[Edge]:
        """Remove a node and every edge referencing it; returns the removed edges"""
        self._check_writable()
        node_id = str(node_id)
        if node_id not in self._nodes:
            raise NotFound(f'Node {node_id} not found in floorplan {self.floorplan_id}', node_id=node_id)
        removed = sorted((self._edges[edge_id] for edge_id in self._incident[node_id]), key=lambda edge: edge.id)
        for edge in removed:
            self._detach(edge)
        del self._nodes[node_id]
        del self._outgoing[node_id]
        del self._incident[node_id]
        return removed

    def add_edge(self, edge: Edge) -> Edge:
        self._check_writable()
        self._check_floorplan(edge, 'Edge')
        if edge.id in self._edges:
            raise DuplicateId(f'Edge {edge.id} already exists in floorplan {self.floorplan_id}', edge_id=edge.id)
        self._check_edge(edge)
        self._attach(edge)
        return edge

    def update_edge(self, edge: Edge) -> Edge:
        self._check_writable()
        self._check_floorplan(edge, 'Edge')
        current = self._edges.get(edge.id)
        if current is None:
            raise NotFound(f'Edge {edge.id} not found in floorplan {self.floorplan_id}', edge_id=edge.id)
        self._check_edge(edge, replacing=edge.id)
        self._detach(current)
        self._attach(edge)
        return edge

    def remove_edge(self, edge_id) -> Edge:
        self._check_writable()
        edge = self._edges.get(str(edge_id))
        if edge is None:
            raise NotFound(f'Edge {edge_id} not found in floorplan {self.floorplan_id}', edge_id=str(edge_id))
        self._detach(edge)
        return edge

    def import_elements(self, nodes: Iterable[Node] = (), edges: Iterable[Edge] = ()):
        """
        Add many nodes and edges at once.

        All or nothing: the elements are applied to a staging copy and only
        adopted when every single one is valid.
        """
        self._check_writable()
        staged = self.copy()
        node_count = edge_count = 0
        for node in nodes:
            staged.add_node(node)
            node_count += 1
        for edge in edges:
            staged.add_edge(edge)
            edge_count += 1
        self._adopt(staged)
        return node_count, edge_count

    def clear(self):
        self._check_writable()
        self._nodes.clear()
        self._edges.clear()
        self._outgoing.clear()
        self._incident.clear()

    def set_dimensions(self, width: float, height: float):
        """Change the reference image size; every positioned node must still fit"""
        self._check_writable()
        width = _positive_extent(width, 'width')
        height = _positive_extent(height, 'height')
        for node in self._nodes.values():
            self._check_position(node, width, height)
        self.width, self.height = width, height

    # ==================== SNAPSHOTS ====================

    def copy(self) -> 'FloorplanGraph':
        """Mutable copy; node and edge values are immutable and shared"""
        clone = FloorplanGraph(self.floorplan_id, self.width, self.height)
        clone._nodes = dict(self._nodes)
        clone._edges = dict(self._edges)
        clone._outgoing = {key: set(ids) for key, ids in self._outgoing.items()}
        clone._incident = {key: set(ids) for key, ids in self._incident.items()}
        return clone

    def freeze(self) -> 'FloorplanGraph':
        self._frozen = True
        return self

    def _adopt(self, other: 'FloorplanGraph'):
        self._nodes = other._nodes
        self._edges = other._edges
        self._outgoing = other._outgoing
        self._incident = other._incident

    def check_integrity(self):
        """Re-verify every index; raises GraphInvariantViolation on the first problem"""
        for edge in self._edges.values():
            for endpoint in (edge.from_node_id, edge.to_node_id):
                if endpoint not in self._nodes:
                    raise GraphInvariantViolation(f'Edge {edge.id} references missing node {endpoint}')
                if edge.id not in self._incident[endpoint]:
                    raise GraphInvariantViolation(f'Edge {edge.id} missing from incidence index of {endpoint}')
            if not (isinstance(edge.weight, (int, float)) and math.isfinite(edge.weight) and edge.weight > 0):
                raise GraphInvariantViolation(f'Edge {edge.id} has invalid weight {edge.weight}')
        for node_id in self._nodes:
            for edge_id in self._incident.get(node_id, ()):
                if edge_id not in self._edges:
                    raise GraphInvariantViolation(f'Node {node_id} indexes missing edge {edge_id}')
            for edge_id in self._outgoing.get(node_id, ()):
                if edge_id not in self._edges or not self._edges[edge_id].leaves(node_id):
                    raise GraphInvariantViolation(f'Node {node_id} has a bad outgoing entry {edge_id}')
        if set(self._incident) != set(self._nodes) or set(self._outgoing) != set(self._nodes):
            raise GraphInvariantViolation(f'Adjacency index of floorplan {self.floorplan_id} is out of sync')


class _GraphSlot:
    __slots__ = ('lock', 'graph')

    def __init__(self, graph: FloorplanGraph):
        self.lock = threading.Lock()
        self.graph = graph


class GraphStore:
    """All floorplan graphs, keyed by floorplan id"""

    def __init__(self, lock_timeout: float = DEFAULT_EDIT_LOCK_TIMEOUT):
        self.lock_timeout = lock_timeout
        self._slots: Dict[str, _GraphSlot] = {}
        self._registry_lock = threading.Lock()

    def __contains__(self, floorplan_id):
        return str(floorplan_id) in self._slots

    def __len__(self):
        return len(self._slots)

    def floorplan_ids(self) -> List[str]:
        return sorted(self._slots)

    def _slot(self, floorplan_id) -> _GraphSlot:
        slot = self._slots.get(str(floorplan_id))
        if slot is None:
            raise NotFound(f'Floorplan {floorplan_id} has no navigation graph', floorplan_id=str(floorplan_id))
        return slot

    @contextmanager
    def _locked(self, slot: _GraphSlot, floorplan_id):
        if not slot.lock.acquire(timeout=self.lock_timeout):
            logger.warning(f'Timed out waiting for edit lock on floorplan {floorplan_id}')
            raise GraphBusy(f'Floorplan {floorplan_id} is being edited, try again', floorplan_id=str(floorplan_id))
        try:
            yield
        finally:
            slot.lock.release()

    def register(self, floorplan_id, width: float, height: float) -> FloorplanGraph:
        """Create an empty graph for a newly registered floorplan"""
        floorplan_id = str(floorplan_id)
        graph = FloorplanGraph(floorplan_id, width, height).freeze()
        with self._registry_lock:
            if floorplan_id in self._slots:
                raise DuplicateId(f'Floorplan {floorplan_id} is already registered', floorplan_id=floorplan_id)
            self._slots[floorplan_id] = _GraphSlot(graph)
        logger.info(f'Registered empty navigation graph for floorplan {floorplan_id}')
        return graph

    def load(self, floorplan_id, width: float, height: float,
             nodes: Iterable[Node] = (), edges: Iterable[Edge] = ()) -> FloorplanGraph:
        """Build a graph from persisted elements and publish it, replacing any previous one"""
        floorplan_id = str(floorplan_id)
        graph = FloorplanGraph(floorplan_id, width, height)
        graph.import_elements(nodes, edges)
        graph.freeze()
        with self._registry_lock:
            slot = self._slots.get(floorplan_id)
            if slot is None:
                self._slots[floorplan_id] = _GraphSlot(graph)
                return graph
        with self._locked(slot, floorplan_id):
            slot.graph = graph
        return graph

    def drop(self, floorplan_id) -> bool:
        with self._registry_lock:
            removed = self._slots.pop(str(floorplan_id), None)
        if removed is not None:
            logger.debug(f'Dropped navigation graph for floorplan {floorplan_id}')
        return removed is not None

    def clear(self):
        with self._registry_lock:
            self._slots.clear()

    def snapshot(self, floorplan_id) -> FloorplanGraph:
        """The current published graph; never changes after it is returned"""
        return self._slot(floorplan_id).graph

    @contextmanager
    def edit(self, floorplan_id):
        """
        Single-writer edit of one floorplan graph.

        Yields a private mutable copy of the current snapshot. The copy is
        published when the block exits cleanly and discarded when it raises,
        so a failed multi-step edit leaves the published graph untouched.
        """
        slot = self._slot(floorplan_id)
        with self._locked(slot, floorplan_id):
            working = slot.graph.copy()
            yield working
            slot.graph = working.freeze()
            logger.debug(f'Published navigation graph for floorplan {floorplan_id}: {slot.graph!r}')

    def resize(self, floorplan_id, width: float, height: float) -> FloorplanGraph:
        with self.edit(floorplan_id) as graph:
            graph.set_dimensions(width, height)
        return self.snapshot(floorplan_id)
