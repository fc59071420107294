"""
Test suite for the wayfinding module
Tests: coordinates, graph store, path planning, anchors, route sessions,
service layer (database + in-memory graph), HTTP endpoints and commands
"""
import json
import math
import os
import tempfile
import threading
from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase
from rest_framework import status

from backend.core.models import AuditLog
from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient, reset_wayfinding_state
from backend.wayfinding import services
from backend.wayfinding.anchors import (
    AnchorBinding as BoundAnchor, AnchorRegistry, AnchorResolver, parse_anchor_payload, validate_anchor_code,
)
from backend.wayfinding.coordinates import point_to_percent, rescale, to_percent, to_pixel
from backend.wayfinding.exceptions import (
    AnchorNotFoundError, DuplicateEdge, DuplicateId, GraphBusy, GraphInputError, GraphInvariantViolation,
    InvalidExtent, InvalidRouteRequest, MalformedAnchorError, NoPathFound, NonPositiveWeight, NotFound,
    OutOfBounds, SelfLoop, UnknownNode,
)
from backend.wayfinding.graph import Edge, FloorplanGraph, GraphStore, Node, NodeKind, RouteFilter
from backend.wayfinding.models import AnchorBinding, NavigationEdge, NavigationNode
from backend.wayfinding.planner import euclidean_heuristic, find_nearest, find_path
from backend.wayfinding.session import (
    STATUS_INVALID_ANCHOR, STATUS_OK, STATUS_UNKNOWN_NODE, STATUS_UNREACHABLE,
    RouteRequest, RouteSession, turn_instruction,
)

FP = 'fp1'


def make_node(node_id, x=0.0, y=0.0, kind='poi', **kwargs):
    return Node(node_id, FP, kind, x, y, name=node_id, **kwargs)


def make_edge(edge_id, a, b, weight, **kwargs):
    return Edge(edge_id, FP, a, b, weight, **kwargs)


def triangle_graph(width=400, height=400, bc_accessible=True, ac_accessible=True):
    """A(100,100) B(200,100) C(200,200); A-B 10, B-C 10, A-C 25"""
    graph = FloorplanGraph(FP, width, height)
    graph.import_elements(
        [make_node('A', 100, 100, 'entrance'), make_node('B', 200, 100), make_node('C', 200, 200, 'restroom')],
        [
            make_edge('ab', 'A', 'B', 10),
            make_edge('bc', 'B', 'C', 10, is_accessible=bc_accessible),
            make_edge('ac', 'A', 'C', 25, is_accessible=ac_accessible),
        ],
    )
    return graph


def triangle_store():
    store = GraphStore(lock_timeout=1.0)
    store.register(FP, 400, 400)
    with store.edit(FP) as graph:
        graph.import_elements(triangle_graph().nodes(), triangle_graph().edges())
    return store


# ==================== COORDINATES ====================

class CoordinateTests(SimpleTestCase):
    """Pixel <-> percentage conversion"""

    def test_to_percent_and_back(self):
        """Test percentage of an extent and the inverse conversion"""
        self.assertEqual(to_percent(250, 1000), 25.0)
        self.assertEqual(to_pixel(25, 2000), 500.0)
        for value in (0, 1, 333.3, 999.99, 1000):
            self.assertAlmostEqual(to_pixel(to_percent(value, 1000), 1000), value, places=9)

    def test_rescale_between_image_sizes(self):
        """Test a pixel on one image maps to the same relative spot on another"""
        self.assertAlmostEqual(rescale(500, 1000, 2000), 1000.0)
        self.assertEqual(point_to_percent(100, 200, 400, 800), (25.0, 25.0))

    def test_invalid_extent(self):
        """Test zero, negative, non-finite and non-numeric extents are rejected"""
        for extent in (0, -5, float('nan'), float('inf'), 'abc', None):
            with self.assertRaises(InvalidExtent):
                to_percent(10, extent)
            with self.assertRaises(InvalidExtent):
                to_pixel(10, extent)


# ==================== GRAPH ====================

class FloorplanGraphTests(SimpleTestCase):
    """Structural invariants enforced on every mutation"""

    def setUp(self):
        self.graph = FloorplanGraph(FP, 1000, 800)
        self.graph.add_node(make_node('A', 0, 0))
        self.graph.add_node(make_node('B', 100, 0))

    def test_duplicate_node(self):
        """Test a node id can only be used once per floorplan"""
        with self.assertRaises(DuplicateId):
            self.graph.add_node(make_node('A', 5, 5))

    def test_node_bounds(self):
        """Test nodes must lie within the declared image dimensions (edges inclusive)"""
        self.graph.add_node(make_node('corner', 1000, 800))
        with self.assertRaises(OutOfBounds):
            self.graph.add_node(make_node('outside', 1000.5, 10))
        with self.assertRaises(OutOfBounds):
            self.graph.add_node(make_node('negative', -1, 10))
        self.assertFalse(self.graph.has_node('outside'))

    def test_unpositioned_node_skips_bounds(self):
        """Test logical nodes without coordinates are accepted"""
        self.graph.add_node(make_node('logical', None, None, positioned=False))
        self.assertTrue(self.graph.has_node('logical'))

    def test_unknown_kind(self):
        """Test an unknown node kind is a caller mistake"""
        with self.assertRaises(GraphInputError):
            make_node('X', kind='teleporter')

    def test_edge_validation(self):
        """Test edges need known endpoints, a positive weight and two distinct nodes"""
        with self.assertRaises(NotFound):
            self.graph.add_edge(make_edge('e1', 'A', 'Z', 1))
        with self.assertRaises(NonPositiveWeight):
            self.graph.add_edge(make_edge('e1', 'A', 'B', 0))
        with self.assertRaises(NonPositiveWeight):
            self.graph.add_edge(make_edge('e1', 'A', 'B', -3))
        with self.assertRaises(NonPositiveWeight):
            self.graph.add_edge(make_edge('e1', 'A', 'B', float('inf')))
        with self.assertRaises(SelfLoop):
            self.graph.add_edge(make_edge('e1', 'A', 'A', 1))
        self.assertEqual(self.graph.edge_count(), 0)

    def test_parallel_edges(self):
        """Test parallel edges need a different flag combination"""
        self.graph.add_edge(make_edge('e1', 'A', 'B', 10))
        with self.assertRaises(DuplicateEdge):
            self.graph.add_edge(make_edge('e2', 'A', 'B', 12))
        with self.assertRaises(DuplicateEdge):
            self.graph.add_edge(make_edge('e2', 'B', 'A', 12))
        self.graph.add_edge(make_edge('e3', 'A', 'B', 14, is_accessible=False))
        self.graph.add_edge(make_edge('e4', 'A', 'B', 14, is_emergency_path=True))
        self.assertEqual(self.graph.edge_count(), 3)

    def test_directed_edge_alongside_undirected(self):
        """Test a one-way edge cannot repeat a walk an undirected edge already offers"""
        self.graph.add_edge(make_edge('u', 'A', 'B', 5))
        with self.assertRaises(DuplicateEdge):
            self.graph.add_edge(make_edge('d', 'A', 'B', 7, directed=True))
        with self.assertRaises(DuplicateEdge):
            self.graph.add_edge(make_edge('d', 'B', 'A', 7, directed=True))
        self.graph.add_edge(make_edge('d', 'A', 'B', 7, directed=True, is_accessible=False))
        self.assertEqual(sorted(edge.id for edge in self.graph.neighbors('A')), ['d', 'u'])

        graph = FloorplanGraph(FP, 100, 100)
        graph.import_elements([make_node('A'), make_node('B')], [make_edge('d', 'A', 'B', 7, directed=True)])
        with self.assertRaises(DuplicateEdge):
            graph.add_edge(make_edge('u', 'B', 'A', 5))

    def test_numbers_stored_as_floats(self):
        """Test numeric text is stored as floats, other values are rejected up front"""
        self.graph.add_node(make_node('C', '40', '30'))
        self.graph.add_edge(make_edge('ac', 'A', 'C', '5'))
        self.assertEqual((self.graph.node('C').x, self.graph.node('C').y), (40.0, 30.0))
        self.assertEqual(self.graph.edge('ac').weight, 5.0)
        self.assertEqual(find_path(self.graph, 'A', 'C').total_cost, 5.0)

        for value in (True, 'north', [1]):
            with self.assertRaises(OutOfBounds):
                make_node('D', value, 10)
            with self.assertRaises(NonPositiveWeight):
                make_edge('ad', 'A', 'B', value)

    def test_text_coordinates_render_route(self):
        """Test a route over nodes given with text coordinates gets turn instructions"""
        store = GraphStore()
        store.register(FP, 400, 400)
        with store.edit(FP) as graph:
            graph.import_elements(
                [make_node('A', '100', '100'), make_node('B', '200', '100'), make_node('C', '200', '200')],
                [make_edge('ab', 'A', 'B', '10'), make_edge('bc', 'B', 'C', '10')],
            )
        result = RouteSession(store).plan(RouteRequest(start_node_id='A', destination_node_id='C', floorplan_id=FP))
        self.assertEqual(result.status, STATUS_OK)
        self.assertEqual([point.instruction for point in result.points], ['start', 'right', 'arrive'])
        self.assertEqual(result.total_cost, 20.0)

    def test_directed_edges_in_both_directions(self):
        """Test opposite directed edges do not duplicate each other"""
        self.graph.add_edge(make_edge('e1', 'A', 'B', 10, directed=True))
        self.graph.add_edge(make_edge('e2', 'B', 'A', 10, directed=True))
        self.assertEqual([edge.id for edge in self.graph.neighbors('A')], ['e1'])
        self.assertEqual([edge.id for edge in self.graph.neighbors('B')], ['e2'])

    def test_neighbors_order(self):
        """Test neighbors come in ascending (weight, edge id) order"""
        self.graph.add_node(make_node('C', 50, 50))
        self.graph.add_node(make_node('D', 60, 60))
        self.graph.add_edge(make_edge('z', 'A', 'B', 5))
        self.graph.add_edge(make_edge('y', 'A', 'C', 5))
        self.graph.add_edge(make_edge('x', 'A', 'D', 7))
        self.assertEqual([edge.id for edge in self.graph.neighbors('A')], ['y', 'z', 'x'])

    def test_remove_node_cascades(self):
        """Test removing a node removes every edge referencing it"""
        self.graph.add_node(make_node('C', 50, 50))
        self.graph.add_edge(make_edge('ab', 'A', 'B', 1))
        self.graph.add_edge(make_edge('bc', 'B', 'C', 1))
        self.graph.add_edge(make_edge('ac', 'A', 'C', 1))
        removed = self.graph.remove_node('B')
        self.assertEqual([edge.id for edge in removed], ['ab', 'bc'])
        self.assertFalse(self.graph.has_edge('ab'))
        self.assertFalse(self.graph.has_edge('bc'))
        self.assertEqual([edge.id for edge in self.graph.neighbors('A')], ['ac'])
        self.graph.check_integrity()

    def test_bulk_import_is_atomic(self):
        """Test a bulk import with one invalid edge applies nothing"""
        nodes = [make_node(f'n{i}', i * 10, 0) for i in range(4)]
        edges = [
            make_edge('e1', 'n0', 'n1', 1),
            make_edge('e2', 'n1', 'n2', 1),
            make_edge('e3', 'n2', 'missing', 1),
            make_edge('e4', 'n2', 'n3', 1),
            make_edge('e5', 'n3', 'n0', 1),
        ]
        with self.assertRaises(NotFound):
            self.graph.import_elements(nodes, edges)
        self.assertEqual(len(self.graph), 2)
        self.assertEqual(self.graph.edge_count(), 0)

        self.assertEqual(self.graph.import_elements(nodes, edges[:2] + edges[3:]), (4, 4))
        self.assertEqual(len(self.graph), 6)

    def test_update_node_keeps_edges(self):
        """Test moving a node keeps its edges"""
        self.graph.add_edge(make_edge('ab', 'A', 'B', 1))
        self.graph.update_node(make_node('A', 500, 500))
        self.assertEqual(self.graph.node('A').x, 500)
        self.assertTrue(self.graph.has_edge('ab'))
        with self.assertRaises(OutOfBounds):
            self.graph.update_node(make_node('A', 5000, 5))
        self.assertEqual(self.graph.node('A').x, 500)

    def test_set_dimensions(self):
        """Test shrinking the image is rejected while a node would fall outside"""
        with self.assertRaises(OutOfBounds):
            self.graph.set_dimensions(50, 50)
        self.assertEqual((self.graph.width, self.graph.height), (1000, 800))
        self.graph.set_dimensions(100, 10)
        self.assertEqual((self.graph.width, self.graph.height), (100, 10))
        with self.assertRaises(InvalidExtent):
            self.graph.set_dimensions(0, 10)

    def test_frozen_graph_is_read_only(self):
        """Test published snapshots cannot be mutated"""
        self.graph.freeze()
        with self.assertRaises(GraphInvariantViolation):
            self.graph.add_node(make_node('C', 1, 1))


class GraphStoreTests(SimpleTestCase):
    """Copy-on-write snapshots and the single writer per floorplan"""

    def test_edit_publishes_new_snapshot(self):
        """Test readers keep their snapshot while a writer publishes a new one"""
        store = triangle_store()
        before = store.snapshot(FP)
        with store.edit(FP) as graph:
            graph.add_node(make_node('D', 300, 300))
            self.assertFalse(store.snapshot(FP).has_node('D'))
        self.assertFalse(before.has_node('D'))
        self.assertTrue(store.snapshot(FP).has_node('D'))
        self.assertTrue(store.snapshot(FP).frozen)

    def test_failed_edit_publishes_nothing(self):
        """Test a multi-step edit that fails half way leaves the graph untouched"""
        store = triangle_store()
        before = store.snapshot(FP)
        with self.assertRaises(SelfLoop):
            with store.edit(FP) as graph:
                graph.add_node(make_node('D', 300, 300))
                graph.add_edge(make_edge('dd', 'D', 'D', 1))
        self.assertIs(store.snapshot(FP), before)
        self.assertFalse(store.snapshot(FP).has_node('D'))

    def test_unknown_floorplan(self):
        """Test an unregistered floorplan has no snapshot"""
        store = GraphStore()
        with self.assertRaises(NotFound):
            store.snapshot('nope')
        store.register(FP, 10, 10)
        with self.assertRaises(DuplicateId):
            store.register(FP, 10, 10)

    def test_writer_lock_timeout(self):
        """Test a second writer gives up with GraphBusy; readers never block"""
        store = GraphStore(lock_timeout=0.05)
        store.register(FP, 100, 100)
        entered, release = threading.Event(), threading.Event()

        def writer():
            with store.edit(FP):
                entered.set()
                release.wait(5)

        thread = threading.Thread(target=writer)
        thread.start()
        try:
            self.assertTrue(entered.wait(5))
            self.assertEqual(len(store.snapshot(FP)), 0)
            with self.assertRaises(GraphBusy):
                with store.edit(FP):
                    pass
        finally:
            release.set()
            thread.join()
        with store.edit(FP) as graph:
            graph.add_node(make_node('A', 1, 1))

    def test_resize(self):
        """Test resizing checks every positioned node"""
        store = triangle_store()
        with self.assertRaises(OutOfBounds):
            store.resize(FP, 150, 150)
        self.assertEqual(store.snapshot(FP).width, 400)
        self.assertEqual(store.resize(FP, 200, 200).width, 200)


# ==================== PLANNER ====================

class PlannerTests(SimpleTestCase):
    """Shortest paths, filters and deterministic tie-breaking"""

    def test_trivial_path(self):
        """Test start == destination gives a single node with zero cost"""
        plan = find_path(triangle_graph(), 'A', 'A')
        self.assertEqual(plan.node_sequence, ('A',))
        self.assertEqual(plan.total_cost, 0.0)

    def test_triangle(self):
        """Test the two short edges beat the long direct edge"""
        plan = find_path(triangle_graph(), 'A', 'C')
        self.assertEqual(plan.node_sequence, ('A', 'B', 'C'))
        self.assertEqual(plan.edge_sequence, ('ab', 'bc'))
        self.assertEqual(plan.total_cost, 20)

    def test_accessibility_filter(self):
        """Test accessible-only routing avoids inaccessible edges"""
        graph = triangle_graph(bc_accessible=False)
        plan = find_path(graph, 'A', 'C', RouteFilter(accessible_only=True))
        self.assertEqual(plan.node_sequence, ('A', 'C'))
        self.assertEqual(plan.total_cost, 25)
        self.assertEqual(find_path(graph, 'A', 'C').total_cost, 20)

        graph = triangle_graph(bc_accessible=False, ac_accessible=False)
        with self.assertRaises(NoPathFound):
            find_path(graph, 'A', 'C', RouteFilter(accessible_only=True))

    def test_unknown_nodes(self):
        """Test unknown start or destination"""
        with self.assertRaises(UnknownNode):
            find_path(triangle_graph(), 'A', 'Z')
        with self.assertRaises(UnknownNode):
            find_path(triangle_graph(), 'Z', 'A')

    def test_tie_break_lowest_next_hop(self):
        """Test equal-cost routes resolve to the lowest next-hop node id"""
        graph = FloorplanGraph(FP, 100, 100)
        graph.import_elements(
            [make_node(name, 10, 10) for name in ('S', 'T', 'X', 'Y')],
            [
                make_edge('s-y', 'S', 'Y', 1), make_edge('s-x', 'S', 'X', 1),
                make_edge('y-t', 'Y', 'T', 1), make_edge('x-t', 'X', 'T', 1),
            ],
        )
        plan = find_path(graph, 'S', 'T')
        self.assertEqual(plan.node_sequence, ('S', 'X', 'T'))
        self.assertEqual(find_path(graph, 'T', 'S').node_sequence, ('T', 'X', 'S'))

    def test_deterministic(self):
        """Test repeated planning on an identical graph gives identical output"""
        graph = grid_graph(4)
        first = find_path(graph, 'r0c0', 'r3c3')
        for _ in range(10):
            self.assertEqual(find_path(grid_graph(4), 'r0c0', 'r3c3'), first)
        self.assertEqual(first.total_cost, 6)

    def test_directed_edge(self):
        """Test directed edges can only be walked forwards"""
        graph = FloorplanGraph(FP, 100, 100)
        graph.import_elements([make_node('A'), make_node('B')], [make_edge('ab', 'A', 'B', 1, directed=True)])
        self.assertEqual(find_path(graph, 'A', 'B').node_sequence, ('A', 'B'))
        with self.assertRaises(NoPathFound):
            find_path(graph, 'B', 'A')

    def test_emergency_only_with_fallback(self):
        """Test emergency routing falls back to the full graph when needed"""
        graph = FloorplanGraph(FP, 400, 400)
        graph.import_elements(
            [make_node('A', 100, 100), make_node('B', 200, 100), make_node('C', 200, 200)],
            [
                make_edge('ab', 'A', 'B', 10, is_emergency_path=True),
                make_edge('bc', 'B', 'C', 10),
            ],
        )
        emergency = RouteFilter(emergency_only=True)
        self.assertFalse(find_path(graph, 'A', 'B', emergency).used_fallback)

        plan = find_path(graph, 'A', 'C', emergency)
        self.assertTrue(plan.used_fallback)
        self.assertEqual(plan.node_sequence, ('A', 'B', 'C'))
        with self.assertRaises(NoPathFound):
            find_path(graph, 'A', 'C', emergency, emergency_fallback=False)

    def test_exclude_emergency(self):
        """Test emergency corridors can be kept out of normal routing"""
        graph = triangle_graph()
        graph.update_edge(make_edge('ab', 'A', 'B', 10, is_emergency_path=True))
        plan = find_path(graph, 'A', 'C', RouteFilter(exclude_emergency=True))
        self.assertEqual(plan.node_sequence, ('A', 'C'))

    def test_contradictory_filter(self):
        """Test emergency_only and exclude_emergency cannot be combined"""
        with self.assertRaises(GraphInputError):
            RouteFilter(emergency_only=True, exclude_emergency=True)

    def test_heuristic_matches_dijkstra(self):
        """Test A* with a consistent heuristic finds the same routes"""
        graph = grid_graph(5, spacing=10)
        heuristic = euclidean_heuristic(graph, scale=0.1)
        for target in ('r4c4', 'r0c4', 'r2c3'):
            self.assertEqual(find_path(graph, 'r0c0', target, heuristic=heuristic),
                             find_path(graph, 'r0c0', target))

    def test_optimal_cost(self):
        """Test the returned cost is the minimum over all simple paths"""
        graph = FloorplanGraph(FP, 100, 100)
        weights = {('A', 'B'): 4, ('A', 'C'): 1, ('C', 'B'): 2, ('B', 'D'): 1, ('C', 'D'): 5, ('D', 'E'): 3, ('B', 'E'): 7}
        graph.import_elements(
            [make_node(name) for name in 'ABCDE'],
            [make_edge(f'{a}{b}', a, b, w) for (a, b), w in weights.items()],
        )
        plan = find_path(graph, 'A', 'E')
        self.assertEqual(plan.total_cost, brute_force_cost(weights, 'A', 'E'))
        self.assertEqual(plan.node_sequence, ('A', 'C', 'B', 'D', 'E'))
        total = sum(graph.edge(edge_id).weight for edge_id in plan.edge_sequence)
        self.assertTrue(math.isclose(total, plan.total_cost))

    def test_find_nearest(self):
        """Test routing to the closest node of a kind"""
        graph = triangle_graph()
        plan = find_nearest(graph, 'A', lambda node: node.kind == NodeKind.RESTROOM)
        self.assertEqual(plan.node_sequence, ('A', 'B', 'C'))
        plan = find_nearest(graph, 'A', lambda node: node.kind == NodeKind.ENTRANCE)
        self.assertEqual(plan.node_sequence, ('A',))
        with self.assertRaises(NoPathFound):
            find_nearest(graph, 'A', lambda node: node.kind == NodeKind.ELEVATOR)

    def test_find_nearest_tie(self):
        """Test equal-cost targets resolve to the lowest node id"""
        graph = FloorplanGraph(FP, 100, 100)
        graph.import_elements(
            [make_node('S'), make_node('R2', kind='restroom'), make_node('R1', kind='restroom')],
            [make_edge('e1', 'S', 'R2', 3), make_edge('e2', 'S', 'R1', 3)],
        )
        plan = find_nearest(graph, 'S', lambda node: node.kind == NodeKind.RESTROOM)
        self.assertEqual(plan.destination_node_id, 'R1')


def grid_graph(size, spacing=1):
    graph = FloorplanGraph(FP, size * spacing + 1, size * spacing + 1)
    nodes = [make_node(f'r{r}c{c}', c * spacing, r * spacing) for r in range(size) for c in range(size)]
    edges = []
    for r in range(size):
        for c in range(size):
            if c + 1 < size:
                edges.append(make_edge(f'h{r}{c}', f'r{r}c{c}', f'r{r}c{c + 1}', spacing * 0.1 if spacing > 1 else 1))
            if r + 1 < size:
                edges.append(make_edge(f'v{r}{c}', f'r{r}c{c}', f'r{r + 1}c{c}', spacing * 0.1 if spacing > 1 else 1))
    graph.import_elements(nodes, edges)
    return graph


def brute_force_cost(weights, start, dest):
    adjacency = {}
    for (a, b), w in weights.items():
        adjacency.setdefault(a, []).append((b, w))
        adjacency.setdefault(b, []).append((a, w))
    best = math.inf
    stack = [(start, 0, {start})]
    while stack:
        node, cost, seen = stack.pop()
        if node == dest:
            best = min(best, cost)
            continue
        for following, w in adjacency.get(node, []):
            if following not in seen:
                stack.append((following, cost + w, seen | {following}))
    return best


# ==================== ANCHORS ====================

class AnchorPayloadTests(SimpleTestCase):
    """Structural validation of scanned QR payloads"""

    def test_bare_code(self):
        """Test a plain code without an event"""
        scanned = parse_anchor_payload('  A-12 ')
        self.assertEqual(scanned.anchor_code, 'A-12')
        self.assertIsNone(scanned.event_id)

    def test_json_payload(self):
        """Test the JSON form carrying the event id"""
        scanned = parse_anchor_payload('{"qr_code_id": "A-12", "event_id": 42}')
        self.assertEqual((scanned.anchor_code, scanned.event_id), ('A-12', '42'))
        scanned = parse_anchor_payload({'qr_code_id': 'B-1'})
        self.assertEqual((scanned.anchor_code, scanned.event_id), ('B-1', None))
        self.assertEqual(parse_anchor_payload(b'C-3').anchor_code, 'C-3')

    def test_malformed_payloads(self):
        """Test malformed payloads are rejected before any lookup"""
        for raw in (None, '', '   ', '{not json', '[1, 2]', '{"event_id": 1}', '{"qr_code_id": ""}',
                    '{"qr_code_id": 5}', '{"qr_code_id": "A", "event_id": true}', 'A\x00B',
                    'x' * 600, b'\xff\xfe'):
            with self.assertRaises(MalformedAnchorError, msg=repr(raw)):
                parse_anchor_payload(raw)

    def test_validate_anchor_code(self):
        """Test codes printed on anchors"""
        self.assertEqual(validate_anchor_code(' HALL-1 '), 'HALL-1')
        for code in ('', '{"qr_code_id": "x"}', 'a\tb', 'x' * 201):
            with self.assertRaises(MalformedAnchorError):
                validate_anchor_code(code)


class AnchorResolverTests(SimpleTestCase):
    """Anchor bindings scoped per event"""

    def setUp(self):
        self.store = triangle_store()
        self.registry = AnchorRegistry()
        self.resolver = AnchorResolver(self.registry, self.store)
        self.registry.bind(BoundAnchor('QR-1', 'ev1', 'A', FP))

    def test_resolve(self):
        """Test a bound code resolves to its node"""
        resolved = self.resolver.resolve('QR-1', 'ev1')
        self.assertEqual((resolved.node_id, resolved.floorplan_id), ('A', FP))

    def test_scoped_per_event(self):
        """Test the same code can be reused by another event"""
        self.registry.bind(BoundAnchor('QR-1', 'ev2', 'C', FP))
        self.assertEqual(self.resolver.resolve('QR-1', 'ev1').node_id, 'A')
        self.assertEqual(self.resolver.resolve('QR-1', 'ev2').node_id, 'C')
        with self.assertRaises(AnchorNotFoundError):
            self.resolver.resolve('QR-1', 'ev3')

    def test_duplicate_bindings(self):
        """Test one code per event, and one anchor per node unless shared nodes are allowed"""
        with self.assertRaises(DuplicateId):
            self.registry.bind(BoundAnchor('QR-1', 'ev1', 'B', FP))
        with self.assertRaises(DuplicateId):
            self.registry.bind(BoundAnchor('QR-2', 'ev1', 'A', FP))
        self.registry.bind(BoundAnchor('QR-2', 'ev1', 'A', FP), allow_shared_node=True)
        self.assertEqual([b.anchor_code for b in self.registry.bindings_for_event('ev1')], ['QR-1', 'QR-2'])

    def test_unknown_code(self):
        """Test unknown codes are a soft outcome"""
        with self.assertRaises(AnchorNotFoundError) as ctx:
            self.resolver.resolve('NOPE', 'ev1')
        self.assertFalse(ctx.exception.stale)

    def test_stale_binding(self):
        """Test a binding whose node disappeared is reported as stale"""
        with self.store.edit(FP) as graph:
            graph.remove_node('A')
        with self.assertLogs('backend.wayfinding.anchors', level='WARNING'):
            with self.assertRaises(AnchorNotFoundError) as ctx:
                self.resolver.resolve('QR-1', 'ev1')
        self.assertTrue(ctx.exception.stale)

    def test_resolve_payload(self):
        """Test payload parsing feeds the lookup; event ids must agree"""
        payload = json.dumps({'qr_code_id': 'QR-1', 'event_id': 'ev1'})
        self.assertEqual(self.resolver.resolve_payload(payload).node_id, 'A')
        self.assertEqual(self.resolver.resolve_payload('QR-1', 'ev1').node_id, 'A')
        with self.assertRaises(AnchorNotFoundError):
            self.resolver.resolve_payload(payload, 'ev2')
        with self.assertRaises(MalformedAnchorError):
            self.resolver.resolve_payload('QR-1')

    def test_unbind_and_drop_node(self):
        """Test bindings disappear with unbind and when their node is removed"""
        self.registry.bind(BoundAnchor('QR-9', 'ev2', 'A', FP))
        self.assertEqual(len(self.registry.drop_node('A')), 2)
        self.assertIsNone(self.registry.lookup('QR-1', 'ev1'))
        with self.assertRaises(NotFound):
            self.registry.unbind('QR-1', 'ev1')


# ==================== ROUTE SESSION ====================

class RouteSessionTests(SimpleTestCase):
    """End-to-end route requests against one snapshot"""

    def setUp(self):
        self.store = triangle_store()
        self.registry = AnchorRegistry()
        self.registry.bind(BoundAnchor('QR-A', 'ev1', 'A', FP))
        self.session = RouteSession(self.store, AnchorResolver(self.registry, self.store))

    def test_route_from_start_node(self):
        """Test coordinates, distances and turn instructions of a route"""
        result = self.session.plan(RouteRequest(
            start_node_id='A', destination_node_id='C', floorplan_id=FP,
            display_width=800, display_height=800,
        ))
        self.assertEqual(result.status, STATUS_OK)
        self.assertTrue(result.ok)
        self.assertEqual(result.node_sequence, ('A', 'B', 'C'))
        self.assertEqual(result.total_cost, 20)

        first, middle, last = result.points
        self.assertEqual((first.x_percent, first.y_percent), (25.0, 25.0))
        self.assertEqual((first.display_x, first.display_y), (200.0, 200.0))
        self.assertEqual([p.instruction for p in result.points], ['start', 'right', 'arrive'])
        self.assertAlmostEqual(middle.turn_angle, 90.0)
        self.assertEqual([p.cumulative_distance for p in result.points], [0.0, 10.0, 20.0])
        self.assertEqual([(leg.edge_id, leg.cumulative_distance) for leg in result.legs], [('ab', 10.0), ('bc', 20.0)])
        self.assertEqual(last.kind, 'restroom')

    def test_route_from_anchor(self):
        """Test the anchor's node and floorplan become the start"""
        payload = json.dumps({'qr_code_id': 'QR-A', 'event_id': 'ev1'})
        result = self.session.plan(RouteRequest(anchor_payload=payload, destination_node_id='C'))
        self.assertEqual(result.status, STATUS_OK)
        self.assertEqual(result.start_node_id, 'A')
        self.assertEqual(result.floorplan_id, FP)
        json.dumps(result.as_dict())

    def test_outcomes(self):
        """Test unreachable, unknown node and invalid anchor outcomes"""
        with self.store.edit(FP) as graph:
            graph.add_node(make_node('island', 300, 300))
        result = self.session.plan(RouteRequest(start_node_id='A', destination_node_id='island', floorplan_id=FP))
        self.assertEqual(result.status, STATUS_UNREACHABLE)
        self.assertEqual(result.message, 'No route available')

        result = self.session.plan(RouteRequest(start_node_id='A', destination_node_id='nowhere', floorplan_id=FP))
        self.assertEqual(result.status, STATUS_UNKNOWN_NODE)

        result = self.session.plan(RouteRequest(anchor_payload='QR-X', event_id='ev1', destination_node_id='C'))
        self.assertEqual(result.status, STATUS_INVALID_ANCHOR)
        self.assertFalse(result.stale_anchor)

    def test_stale_anchor_outcome(self):
        """Test a dangling binding answers invalid_anchor with stale_anchor set"""
        with self.store.edit(FP) as graph:
            graph.remove_node('A')
        result = self.session.plan(RouteRequest(anchor_payload='QR-A', event_id='ev1', destination_node_id='C'))
        self.assertEqual(result.status, STATUS_INVALID_ANCHOR)
        self.assertTrue(result.stale_anchor)

    def test_invalid_requests(self):
        """Test caller mistakes raise InvalidRouteRequest"""
        bad = [
            RouteRequest(destination_node_id='C'),
            RouteRequest(start_node_id='A', anchor_payload='QR-A', event_id='ev1', destination_node_id='C', floorplan_id=FP),
            RouteRequest(start_node_id='A', floorplan_id=FP),
            RouteRequest(start_node_id='A', destination_node_id='C'),
            RouteRequest(start_node_id='A', destination_node_id='C', floorplan_id=FP, display_width=100),
            RouteRequest(start_node_id='A', destination_node_id='C', floorplan_id=FP, display_width=100, display_height=0),
            RouteRequest(anchor_payload='QR-A', event_id='ev1', destination_node_id='C', floorplan_id='other'),
        ]
        for request in bad:
            with self.assertRaises(InvalidRouteRequest, msg=repr(request)):
                self.session.plan(request)

    def test_invariant_violation_propagates(self):
        """Test a corrupt graph is fatal and logged at critical"""
        request = RouteRequest(start_node_id='A', destination_node_id='C', floorplan_id=FP)
        with mock.patch('backend.wayfinding.session.find_path', side_effect=GraphInvariantViolation('broken')):
            with self.assertLogs('backend.wayfinding.session', level='CRITICAL'):
                with self.assertRaises(GraphInvariantViolation):
                    self.session.plan(request)

    def test_nearest(self):
        """Test routing to the nearest node of a kind"""
        with self.store.edit(FP) as graph:
            graph.update_node(make_node('B', 200, 100, is_first_aid=True))
        request = RouteRequest(start_node_id='A', floorplan_id=FP)
        self.assertEqual(self.session.plan_to_nearest(request, ['restroom']).destination_node_id, 'C')
        self.assertEqual(self.session.plan_to_nearest(request, ['first_aid']).destination_node_id, 'B')
        with self.assertRaises(InvalidRouteRequest):
            self.session.plan_to_nearest(request, ['teleporter'])
        with self.assertRaises(InvalidRouteRequest):
            self.session.plan_to_nearest(request, [])

    def test_turn_instruction(self):
        """Test the turn threshold"""
        self.assertEqual(turn_instruction(None), 'straight')
        self.assertEqual(turn_instruction(10), 'straight')
        self.assertEqual(turn_instruction(-45), 'left')
        self.assertEqual(turn_instruction(45), 'right')
        self.assertEqual(turn_instruction(10, threshold=5), 'right')

    def test_concurrent_reads_during_edits(self):
        """Test concurrent plans stay identical while a writer publishes unrelated changes"""
        request = RouteRequest(start_node_id='A', destination_node_id='C', floorplan_id=FP)
        expected = self.session.plan(request)
        results, errors = [], []

        def reader():
            try:
                for _ in range(25):
                    results.append(self.session.plan(request))
            except Exception as e:  # surfaced through the assertion below
                errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(6)]
        for thread in threads:
            thread.start()
        for index in range(25):
            with self.store.edit(FP) as graph:
                graph.add_node(make_node(f'extra{index}', 10, 10))
        for thread in threads:
            thread.join()
        self.assertEqual(errors, [])
        self.assertEqual(len(results), 150)
        for result in results:
            self.assertEqual(result, expected)


# ==================== SERVICE LAYER ====================

class WayfindingServiceTests(TestCase):
    """Database writes and in-memory graph kept in step"""

    def setUp(self):
        reset_wayfinding_state()
        self.event = TestDataFactory.create_event()
        self.floorplan = TestDataFactory.create_floorplan(event=self.event, width=400, height=400)
        self.a, self.b, self.c, self.ab, self.bc, self.ac = TestDataFactory.create_triangle(self.floorplan)

    def graph(self):
        return services.ensure_graph(self.floorplan)

    def test_graph_follows_database(self):
        """Test every created row is part of the published graph"""
        graph = self.graph()
        self.assertEqual(len(graph), 3)
        self.assertEqual(graph.edge_count(), 3)
        self.assertEqual(graph.node(str(self.a.pk)).kind, NodeKind.ENTRANCE)

    def test_rehydration(self):
        """Test a dropped graph is rebuilt identically from the database"""
        before = self.graph()
        services.drop_graph(self.floorplan.pk)
        after = self.graph()
        self.assertIsNot(before, after)
        self.assertEqual(before.nodes(), after.nodes())
        self.assertEqual(before.edges(), after.edges())

    def test_out_of_bounds_node_not_persisted(self):
        """Test a rejected node leaves no row behind"""
        with self.assertRaises(OutOfBounds):
            TestDataFactory.create_node(self.floorplan, 500, 10)
        self.assertEqual(NavigationNode.objects.filter(floorplan=self.floorplan).count(), 3)

    def test_percentage_input(self):
        """Test nodes can be placed with percentage coordinates"""
        node = services.create_node(self.floorplan, {'x_percent': 50, 'y_percent': 25, 'kind': 'exit'})
        self.assertEqual((node.x, node.y), (200.0, 100.0))

    def test_default_edge_weight(self):
        """Test omitted weights use pixel distance over the floorplan scale"""
        self.floorplan.scale_factor = 2.0
        d = TestDataFactory.create_node(self.floorplan, 130, 140)
        edge = TestDataFactory.create_edge(self.floorplan, self.a, d)
        self.assertAlmostEqual(edge.weight, 25.0)

    def test_busy_writer_leaves_database_untouched(self):
        """Test a second writer times out with GraphBusy before writing any row while readers keep planning"""
        store = services.get_graph_store()
        self.graph()
        store.lock_timeout = 0.05
        entered, release = threading.Event(), threading.Event()

        def writer():
            with store.edit(self.floorplan.pk):
                entered.set()
                release.wait(5)

        thread = threading.Thread(target=writer)
        thread.start()
        try:
            self.assertTrue(entered.wait(5))
            with self.assertRaises(GraphBusy):
                TestDataFactory.create_node(self.floorplan, 50, 50)
            self.assertEqual(NavigationNode.objects.filter(floorplan=self.floorplan).count(), 3)
            plan = find_path(store.snapshot(self.floorplan.pk), str(self.a.pk), str(self.c.pk))
            self.assertEqual(plan.total_cost, 20)
        finally:
            release.set()
            thread.join()
        TestDataFactory.create_node(self.floorplan, 50, 50)
        self.assertEqual(len(self.graph()), 4)

    def test_duplicate_edge_rejected(self):
        """Test a parallel edge with the same flags is rejected in both stores"""
        with self.assertRaises(DuplicateEdge):
            TestDataFactory.create_edge(self.floorplan, self.b, self.a, 3)
        self.assertEqual(NavigationEdge.objects.filter(floorplan=self.floorplan).count(), 3)
        TestDataFactory.create_edge(self.floorplan, self.b, self.a, 3, is_accessible=False)
        self.assertEqual(self.graph().edge_count(), 4)

    def test_edge_to_other_floorplan(self):
        """Test edges cannot connect nodes of two floorplans"""
        other = TestDataFactory.create_floorplan(venue=self.floorplan.venue)
        stranger = TestDataFactory.create_node(other, 1, 1)
        with self.assertRaises(NotFound):
            TestDataFactory.create_edge(self.floorplan, self.a, stranger, 1)

    def test_delete_node_cascades(self):
        """Test deleting a node removes its edges and anchors everywhere"""
        TestDataFactory.create_anchor(self.event, self.b, 'QR-B')
        removed = services.delete_node(self.floorplan, self.b)
        self.assertEqual(sorted(edge.id for edge in removed), sorted([str(self.ab.pk), str(self.bc.pk)]))
        self.assertFalse(NavigationEdge.objects.filter(pk__in=[self.ab.pk, self.bc.pk]).exists())
        self.assertFalse(AnchorBinding.objects.filter(anchor_code='QR-B').exists())
        self.assertIsNone(services.get_anchor_registry().lookup('QR-B', self.event.pk))
        graph = self.graph()
        self.assertFalse(graph.has_node(str(self.b.pk)))
        self.assertEqual([edge.id for edge in graph.edges()], [str(self.ac.pk)])

    def test_move_node(self):
        """Test moving a node keeps its edges and checks bounds"""
        services.move_node(self.floorplan, self.b, {'x': 150, 'name': 'Hall'})
        node = self.graph().node(str(self.b.pk))
        self.assertEqual((node.x, node.name), (150.0, 'Hall'))
        with self.assertRaises(OutOfBounds):
            services.move_node(self.floorplan, self.b, {'y': 900})
        self.b.refresh_from_db()
        self.assertEqual(self.b.y, 100.0)

    def test_update_and_delete_edge(self):
        """Test edge weight changes reroute, deleted edges vanish"""
        services.update_edge(self.floorplan, self.ac, {'weight': 5})
        self.assertEqual(find_path(self.graph(), str(self.a.pk), str(self.c.pk)).total_cost, 5)
        services.delete_edge(self.floorplan, self.ac)
        self.assertEqual(find_path(self.graph(), str(self.a.pk), str(self.c.pk)).total_cost, 20)
        self.assertFalse(NavigationEdge.objects.filter(pk=self.ac.pk).exists())

    def test_import_graph(self):
        """Test a bulk import with keys, default weights and references to existing nodes"""
        self.a.node_key = 'entrance'
        self.a.save()
        services.drop_graph(self.floorplan.pk)
        payload = {
            'nodes': [
                {'key': 'hall', 'x': 100, 'y': 300, 'name': 'Hall'},
                {'key': 'exit', 'x': 100, 'y': 400, 'kind': 'emergency_exit', 'is_emergency_exit': True},
            ],
            'edges': [
                {'from': 'entrance', 'to': 'hall'},
                {'from': 'hall', 'to': 'exit', 'weight': 4, 'is_emergency_path': True},
            ],
        }
        result = services.import_graph(self.floorplan, payload)
        self.assertEqual((result['nodes_created'], result['edges_created']), (2, 2))
        hall_id = str(result['node_ids']['hall'])
        edge = NavigationEdge.objects.get(from_node=self.a, to_node_id=hall_id)
        self.assertAlmostEqual(edge.weight, 200.0)
        self.assertEqual(len(self.graph()), 5)
        self.assertTrue(AuditLog.objects.filter(action='graph_import', object_id=str(self.floorplan.pk)).exists())

    def test_import_graph_is_atomic(self):
        """Test an import with one bad edge changes neither the graph nor the database"""
        before = self.graph()
        payload = {
            'nodes': [{'key': f'n{i}', 'x': 10 * i, 'y': 10} for i in range(4)],
            'edges': [
                {'from': 'n0', 'to': 'n1', 'weight': 1},
                {'from': 'n1', 'to': 'n2', 'weight': 1},
                {'from': 'n2', 'to': 'ghost', 'weight': 1},
                {'from': 'n2', 'to': 'n3', 'weight': 1},
                {'from': 'n3', 'to': 'n0', 'weight': 1},
            ],
        }
        with self.assertRaises(NotFound):
            services.import_graph(self.floorplan, payload)
        self.assertEqual(NavigationNode.objects.filter(floorplan=self.floorplan).count(), 3)
        self.assertEqual(NavigationEdge.objects.filter(floorplan=self.floorplan).count(), 3)
        self.assertIs(self.graph(), before)

        payload['edges'][2]['weight'] = 0
        payload['edges'][2]['to'] = 'n3'
        with self.assertRaises(NonPositiveWeight):
            services.import_graph(self.floorplan, payload)
        self.assertEqual(NavigationNode.objects.filter(floorplan=self.floorplan).count(), 3)

    def test_import_duplicate_keys(self):
        """Test node keys must be unique within the payload"""
        payload = {'nodes': [{'key': 'x', 'x': 1, 'y': 1}, {'key': 'x', 'x': 2, 'y': 2}]}
        with self.assertRaises(DuplicateId):
            services.import_graph(self.floorplan, payload)
        with self.assertRaises(GraphInputError):
            services.import_graph(self.floorplan, {'nodes': 'nope'})

    def test_import_replace(self):
        """Test replace wipes nodes, edges and anchors first"""
        TestDataFactory.create_anchor(self.event, self.a, 'QR-A')
        payload = {'nodes': [{'key': 'solo', 'x': 5, 'y': 5}], 'edges': []}
        services.import_graph(self.floorplan, payload, replace=True)
        self.assertEqual(NavigationNode.objects.filter(floorplan=self.floorplan).count(), 1)
        self.assertFalse(AnchorBinding.objects.exists())
        self.assertEqual(len(self.graph()), 1)

    def test_resize_floorplan(self):
        """Test resizing is rejected while nodes would fall outside"""
        with self.assertRaises(OutOfBounds):
            services.resize_floorplan(self.floorplan, 150, 150)
        self.floorplan.refresh_from_db()
        self.assertEqual(self.floorplan.width, 400)
        services.resize_floorplan(self.floorplan, 250, 250)
        self.floorplan.refresh_from_db()
        self.assertEqual((self.floorplan.width, self.graph().width), (250, 250))

    def test_signals_evict_on_direct_changes(self):
        """Test rows changed outside the service layer evict the graph"""
        self.graph()
        self.b.name = 'Renamed in admin'
        self.b.save()
        self.assertNotIn(self.floorplan.pk, services.get_graph_store())
        self.assertEqual(self.graph().node(str(self.b.pk)).name, 'Renamed in admin')

    def test_invalid_persisted_data(self):
        """Test corrupt rows surface as GraphInvariantViolation on hydration"""
        NavigationEdge.objects.create(floorplan=self.floorplan, from_node=self.a, to_node=self.c, weight=0)
        with self.assertLogs('backend.wayfinding.services', level='CRITICAL'):
            with self.assertRaises(GraphInvariantViolation):
                self.graph()

    def test_anchor_binding(self):
        """Test bindings are unique per event, reusable across events, and venue bound"""
        TestDataFactory.create_anchor(self.event, self.a, 'QR-1')
        with self.assertRaises(DuplicateId):
            TestDataFactory.create_anchor(self.event, self.b, 'QR-1')
        other_event = TestDataFactory.create_event(venue=self.event.venue)
        TestDataFactory.create_anchor(other_event, self.b, 'QR-1')
        self.assertEqual(AnchorBinding.objects.filter(anchor_code='QR-1').count(), 2)

        foreign = TestDataFactory.create_event()
        with self.assertRaises(GraphInputError):
            TestDataFactory.create_anchor(foreign, self.a, 'QR-2')

    def test_unbind_anchor(self):
        """Test unbinding removes the row and the registry entry"""
        binding = TestDataFactory.create_anchor(self.event, self.a, 'QR-1')
        services.unbind_anchor(binding)
        self.assertFalse(AnchorBinding.objects.exists())
        with self.assertRaises(AnchorNotFoundError):
            services.resolve_anchor('QR-1', self.event.pk)

    def test_resolve_anchor_after_restart(self):
        """Test bindings are loaded from the database by a fresh process"""
        TestDataFactory.create_anchor(self.event, self.a, 'QR-1')
        reset_wayfinding_state()
        resolved = services.resolve_anchor(json.dumps({'qr_code_id': 'QR-1', 'event_id': self.event.pk}))
        self.assertEqual(resolved['node']['id'], str(self.a.pk))
        self.assertEqual((resolved['node']['x_percent'], resolved['node']['y_percent']), (25.0, 25.0))
        with self.assertRaises(AnchorNotFoundError):
            services.resolve_anchor('QR-1', 999999)

    def test_plan_route(self):
        """Test planning through the service layer with an anchor start"""
        TestDataFactory.create_anchor(self.event, self.a, 'QR-1')
        request = RouteRequest(anchor_payload='QR-1', event_id=str(self.event.pk), destination_node_id=str(self.c.pk))
        result = services.plan_route(request)
        self.assertEqual(result.status, STATUS_OK)
        self.assertEqual(result.node_sequence, (str(self.a.pk), str(self.b.pk), str(self.c.pk)))

    def test_find_integrity_issues(self):
        """Test persisted problems are reported"""
        self.assertEqual(services.find_integrity_issues([self.floorplan]), [])
        NavigationNode.objects.filter(pk=self.c.pk).update(x=5000)
        NavigationEdge.objects.filter(pk=self.ab.pk).update(weight=-1)
        issues = services.find_integrity_issues([self.floorplan])
        self.assertEqual(len(issues), 2)


# ==================== HTTP ====================

class WayfindingAPITests(TestCase):
    """Editor and mobile endpoints"""

    def setUp(self):
        reset_wayfinding_state()
        self.editor = TestDataFactory.create_editor()
        self.user = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.editor)
        self.event = TestDataFactory.create_event()
        self.floorplan = TestDataFactory.create_floorplan(event=self.event, width=400, height=400)
        self.a, self.b, self.c, self.ab, self.bc, self.ac = TestDataFactory.create_triangle(self.floorplan)
        self.base = f'/api/v1/floorplans/{self.floorplan.pk}'

    def test_get_graph(self):
        """Test the graph download carries percentage coordinates"""
        self.client.logout()
        response = self.client.get(f'{self.base}/graph/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['nodes']), 3)
        self.assertEqual(len(response.data['edges']), 3)
        node_a = next(node for node in response.data['nodes'] if node['id'] == str(self.a.pk))
        self.assertEqual((node_a['x_percent'], node_a['y_percent']), (25.0, 25.0))

    def test_import_graph_endpoint(self):
        """Test bulk import via API, including an atomic rejection"""
        payload = {'nodes': [{'key': 'd', 'x': 300, 'y': 300}], 'edges': [{'from': 'd', 'to': 'ghost'}]}
        response = self.client.post(f'{self.base}/graph/', payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'not_found')
        self.assertEqual(NavigationNode.objects.count(), 3)

        payload['edges'] = []
        response = self.client.post(f'{self.base}/graph/', payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['nodes_created'], 1)

    def test_editor_permissions(self):
        """Test non-editors cannot change navigation data"""
        self.client.authenticate_user(self.user)
        response = self.client.post(f'{self.base}/nodes/', {'x': 1, 'y': 1}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        response = self.client.get(f'{self.base}/nodes/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.client.logout()
        response = self.client.get(f'{self.base}/nodes/')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_create_node(self):
        """Test node creation, bounds errors and the audit trail"""
        response = self.client.post(f'{self.base}/nodes/', {'x': 10, 'y': 20, 'kind': 'restroom', 'name': 'WC'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['x_percent'], 2.5)
        self.assertTrue(AuditLog.objects.filter(action='create', model_name='NavigationNode', object_id=str(response.data['id'])).exists())

        response = self.client.post(f'{self.base}/nodes/', {'x': 401, 'y': 20}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'out_of_bounds')

    def test_filter_nodes(self):
        """Test node list filters"""
        response = self.client.get(f'{self.base}/nodes/', {'kind': 'restroom,entrance'})
        self.assertEqual({node['name'] for node in response.data}, {'A', 'C'})
        response = self.client.get(f'{self.base}/nodes/', {'search': 'b'})
        self.assertEqual([node['name'] for node in response.data], ['B'])

    def test_node_detail(self):
        """Test moving and deleting a node"""
        url = f'{self.base}/nodes/{self.b.pk}/'
        response = self.client.patch(url, {'x_percent': 50, 'y_percent': 50}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual((response.data['x'], response.data['y']), (200.0, 200.0))

        response = self.client.delete(url)
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertEqual(NavigationEdge.objects.filter(floorplan=self.floorplan).count(), 1)
        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_edges(self):
        """Test edge creation rules over HTTP"""
        url = f'{self.base}/edges/'
        response = self.client.post(url, {'from_node': self.b.pk, 'to_node': self.a.pk, 'weight': 2}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'duplicate_edge')

        response = self.client.post(url, {'from_node': self.a.pk, 'to_node': self.a.pk, 'weight': 2}, format='json')
        self.assertEqual(response.data['code'], 'self_loop')

        response = self.client.post(url, {'from_node': self.a.pk, 'to_node': self.b.pk, 'weight': 2, 'is_accessible': False}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)

        response = self.client.patch(f'{url}{self.ac.pk}/', {'weight': 0}, format='json')
        self.assertEqual(response.data['code'], 'non_positive_weight')
        response = self.client.delete(f'{url}{self.ac.pk}/')
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)

    def test_graph_busy(self):
        """Test a writer lock timeout maps to 503"""
        with mock.patch('backend.wayfinding.views.services.create_node', side_effect=GraphBusy('busy')):
            response = self.client.post(f'{self.base}/nodes/', {'x': 1, 'y': 1}, format='json')
        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(response.data['code'], 'graph_busy')

    def test_anchor_endpoints(self):
        """Test binding, listing, resolving and unbinding anchors"""
        url = f'/api/v1/events/{self.event.pk}/anchors/'
        response = self.client.post(url, {'anchor_code': 'QR-1', 'node': self.a.pk}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        anchor_id = response.data['id']
        response = self.client.post(url, {'anchor_code': 'QR-1', 'node': self.b.pk}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(len(self.client.get(url).data), 1)

        self.client.logout()
        payload = json.dumps({'qr_code_id': 'QR-1', 'event_id': self.event.pk})
        response = self.client.post('/api/v1/navigation/anchors/resolve/', {'anchor_payload': payload}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['node']['id'], str(self.a.pk))

        response = self.client.post('/api/v1/navigation/anchors/resolve/',
                                    {'anchor_payload': 'QR-404', 'event_id': self.event.pk}, format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        response = self.client.post('/api/v1/navigation/anchors/resolve/', {'anchor_payload': '{oops'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        self.client.authenticate_user(self.editor)
        response = self.client.delete(f'{url}{anchor_id}/')
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)

    def test_route_endpoint(self):
        """Test the mobile route endpoint and its status mapping"""
        TestDataFactory.create_anchor(self.event, self.a, 'QR-1')
        self.client.logout()
        url = '/api/v1/navigation/route/'
        payload = {
            'anchor_payload': {'qr_code_id': 'QR-1', 'event_id': self.event.pk},
            'destination_node_id': self.c.pk,
            'display_width': 800,
            'display_height': 800,
        }
        response = self.client.post(url, payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'ok')
        self.assertEqual(response.data['node_sequence'], [str(self.a.pk), str(self.b.pk), str(self.c.pk)])
        self.assertEqual(response.data['points'][0]['display_x'], 200.0)

        island = TestDataFactory.create_node(self.floorplan, 300, 300)
        response = self.client.post(url, {**payload, 'destination_node_id': island.pk}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'unreachable')

        response = self.client.post(url, {**payload, 'anchor_payload': 'QR-404', 'event_id': self.event.pk}, format='json')
        self.assertEqual(response.data['status'], 'invalid_anchor')

        response = self.client.post(url, {**payload, 'destination_node_id': 999999}, format='json')
        self.assertEqual(response.data['status'], 'unknown_node')

    def test_route_caller_mistakes(self):
        """Test malformed route requests are 400 and unknown floorplans 404"""
        url = '/api/v1/navigation/route/'
        response = self.client.post(url, {'destination_node_id': self.c.pk}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'invalid_route_request')

        response = self.client.post(url, {'start_node_id': self.a.pk, 'floorplan_id': self.floorplan.pk,
                                          'destination_node_id': self.c.pk, 'emergency_only': True,
                                          'exclude_emergency': True}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post(url, {'start_node_id': self.a.pk, 'floorplan_id': 999999,
                                          'destination_node_id': self.c.pk}, format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_accessible_route(self):
        """Test the accessibility flag reaches the planner"""
        services.update_edge(self.floorplan, self.bc, {'is_accessible': False})
        response = self.client.post('/api/v1/navigation/route/', {
            'start_node_id': self.a.pk, 'floorplan_id': self.floorplan.pk,
            'destination_node_id': self.c.pk, 'accessible_only': True,
        }, format='json')
        self.assertEqual(response.data['node_sequence'], [str(self.a.pk), str(self.c.pk)])
        self.assertEqual(response.data['total_cost'], 25)

    def test_nearest_endpoint(self):
        """Test routing to the nearest restroom"""
        response = self.client.post('/api/v1/navigation/nearest/', {
            'start_node_id': self.a.pk, 'floorplan_id': self.floorplan.pk, 'kinds': ['restroom'],
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['destination_node_id'], str(self.c.pk))

    def test_invariant_violation_is_500(self):
        """Test corrupt persisted data answers 500 with the error code"""
        NavigationEdge.objects.create(floorplan=self.floorplan, from_node=self.a, to_node=self.c, weight=0)
        with self.assertLogs('backend.wayfinding.services', level='CRITICAL'):
            response = self.client.post('/api/v1/navigation/route/', {
                'start_node_id': self.a.pk, 'floorplan_id': self.floorplan.pk, 'destination_node_id': self.c.pk,
            }, format='json')
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.data['code'], 'graph_invariant_violation')


# ==================== MANAGEMENT COMMANDS ====================

class ManagementCommandTests(TestCase):
    """import_floorplan_graph and check_graph_integrity"""

    def setUp(self):
        reset_wayfinding_state()
        self.floorplan = TestDataFactory.create_floorplan(width=100, height=100)

    def write_payload(self, payload):
        handle, path = tempfile.mkstemp(suffix='.json')
        with os.fdopen(handle, 'w', encoding='utf-8') as fh:
            json.dump(payload, fh)
        self.addCleanup(os.remove, path)
        return path

    def test_import_command(self):
        """Test a graph file is imported through the service layer"""
        path = self.write_payload({
            'nodes': [{'key': 'a', 'x': 0, 'y': 0}, {'key': 'b', 'x': 30, 'y': 40}],
            'edges': [{'from': 'a', 'to': 'b'}],
        })
        call_command('import_floorplan_graph', self.floorplan.pk, path, stdout=StringIO())
        self.assertEqual(NavigationEdge.objects.get().weight, 50.0)
        self.assertEqual(services.ensure_graph(self.floorplan).edge_count(), 1)

    def test_import_command_rejects_bad_file(self):
        """Test an invalid graph file changes nothing"""
        path = self.write_payload({'nodes': [{'key': 'a', 'x': 500, 'y': 0}]})
        with self.assertRaises(CommandError):
            call_command('import_floorplan_graph', self.floorplan.pk, path)
        self.assertFalse(NavigationNode.objects.exists())
        with self.assertRaises(CommandError):
            call_command('import_floorplan_graph', 999999, path)

    def test_integrity_command(self):
        """Test the integrity check passes on clean data and fails on corrupt rows"""
        a = TestDataFactory.create_node(self.floorplan, 10, 10)
        b = TestDataFactory.create_node(self.floorplan, 20, 20)
        TestDataFactory.create_edge(self.floorplan, a, b, 3)
        call_command('check_graph_integrity', stdout=StringIO())

        NavigationEdge.objects.create(floorplan=self.floorplan, from_node=a, to_node=b, weight=0)
        with self.assertRaises(CommandError):
            call_command('check_graph_integrity', floorplan=self.floorplan.pk, stdout=StringIO())
