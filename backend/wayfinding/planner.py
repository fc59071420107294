"""
Shortest-path search over a floorplan graph.

Dijkstra (or A* with a consistent heuristic) runs backwards from the
destination; the route is then rebuilt forwards by following tight edges,
always taking the lowest next-hop node id among equal-cost continuations.
That makes the output reproducible for an identical graph and filter.
"""
import heapq
import logging
import math
from dataclasses import dataclass, replace
from typing import Callable, Optional

from .exceptions import GraphInvariantViolation, NoPathFound, UnknownNode
from .graph import FloorplanGraph, Node, RouteFilter

logger = logging.getLogger(__name__)

COST_TOLERANCE = 1e-9

Heuristic = Callable[[str, str], float]


@dataclass(frozen=True)
class RoutePlan:
    node_sequence: tuple
    edge_sequence: tuple
    total_cost: float
    used_fallback: bool = False

    @property
    def start_node_id(self):
        return self.node_sequence[0]

    @property
    def destination_node_id(self):
        return self.node_sequence[-1]

    @property
    def hop_count(self):
        return len(self.edge_sequence)


def same_cost(a: float, b: float) -> bool:
    return abs(a - b) <= COST_TOLERANCE * max(1.0, abs(a), abs(b))


def euclidean_heuristic(graph: FloorplanGraph, scale: float = 1.0) -> Heuristic:
    """
    Straight-line pixel distance times scale.

    Consistent only when every edge weight is at least scale times the pixel
    distance between its endpoints. Unpositioned nodes estimate 0.
    """
    def estimate(a: str, b: str) -> float:
        node_a, node_b = graph.node(a), graph.node(b)
        if not (node_a.positioned and node_b.positioned):
            return 0.0
        return math.hypot(node_a.x - node_b.x, node_a.y - node_b.y) * scale
    return estimate


def _costs_to_destination(graph, start_id, dest_id, route_filter, heuristic):
    """
    Reverse search from the destination.

    Returns exact remaining costs for every node that can lie on a shortest
    route from start_id. Raises NoPathFound when start_id is unreachable.
    """
    estimate = heuristic or (lambda a, b: 0.0)
    remaining = {dest_id: 0.0}
    settled = set()
    heap = [(estimate(dest_id, start_id), dest_id)]
    bound = None

    while heap:
        priority, node_id = heapq.heappop(heap)
        if node_id in settled:
            continue
        if bound is not None and priority > bound and not same_cost(priority, bound):
            break
        settled.add(node_id)
        if node_id == start_id:
            bound = remaining[start_id]
        cost = remaining[node_id]
        for edge in graph.incoming_edges(node_id, route_filter):
            previous = edge.other(node_id)
            if previous in settled:
                continue
            candidate = cost + edge.weight
            if candidate < remaining.get(previous, math.inf):
                remaining[previous] = candidate
                heapq.heappush(heap, (candidate + estimate(previous, start_id), previous))

    if start_id not in settled:
        raise NoPathFound(
            f'No route from {start_id} to {dest_id} on floorplan {graph.floorplan_id}',
            start_node_id=start_id, destination_node_id=dest_id,
        )
    return remaining, settled


def _walk_forward(graph, start_id, dest_id, route_filter, remaining, settled):
    nodes = [start_id]
    edges = []
    total = 0.0
    current = start_id
    while current != dest_id:
        best = None
        for edge in graph.neighbors(current, route_filter):
            following = edge.other(current)
            if following not in settled:
                continue
            if not same_cost(remaining[current], edge.weight + remaining[following]):
                continue
            rank = (following, edge.weight, edge.id)
            if best is None or rank < best[0]:
                best = (rank, edge)
        if best is None or len(nodes) > len(graph):
            raise GraphInvariantViolation(
                f'Route reconstruction from {start_id} to {dest_id} lost its way at {current}',
                floorplan_id=graph.floorplan_id,
            )
        edge = best[1]
        current = edge.other(current)
        total += edge.weight
        nodes.append(current)
        edges.append(edge.id)
    return RoutePlan(tuple(nodes), tuple(edges), total)


def _search(graph, start_id, dest_id, route_filter, heuristic):
    remaining, settled = _costs_to_destination(graph, start_id, dest_id, route_filter, heuristic)
    return _walk_forward(graph, start_id, dest_id, route_filter, remaining, settled)


def _check_known(graph, *node_ids):
    for node_id in node_ids:
        if not graph.has_node(node_id):
            raise UnknownNode(
                f'Node {node_id} is not part of floorplan {graph.floorplan_id}',
                node_id=node_id, floorplan_id=graph.floorplan_id,
            )


def find_path(graph: FloorplanGraph, start_id, dest_id, route_filter: Optional[RouteFilter] = None,
              heuristic: Optional[Heuristic] = None, emergency_fallback: bool = True) -> RoutePlan:
    """
    Cheapest route from start_id to dest_id under route_filter.

    Raises UnknownNode for ids outside the graph and NoPathFound when the two
    nodes are disconnected under the filter. With an emergency-only filter and
    emergency_fallback enabled, a missing emergency route falls back to the
    full graph (other filter flags kept) and the plan is marked used_fallback.
    """
    start_id, dest_id = str(start_id), str(dest_id)
    route_filter = route_filter or RouteFilter()
    _check_known(graph, start_id, dest_id)
    if start_id == dest_id:
        return RoutePlan((start_id,), (), 0.0)

    try:
        return _search(graph, start_id, dest_id, route_filter, heuristic)
    except NoPathFound:
        if not (route_filter.emergency_only and emergency_fallback):
            raise
    logger.info(f'No emergency-only route from {start_id} to {dest_id} on floorplan '
                f'{graph.floorplan_id}, falling back to the full graph')
    plan = _search(graph, start_id, dest_id, route_filter.without_emergency_restriction(), heuristic)
    return replace(plan, used_fallback=True)


def _nearest_target(graph, start_id, predicate, route_filter):
    distances = {start_id: 0.0}
    settled = set()
    heap = [(0.0, start_id)]
    found_cost = None
    candidates = []
    while heap:
        cost, node_id = heapq.heappop(heap)
        if node_id in settled:
            continue
        if found_cost is not None and not same_cost(cost, found_cost):
            break
        settled.add(node_id)
        if predicate(graph.node(node_id)):
            if found_cost is None:
                found_cost = cost
            candidates.append(node_id)
            continue
        for edge in graph.neighbors(node_id, route_filter):
            following = edge.other(node_id)
            if following in settled:
                continue
            candidate = cost + edge.weight
            if candidate < distances.get(following, math.inf):
                distances[following] = candidate
                heapq.heappush(heap, (candidate, following))
    return min(candidates) if candidates else None


def find_nearest(graph: FloorplanGraph, start_id, predicate: Callable[[Node], bool],
                 route_filter: Optional[RouteFilter] = None, emergency_fallback: bool = True) -> RoutePlan:
    """
    Cheapest route from start_id to any node satisfying predicate.

    Equal-cost targets are decided by the lowest node id. Raises NoPathFound
    when no matching node is reachable.
    """
    start_id = str(start_id)
    route_filter = route_filter or RouteFilter()
    _check_known(graph, start_id)
    if predicate(graph.node(start_id)):
        return RoutePlan((start_id,), (), 0.0)

    target = _nearest_target(graph, start_id, predicate, route_filter)
    used_fallback = False
    if target is None and route_filter.emergency_only and emergency_fallback:
        route_filter = route_filter.without_emergency_restriction()
        target = _nearest_target(graph, start_id, predicate, route_filter)
        used_fallback = True
    if target is None:
        raise NoPathFound(
            f'No matching destination reachable from {start_id} on floorplan {graph.floorplan_id}',
            start_node_id=start_id,
        )
    plan = find_path(graph, start_id, target, route_filter, emergency_fallback=False)
    return replace(plan, used_fallback=used_fallback)
