"""
One navigation request end to end: locate the start (anchor scan or explicit
node), plan against a single graph snapshot, and turn the plan into
device-independent coordinates with turn-by-turn instructions.
"""
import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Iterable, Optional

from .anchors import AnchorResolver
from .coordinates import point_to_percent, point_to_pixel
from .exceptions import (
    AnchorNotFoundError, GraphInvariantViolation, InvalidRouteRequest, NoPathFound, NotFound, UnknownNode,
)
from .graph import NodeKind, RouteFilter
from .planner import find_nearest, find_path

logger = logging.getLogger(__name__)

STATUS_OK = 'ok'
STATUS_UNREACHABLE = 'unreachable'
STATUS_INVALID_ANCHOR = 'invalid_anchor'
STATUS_UNKNOWN_NODE = 'unknown_node'

TURN_THRESHOLD_DEG = 15.0


@dataclass(frozen=True)
class RouteRequest:
    event_id: Optional[str] = None
    destination_node_id: Optional[str] = None
    floorplan_id: Optional[str] = None
    anchor_payload: object = None
    start_node_id: Optional[str] = None
    route_filter: RouteFilter = field(default_factory=RouteFilter)
    display_width: Optional[float] = None
    display_height: Optional[float] = None


@dataclass(frozen=True)
class RoutePoint:
    node_id: str
    kind: str
    name: str
    x: Optional[float]
    y: Optional[float]
    x_percent: Optional[float]
    y_percent: Optional[float]
    display_x: Optional[float] = None
    display_y: Optional[float] = None
    instruction: str = 'straight'
    turn_angle: Optional[float] = None
    cumulative_distance: float = 0.0


@dataclass(frozen=True)
class RouteLeg:
    from_node_id: str
    to_node_id: str
    edge_id: str
    distance: float
    cumulative_distance: float


@dataclass(frozen=True)
class RouteResult:
    status: str
    message: str = ''
    floorplan_id: Optional[str] = None
    start_node_id: Optional[str] = None
    destination_node_id: Optional[str] = None
    node_sequence: tuple = ()
    total_cost: Optional[float] = None
    used_fallback: bool = False
    stale_anchor: bool = False
    points: tuple = ()
    legs: tuple = ()

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def as_dict(self):
        data = asdict(self)
        data['node_sequence'] = list(self.node_sequence)
        data['points'] = [asdict(point) for point in self.points]
        data['legs'] = [asdict(leg) for leg in self.legs]
        return data


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _heading(a, b):
    dx, dy = b.x - a.x, b.y - a.y
    if dx == 0 and dy == 0:
        return None
    return math.degrees(math.atan2(dy, dx))


def turn_instruction(angle: Optional[float], threshold: float = TURN_THRESHOLD_DEG) -> str:
    """Image y grows downwards, so a positive heading change is a right turn"""
    if angle is None or abs(angle) < threshold:
        return 'straight'
    return 'right' if angle > 0 else 'left'


class RouteSession:
    """
    graphs: anything with snapshot(floorplan_id) returning a FloorplanGraph.
    resolver: AnchorResolver used for anchor-based requests.
    """

    def __init__(self, graphs, resolver: Optional[AnchorResolver] = None,
                 turn_threshold_deg: float = TURN_THRESHOLD_DEG, emergency_fallback: bool = True):
        self.graphs = graphs
        self.resolver = resolver
        self.turn_threshold_deg = turn_threshold_deg
        self.emergency_fallback = emergency_fallback

    # ==================== PUBLIC ====================

    def plan(self, request: RouteRequest) -> RouteResult:
        self._validate(request)
        if _blank(request.destination_node_id):
            raise InvalidRouteRequest('A destination node is required')
        destination = str(request.destination_node_id)

        def planner(graph, start_id):
            return find_path(graph, start_id, destination, request.route_filter,
                             emergency_fallback=self.emergency_fallback)
        return self._run(request, planner, destination)

    def plan_to_nearest(self, request: RouteRequest, kinds: Iterable) -> RouteResult:
        """Route to the closest node of any of the given kinds"""
        self._validate(request)
        try:
            wanted = frozenset(NodeKind(kind) for kind in kinds)
        except ValueError as exc:
            raise InvalidRouteRequest(f'Unknown node kind: {exc}')
        if not wanted:
            raise InvalidRouteRequest('At least one destination kind is required')

        def matches(node):
            if node.kind in wanted:
                return True
            if NodeKind.EMERGENCY_EXIT in wanted and node.is_emergency_exit:
                return True
            return NodeKind.FIRST_AID in wanted and node.is_first_aid

        def planner(graph, start_id):
            return find_nearest(graph, start_id, matches, request.route_filter,
                                emergency_fallback=self.emergency_fallback)
        return self._run(request, planner, None)

    # ==================== STEPS ====================

    def _validate(self, request: RouteRequest):
        payload = request.anchor_payload
        has_anchor = bool(payload) if isinstance(payload, dict) else not _blank(payload)
        has_start = not _blank(request.start_node_id)
        if has_anchor == has_start:
            raise InvalidRouteRequest('Provide exactly one of an anchor payload or a start node')
        if has_anchor and self.resolver is None:
            raise InvalidRouteRequest('Anchor-based routing is not available')
        if has_start and _blank(request.floorplan_id):
            raise InvalidRouteRequest('A floorplan is required when starting from a node')
        dims = (request.display_width, request.display_height)
        if (dims[0] is None) != (dims[1] is None):
            raise InvalidRouteRequest('Display width and height must be given together')
        if dims[0] is not None:
            for value in dims:
                if not isinstance(value, (int, float)) or isinstance(value, bool) \
                        or not math.isfinite(value) or value <= 0:
                    raise InvalidRouteRequest('Display dimensions must be positive numbers')

    def _locate_start(self, request: RouteRequest):
        if _blank(request.start_node_id):
            resolved = self.resolver.resolve_payload(request.anchor_payload, request.event_id)
            if not _blank(request.floorplan_id) and str(request.floorplan_id) != resolved.floorplan_id:
                raise InvalidRouteRequest(
                    f'Anchor {resolved.anchor_code!r} is on floorplan {resolved.floorplan_id}, '
                    f'not {request.floorplan_id}'
                )
            return resolved.node_id, resolved.floorplan_id
        return str(request.start_node_id), str(request.floorplan_id)

    def _run(self, request, planner, destination) -> RouteResult:
        try:
            start_id, floorplan_id = self._locate_start(request)
        except AnchorNotFoundError as exc:
            logger.info(f'Route request with unusable anchor: {exc.message}')
            return RouteResult(status=STATUS_INVALID_ANCHOR, message=exc.message,
                               destination_node_id=destination, stale_anchor=exc.stale)

        graph = self.graphs.snapshot(floorplan_id)
        try:
            plan = planner(graph, start_id)
        except UnknownNode as exc:
            logger.info(f'Route request for unknown node on floorplan {floorplan_id}: {exc.message}')
            return RouteResult(status=STATUS_UNKNOWN_NODE, message=exc.message, floorplan_id=floorplan_id,
                               start_node_id=start_id, destination_node_id=destination)
        except NoPathFound as exc:
            logger.info(f'No route on floorplan {floorplan_id}: {exc.message}')
            return RouteResult(status=STATUS_UNREACHABLE, message='No route available',
                               floorplan_id=floorplan_id, start_node_id=start_id,
                               destination_node_id=destination)
        except GraphInvariantViolation:
            logger.critical(f'Navigation graph of floorplan {floorplan_id} is corrupt', exc_info=True)
            raise

        try:
            points, legs = self._render(graph, plan, request)
        except NotFound as exc:
            logger.critical(f'Planned route references a node missing from floorplan {floorplan_id}', exc_info=True)
            raise GraphInvariantViolation(f'Route uses an element missing from the graph: {exc.message}') from exc

        return RouteResult(
            status=STATUS_OK,
            floorplan_id=floorplan_id,
            start_node_id=plan.start_node_id,
            destination_node_id=plan.destination_node_id,
            node_sequence=plan.node_sequence,
            total_cost=plan.total_cost,
            used_fallback=plan.used_fallback,
            points=points,
            legs=legs,
        )

    def _render(self, graph, plan, request):
        nodes = [graph.node(node_id) for node_id in plan.node_sequence]
        edges = [graph.edge(edge_id) for edge_id in plan.edge_sequence]

        legs = []
        cumulative = [0.0]
        for index, edge in enumerate(edges):
            total = cumulative[-1] + edge.weight
            cumulative.append(total)
            legs.append(RouteLeg(nodes[index].id, nodes[index + 1].id, edge.id, edge.weight, total))

        points = []
        last = len(nodes) - 1
        for index, node in enumerate(nodes):
            instruction, angle = self._maneuver(nodes, index, last)
            x = y = x_percent = y_percent = display_x = display_y = None
            if node.positioned:
                x, y = node.x, node.y
                x_percent, y_percent = point_to_percent(x, y, graph.width, graph.height)
                if request.display_width is not None:
                    display_x, display_y = point_to_pixel(
                        x_percent, y_percent, request.display_width, request.display_height
                    )
            points.append(RoutePoint(
                node_id=node.id, kind=node.kind.value, name=node.name,
                x=x, y=y, x_percent=x_percent, y_percent=y_percent,
                display_x=display_x, display_y=display_y,
                instruction=instruction, turn_angle=angle,
                cumulative_distance=cumulative[index],
            ))
        return tuple(points), tuple(legs)

    def _maneuver(self, nodes, index, last):
        if index == last:
            return 'arrive', None
        if index == 0:
            return 'start', None
        before, here, after = nodes[index - 1], nodes[index], nodes[index + 1]
        if not (before.positioned and here.positioned and after.positioned):
            return 'straight', None
        incoming, outgoing = _heading(before, here), _heading(here, after)
        if incoming is None or outgoing is None:
            return 'straight', None
        angle = (outgoing - incoming + 180.0) % 360.0 - 180.0
        return turn_instruction(angle, self.turn_threshold_deg), round(angle, 6)
