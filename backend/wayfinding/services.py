"""
Service layer between the HTTP views / management commands and the
navigation core.

Every mutation of navigation data goes through here: the change is checked
against a private copy of the in-memory graph, written to the database inside
one transaction and published only when both succeeded. The graph store and
anchor registry live on the app config and are rebuilt from the database on
first use.
"""
import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import asdict

from django.apps import apps
from django.conf import settings
from django.db import transaction

from backend.core.utils import create_audit_log
from backend.venues.models import Event, Floorplan
from . import graph_cache
from .anchors import (
    AnchorBinding as BoundAnchor, AnchorRegistry, AnchorResolver, ResolvedAnchor,
    normalize_anchor_code, validate_anchor_code,
)
from .coordinates import point_to_percent, point_to_pixel
from .exceptions import (
    AnchorNotFoundError, DuplicateId, GraphInputError, GraphInvariantViolation,
    NonPositiveWeight, NotFound,
)
from .graph import GraphStore, NodeKind
from .models import AnchorBinding, NavigationEdge, NavigationNode
from .session import RouteSession
from .signals import suspend_graph_signals

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    'EDIT_LOCK_TIMEOUT': 5.0,
    'ANCHOR_CACHE_TTL': graph_cache.ANCHOR_CACHE_TTL,
    'TURN_THRESHOLD_DEG': 15.0,
    'MAX_ANCHOR_PAYLOAD': 512,
    'EMERGENCY_FALLBACK': True,
}

NODE_FIELDS = ('node_key', 'kind', 'name', 'is_emergency_exit', 'is_first_aid', 'positioned', 'metadata')
EDGE_FLAGS = ('is_emergency_path', 'is_accessible', 'directed')


def wayfinding_settings():
    return {**DEFAULT_SETTINGS, **getattr(settings, 'WAYFINDING', {})}


# ==================== STATE ====================

def _app():
    return apps.get_app_config('wayfinding')


def reset_state():
    """Fresh graph store and anchor registry (startup and test teardown)"""
    config = _app()
    config.graph_store = GraphStore(lock_timeout=wayfinding_settings()['EDIT_LOCK_TIMEOUT'])
    config.anchor_registry = AnchorRegistry()
    config.hydrate_lock = threading.Lock()
    config.anchor_lock = threading.RLock()


def get_graph_store() -> GraphStore:
    return _app().graph_store


def get_anchor_registry() -> AnchorRegistry:
    return _app().anchor_registry


# ==================== HYDRATION ====================

def _get_floorplan(floorplan_id) -> Floorplan:
    if not str(floorplan_id).isdigit():
        raise NotFound(f'Floorplan {floorplan_id} not found', floorplan_id=str(floorplan_id))
    floorplan = Floorplan.objects.filter(pk=int(floorplan_id)).first()
    if floorplan is None:
        raise NotFound(f'Floorplan {floorplan_id} not found', floorplan_id=str(floorplan_id))
    return floorplan


def hydrate_graph(floorplan):
    """Load a floorplan's persisted nodes and edges into the store"""
    nodes = [node.to_graph_node() for node in floorplan.navigation_nodes.all()]
    edges = [edge.to_graph_edge() for edge in floorplan.navigation_edges.all()]
    try:
        graph = get_graph_store().load(floorplan.pk, floorplan.width, floorplan.height, nodes, edges)
    except GraphInputError as e:
        logger.critical(f"Persisted navigation graph of floorplan {floorplan.pk} is invalid: {e.message}", exc_info=True)
        raise GraphInvariantViolation(
            f'Persisted navigation graph of floorplan {floorplan.pk} is invalid: {e.message}',
            floorplan_id=str(floorplan.pk),
        ) from e
    logger.info(f"Loaded navigation graph for floorplan {floorplan.pk}: {len(nodes)} nodes, {len(edges)} edges")
    return graph


def ensure_graph(floorplan):
    """The published snapshot of a floorplan, hydrated from the database on first use"""
    store = get_graph_store()
    if floorplan.pk in store:
        return store.snapshot(floorplan.pk)
    with _app().hydrate_lock:
        if floorplan.pk in store:
            return store.snapshot(floorplan.pk)
        return hydrate_graph(floorplan)


def drop_graph(floorplan_id):
    get_graph_store().drop(floorplan_id)
    graph_cache.invalidate_graph_payload(floorplan_id)


class DatabaseGraphSource:
    """snapshot(floorplan_id) over the store, hydrating floorplans on demand"""

    def __init__(self, store: GraphStore):
        self.store = store

    def snapshot(self, floorplan_id):
        if floorplan_id in self.store:
            return self.store.snapshot(floorplan_id)
        return ensure_graph(_get_floorplan(floorplan_id))


@contextmanager
def _editing(floorplan):
    """
    Single-writer edit of a floorplan: yields the private graph copy while a
    database transaction is open. The copy is published only after the
    transaction committed.

    The writer lock is held across the transaction so graph and rows commit
    or fail together. Readers never take it; other writers of the same
    floorplan wait at most EDIT_LOCK_TIMEOUT and then get GraphBusy without
    touching the database.
    """
    ensure_graph(floorplan)
    with suspend_graph_signals():
        with get_graph_store().edit(floorplan.pk) as working:
            with transaction.atomic():
                yield working
    graph_cache.invalidate_graph_payload(floorplan.pk)


# ==================== NODES ====================

def _number(value, label):
    if isinstance(value, bool):
        raise GraphInputError(f'{label} must be a number')
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise GraphInputError(f'{label} must be a number')
    if not math.isfinite(number):
        raise GraphInputError(f'{label} must be a finite number')
    return number


def _pixel_position(floorplan, data):
    """
    (x, y) in reference-image pixels from either pixel or percentage input.
    Unpositioned nodes have no coordinates.
    """
    if not data.get('positioned', True):
        return None, None
    if data.get('x_percent') is not None or data.get('y_percent') is not None:
        x_percent = _number(data.get('x_percent'), 'x_percent')
        y_percent = _number(data.get('y_percent'), 'y_percent')
        return point_to_pixel(x_percent, y_percent, floorplan.width, floorplan.height)
    return _number(data.get('x'), 'x'), _number(data.get('y'), 'y')


def _kind(value):
    try:
        return NodeKind(value or NodeKind.POI.value).value
    except ValueError:
        raise GraphInputError(f'Unknown node kind {value!r}', kind=str(value))


def _node_row(floorplan, data):
    x, y = _pixel_position(floorplan, data)
    return NavigationNode(
        floorplan=floorplan,
        node_key=str(data.get('node_key') or data.get('key') or ''),
        kind=_kind(data.get('kind')),
        name=data.get('name') or '',
        x=x,
        y=y,
        is_emergency_exit=bool(data.get('is_emergency_exit', False)),
        is_first_aid=bool(data.get('is_first_aid', False)),
        positioned=bool(data.get('positioned', True)),
        metadata=data.get('metadata') or {},
    )


def create_node(floorplan, data, request=None):
    with _editing(floorplan) as working:
        row = _node_row(floorplan, data)
        row.save()
        working.add_node(row.to_graph_node())
    logger.info(f"Created navigation node {row.pk} on floorplan {floorplan.pk}")
    create_audit_log(request, 'create', 'NavigationNode', row.pk, changes={'floorplan': floorplan.pk}, object_name=row.name)
    return row


def move_node(floorplan, node, data, request=None):
    """Move, rename or re-flag a node; its edges and anchors stay attached"""
    with _editing(floorplan) as working:
        for field in NODE_FIELDS:
            if field in data:
                setattr(node, field, data[field])
        node.kind = _kind(node.kind)
        if not node.positioned:
            node.x = node.y = None
        elif any(key in data for key in ('x', 'y', 'x_percent', 'y_percent', 'positioned')):
            position = {'x': node.x, 'y': node.y, **data}
            node.x, node.y = _pixel_position(floorplan, position)
        node.save()
        working.update_node(node.to_graph_node())
    logger.info(f"Updated navigation node {node.pk} on floorplan {floorplan.pk}")
    create_audit_log(request, 'update', 'NavigationNode', node.pk, changes=_jsonable(data), object_name=node.name)
    return node


def delete_node(floorplan, node, request=None):
    """Delete a node together with every edge and anchor referencing it"""
    node_id = node.pk
    anchors = list(node.anchor_bindings.values_list('event_id', 'anchor_code'))
    with _editing(floorplan) as working:
        removed = working.remove_node(node_id)
        node.delete()
    get_anchor_registry().drop_node(node_id)
    for event_id, anchor_code in anchors:
        graph_cache.invalidate_anchor(event_id, anchor_code)
    logger.info(f"Deleted navigation node {node_id} on floorplan {floorplan.pk} with {len(removed)} edges and {len(anchors)} anchors")
    create_audit_log(request, 'delete', 'NavigationNode', node_id,
                     changes={'edges_removed': len(removed), 'anchors_removed': len(anchors)}, object_name=node.name)
    return removed


# ==================== EDGES ====================

def default_weight(floorplan, from_node, to_node):
    """Pixel distance between the endpoints scaled to floorplan units (1 for coincident nodes)"""
    if from_node.pk == to_node.pk:
        return 1.0
    if not (from_node.positioned and to_node.positioned):
        raise NonPositiveWeight('A weight is required for edges touching unpositioned nodes')
    distance = math.hypot(from_node.x - to_node.x, from_node.y - to_node.y) / (floorplan.scale_factor or 1.0)
    return distance or 1.0


def _check_endpoint(floorplan, node, label):
    if node.floorplan_id != floorplan.pk:
        raise NotFound(f'{label} node {node.pk} is not on floorplan {floorplan.pk}', node_id=str(node.pk))


def create_edge(floorplan, data, request=None):
    from_node, to_node = data['from_node'], data['to_node']
    _check_endpoint(floorplan, from_node, 'Start')
    _check_endpoint(floorplan, to_node, 'End')
    weight = data.get('weight')
    if weight is None:
        weight = default_weight(floorplan, from_node, to_node)
    with _editing(floorplan) as working:
        row = NavigationEdge(
            floorplan=floorplan,
            edge_key=str(data.get('edge_key') or ''),
            from_node=from_node,
            to_node=to_node,
            weight=_number(weight, 'weight'),
            **{flag: bool(data[flag]) for flag in EDGE_FLAGS if flag in data},
        )
        row.save()
        working.add_edge(row.to_graph_edge())
    logger.info(f"Created navigation edge {row.pk} ({from_node.pk} - {to_node.pk}) on floorplan {floorplan.pk}")
    create_audit_log(request, 'create', 'NavigationEdge', row.pk,
                     changes={'from_node': from_node.pk, 'to_node': to_node.pk, 'weight': row.weight})
    return row


def update_edge(floorplan, edge, data, request=None):
    """Change weight or flags of an edge; endpoints are fixed"""
    with _editing(floorplan) as working:
        if data.get('weight') is not None:
            edge.weight = _number(data['weight'], 'weight')
        for flag in EDGE_FLAGS:
            if flag in data:
                setattr(edge, flag, bool(data[flag]))
        edge.save()
        working.update_edge(edge.to_graph_edge())
    logger.info(f"Updated navigation edge {edge.pk} on floorplan {floorplan.pk}")
    create_audit_log(request, 'update', 'NavigationEdge', edge.pk, changes=_jsonable(data))
    return edge


def delete_edge(floorplan, edge, request=None):
    edge_id = edge.pk
    with _editing(floorplan) as working:
        working.remove_edge(edge_id)
        edge.delete()
    logger.info(f"Deleted navigation edge {edge_id} on floorplan {floorplan.pk}")
    create_audit_log(request, 'delete', 'NavigationEdge', edge_id)


# ==================== BULK IMPORT ====================

def _payload_list(payload, name):
    items = payload.get(name, [])
    if not isinstance(items, list):
        raise GraphInputError(f'"{name}" must be a list')
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise GraphInputError(f'{name}[{index}] must be an object', index=index)
    return items


def import_graph(floorplan, payload, replace=False, request=None):
    """
    Bulk import of nodes and edges, all or nothing.

    payload: {"nodes": [{"key", "kind", "name", "x", "y", ...}],
              "edges": [{"from", "to", "weight"?, "is_accessible"?, ...}]}
    Edges reference nodes by key; without replace they may also reference
    nodes already on the floorplan through their node_key. Any invalid
    element rejects the whole payload and leaves graph and database as they
    were.
    """
    if not isinstance(payload, dict):
        raise GraphInputError('Graph payload must be an object')
    node_items = _payload_list(payload, 'nodes')
    edge_items = _payload_list(payload, 'edges')

    keys = {}
    if not replace:
        keys = {row.node_key: row for row in floorplan.navigation_nodes.exclude(node_key='')}

    affected_events = set()
    with _editing(floorplan) as working:
        if replace:
            affected_events = set(AnchorBinding.objects.filter(node__floorplan=floorplan).values_list('event_id', flat=True))
            working.clear()
            floorplan.navigation_nodes.all().delete()

        new_nodes = []
        for index, item in enumerate(node_items):
            key = str(item.get('key') or item.get('node_key') or '')
            if not key:
                raise GraphInputError(f'nodes[{index}] has no key', index=index)
            if key in keys:
                raise DuplicateId(f'Node key {key!r} is used more than once', key=key, index=index)
            row = _node_row(floorplan, {**item, 'node_key': key})
            row.save()
            keys[key] = row
            new_nodes.append(row.to_graph_node())

        new_edges = []
        for index, item in enumerate(edge_items):
            ends = []
            for field in ('from', 'to'):
                ref = str(item.get(field, item.get(f'{field}_node', '')))
                if ref not in keys:
                    raise NotFound(f'edges[{index}] references unknown node {ref!r}', key=ref, index=index)
                ends.append(keys[ref])
            weight = item.get('weight')
            if weight is None:
                weight = default_weight(floorplan, *ends)
            row = NavigationEdge(
                floorplan=floorplan,
                edge_key=str(item.get('key') or ''),
                from_node=ends[0],
                to_node=ends[1],
                weight=_number(weight, f'edges[{index}].weight'),
                **{flag: bool(item[flag]) for flag in EDGE_FLAGS if flag in item},
            )
            row.save()
            new_edges.append(row.to_graph_edge())

        node_count, edge_count = working.import_elements(new_nodes, new_edges)

    for event_id in affected_events:
        forget_event_anchors(event_id)
    logger.info(f"Imported {node_count} nodes and {edge_count} edges into floorplan {floorplan.pk} (replace={replace})")
    create_audit_log(request, 'graph_import', 'Floorplan', floorplan.pk,
                     changes={'nodes': node_count, 'edges': edge_count, 'replace': replace}, object_name=floorplan.name)
    return {
        'nodes_created': node_count,
        'edges_created': edge_count,
        'node_ids': {key: row.pk for key, row in keys.items()},
    }


def resize_floorplan(floorplan, width, height):
    """Change the reference image size; rejected when a node would fall outside"""
    with _editing(floorplan) as working:
        working.set_dimensions(width, height)
        Floorplan.objects.filter(pk=floorplan.pk).update(width=width, height=height)
    floorplan.width, floorplan.height = width, height
    logger.info(f"Resized floorplan {floorplan.pk} to {width}x{height}")
    return floorplan


# ==================== GRAPH PAYLOAD ====================

def _node_payload(node, graph):
    data = {
        'id': node.id,
        'kind': node.kind.value,
        'name': node.name,
        'x': node.x,
        'y': node.y,
        'x_percent': None,
        'y_percent': None,
        'is_emergency_exit': node.is_emergency_exit,
        'is_first_aid': node.is_first_aid,
        'positioned': node.positioned,
        'metadata': node.metadata,
    }
    if node.positioned:
        data['x_percent'], data['y_percent'] = point_to_percent(node.x, node.y, graph.width, graph.height)
    return data


def graph_payload(floorplan):
    """Nodes and edges of a floorplan with percentage coordinates (cached)"""
    cached = graph_cache.get_cached_graph_payload(floorplan.pk)
    if cached is not None:
        return cached
    graph = ensure_graph(floorplan)
    payload = {
        'floorplan_id': graph.floorplan_id,
        'width': graph.width,
        'height': graph.height,
        'nodes': [_node_payload(node, graph) for node in graph.nodes()],
        'edges': [asdict(edge) for edge in graph.edges()],
    }
    graph_cache.cache_graph_payload(floorplan.pk, payload)
    return payload


# ==================== ANCHORS ====================

def load_event_anchors(event_id):
    """Replace the registry entries of an event with its persisted bindings"""
    rows = AnchorBinding.objects.filter(event_id=event_id).select_related('node')
    bindings = [
        BoundAnchor(row.anchor_code, row.event_id, row.node_id, row.node.floorplan_id)
        for row in rows
    ]
    with _app().anchor_lock:
        count = get_anchor_registry().replace_event(event_id, bindings, allow_shared_node=True)
    logger.debug(f"Loaded {count} anchor bindings for event {event_id}")
    return count


def _ensure_event_anchors(event_id):
    if not get_anchor_registry().is_loaded(event_id):
        load_event_anchors(event_id)


def forget_event_anchors(event_id):
    registry = get_anchor_registry()
    codes = [binding.anchor_code for binding in registry.bindings_for_event(event_id)]
    registry.forget_event(event_id)
    graph_cache.invalidate_event_anchors(event_id, codes)


def bind_anchor(event, node, anchor_code, allow_shared_node=False, request=None):
    code = validate_anchor_code(anchor_code)
    if node.floorplan.venue_id != event.venue_id:
        raise GraphInputError(f'Node {node.pk} is not in the venue of event {event.pk}', node_id=str(node.pk))
    registry = get_anchor_registry()
    binding = BoundAnchor(code, event.pk, node.pk, node.floorplan_id)
    with _app().anchor_lock:
        _ensure_event_anchors(event.pk)
        registry.bind(binding, allow_shared_node=allow_shared_node)
        try:
            with suspend_graph_signals(), transaction.atomic():
                row = AnchorBinding.objects.create(event=event, anchor_code=code, node=node,
                                                   allow_shared_node=allow_shared_node)
        except Exception:
            registry.unbind(code, event.pk)
            raise
    graph_cache.invalidate_anchor(event.pk, code)
    logger.info(f"Bound anchor {code!r} to node {node.pk} for event {event.pk}")
    create_audit_log(request, 'anchor_bind', 'AnchorBinding', row.pk,
                     changes={'event': event.pk, 'node': node.pk}, object_name=code)
    return row


def unbind_anchor(row, request=None):
    code, event_id = row.anchor_code, row.event_id
    with _app().anchor_lock:
        _ensure_event_anchors(event_id)
        with suspend_graph_signals():
            row_id = row.pk
            row.delete()
        if get_anchor_registry().lookup(code, event_id) is not None:
            get_anchor_registry().unbind(code, event_id)
    graph_cache.invalidate_anchor(event_id, code)
    logger.info(f"Unbound anchor {code!r} from event {event_id}")
    create_audit_log(request, 'anchor_unbind', 'AnchorBinding', row_id, changes={'event': event_id}, object_name=code)


class CachedAnchorResolver(AnchorResolver):
    """
    Resolver over the shared registry that loads an event's bindings on
    first use. Until an event is loaded in this process, lookups are served
    from the Django cache (anchor:<event>:<code>) when possible.
    """

    def resolve(self, anchor_code, event_id):
        code, event_id = normalize_anchor_code(anchor_code), str(event_id)
        if not self.registry.is_loaded(event_id):
            cached = graph_cache.get_cached_anchor(event_id, code)
            if cached is not None:
                return self._live(ResolvedAnchor(**cached))
            if not event_id.isdigit() or not Event.objects.filter(pk=int(event_id)).exists():
                raise AnchorNotFoundError(f'Unknown anchor code {code!r} for this event', anchor_code=code, event_id=event_id)
            load_event_anchors(event_id)
        resolved = super().resolve(code, event_id)
        graph_cache.cache_anchor(event_id, code, asdict(resolved), wayfinding_settings()['ANCHOR_CACHE_TTL'])
        return resolved

    def _live(self, resolved):
        try:
            graph = self.graphs.snapshot(resolved.floorplan_id)
        except NotFound:
            graph = None
        if graph is None or not graph.has_node(resolved.node_id):
            graph_cache.invalidate_anchor(resolved.event_id, resolved.anchor_code)
            logger.warning(f"Cached anchor {resolved.anchor_code!r} points at missing node {resolved.node_id}")
            raise AnchorNotFoundError(
                f'Anchor code {resolved.anchor_code!r} is no longer linked to a location',
                stale=True, anchor_code=resolved.anchor_code, event_id=resolved.event_id,
            )
        return resolved


def get_resolver():
    options = wayfinding_settings()
    return CachedAnchorResolver(get_anchor_registry(), DatabaseGraphSource(get_graph_store()),
                                max_payload_length=options['MAX_ANCHOR_PAYLOAD'])


def resolve_anchor(raw, event_id=None):
    """Scanned payload -> bound node with its coordinates"""
    resolver = get_resolver()
    resolved = resolver.resolve_payload(raw, event_id)
    graph = resolver.graphs.snapshot(resolved.floorplan_id)
    return {
        'anchor_code': resolved.anchor_code,
        'event_id': resolved.event_id,
        'floorplan_id': resolved.floorplan_id,
        'node': _node_payload(graph.node(resolved.node_id), graph),
    }


# ==================== ROUTING ====================

def get_route_session():
    options = wayfinding_settings()
    resolver = get_resolver()
    return RouteSession(resolver.graphs, resolver,
                        turn_threshold_deg=options['TURN_THRESHOLD_DEG'],
                        emergency_fallback=options['EMERGENCY_FALLBACK'])


def plan_route(request):
    return get_route_session().plan(request)


def plan_nearest(request, kinds):
    return get_route_session().plan_to_nearest(request, kinds)


# ==================== INTEGRITY ====================

def find_integrity_issues(floorplans):
    """Problems in persisted navigation data that would break hydration or anchors"""
    issues = []
    for floorplan in floorplans:
        label = f"Floorplan {floorplan.pk} ({floorplan.name})"
        for node in floorplan.navigation_nodes.all():
            if not node.positioned:
                continue
            if node.x is None or node.y is None or not (0 <= node.x <= floorplan.width and 0 <= node.y <= floorplan.height):
                issues.append(f"{label}: node {node.pk} at ({node.x}, {node.y}) is outside {floorplan.width}x{floorplan.height}")
        for edge in floorplan.navigation_edges.select_related('from_node', 'to_node'):
            if edge.from_node.floorplan_id != floorplan.pk or edge.to_node.floorplan_id != floorplan.pk:
                issues.append(f"{label}: edge {edge.pk} connects a node of another floorplan")
            if not (math.isfinite(edge.weight) and edge.weight > 0):
                issues.append(f"{label}: edge {edge.pk} has non-positive weight {edge.weight}")
            if edge.from_node_id == edge.to_node_id:
                issues.append(f"{label}: edge {edge.pk} is a self loop")
        stale = AnchorBinding.objects.filter(node__floorplan=floorplan).exclude(event__venue_id=floorplan.venue_id)
        for binding in stale:
            issues.append(f"{label}: anchor {binding.anchor_code!r} of event {binding.event_id} is bound outside the event venue")
    return issues


def _jsonable(data):
    result = {}
    for key, value in dict(data).items():
        if hasattr(value, 'pk'):
            value = value.pk
        result[key] = value
    return result
