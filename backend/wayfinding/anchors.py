"""
QR anchor bindings and resolution.

A printed QR code carries either a bare anchor code or a small JSON object
such as {"qr_code_id": "A-12", "event_id": "42"}. Bindings map an
(anchor code, event) pair to a navigation node; the same code may be reused
by another event without collision.
"""
import json
import logging
import re
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from .exceptions import AnchorNotFoundError, DuplicateId, MalformedAnchorError, NotFound

logger = logging.getLogger(__name__)

MAX_PAYLOAD_LENGTH = 512
_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f]')


@dataclass(frozen=True)
class AnchorBinding:
    anchor_code: str
    event_id: str
    node_id: str
    floorplan_id: str

    def __post_init__(self):
        object.__setattr__(self, 'anchor_code', normalize_anchor_code(self.anchor_code))
        for name in ('event_id', 'node_id', 'floorplan_id'):
            object.__setattr__(self, name, str(getattr(self, name)))

    @property
    def key(self):
        return (self.anchor_code, self.event_id)


@dataclass(frozen=True)
class ScannedAnchor:
    anchor_code: str
    event_id: Optional[str] = None


@dataclass(frozen=True)
class ResolvedAnchor:
    anchor_code: str
    event_id: str
    node_id: str
    floorplan_id: str


def normalize_anchor_code(code) -> str:
    return str(code).strip()


def _checked_code(code, raw):
    if not isinstance(code, str) or not code.strip():
        raise MalformedAnchorError('Anchor payload has no qr_code_id', payload=str(raw)[:64])
    if _CONTROL_CHARS.search(code):
        raise MalformedAnchorError('Anchor code contains control characters', payload=str(raw)[:64])
    return code.strip()


def validate_anchor_code(code) -> str:
    """Normalized code suitable for printing on a QR anchor"""
    code = _checked_code(code, code)
    if len(code) > 200:
        raise MalformedAnchorError('Anchor code exceeds 200 characters')
    if code.startswith(('{', '[')):
        raise MalformedAnchorError('Anchor code must not look like a JSON payload')
    return code


def parse_anchor_payload(raw, max_length: int = MAX_PAYLOAD_LENGTH) -> ScannedAnchor:
    """
    Structural validation of a scanned QR payload.

    Raises MalformedAnchorError before any lookup happens.
    """
    if raw is None:
        raise MalformedAnchorError('Anchor payload is empty')
    if isinstance(raw, bytes):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError:
            raise MalformedAnchorError('Anchor payload is not valid UTF-8')

    if isinstance(raw, dict):
        data = raw
    else:
        text = str(raw).strip()
        if not text:
            raise MalformedAnchorError('Anchor payload is empty')
        if len(text) > max_length:
            raise MalformedAnchorError(f'Anchor payload exceeds {max_length} characters')
        if not text.startswith(('{', '[')):
            return ScannedAnchor(_checked_code(text, raw))
        try:
            data = json.loads(text)
        except ValueError:
            raise MalformedAnchorError('Anchor payload is not valid JSON', payload=text[:64])
        if not isinstance(data, dict):
            raise MalformedAnchorError('Anchor payload must be a JSON object', payload=text[:64])

    code = _checked_code(data.get('qr_code_id'), raw)
    event_id = data.get('event_id')
    if event_id is not None:
        if isinstance(event_id, bool) or not isinstance(event_id, (str, int)) or not str(event_id).strip():
            raise MalformedAnchorError('Anchor payload has an invalid event_id', payload=str(raw)[:64])
        event_id = str(event_id).strip()
    return ScannedAnchor(code, event_id)


class AnchorRegistry:
    """
    Anchor bindings keyed by (anchor code, event id).

    Owned by the provisioning side; the resolver only reads it. Mutations
    replace the whole table so readers always see a consistent mapping.
    """

    def __init__(self):
        self._bindings: Dict[Tuple[str, str], AnchorBinding] = {}
        self._loaded_events = frozenset()
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._bindings)

    @staticmethod
    def _check_binding(table, binding, allow_shared_node):
        if binding.key in table:
            raise DuplicateId(
                f'Anchor {binding.anchor_code!r} is already bound for event {binding.event_id}',
                anchor_code=binding.anchor_code, event_id=binding.event_id,
            )
        if allow_shared_node:
            return
        for existing in table.values():
            if existing.event_id == binding.event_id and existing.node_id == binding.node_id:
                raise DuplicateId(
                    f'Node {binding.node_id} already has anchor {existing.anchor_code!r} for event {binding.event_id}',
                    anchor_code=binding.anchor_code, event_id=binding.event_id, node_id=binding.node_id,
                )

    def bind(self, binding: AnchorBinding, allow_shared_node: bool = False) -> AnchorBinding:
        with self._lock:
            self._check_binding(self._bindings, binding, allow_shared_node)
            table = dict(self._bindings)
            table[binding.key] = binding
            self._bindings = table
        return binding

    def unbind(self, anchor_code, event_id) -> AnchorBinding:
        key = (normalize_anchor_code(anchor_code), str(event_id))
        with self._lock:
            if key not in self._bindings:
                raise NotFound(f'Anchor {key[0]!r} is not bound for event {key[1]}', anchor_code=key[0], event_id=key[1])
            table = dict(self._bindings)
            removed = table.pop(key)
            self._bindings = table
        return removed

    def drop_node(self, node_id) -> List[AnchorBinding]:
        """Forget every binding pointing at a node; returns what was removed"""
        node_id = str(node_id)
        with self._lock:
            removed = [binding for binding in self._bindings.values() if binding.node_id == node_id]
            if removed:
                self._bindings = {key: binding for key, binding in self._bindings.items() if binding.node_id != node_id}
        return removed

    def lookup(self, anchor_code, event_id) -> Optional[AnchorBinding]:
        return self._bindings.get((normalize_anchor_code(anchor_code), str(event_id)))

    def bindings_for_event(self, event_id) -> List[AnchorBinding]:
        event_id = str(event_id)
        found = [binding for binding in self._bindings.values() if binding.event_id == event_id]
        return sorted(found, key=lambda binding: binding.anchor_code)

    def replace_event(self, event_id, bindings: Iterable[AnchorBinding], allow_shared_node: bool = False):
        """Swap every binding of one event at once (hydration from persistence)"""
        event_id = str(event_id)
        staged = {}
        for binding in bindings:
            if binding.event_id != event_id:
                raise DuplicateId(f'Binding {binding.anchor_code!r} belongs to event {binding.event_id}, not {event_id}')
            self._check_binding(staged, binding, allow_shared_node)
            staged[binding.key] = binding
        with self._lock:
            table = {key: binding for key, binding in self._bindings.items() if binding.event_id != event_id}
            table.update(staged)
            self._bindings = table
            self._loaded_events = self._loaded_events | {event_id}
        return len(staged)

    def forget_event(self, event_id):
        event_id = str(event_id)
        with self._lock:
            self._bindings = {key: binding for key, binding in self._bindings.items() if binding.event_id != event_id}
            self._loaded_events = self._loaded_events - {event_id}

    def is_loaded(self, event_id) -> bool:
        return str(event_id) in self._loaded_events

    def clear(self):
        with self._lock:
            self._bindings = {}
            self._loaded_events = frozenset()


class AnchorResolver:
    """
    Read-only anchor lookup.

    graphs is anything with a snapshot(floorplan_id) method (a GraphStore or
    a source that hydrates graphs on demand). A binding whose node no longer
    exists is reported as a stale AnchorNotFoundError, never as a crash.
    """

    def __init__(self, registry: AnchorRegistry, graphs, max_payload_length: int = MAX_PAYLOAD_LENGTH):
        self.registry = registry
        self.graphs = graphs
        self.max_payload_length = max_payload_length

    def resolve(self, anchor_code, event_id) -> ResolvedAnchor:
        code = normalize_anchor_code(anchor_code)
        event_id = str(event_id)
        binding = self.registry.lookup(code, event_id)
        if binding is None:
            logger.debug(f'No binding for anchor {code!r} in event {event_id}')
            raise AnchorNotFoundError(f'Unknown anchor code {code!r} for this event', anchor_code=code, event_id=event_id)

        try:
            graph = self.graphs.snapshot(binding.floorplan_id)
        except NotFound:
            graph = None
        if graph is None or not graph.has_node(binding.node_id):
            logger.warning(f'Anchor {code!r} (event {event_id}) points at missing node {binding.node_id} '
                           f'on floorplan {binding.floorplan_id}')
            raise AnchorNotFoundError(
                f'Anchor code {code!r} is no longer linked to a location',
                stale=True, anchor_code=code, event_id=event_id,
            )
        return ResolvedAnchor(code, event_id, binding.node_id, binding.floorplan_id)

    def resolve_payload(self, raw, event_id=None) -> ResolvedAnchor:
        scanned = parse_anchor_payload(raw, self.max_payload_length)
        if event_id is None:
            event_id = scanned.event_id
        if event_id is None:
            raise MalformedAnchorError('Anchor payload carries no event and none was given')
        if scanned.event_id is not None and scanned.event_id != str(event_id):
            logger.info(f'Anchor {scanned.anchor_code!r} was printed for event {scanned.event_id}, '
                        f'scanned in event {event_id}')
            raise AnchorNotFoundError(
                f'Anchor code {scanned.anchor_code!r} belongs to another event',
                anchor_code=scanned.anchor_code, event_id=str(event_id),
            )
        return self.resolve(scanned.anchor_code, event_id)
