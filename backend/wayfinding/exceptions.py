"""
Error taxonomy for the wayfinding core.

Three families:
- GraphInputError: caller mistakes, rejected immediately with no partial mutation
- RouteOutcome: expected business outcomes (no route, unknown code), never system errors
- GraphInvariantViolation: internal consistency bug, fatal to the current request
"""


class WayfindingError(Exception):
    """Base class for every error raised by the wayfinding core"""
    code = 'wayfinding_error'

    def __init__(self, message='', **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self):
        payload = {'error': self.message, 'code': self.code}
        if self.details:
            payload['details'] = self.details
        return payload


# ==================== CALLER MISTAKES ====================

class GraphInputError(WayfindingError):
    code = 'invalid_input'


class DuplicateId(GraphInputError):
    code = 'duplicate_id'


class DuplicateEdge(DuplicateId):
    """Parallel edge with the same endpoints and the same flag combination"""
    code = 'duplicate_edge'


class NotFound(GraphInputError):
    code = 'not_found'


class OutOfBounds(GraphInputError):
    code = 'out_of_bounds'


class NonPositiveWeight(GraphInputError):
    code = 'non_positive_weight'


class SelfLoop(GraphInputError):
    code = 'self_loop'


class InvalidExtent(GraphInputError):
    code = 'invalid_extent'


class MalformedAnchorError(GraphInputError):
    code = 'malformed_anchor'


class InvalidRouteRequest(GraphInputError):
    code = 'invalid_route_request'


# ==================== BUSINESS OUTCOMES ====================

class RouteOutcome(WayfindingError):
    code = 'route_outcome'


class UnknownNode(RouteOutcome):
    code = 'unknown_node'


class NoPathFound(RouteOutcome):
    code = 'no_path_found'


class AnchorNotFoundError(RouteOutcome):
    code = 'anchor_not_found'

    def __init__(self, message='', stale=False, **details):
        super().__init__(message, stale=stale, **details)
        self.stale = stale


# ==================== FATAL / INFRASTRUCTURE ====================

class GraphInvariantViolation(WayfindingError):
    code = 'graph_invariant_violation'


class GraphBusy(WayfindingError):
    """Writer lock for a floorplan could not be acquired in time"""
    code = 'graph_busy'
