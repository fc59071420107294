"""
Django cache entries derived from navigation data: the serialized graph of a
floorplan (editor and mobile map download) and resolved anchor lookups.

Entries are invalidated explicitly by the service layer after every publish;
the TTLs only bound how long an entry survives a missed invalidation.
"""
from django.core.cache import cache
import logging

logger = logging.getLogger(__name__)

# Cache key prefixes
GRAPH_PAYLOAD_KEY_PREFIX = 'floorplan_graph:'
ANCHOR_KEY_PREFIX = 'anchor:'

# Cache TTL (Time To Live) in seconds
GRAPH_PAYLOAD_CACHE_TTL = 600  # 10 minutes
ANCHOR_CACHE_TTL = 300  # 5 minutes


# ==================== GRAPH PAYLOADS ====================

def get_graph_payload_cache_key(floorplan_id) -> str:
    return f"{GRAPH_PAYLOAD_KEY_PREFIX}{floorplan_id}"


def get_cached_graph_payload(floorplan_id):
    cached_data = cache.get(get_graph_payload_cache_key(floorplan_id))
    if cached_data is not None:
        logger.debug(f"Cache hit for graph payload of floorplan {floorplan_id}")
    return cached_data


def cache_graph_payload(floorplan_id, payload, ttl: int = None):
    cache.set(get_graph_payload_cache_key(floorplan_id), payload, ttl or GRAPH_PAYLOAD_CACHE_TTL)


def invalidate_graph_payload(floorplan_id):
    cache.delete(get_graph_payload_cache_key(floorplan_id))
    logger.debug(f"Invalidated graph payload cache for floorplan {floorplan_id}")


# ==================== ANCHORS ====================

def get_anchor_cache_key(event_id, anchor_code) -> str:
    """anchor:<event>:<code>"""
    return f"{ANCHOR_KEY_PREFIX}{event_id}:{anchor_code}"


def get_cached_anchor(event_id, anchor_code):
    cached_data = cache.get(get_anchor_cache_key(event_id, anchor_code))
    if cached_data is not None:
        logger.debug(f"Cache hit for anchor {anchor_code!r} in event {event_id}")
    return cached_data


def cache_anchor(event_id, anchor_code, data, ttl: int = None):
    cache.set(get_anchor_cache_key(event_id, anchor_code), data, ttl or ANCHOR_CACHE_TTL)


def invalidate_anchor(event_id, anchor_code):
    cache.delete(get_anchor_cache_key(event_id, anchor_code))


def invalidate_event_anchors(event_id, anchor_codes=()):
    """
    Drop every cached anchor of an event.

    Known codes are deleted one by one; with Redis the whole
    anchor:<event>: prefix is scanned as well.
    """
    for code in anchor_codes:
        invalidate_anchor(event_id, code)
    invalidate_cache_pattern(f"{ANCHOR_KEY_PREFIX}{event_id}:")


def invalidate_cache_pattern(pattern):
    """
    Invalidate all cache keys matching a pattern
    Uses Redis SCAN to find and delete matching keys
    """
    try:
        from django_redis import get_redis_connection
        redis_conn = get_redis_connection("default")

        keys = []
        cursor = 0
        while True:
            cursor, partial_keys = redis_conn.scan(cursor, match=f"*{pattern}*", count=100)
            keys.extend(partial_keys)
            if cursor == 0:
                break

        if keys:
            redis_conn.delete(*keys)
            logger.info(f"Cache invalidation requested for pattern: {pattern} - Deleted {len(keys)} keys")
        else:
            logger.debug(f"Cache invalidation requested for pattern: {pattern} - No keys found")
    except Exception as e:
        # Not a Redis-backed cache (tests, local development)
        logger.debug(f"Could not invalidate cache pattern {pattern}: {str(e)}")
