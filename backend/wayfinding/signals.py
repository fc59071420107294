"""
Cache invalidation signals for navigation data.

Rows changed through the service layer are already reflected in the
published graphs, so the services suspend these handlers. Changes made
anywhere else (admin, shell, raw fixtures) evict the affected graph and
anchor entries; the next request rebuilds them from the database.
"""
import logging
import threading
from contextlib import contextmanager

from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from backend.venues.models import Event, Floorplan
from .models import AnchorBinding, NavigationEdge, NavigationNode

logger = logging.getLogger(__name__)

# Thread-local storage to track signal suspension
_thread_locals = threading.local()


@contextmanager
def suspend_graph_signals():
    """
    Temporarily suspend graph eviction signals on this thread.
    Nests: the outermost block restores the previous state.
    """
    previous = getattr(_thread_locals, 'suspended', False)
    _thread_locals.suspended = True
    try:
        yield
    finally:
        _thread_locals.suspended = previous


def is_suspended():
    return getattr(_thread_locals, 'suspended', False)


def _evict_floorplan(floorplan_id, reason):
    from . import services
    if is_suspended():
        return
    logger.info(f"Evicting navigation graph of floorplan {floorplan_id} ({reason})")
    services.drop_graph(floorplan_id)


@receiver([post_save, post_delete], sender=NavigationNode)
def evict_graph_on_node_change(sender, instance, **kwargs):
    _evict_floorplan(instance.floorplan_id, f"node {instance.pk} changed")
    if kwargs.get('signal') is post_delete and not is_suspended():
        from . import services
        services.get_anchor_registry().drop_node(instance.pk)


@receiver([post_save, post_delete], sender=NavigationEdge)
def evict_graph_on_edge_change(sender, instance, **kwargs):
    _evict_floorplan(instance.floorplan_id, f"edge {instance.pk} changed")


@receiver(post_save, sender=Floorplan)
def evict_graph_on_floorplan_save(sender, instance, created=False, **kwargs):
    if not created:
        _evict_floorplan(instance.pk, "floorplan updated")


@receiver(post_delete, sender=Floorplan)
def evict_graph_on_floorplan_delete(sender, instance, **kwargs):
    _evict_floorplan(instance.pk, "floorplan deleted")


@receiver([post_save, post_delete], sender=AnchorBinding)
def evict_anchors_on_binding_change(sender, instance, **kwargs):
    from . import services
    if is_suspended():
        return
    logger.info(f"Evicting anchor bindings of event {instance.event_id}")
    services.forget_event_anchors(instance.event_id)


@receiver(post_delete, sender=Event)
def evict_anchors_on_event_delete(sender, instance, **kwargs):
    from . import services
    if is_suspended():
        return
    services.forget_event_anchors(instance.pk)
