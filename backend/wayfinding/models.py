from django.db import models

from backend.venues.models import Event, Floorplan
from . import graph


class NavigationNode(models.Model):
    """A point of the navigation graph placed on a floorplan image (pixel coordinates)"""
    floorplan = models.ForeignKey(Floorplan, on_delete=models.CASCADE, related_name='navigation_nodes')
    node_key = models.CharField(max_length=100, blank=True, help_text="Editor-side key used to reference the node in bulk imports")
    kind = models.CharField(max_length=30, choices=graph.NodeKind.choices(), default=graph.NodeKind.POI.value)
    name = models.CharField(max_length=200, blank=True)
    x = models.FloatField(null=True, blank=True)
    y = models.FloatField(null=True, blank=True)
    is_emergency_exit = models.BooleanField(default=False)
    is_first_aid = models.BooleanField(default=False)
    positioned = models.BooleanField(default=True, help_text="False for logical nodes without a location on the image")
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name or f"{self.kind} #{self.pk}"

    def to_graph_node(self):
        return graph.Node(
            id=str(self.pk),
            floorplan_id=str(self.floorplan_id),
            kind=self.kind,
            x=self.x,
            y=self.y,
            name=self.name,
            is_emergency_exit=self.is_emergency_exit,
            is_first_aid=self.is_first_aid,
            positioned=self.positioned,
            metadata=dict(self.metadata or {}),
        )

    class Meta:
        db_table = 'navigation_nodes'
        ordering = ['id']
        indexes = [
            models.Index(fields=['floorplan', 'kind'], name='nav_node_floorplan_kind_idx'),
            models.Index(fields=['floorplan', 'node_key'], name='nav_node_floorplan_key_idx'),
        ]


class NavigationEdge(models.Model):
    """Walkable connection between two nodes of the same floorplan"""
    floorplan = models.ForeignKey(Floorplan, on_delete=models.CASCADE, related_name='navigation_edges')
    edge_key = models.CharField(max_length=100, blank=True)
    from_node = models.ForeignKey(NavigationNode, on_delete=models.CASCADE, related_name='edges_out')
    to_node = models.ForeignKey(NavigationNode, on_delete=models.CASCADE, related_name='edges_in')
    weight = models.FloatField(help_text="Traversal cost, usually metres")
    is_emergency_path = models.BooleanField(default=False)
    is_accessible = models.BooleanField(default=True)
    directed = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        arrow = '->' if self.directed else '<->'
        return f"{self.from_node_id} {arrow} {self.to_node_id} ({self.weight})"

    def to_graph_edge(self):
        return graph.Edge(
            id=str(self.pk),
            floorplan_id=str(self.floorplan_id),
            from_node_id=str(self.from_node_id),
            to_node_id=str(self.to_node_id),
            weight=self.weight,
            is_emergency_path=self.is_emergency_path,
            is_accessible=self.is_accessible,
            directed=self.directed,
        )

    class Meta:
        db_table = 'navigation_edges'
        ordering = ['id']


class AnchorBinding(models.Model):
    """Printed QR code bound to a node for one event"""
    event = models.ForeignKey(Event, on_delete=models.CASCADE, related_name='anchor_bindings')
    anchor_code = models.CharField(max_length=200)
    node = models.ForeignKey(NavigationNode, on_delete=models.CASCADE, related_name='anchor_bindings')
    allow_shared_node = models.BooleanField(default=False, help_text="Allow several anchors of this event on the same node")
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.anchor_code} -> node {self.node_id} (event {self.event_id})"

    class Meta:
        db_table = 'anchor_bindings'
        unique_together = [['event', 'anchor_code']]
        ordering = ['anchor_code']
