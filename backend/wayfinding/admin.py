from django.contrib import admin
from .models import NavigationNode, NavigationEdge, AnchorBinding


@admin.register(NavigationNode)
class NavigationNodeAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'kind', 'floorplan', 'x', 'y', 'positioned', 'is_emergency_exit', 'is_first_aid']
    list_filter = ['kind', 'positioned', 'is_emergency_exit', 'is_first_aid', 'floorplan']
    search_fields = ['name', 'node_key', 'floorplan__name']
    ordering = ['floorplan', 'id']


@admin.register(NavigationEdge)
class NavigationEdgeAdmin(admin.ModelAdmin):
    list_display = ['id', 'floorplan', 'from_node', 'to_node', 'weight', 'is_accessible', 'is_emergency_path', 'directed']
    list_filter = ['is_accessible', 'is_emergency_path', 'directed', 'floorplan']
    search_fields = ['edge_key', 'from_node__name', 'to_node__name']
    raw_id_fields = ['from_node', 'to_node']
    ordering = ['floorplan', 'id']


@admin.register(AnchorBinding)
class AnchorBindingAdmin(admin.ModelAdmin):
    list_display = ['anchor_code', 'event', 'node', 'allow_shared_node', 'created_at']
    list_filter = ['event']
    search_fields = ['anchor_code', 'node__name', 'event__name']
    raw_id_fields = ['node']
    ordering = ['event', 'anchor_code']
