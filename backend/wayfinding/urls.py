from django.urls import path
from .views import (
    floorplan_graph,
    node_list_create, node_detail,
    edge_list_create, edge_detail,
    anchor_list_create, anchor_detail,
    anchor_resolve, navigation_route, navigation_nearest,
)

urlpatterns = [
    # Editor endpoints
    path('floorplans/<int:pk>/graph/', floorplan_graph, name='floorplan-graph'),
    path('floorplans/<int:pk>/nodes/', node_list_create, name='node-list-create'),
    path('floorplans/<int:pk>/nodes/<int:node_pk>/', node_detail, name='node-detail'),
    path('floorplans/<int:pk>/edges/', edge_list_create, name='edge-list-create'),
    path('floorplans/<int:pk>/edges/<int:edge_pk>/', edge_detail, name='edge-detail'),
    path('events/<int:pk>/anchors/', anchor_list_create, name='anchor-list-create'),
    path('events/<int:pk>/anchors/<int:anchor_pk>/', anchor_detail, name='anchor-detail'),

    # Mobile endpoints
    path('navigation/anchors/resolve/', anchor_resolve, name='anchor-resolve'),
    path('navigation/route/', navigation_route, name='navigation-route'),
    path('navigation/nearest/', navigation_nearest, name='navigation-nearest'),
]
