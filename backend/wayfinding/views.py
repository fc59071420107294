import logging
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import AllowAny, IsAuthenticated
from django.shortcuts import get_object_or_404
from django.db import IntegrityError
from backend.core.utils import is_editor
from backend.venues.models import Event, Floorplan
from . import services
from .exceptions import GraphBusy, GraphInputError, GraphInvariantViolation, NotFound, RouteOutcome
from .filters import AnchorBindingFilter, NavigationEdgeFilter, NavigationNodeFilter
from .models import AnchorBinding, NavigationEdge, NavigationNode
from .serializers import (
    AnchorBindingSerializer, AnchorBindingWriteSerializer, AnchorResolveSerializer,
    GraphImportSerializer, NavigationEdgeSerializer, NavigationEdgeUpdateSerializer,
    NavigationEdgeWriteSerializer, NavigationNodeSerializer, NavigationNodeWriteSerializer,
    NearestRequestSerializer, RouteRequestSerializer,
)

logger = logging.getLogger('backend.wayfinding')


def _forbidden(request, what):
    logger.warning(f"User {request.user} attempted to modify {what} without editor privileges")
    return Response({'error': f'Only editors can modify {what}'}, status=status.HTTP_403_FORBIDDEN)


def _error_response(e, not_found_status=status.HTTP_400_BAD_REQUEST):
    """Map a wayfinding error to an HTTP response"""
    if isinstance(e, GraphBusy):
        return Response(e.as_dict(), status=status.HTTP_503_SERVICE_UNAVAILABLE)
    if isinstance(e, NotFound):
        return Response(e.as_dict(), status=not_found_status)
    if isinstance(e, GraphInputError):
        return Response(e.as_dict(), status=status.HTTP_400_BAD_REQUEST)
    if isinstance(e, RouteOutcome):
        return Response(e.as_dict(), status=status.HTTP_404_NOT_FOUND)
    # GraphInvariantViolation was logged at critical where it was detected
    return Response({'error': 'Navigation data is inconsistent', 'code': e.code},
                    status=status.HTTP_500_INTERNAL_SERVER_ERROR)


# ==================== GRAPH ====================

@api_view(['GET', 'POST'])
@permission_classes([AllowAny])
def floorplan_graph(request, pk):
    """
    GET: the whole navigation graph of a floorplan (nodes with percentage coordinates).
    POST: atomic bulk import {"nodes": [...], "edges": [...], "replace": false}.
    """
    floorplan = get_object_or_404(Floorplan, pk=pk)
    try:
        if request.method == 'GET':
            return Response(services.graph_payload(floorplan))

        if not is_editor(request.user):
            return _forbidden(request, 'navigation graphs')

        serializer = GraphImportSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        data = serializer.validated_data
        logger.info(f"User {request.user.username} importing {len(data['nodes'])} nodes and "
                    f"{len(data['edges'])} edges into floorplan {pk}")
        result = services.import_graph(floorplan, {'nodes': data['nodes'], 'edges': data['edges']},
                                       replace=data['replace'], request=request)
        return Response(result, status=status.HTTP_201_CREATED)
    except (GraphInputError, GraphBusy, GraphInvariantViolation) as e:
        logger.info(f"Graph request for floorplan {pk} rejected: {e.message}")
        return _error_response(e)
    except Exception as e:
        logger.error(f"Unexpected error in floorplan_graph for pk {pk}: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


# ==================== NODES ====================

@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def node_list_create(request, pk):
    """List the nodes of a floorplan or add one"""
    floorplan = get_object_or_404(Floorplan, pk=pk)
    try:
        if request.method == 'GET':
            queryset = NavigationNode.objects.filter(floorplan=floorplan).select_related('floorplan')
            filterset = NavigationNodeFilter(request.query_params, queryset=queryset)
            serializer = NavigationNodeSerializer(filterset.qs, many=True)
            return Response(serializer.data)

        if not is_editor(request.user):
            return _forbidden(request, 'navigation nodes')

        serializer = NavigationNodeWriteSerializer(data=request.data)
        if not serializer.is_valid():
            logger.warning(f"Node creation validation failed: {serializer.errors}")
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        node = services.create_node(floorplan, serializer.validated_data, request=request)
        return Response(NavigationNodeSerializer(node).data, status=status.HTTP_201_CREATED)
    except (GraphInputError, GraphBusy, GraphInvariantViolation) as e:
        logger.info(f"Node creation on floorplan {pk} rejected: {e.message}")
        return _error_response(e)
    except Exception as e:
        logger.error(f"Unexpected error in node_list_create for floorplan {pk}: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


@api_view(['GET', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def node_detail(request, pk, node_pk):
    """Retrieve, move/update or delete a node (delete cascades to edges and anchors)"""
    floorplan = get_object_or_404(Floorplan, pk=pk)
    node = get_object_or_404(NavigationNode.objects.select_related('floorplan'), pk=node_pk, floorplan=floorplan)
    try:
        if request.method == 'GET':
            return Response(NavigationNodeSerializer(node).data)

        if not is_editor(request.user):
            return _forbidden(request, 'navigation nodes')

        if request.method == 'PATCH':
            serializer = NavigationNodeWriteSerializer(data=request.data, partial=True)
            if not serializer.is_valid():
                return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
            node = services.move_node(floorplan, node, serializer.validated_data, request=request)
            return Response(NavigationNodeSerializer(node).data)

        removed = services.delete_node(floorplan, node, request=request)
        logger.info(f"Node {node_pk} deleted with {len(removed)} edges by {request.user.username}")
        return Response(status=status.HTTP_204_NO_CONTENT)
    except (GraphInputError, GraphBusy, GraphInvariantViolation) as e:
        logger.info(f"Change of node {node_pk} rejected: {e.message}")
        return _error_response(e)
    except Exception as e:
        logger.error(f"Unexpected error in node_detail for node {node_pk}: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


# ==================== EDGES ====================

@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def edge_list_create(request, pk):
    """List the edges of a floorplan or connect two of its nodes"""
    floorplan = get_object_or_404(Floorplan, pk=pk)
    try:
        if request.method == 'GET':
            queryset = NavigationEdge.objects.filter(floorplan=floorplan)
            filterset = NavigationEdgeFilter(request.query_params, queryset=queryset)
            serializer = NavigationEdgeSerializer(filterset.qs, many=True)
            return Response(serializer.data)

        if not is_editor(request.user):
            return _forbidden(request, 'navigation edges')

        serializer = NavigationEdgeWriteSerializer(data=request.data)
        if not serializer.is_valid():
            logger.warning(f"Edge creation validation failed: {serializer.errors}")
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        edge = services.create_edge(floorplan, serializer.validated_data, request=request)
        return Response(NavigationEdgeSerializer(edge).data, status=status.HTTP_201_CREATED)
    except (GraphInputError, GraphBusy, GraphInvariantViolation) as e:
        logger.info(f"Edge creation on floorplan {pk} rejected: {e.message}")
        return _error_response(e)
    except Exception as e:
        logger.error(f"Unexpected error in edge_list_create for floorplan {pk}: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


@api_view(['GET', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def edge_detail(request, pk, edge_pk):
    """Retrieve, re-weight/re-flag or delete an edge"""
    floorplan = get_object_or_404(Floorplan, pk=pk)
    edge = get_object_or_404(NavigationEdge, pk=edge_pk, floorplan=floorplan)
    try:
        if request.method == 'GET':
            return Response(NavigationEdgeSerializer(edge).data)

        if not is_editor(request.user):
            return _forbidden(request, 'navigation edges')

        if request.method == 'PATCH':
            serializer = NavigationEdgeUpdateSerializer(data=request.data, partial=True)
            if not serializer.is_valid():
                return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
            edge = services.update_edge(floorplan, edge, serializer.validated_data, request=request)
            return Response(NavigationEdgeSerializer(edge).data)

        services.delete_edge(floorplan, edge, request=request)
        return Response(status=status.HTTP_204_NO_CONTENT)
    except (GraphInputError, GraphBusy, GraphInvariantViolation) as e:
        logger.info(f"Change of edge {edge_pk} rejected: {e.message}")
        return _error_response(e)
    except Exception as e:
        logger.error(f"Unexpected error in edge_detail for edge {edge_pk}: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


# ==================== ANCHORS ====================

@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def anchor_list_create(request, pk):
    """List the QR anchors of an event or bind a new one to a node"""
    event = get_object_or_404(Event, pk=pk)
    try:
        if request.method == 'GET':
            queryset = AnchorBinding.objects.filter(event=event).select_related('node')
            filterset = AnchorBindingFilter(request.query_params, queryset=queryset)
            serializer = AnchorBindingSerializer(filterset.qs, many=True)
            return Response(serializer.data)

        if not is_editor(request.user):
            return _forbidden(request, 'anchors')

        serializer = AnchorBindingWriteSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        data = serializer.validated_data
        try:
            binding = services.bind_anchor(event, data['node'], data['anchor_code'],
                                           allow_shared_node=data['allow_shared_node'], request=request)
        except IntegrityError as e:
            logger.error(f"IntegrityError binding anchor: {str(e)}", exc_info=True)
            return Response({'error': 'This anchor code is already bound for the event'}, status=status.HTTP_400_BAD_REQUEST)
        return Response(AnchorBindingSerializer(binding).data, status=status.HTTP_201_CREATED)
    except (GraphInputError, GraphBusy, GraphInvariantViolation) as e:
        logger.info(f"Anchor binding for event {pk} rejected: {e.message}")
        return _error_response(e)
    except Exception as e:
        logger.error(f"Unexpected error in anchor_list_create for event {pk}: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


@api_view(['GET', 'DELETE'])
@permission_classes([IsAuthenticated])
def anchor_detail(request, pk, anchor_pk):
    binding = get_object_or_404(AnchorBinding.objects.select_related('node'), pk=anchor_pk, event_id=pk)
    if request.method == 'GET':
        return Response(AnchorBindingSerializer(binding).data)
    if not is_editor(request.user):
        return _forbidden(request, 'anchors')
    try:
        services.unbind_anchor(binding, request=request)
    except Exception as e:
        logger.error(f"Unexpected error unbinding anchor {anchor_pk}: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
    return Response(status=status.HTTP_204_NO_CONTENT)


# ==================== NAVIGATION (mobile) ====================

@api_view(['POST'])
@permission_classes([AllowAny])
def anchor_resolve(request):
    """Scanned QR payload -> node and coordinates"""
    serializer = AnchorResolveSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data
    try:
        return Response(services.resolve_anchor(data['anchor_payload'], data.get('event_id')))
    except RouteOutcome as e:
        logger.info(f"Anchor could not be resolved: {e.message}")
        return _error_response(e)
    except (GraphInputError, GraphBusy, GraphInvariantViolation) as e:
        return _error_response(e, not_found_status=status.HTTP_404_NOT_FOUND)
    except Exception as e:
        logger.error(f"Unexpected error in anchor_resolve: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


def _route_response(serializer_class, request, plan):
    """
    Shared body of the route endpoints. Unreachable destinations and unknown
    anchors or nodes are answered with 200 and the outcome in "status".
    """
    serializer = serializer_class(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    try:
        route_request = serializer.to_route_request()
        result = plan(route_request, serializer.validated_data)
    except (GraphInputError, GraphBusy, GraphInvariantViolation) as e:
        logger.info(f"Route request rejected: {e.message}")
        return _error_response(e, not_found_status=status.HTTP_404_NOT_FOUND)
    except Exception as e:
        logger.error(f"Unexpected error planning route: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.debug(f"Route {result.start_node_id} -> {result.destination_node_id}: {result.status}")
    return Response(result.as_dict())


@api_view(['POST'])
@permission_classes([AllowAny])
def navigation_route(request):
    """Route from a scanned anchor (or a start node) to a destination node"""
    return _route_response(RouteRequestSerializer, request,
                           lambda route_request, data: services.plan_route(route_request))


@api_view(['POST'])
@permission_classes([AllowAny])
def navigation_nearest(request):
    """Route to the nearest node of the given kinds (restroom, emergency exit, first aid...)"""
    return _route_response(NearestRequestSerializer, request,
                           lambda route_request, data: services.plan_nearest(route_request, data['kinds']))
