import logging
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from django.shortcuts import get_object_or_404
from django.db import IntegrityError
from backend.core.utils import create_audit_log, is_editor
from backend.wayfinding import services
from backend.wayfinding.exceptions import GraphBusy, GraphInputError
from backend.wayfinding.signals import suspend_graph_signals
from .models import Venue, Event, Floorplan
from .serializers import VenueSerializer, EventSerializer, FloorplanSerializer

logger = logging.getLogger('backend.venues')


def _forbidden(request, what):
    logger.warning(f"User {request.user.username} attempted to modify {what} without editor privileges")
    return Response({'error': f'Only editors can modify {what}'}, status=status.HTTP_403_FORBIDDEN)


# Venue views
@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def venue_list_create(request):
    """List all venues or create a new venue (create requires editor)"""
    try:
        if request.method == 'GET':
            venues = Venue.objects.all()
            if request.query_params.get('active') == 'true':
                venues = venues.filter(is_active=True)
            serializer = VenueSerializer(venues, many=True)
            return Response(serializer.data)

        if not is_editor(request.user):
            return _forbidden(request, 'venues')

        logger.info(f"User {request.user.username} creating venue with data: {request.data}")
        serializer = VenueSerializer(data=request.data)
        if serializer.is_valid():
            venue = serializer.save()
            create_audit_log(request, 'create', 'Venue', venue.id, object_name=venue.name)
            logger.info(f"Venue '{venue.name}' created successfully by {request.user.username}")
            return Response(serializer.data, status=status.HTTP_201_CREATED)
        logger.warning(f"Venue creation validation failed: {serializer.errors}")
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    except Exception as e:
        logger.error(f"Unexpected error in venue_list_create: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def venue_detail(request, pk):
    """Retrieve, update or delete a venue (update/delete requires editor)"""
    venue = get_object_or_404(Venue, pk=pk)
    try:
        if request.method == 'GET':
            return Response(VenueSerializer(venue).data)

        if not is_editor(request.user):
            return _forbidden(request, 'venues')

        if request.method in ('PUT', 'PATCH'):
            serializer = VenueSerializer(venue, data=request.data, partial=request.method == 'PATCH')
            if serializer.is_valid():
                serializer.save()
                create_audit_log(request, 'update', 'Venue', venue.id, changes=dict(request.data), object_name=venue.name)
                logger.info(f"Venue {pk} updated successfully")
                return Response(serializer.data)
            logger.warning(f"Venue update validation failed: {serializer.errors}")
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        # DELETE
        logger.info(f"User {request.user.username} deleting venue {pk} ({venue.name})")
        # Navigation graphs and anchors are evicted by the cascade delete signals
        venue.delete()
        create_audit_log(request, 'delete', 'Venue', pk, object_name=venue.name)
        return Response(status=status.HTTP_204_NO_CONTENT)
    except Exception as e:
        logger.error(f"Unexpected error in venue_detail for pk {pk}: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


# Event views
@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def event_list_create(request):
    """List events (optionally per venue) or create a new event"""
    try:
        if request.method == 'GET':
            events = Event.objects.select_related('venue')
            venue_id = request.query_params.get('venue')
            if venue_id:
                events = events.filter(venue_id=venue_id)
            serializer = EventSerializer(events, many=True)
            return Response(serializer.data)

        if not is_editor(request.user):
            return _forbidden(request, 'events')

        serializer = EventSerializer(data=request.data)
        if serializer.is_valid():
            event = serializer.save()
            create_audit_log(request, 'create', 'Event', event.id, object_name=event.name)
            logger.info(f"Event '{event.name}' created successfully by {request.user.username}")
            return Response(serializer.data, status=status.HTTP_201_CREATED)
        logger.warning(f"Event creation validation failed: {serializer.errors}")
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    except Exception as e:
        logger.error(f"Unexpected error in event_list_create: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def event_detail(request, pk):
    """Retrieve, update or delete an event"""
    event = get_object_or_404(Event.objects.select_related('venue'), pk=pk)
    try:
        if request.method == 'GET':
            return Response(EventSerializer(event).data)

        if not is_editor(request.user):
            return _forbidden(request, 'events')

        if request.method in ('PUT', 'PATCH'):
            serializer = EventSerializer(event, data=request.data, partial=request.method == 'PATCH')
            if serializer.is_valid():
                serializer.save()
                create_audit_log(request, 'update', 'Event', event.id, changes=dict(request.data), object_name=event.name)
                return Response(serializer.data)
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        logger.info(f"User {request.user.username} deleting event {pk} ({event.name})")
        event.delete()
        create_audit_log(request, 'delete', 'Event', pk, object_name=event.name)
        return Response(status=status.HTTP_204_NO_CONTENT)
    except Exception as e:
        logger.error(f"Unexpected error in event_detail for pk {pk}: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


# Floorplan views
@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def floorplan_list_create(request):
    """List floorplans (optionally per venue or event) or register a new one"""
    try:
        if request.method == 'GET':
            floorplans = Floorplan.objects.select_related('venue', 'event')
            venue_id = request.query_params.get('venue')
            if venue_id:
                floorplans = floorplans.filter(venue_id=venue_id)
            event_id = request.query_params.get('event')
            if event_id:
                floorplans = floorplans.filter(event_id=event_id)
            serializer = FloorplanSerializer(floorplans, many=True)
            return Response(serializer.data)

        if not is_editor(request.user):
            return _forbidden(request, 'floorplans')

        logger.info(f"User {request.user.username} registering floorplan with data: {request.data}")
        serializer = FloorplanSerializer(data=request.data)
        if serializer.is_valid():
            try:
                floorplan = serializer.save()
            except IntegrityError as e:
                logger.error(f"IntegrityError creating floorplan: {str(e)}", exc_info=True)
                return Response({'error': 'Database error occurred while creating floorplan'}, status=status.HTTP_400_BAD_REQUEST)
            services.ensure_graph(floorplan)
            create_audit_log(request, 'create', 'Floorplan', floorplan.id, object_name=floorplan.name)
            return Response(serializer.data, status=status.HTTP_201_CREATED)
        logger.warning(f"Floorplan creation validation failed: {serializer.errors}")
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    except Exception as e:
        logger.error(f"Unexpected error in floorplan_list_create: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def floorplan_detail(request, pk):
    """
    Retrieve, update or delete a floorplan.

    Changing width/height rescales nothing: the new dimensions are rejected
    when any positioned node would fall outside them.
    """
    floorplan = get_object_or_404(Floorplan.objects.select_related('venue', 'event'), pk=pk)
    try:
        if request.method == 'GET':
            return Response(FloorplanSerializer(floorplan).data)

        if not is_editor(request.user):
            return _forbidden(request, 'floorplans')

        if request.method in ('PUT', 'PATCH'):
            serializer = FloorplanSerializer(floorplan, data=request.data, partial=request.method == 'PATCH')
            if not serializer.is_valid():
                logger.warning(f"Floorplan update validation failed: {serializer.errors}")
                return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

            data = serializer.validated_data
            width = data.get('width', floorplan.width)
            height = data.get('height', floorplan.height)
            try:
                with suspend_graph_signals():
                    if (width, height) != (floorplan.width, floorplan.height):
                        services.resize_floorplan(floorplan, width, height)
                    serializer.save()
            except GraphBusy as e:
                return Response(e.as_dict(), status=status.HTTP_503_SERVICE_UNAVAILABLE)
            except GraphInputError as e:
                logger.info(f"Floorplan {pk} resize rejected: {e.message}")
                return Response(e.as_dict(), status=status.HTTP_400_BAD_REQUEST)
            create_audit_log(request, 'update', 'Floorplan', floorplan.id, changes=dict(request.data), object_name=floorplan.name)
            return Response(serializer.data)

        logger.info(f"User {request.user.username} deleting floorplan {pk} ({floorplan.name})")
        floorplan.delete()
        create_audit_log(request, 'delete', 'Floorplan', pk, object_name=floorplan.name)
        return Response(status=status.HTTP_204_NO_CONTENT)
    except Exception as e:
        logger.error(f"Unexpected error in floorplan_detail for pk {pk}: {str(e)}", exc_info=True)
        return Response({'error': 'An unexpected error occurred'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
