import math

from rest_framework import serializers
from .models import Venue, Event, Floorplan


class VenueSerializer(serializers.ModelSerializer):
    class Meta:
        model = Venue
        fields = ['id', 'name', 'address', 'is_active', 'created_at', 'updated_at']


class EventSerializer(serializers.ModelSerializer):
    venue_name = serializers.CharField(source='venue.name', read_only=True)

    class Meta:
        model = Event
        fields = ['id', 'venue', 'venue_name', 'name', 'description', 'starts_at', 'ends_at',
                  'is_active', 'created_at', 'updated_at']

    def validate(self, attrs):
        starts_at = attrs.get('starts_at', getattr(self.instance, 'starts_at', None))
        ends_at = attrs.get('ends_at', getattr(self.instance, 'ends_at', None))
        if starts_at and ends_at and ends_at < starts_at:
            raise serializers.ValidationError({'ends_at': 'Event cannot end before it starts'})
        return attrs


class FloorplanSerializer(serializers.ModelSerializer):
    node_count = serializers.SerializerMethodField()
    edge_count = serializers.SerializerMethodField()

    class Meta:
        model = Floorplan
        fields = ['id', 'venue', 'event', 'name', 'image_url', 'width', 'height', 'scale_factor',
                  'node_count', 'edge_count', 'created_at', 'updated_at']

    def get_node_count(self, obj):
        return obj.navigation_nodes.count()

    def get_edge_count(self, obj):
        return obj.navigation_edges.count()

    def _positive(self, value, label):
        if value is None or not math.isfinite(value) or value <= 0:
            raise serializers.ValidationError(f'{label} must be a positive number')
        return value

    def validate_width(self, value):
        return self._positive(value, 'Width')

    def validate_height(self, value):
        return self._positive(value, 'Height')

    def validate_scale_factor(self, value):
        return self._positive(value, 'Scale factor')

    def validate(self, attrs):
        venue = attrs.get('venue', getattr(self.instance, 'venue', None))
        event = attrs.get('event', getattr(self.instance, 'event', None))
        if event is not None and venue is not None and event.venue_id != venue.id:
            raise serializers.ValidationError({'event': 'Event belongs to a different venue'})
        return attrs
