from rest_framework import serializers

from .coordinates import point_to_percent
from .exceptions import InvalidExtent
from .graph import NodeKind, RouteFilter
from .models import NavigationNode, NavigationEdge, AnchorBinding
from .session import RouteRequest


class NavigationNodeSerializer(serializers.ModelSerializer):
    """Nodes carry pixel coordinates plus their percentage equivalents"""
    x_percent = serializers.SerializerMethodField()
    y_percent = serializers.SerializerMethodField()

    class Meta:
        model = NavigationNode
        fields = ['id', 'floorplan', 'node_key', 'kind', 'name', 'x', 'y', 'x_percent', 'y_percent',
                  'is_emergency_exit', 'is_first_aid', 'positioned', 'metadata', 'created_at', 'updated_at']
        read_only_fields = ['floorplan', 'created_at', 'updated_at']

    def _percent(self, obj):
        if not obj.positioned or obj.x is None or obj.y is None:
            return None, None
        try:
            return point_to_percent(obj.x, obj.y, obj.floorplan.width, obj.floorplan.height)
        except InvalidExtent:
            return None, None

    def get_x_percent(self, obj):
        return self._percent(obj)[0]

    def get_y_percent(self, obj):
        return self._percent(obj)[1]


class NavigationNodeWriteSerializer(serializers.Serializer):
    """Input for node create/update; either pixel or percentage coordinates"""
    node_key = serializers.CharField(max_length=100, required=False, allow_blank=True)
    kind = serializers.ChoiceField(choices=NodeKind.choices(), required=False)
    name = serializers.CharField(max_length=200, required=False, allow_blank=True)
    x = serializers.FloatField(required=False, allow_null=True)
    y = serializers.FloatField(required=False, allow_null=True)
    x_percent = serializers.FloatField(required=False, allow_null=True)
    y_percent = serializers.FloatField(required=False, allow_null=True)
    is_emergency_exit = serializers.BooleanField(required=False)
    is_first_aid = serializers.BooleanField(required=False)
    positioned = serializers.BooleanField(required=False)
    metadata = serializers.DictField(required=False)


class NavigationEdgeSerializer(serializers.ModelSerializer):
    class Meta:
        model = NavigationEdge
        fields = ['id', 'floorplan', 'edge_key', 'from_node', 'to_node', 'weight',
                  'is_emergency_path', 'is_accessible', 'directed', 'created_at']
        read_only_fields = ['floorplan', 'created_at']


class NavigationEdgeWriteSerializer(serializers.Serializer):
    edge_key = serializers.CharField(max_length=100, required=False, allow_blank=True)
    from_node = serializers.PrimaryKeyRelatedField(queryset=NavigationNode.objects.all())
    to_node = serializers.PrimaryKeyRelatedField(queryset=NavigationNode.objects.all())
    weight = serializers.FloatField(required=False, allow_null=True)
    is_emergency_path = serializers.BooleanField(required=False)
    is_accessible = serializers.BooleanField(required=False)
    directed = serializers.BooleanField(required=False)


class NavigationEdgeUpdateSerializer(serializers.Serializer):
    weight = serializers.FloatField(required=False)
    is_emergency_path = serializers.BooleanField(required=False)
    is_accessible = serializers.BooleanField(required=False)
    directed = serializers.BooleanField(required=False)


class GraphImportSerializer(serializers.Serializer):
    """Element-level validation happens in the service layer, all or nothing"""
    nodes = serializers.ListField(child=serializers.DictField(), required=False, default=list)
    edges = serializers.ListField(child=serializers.DictField(), required=False, default=list)
    replace = serializers.BooleanField(required=False, default=False)


class AnchorBindingSerializer(serializers.ModelSerializer):
    floorplan = serializers.IntegerField(source='node.floorplan_id', read_only=True)
    node_name = serializers.CharField(source='node.name', read_only=True)

    class Meta:
        model = AnchorBinding
        fields = ['id', 'event', 'anchor_code', 'node', 'node_name', 'floorplan', 'allow_shared_node', 'created_at']
        read_only_fields = ['event', 'created_at']


class AnchorBindingWriteSerializer(serializers.Serializer):
    anchor_code = serializers.CharField(max_length=200, trim_whitespace=False)
    node = serializers.PrimaryKeyRelatedField(queryset=NavigationNode.objects.select_related('floorplan'))
    allow_shared_node = serializers.BooleanField(required=False, default=False)


class AnchorPayloadField(serializers.Field):
    """Raw QR payload: a bare code or a JSON object (as string or nested object)"""

    def to_internal_value(self, data):
        if isinstance(data, (str, dict)):
            return data
        raise serializers.ValidationError('Anchor payload must be a string or an object')

    def to_representation(self, value):
        return value


class RouteRequestSerializer(serializers.Serializer):
    event_id = serializers.CharField(required=False, allow_null=True)
    destination_node_id = serializers.CharField(required=False, allow_null=True)
    floorplan_id = serializers.CharField(required=False, allow_null=True)
    anchor_payload = AnchorPayloadField(required=False, allow_null=True)
    start_node_id = serializers.CharField(required=False, allow_null=True)
    accessible_only = serializers.BooleanField(required=False, default=False)
    emergency_only = serializers.BooleanField(required=False, default=False)
    exclude_emergency = serializers.BooleanField(required=False, default=False)
    display_width = serializers.FloatField(required=False, allow_null=True)
    display_height = serializers.FloatField(required=False, allow_null=True)

    def to_route_request(self):
        """RouteRequest from validated data; RouteFilter rejects contradictory flags"""
        data = self.validated_data
        route_filter = RouteFilter(
            accessible_only=data['accessible_only'],
            emergency_only=data['emergency_only'],
            exclude_emergency=data['exclude_emergency'],
        )
        return RouteRequest(
            event_id=data.get('event_id'),
            destination_node_id=data.get('destination_node_id'),
            floorplan_id=data.get('floorplan_id'),
            anchor_payload=data.get('anchor_payload'),
            start_node_id=data.get('start_node_id'),
            route_filter=route_filter,
            display_width=data.get('display_width'),
            display_height=data.get('display_height'),
        )


class NearestRequestSerializer(RouteRequestSerializer):
    kinds = serializers.ListField(child=serializers.ChoiceField(choices=NodeKind.choices()), allow_empty=False)


class AnchorResolveSerializer(serializers.Serializer):
    anchor_payload = AnchorPayloadField()
    event_id = serializers.CharField(required=False, allow_null=True)
