import django_filters
from django.db.models import Q
from .models import NavigationNode, NavigationEdge, AnchorBinding


class NavigationNodeFilter(django_filters.FilterSet):
    """Editor-side filtering of the nodes of one floorplan"""

    search = django_filters.CharFilter(method='filter_search', label='Search')
    kind = django_filters.CharFilter(method='filter_kind', label='Kind')
    positioned = django_filters.BooleanFilter(field_name='positioned')
    emergency_exit = django_filters.BooleanFilter(field_name='is_emergency_exit')
    first_aid = django_filters.BooleanFilter(field_name='is_first_aid')

    class Meta:
        model = NavigationNode
        fields = ['search', 'kind', 'positioned', 'emergency_exit', 'first_aid']

    def filter_search(self, queryset, name, value):
        """Match name or node key; every word must appear"""
        if not value:
            return queryset
        for word in value.split():
            queryset = queryset.filter(Q(name__icontains=word) | Q(node_key__icontains=word))
        return queryset

    def filter_kind(self, queryset, name, value):
        """Comma-separated kinds, e.g. ?kind=restroom,first_aid"""
        kinds = [kind.strip() for kind in value.split(',') if kind.strip()]
        if not kinds:
            return queryset
        return queryset.filter(kind__in=kinds)


class NavigationEdgeFilter(django_filters.FilterSet):
    node = django_filters.NumberFilter(method='filter_node', label='Touches node')
    accessible = django_filters.BooleanFilter(field_name='is_accessible')
    emergency = django_filters.BooleanFilter(field_name='is_emergency_path')

    class Meta:
        model = NavigationEdge
        fields = ['node', 'accessible', 'emergency']

    def filter_node(self, queryset, name, value):
        return queryset.filter(Q(from_node_id=value) | Q(to_node_id=value))


class AnchorBindingFilter(django_filters.FilterSet):
    floorplan = django_filters.NumberFilter(field_name='node__floorplan_id')
    code = django_filters.CharFilter(field_name='anchor_code', lookup_expr='icontains')

    class Meta:
        model = AnchorBinding
        fields = ['floorplan', 'code']
