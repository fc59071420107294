from django.urls import path
from .views import (
    venue_list_create, venue_detail,
    event_list_create, event_detail,
    floorplan_list_create, floorplan_detail,
)

urlpatterns = [
    path('venues/', venue_list_create, name='venue-list-create'),
    path('venues/<int:pk>/', venue_detail, name='venue-detail'),
    path('events/', event_list_create, name='event-list-create'),
    path('events/<int:pk>/', event_detail, name='event-detail'),
    path('floorplans/', floorplan_list_create, name='floorplan-list-create'),
    path('floorplans/<int:pk>/', floorplan_detail, name='floorplan-detail'),
]
