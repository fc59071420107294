from django.contrib import admin
from .models import Venue, Event, Floorplan


@admin.register(Venue)
class VenueAdmin(admin.ModelAdmin):
    list_display = ['name', 'is_active', 'created_at']
    list_filter = ['is_active', 'created_at']
    search_fields = ['name', 'address']
    ordering = ['name']


@admin.register(Event)
class EventAdmin(admin.ModelAdmin):
    list_display = ['name', 'venue', 'starts_at', 'ends_at', 'is_active']
    list_filter = ['is_active', 'venue']
    search_fields = ['name', 'venue__name']
    ordering = ['-starts_at']


@admin.register(Floorplan)
class FloorplanAdmin(admin.ModelAdmin):
    list_display = ['name', 'venue', 'event', 'width', 'height', 'scale_factor', 'updated_at']
    list_filter = ['venue']
    search_fields = ['name', 'venue__name']
    ordering = ['venue', 'name']
