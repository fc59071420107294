from django.core.validators import MinValueValidator
from django.db import models


class Venue(models.Model):
    """Physical venue hosting events (expo hall, conference centre)"""
    name = models.CharField(max_length=200)
    address = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name

    class Meta:
        db_table = 'venues'
        ordering = ['name']


class Event(models.Model):
    """An event held at a venue; anchors are bound per event"""
    venue = models.ForeignKey(Venue, on_delete=models.CASCADE, related_name='events')
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    starts_at = models.DateTimeField(null=True, blank=True)
    ends_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.name} @ {self.venue.name}"

    class Meta:
        db_table = 'events'
        ordering = ['-starts_at', 'name']


class Floorplan(models.Model):
    """
    Floorplan image of a venue.

    width/height are the reference image dimensions in pixels; every
    navigation node coordinate is expressed against them.
    """
    venue = models.ForeignKey(Venue, on_delete=models.CASCADE, related_name='floorplans')
    event = models.ForeignKey(Event, on_delete=models.SET_NULL, null=True, blank=True, related_name='floorplans')
    name = models.CharField(max_length=200)
    image_url = models.CharField(max_length=500, blank=True)
    width = models.FloatField(validators=[MinValueValidator(0.0)])
    height = models.FloatField(validators=[MinValueValidator(0.0)])
    scale_factor = models.FloatField(default=1.0, help_text="Pixels per metre, used for default edge weights")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name

    class Meta:
        db_table = 'floorplans'
        ordering = ['venue', 'name']
