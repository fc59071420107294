"""
Test utilities and factories for creating test data
"""
from django.contrib.auth import get_user_model
from django.core.cache import cache
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken
from backend.venues.models import Venue, Event, Floorplan
from backend.wayfinding import services
import random
import string

User = get_user_model()


class TestDataFactory:
    """Factory class for creating test data"""

    @staticmethod
    def random_string(length=10):
        """Generate a random string"""
        return ''.join(random.choices(string.ascii_letters + string.digits, k=length))

    @staticmethod
    def create_user(username=None, email=None, password='testpass123', is_staff=False, is_superuser=False):
        """Create a test user"""
        if not username:
            username = f'testuser_{TestDataFactory.random_string(6)}'
        if not email:
            email = f'{username}@test.com'
        return User.objects.create_user(
            username=username,
            email=email,
            password=password,
            is_staff=is_staff,
            is_superuser=is_superuser
        )

    @staticmethod
    def create_editor(**kwargs):
        """Create a staff user allowed to edit venues and graphs"""
        return TestDataFactory.create_user(is_staff=True, **kwargs)

    @staticmethod
    def create_venue(name=None, address=None):
        """Create a test venue"""
        if not name:
            name = f'Venue_{TestDataFactory.random_string(6)}'
        return Venue.objects.create(name=name, address=address or f'Test Address {name}')

    @staticmethod
    def create_event(venue=None, name=None):
        """Create a test event"""
        venue = venue or TestDataFactory.create_venue()
        if not name:
            name = f'Event_{TestDataFactory.random_string(6)}'
        return Event.objects.create(venue=venue, name=name)

    @staticmethod
    def create_floorplan(venue=None, event=None, name=None, width=1000.0, height=800.0, scale_factor=1.0):
        """Create a test floorplan (reference image of width x height pixels)"""
        venue = venue or (event.venue if event else TestDataFactory.create_venue())
        if not name:
            name = f'Floorplan_{TestDataFactory.random_string(6)}'
        return Floorplan.objects.create(
            venue=venue, event=event, name=name,
            width=width, height=height, scale_factor=scale_factor,
        )

    @staticmethod
    def create_node(floorplan, x=0.0, y=0.0, kind='poi', name=None, **kwargs):
        """Create a node through the service layer so the in-memory graph follows"""
        data = {'x': x, 'y': y, 'kind': kind, 'name': name or f'Node_{TestDataFactory.random_string(4)}'}
        data.update(kwargs)
        return services.create_node(floorplan, data)

    @staticmethod
    def create_edge(floorplan, from_node, to_node, weight=None, **kwargs):
        """Create an edge through the service layer"""
        data = {'from_node': from_node, 'to_node': to_node, 'weight': weight}
        data.update(kwargs)
        return services.create_edge(floorplan, data)

    @staticmethod
    def create_anchor(event, node, anchor_code=None, allow_shared_node=False):
        """Bind a QR anchor code to a node for an event"""
        if not anchor_code:
            anchor_code = f'QR-{TestDataFactory.random_string(6).upper()}'
        return services.bind_anchor(event, node, anchor_code, allow_shared_node=allow_shared_node)

    @staticmethod
    def create_triangle(floorplan):
        """
        Three nodes A, B, C with A-B 10, B-C 10 and A-C 25.
        Returns (a, b, c, ab, bc, ac).
        """
        a = TestDataFactory.create_node(floorplan, 100, 100, kind='entrance', name='A')
        b = TestDataFactory.create_node(floorplan, 200, 100, name='B')
        c = TestDataFactory.create_node(floorplan, 200, 200, kind='restroom', name='C')
        ab = TestDataFactory.create_edge(floorplan, a, b, 10)
        bc = TestDataFactory.create_edge(floorplan, b, c, 10)
        ac = TestDataFactory.create_edge(floorplan, a, c, 25)
        return a, b, c, ab, bc, ac


def reset_wayfinding_state():
    """Empty graph store, anchor registry and cache between tests"""
    services.reset_state()
    cache.clear()


class AuthenticatedAPIClient(APIClient):
    """APIClient with authentication helper"""

    def authenticate_user(self, user):
        """Authenticate the client with a user"""
        refresh = RefreshToken.for_user(user)
        self.credentials(HTTP_AUTHORIZATION=f'Bearer {refresh.access_token}')
        return self

    def logout(self):
        """Remove authentication"""
        self.credentials()
