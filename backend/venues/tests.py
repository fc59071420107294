"""
Test suite for the venues module
Tests: venue, event and floorplan CRUD, editor permissions, and how floorplan
changes reach the navigation graphs
"""
from django.test import TestCase
from rest_framework import status
from backend.core.models import AuditLog
from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient, reset_wayfinding_state
from backend.venues.models import Venue, Event, Floorplan
from backend.wayfinding import services
from backend.wayfinding.models import AnchorBinding, NavigationNode


class VenueAPITests(TestCase):
    """Venue and event endpoints"""

    def setUp(self):
        reset_wayfinding_state()
        self.client = AuthenticatedAPIClient()
        self.editor = TestDataFactory.create_editor()
        self.viewer = TestDataFactory.create_user()
        self.client.authenticate_user(self.editor)

    def test_create_venue(self):
        """Test editors can create venues and the action is audited"""
        response = self.client.post('/api/v1/venues/', {'name': 'Expo Hall', 'address': '1 Fair St'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(Venue.objects.filter(name='Expo Hall').exists())
        self.assertTrue(AuditLog.objects.filter(action='create', model_name='Venue').exists())

    def test_viewer_cannot_create(self):
        """Test non-editors are read-only"""
        self.client.authenticate_user(self.viewer)
        response = self.client.post('/api/v1/venues/', {'name': 'Nope'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        response = self.client.get('/api/v1/venues/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_list_active_venues(self):
        """Test ?active=true hides inactive venues"""
        TestDataFactory.create_venue(name='Open')
        closed = TestDataFactory.create_venue(name='Closed')
        closed.is_active = False
        closed.save()
        response = self.client.get('/api/v1/venues/', {'active': 'true'})
        self.assertEqual([venue['name'] for venue in response.data], ['Open'])

    def test_event_dates(self):
        """Test an event cannot end before it starts"""
        venue = TestDataFactory.create_venue()
        response = self.client.post('/api/v1/events/', {
            'venue': venue.pk, 'name': 'Backwards',
            'starts_at': '2026-05-02T10:00:00Z', 'ends_at': '2026-05-01T10:00:00Z',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('ends_at', response.data)

    def test_filter_events_by_venue(self):
        """Test listing the events of one venue"""
        event = TestDataFactory.create_event()
        TestDataFactory.create_event()
        response = self.client.get('/api/v1/events/', {'venue': event.venue_id})
        self.assertEqual([item['id'] for item in response.data], [event.pk])

    def test_delete_event_forgets_anchors(self):
        """Test deleting an event removes its anchors from the registry"""
        event = TestDataFactory.create_event()
        floorplan = TestDataFactory.create_floorplan(event=event)
        node = TestDataFactory.create_node(floorplan, 10, 10)
        TestDataFactory.create_anchor(event, node, 'QR-GONE')
        self.assertIsNotNone(services.get_anchor_registry().lookup('QR-GONE', event.pk))

        response = self.client.delete(f'/api/v1/events/{event.pk}/')
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(Event.objects.filter(pk=event.pk).exists())
        self.assertFalse(AnchorBinding.objects.exists())
        self.assertIsNone(services.get_anchor_registry().lookup('QR-GONE', event.pk))


class FloorplanAPITests(TestCase):
    """Floorplan registration, resizing and deletion"""

    def setUp(self):
        reset_wayfinding_state()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(TestDataFactory.create_editor())
        self.venue = TestDataFactory.create_venue()

    def test_register_floorplan(self):
        """Test a new floorplan starts with an empty navigation graph"""
        response = self.client.post('/api/v1/floorplans/', {
            'venue': self.venue.pk, 'name': 'Ground floor', 'width': 1200, 'height': 900,
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['node_count'], 0)
        floorplan_id = response.data['id']
        self.assertIn(floorplan_id, services.get_graph_store())
        self.assertEqual(len(services.get_graph_store().snapshot(floorplan_id)), 0)

    def test_invalid_dimensions(self):
        """Test zero or negative image dimensions are rejected"""
        for width in (0, -10):
            response = self.client.post('/api/v1/floorplans/', {
                'venue': self.venue.pk, 'name': 'Bad', 'width': width, 'height': 100,
            }, format='json')
            self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
            self.assertIn('width', response.data)
        self.assertFalse(Floorplan.objects.exists())

    def test_event_from_other_venue(self):
        """Test a floorplan cannot belong to an event of another venue"""
        event = TestDataFactory.create_event()
        response = self.client.post('/api/v1/floorplans/', {
            'venue': self.venue.pk, 'event': event.pk, 'name': 'Mixed', 'width': 100, 'height': 100,
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('event', response.data)

    def test_resize(self):
        """Test resizing checks every node and keeps the graph in step"""
        floorplan = TestDataFactory.create_floorplan(venue=self.venue, width=400, height=400)
        TestDataFactory.create_node(floorplan, 300, 300)
        url = f'/api/v1/floorplans/{floorplan.pk}/'

        response = self.client.patch(url, {'width': 200}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'out_of_bounds')
        floorplan.refresh_from_db()
        self.assertEqual(floorplan.width, 400)

        response = self.client.patch(url, {'width': 300, 'name': 'Renamed'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['name'], 'Renamed')
        self.assertEqual(services.ensure_graph(floorplan).width, 300)

    def test_delete_floorplan_drops_graph(self):
        """Test deleting a floorplan removes its nodes and in-memory graph"""
        floorplan = TestDataFactory.create_floorplan(venue=self.venue)
        TestDataFactory.create_node(floorplan, 10, 10)
        self.assertIn(floorplan.pk, services.get_graph_store())

        response = self.client.delete(f'/api/v1/floorplans/{floorplan.pk}/')
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(NavigationNode.objects.exists())
        self.assertNotIn(floorplan.pk, services.get_graph_store())

    def test_list_by_event(self):
        """Test ?event= narrows the floorplan list"""
        event = TestDataFactory.create_event(venue=self.venue)
        mine = TestDataFactory.create_floorplan(event=event)
        TestDataFactory.create_floorplan(venue=self.venue)
        response = self.client.get('/api/v1/floorplans/', {'event': event.pk})
        self.assertEqual([item['id'] for item in response.data], [mine.pk])
