"""
Test suite for the core module
Tests: JWT authentication, current user, audit logging and audit log access
"""
from django.test import TestCase
from rest_framework import status
from backend.core.models import AuditLog
from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from backend.core.utils import create_audit_log, is_editor


class AuthTests(TestCase):
    """Login, refresh and the current user endpoint"""

    def setUp(self):
        self.client = AuthenticatedAPIClient()
        self.user = TestDataFactory.create_user(username='mapper', password='secret-pass-1')

    def test_login_and_refresh(self):
        """Test login returns a token pair that can be refreshed"""
        response = self.client.post('/api/v1/auth/login/', {'username': 'mapper', 'password': 'secret-pass-1'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('access', response.data)
        response = self.client.post('/api/v1/auth/refresh/', {'refresh': response.data['refresh']}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('access', response.data)

    def test_login_wrong_password(self):
        """Test bad credentials are rejected"""
        response = self.client.post('/api/v1/auth/login/', {'username': 'mapper', 'password': 'nope'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_refresh_invalid_token(self):
        """Test a garbage refresh token is rejected"""
        response = self.client.post('/api/v1/auth/refresh/', {'refresh': 'not-a-token'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_user_me(self):
        """Test the current user carries the editor flag"""
        self.client.authenticate_user(self.user)
        response = self.client.get('/api/v1/auth/me/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['username'], 'mapper')
        self.assertFalse(response.data['can_edit'])

        self.client.authenticate_user(TestDataFactory.create_editor())
        self.assertTrue(self.client.get('/api/v1/auth/me/').data['can_edit'])

    def test_is_editor(self):
        """Test only staff and superusers are editors"""
        self.assertFalse(is_editor(self.user))
        self.assertTrue(is_editor(TestDataFactory.create_editor()))
        self.assertTrue(is_editor(TestDataFactory.create_user(is_superuser=True)))


class AuditLogTests(TestCase):
    """Audit log helper and endpoints"""

    def setUp(self):
        self.client = AuthenticatedAPIClient()
        self.user = TestDataFactory.create_user()
        self.editor = TestDataFactory.create_editor()

    def test_create_audit_log(self):
        """Test entries are written and incomplete ones skipped"""
        entry = create_audit_log(user=self.user, action='graph_import', model_name='Floorplan',
                                 object_id=7, changes={'nodes': 3})
        self.assertEqual(entry.object_id, '7')
        self.assertEqual(entry.changes, {'nodes': 3})
        self.assertIsNone(create_audit_log(action='create', model_name='Venue'))
        self.assertEqual(AuditLog.objects.count(), 1)

    def test_non_staff_sees_own_entries(self):
        """Test regular users only see their own audit entries"""
        create_audit_log(user=self.user, action='create', model_name='Venue', object_id=1)
        create_audit_log(user=self.editor, action='create', model_name='Venue', object_id=2)

        self.client.authenticate_user(self.user)
        response = self.client.get('/api/v1/audit-logs/')
        self.assertEqual([entry['object_id'] for entry in response.data], ['1'])

        self.client.authenticate_user(self.editor)
        response = self.client.get('/api/v1/audit-logs/')
        self.assertEqual(len(response.data), 2)

    def test_filter_by_action(self):
        """Test the action and model filters"""
        create_audit_log(user=self.editor, action='anchor_bind', model_name='AnchorBinding', object_id=1)
        create_audit_log(user=self.editor, action='create', model_name='NavigationNode', object_id=2)
        self.client.authenticate_user(self.editor)
        response = self.client.get('/api/v1/audit-logs/', {'action': 'anchor_bind'})
        self.assertEqual(len(response.data), 1)
        response = self.client.get('/api/v1/audit-logs/', {'model': 'NavigationNode'})
        self.assertEqual(response.data[0]['object_id'], '2')

    def test_detail_permission(self):
        """Test users cannot read other users' entries"""
        entry = create_audit_log(user=self.editor, action='delete', model_name='Venue', object_id=3)
        self.client.authenticate_user(self.user)
        response = self.client.get(f'/api/v1/audit-logs/{entry.pk}/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.client.authenticate_user(self.editor)
        response = self.client.get(f'/api/v1/audit-logs/{entry.pk}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
