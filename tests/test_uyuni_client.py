#!/usr/bin/env python3
"""
Unit tests for the Uyuni XML-RPC client.
"""

import os
import sys
import unittest
import xmlrpc.client
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from uyuni_ldap_sync.uyuni_client import (
    UyuniClient, UyuniAPIError, UyuniAuthenticationError, UyuniConnectionError,
    _TimeoutTransport, _TimeoutSafeTransport,
)


class TestUyuniClient(unittest.TestCase):
    """Test cases for session handling and remote calls."""

    def setUp(self):
        self.config = {
            'url': 'http://uyuni.example.com/rpc/api',
            'user': 'admin',
            'password': 'secret',
        }
        self.error_config = {'max_retries': 2, 'retry_wait_seconds': 0}
        self.client = UyuniClient(self.config, self.error_config)
        self.client.proxy = Mock()
        self.client.proxy.auth.login.return_value = 'session-key'

    def test_transport_follows_scheme(self):
        self.assertIsInstance(self.client._create_transport(), _TimeoutTransport)

        secure = UyuniClient(dict(self.config, url='https://uyuni.example.com/rpc/api', checkssl=False))
        self.assertIsInstance(secure._create_transport(), _TimeoutSafeTransport)
        self.assertIsNotNone(secure.ssl_context)

    def test_login_stores_session(self):
        self.assertEqual(self.client.login(), 'session-key')
        self.client.proxy.auth.login.assert_called_once_with('admin', 'secret')

    def test_call_prepends_session_key(self):
        self.client.proxy.user.listRoles.return_value = ['org_admin']

        roles = self.client.call('user.listRoles', 'alice')

        self.assertEqual(roles, ['org_admin'])
        self.client.proxy.user.listRoles.assert_called_once_with('session-key', 'alice')

    def test_session_is_reused(self):
        self.client.call('user.listUsers')
        self.client.call('user.listUsers')

        self.client.proxy.auth.login.assert_called_once()

    def test_fault_becomes_api_error(self):
        self.client.proxy.user.getDetails.side_effect = xmlrpc.client.Fault(-213, 'Could not find user ghost')

        with self.assertRaises(UyuniAPIError) as context:
            self.client.call('user.getDetails', 'ghost')

        self.assertEqual(context.exception.fault_code, -213)
        self.assertIn('Could not find user ghost', str(context.exception))

    def test_transport_error_becomes_connection_error(self):
        self.client.login()
        self.client.proxy.user.listUsers.side_effect = ConnectionRefusedError('connection refused')

        with self.assertRaises(UyuniConnectionError):
            self.client.call('user.listUsers')

    def test_rejected_login_is_not_retried(self):
        self.client.proxy.auth.login.side_effect = xmlrpc.client.Fault(2950, 'Either the password or username is incorrect')

        with self.assertRaises(UyuniAuthenticationError):
            self.client.login()

        self.client.proxy.auth.login.assert_called_once()

    def test_unreachable_server_is_retried(self):
        self.client.proxy.auth.login.side_effect = [OSError('timed out'), 'session-key']

        self.assertEqual(self.client.login(), 'session-key')
        self.assertEqual(self.client.proxy.auth.login.call_count, 2)

    def test_unreachable_server_after_retries(self):
        self.client.proxy.auth.login.side_effect = OSError('timed out')

        with self.assertRaises(UyuniAuthenticationError):
            self.client.login()

        self.assertEqual(self.client.proxy.auth.login.call_count, 2)

    def test_logout(self):
        self.client.login()
        self.client.logout()

        self.client.proxy.auth.logout.assert_called_once_with('session-key')
        self.assertIsNone(self.client._session)

    def test_logout_without_session(self):
        self.client.logout()

        self.client.proxy.auth.logout.assert_not_called()

    @patch('uyuni_ldap_sync.uyuni_client.ssl.create_default_context')
    def test_missing_ca_bundle(self, mock_context):
        mock_context.return_value.load_verify_locations.side_effect = OSError('no such file')

        with self.assertRaises(UyuniAPIError):
            UyuniClient(dict(self.config, url='https://uyuni.example.com/rpc/api',
                             ca_cert_file='/nonexistent/ca.pem'))


if __name__ == '__main__':
    unittest.main()
