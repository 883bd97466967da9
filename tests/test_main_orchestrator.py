#!/usr/bin/env python3
"""
Unit tests for the main orchestrator.

The LDAP and Uyuni clients are replaced by the in-memory fakes; the real
reconciliation engine runs against them.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fakes import FakeDirectory, FakeUyuni
from uyuni_ldap_sync.config import ConfigurationError
from uyuni_ldap_sync.ldap_client import LDAPConnectionError
from uyuni_ldap_sync.uyuni_client import UyuniAPIError, UyuniAuthenticationError
from uyuni_ldap_sync.main import (
    SyncOrchestrator, EXIT_OK, EXIT_FAILED_USERS, EXIT_CONFIG_ERROR,
    EXIT_LDAP_CONNECTION_ERROR, EXIT_ABORTED, EXIT_UNEXPECTED_ERROR,
)

USERS_DN = 'ou=Users,dc=example,dc=com'
ADMIN_DN = 'uid=admin,ou=Users,dc=example,dc=com'
ALICE_DN = 'uid=alice,ou=Users,dc=example,dc=com'
ADMINS_DN = 'cn=admins,ou=Groups,dc=example,dc=com'


class TestSyncOrchestrator(unittest.TestCase):
    """Test cases for SyncOrchestrator class."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_config = {
            'directory': {
                'server_url': 'ldap://ldap.example.com:389',
                'bind_dn': 'cn=admin,dc=example,dc=com',
                'bind_password': 'password',
                'allusers': USERS_DN,
                'frozen': ['admin'],
                'groups': {ADMINS_DN: ['org_admin']},
                'roles': {},
                'attrmap': {},
            },
            'spacewalk': {
                'url': 'http://uyuni.example.com/rpc/api',
                'user': 'admin',
                'password': 'secret',
            },
            'logging': {},
            'error_handling': {'max_retries': 1, 'retry_wait_seconds': 0},
            'notifications': {'enable_email': False},
        }

        self.directory = FakeDirectory()
        self.directory.add_person(ADMIN_DN, 'admin', 'Site Admin', 'admin@example.com')
        self.directory.add_person(ALICE_DN, 'alice', 'Alice Liddell', 'alice@example.com')
        self.directory.add_group(ADMINS_DN, [ALICE_DN])

        self.uyuni = FakeUyuni()
        self.uyuni.add_user('admin', 'Site', 'Admin', 'admin@example.com', roles=['org_admin'])

        patchers = [
            patch('uyuni_ldap_sync.main.load_config', return_value=self.test_config),
            patch('uyuni_ldap_sync.main.setup_logging'),
            patch('uyuni_ldap_sync.main.LDAPClient', return_value=self.directory),
            patch('uyuni_ldap_sync.main.UyuniClient', return_value=self.uyuni),
        ]
        self.mock_load_config = patchers[0].start()
        for patcher in patchers[1:]:
            patcher.start()
        for patcher in patchers:
            self.addCleanup(patcher.stop)

    def test_successful_sync(self):
        """Test successful synchronization run."""
        orchestrator = SyncOrchestrator()
        exit_code = orchestrator.run()

        self.assertEqual(exit_code, EXIT_OK)
        self.assertIn('alice', self.uyuni.users)
        self.assertEqual(self.uyuni.users['alice']['roles'], ['org_admin'])
        self.assertEqual(orchestrator.sync_stats['users_added'], 1)
        self.assertEqual(orchestrator.sync_stats['failed_users'], [])
        self.assertEqual(self.directory.disconnect_count, 1)

    def test_failed_creation_exit_code(self):
        self.uyuni.fail('user.create', 'alice')

        orchestrator = SyncOrchestrator()

        self.assertEqual(orchestrator.run(), EXIT_FAILED_USERS)
        self.assertEqual(orchestrator.sync_stats['failed_users'], ['alice'])
        self.assertEqual(orchestrator.sync_stats['users_added'], 0)

    def test_configuration_error(self):
        """Test handling of configuration errors."""
        self.mock_load_config.side_effect = ConfigurationError("Missing required spacewalk field: url")

        self.assertEqual(SyncOrchestrator().run(), EXIT_CONFIG_ERROR)

    def test_unreadable_configuration(self):
        self.mock_load_config.side_effect = PermissionError("config.yaml")

        self.assertEqual(SyncOrchestrator().run(), EXIT_CONFIG_ERROR)

    def test_ldap_connection_error(self):
        self.directory.connect = Mock(side_effect=LDAPConnectionError("connection refused"))

        self.assertEqual(SyncOrchestrator().run(), EXIT_LDAP_CONNECTION_ERROR)
        self.assertEqual(self.uyuni.writes(), [])

    def test_lockout_guard_aborts_without_writes(self):
        self.uyuni.users['admin']['roles'] = ['channel_admin']

        self.assertEqual(SyncOrchestrator().run(), EXIT_ABORTED)
        self.assertEqual(self.uyuni.writes(), [])
        self.assertEqual(self.directory.searches, [])

    def test_failed_uyuni_read_aborts_without_writes(self):
        self.uyuni.add_user('bob', 'Bob', 'Builder', 'bob@example.com')
        self.uyuni.fail('user.getDetails', 'bob')

        self.assertEqual(SyncOrchestrator().run(), EXIT_ABORTED)
        self.assertEqual(self.uyuni.writes(), [])

    def test_rejected_login_aborts(self):
        self.uyuni.login = Mock(side_effect=UyuniAuthenticationError("Authentication failed for admin"))

        self.assertEqual(SyncOrchestrator().run(), EXIT_ABORTED)
        self.assertEqual(self.uyuni.calls, [])

    def test_unexpected_error(self):
        self.directory.search = Mock(side_effect=RuntimeError("boom"))

        self.assertEqual(SyncOrchestrator().run(), EXIT_UNEXPECTED_ERROR)
        self.assertEqual(self.directory.disconnect_count, 1)

    @patch('builtins.print')
    def test_dry_run_pushes_nothing(self, mock_print):
        self.directory.add_person('uid=bob,ou=Users,dc=example,dc=com', 'bob', 'Bob Builder', 'bob@example.com')
        self.uyuni.add_user('bob', 'Bob', 'Builder', 'bob@example.com')

        orchestrator = SyncOrchestrator(dry_run=True)

        self.assertEqual(orchestrator.run(), EXIT_OK)
        self.assertEqual(self.uyuni.writes(), [])

        printed = '\n'.join(str(call.args[0]) for call in mock_print.call_args_list)
        self.assertIn('New users (1):', printed)
        self.assertIn('Deleted users (1):', printed)
        self.assertIn('alice', printed)

    @patch('uyuni_ldap_sync.main.send_failed_users_notification')
    def test_failed_users_are_notified(self, mock_notify):
        self.uyuni.fail('user.create', 'alice')

        SyncOrchestrator().run()

        mock_notify.assert_called_once_with(['alice'], self.test_config['notifications'])

    def test_unusable_uyuni_ca_bundle_is_a_configuration_error(self):
        self.test_config['spacewalk']['url'] = 'https://uyuni.example.com/rpc/api'
        with patch('uyuni_ldap_sync.main.UyuniClient',
                   side_effect=UyuniAPIError("Failed to load CA bundle /etc/missing.pem: No such file")):
            self.assertEqual(SyncOrchestrator().run(), EXIT_CONFIG_ERROR)

    @patch('uyuni_ldap_sync.main.send_failure_notification')
    def test_abort_before_push_reports_no_changes(self, mock_notify):
        self.uyuni.users['admin']['roles'] = []

        self.assertEqual(SyncOrchestrator().run(), EXIT_ABORTED)

        info = mock_notify.call_args.kwargs['additional_info']
        self.assertEqual(info['Phase'], 'classification')
        self.assertEqual(info['Changes pushed to Uyuni'], 'none')

    @patch('uyuni_ldap_sync.main.send_failure_notification')
    def test_failure_during_push_reports_possible_changes(self, mock_notify):
        with patch('uyuni_ldap_sync.main.UserReconciler.sync_users',
                   side_effect=RuntimeError("connection reset by peer")):
            self.assertEqual(SyncOrchestrator().run(), EXIT_UNEXPECTED_ERROR)

        title = mock_notify.call_args.args[0]
        info = mock_notify.call_args.kwargs['additional_info']
        self.assertEqual(title, 'Sync Failed')
        self.assertEqual(info['Phase'], 'push')
        self.assertNotEqual(info['Changes pushed to Uyuni'], 'none')

    @patch('uyuni_ldap_sync.main.send_failure_notification', side_effect=RuntimeError("smtp down"))
    def test_notification_failure_does_not_change_exit_code(self, mock_notify):
        self.uyuni.users['admin']['roles'] = []

        self.assertEqual(SyncOrchestrator().run(), EXIT_ABORTED)
        mock_notify.assert_called_once()


class TestHealthCheck(unittest.TestCase):
    """Test cases for the health check mode."""

    @patch('uyuni_ldap_sync.main.load_config')
    def test_configuration_failure(self, mock_load_config):
        mock_load_config.side_effect = ConfigurationError("bad")

        status = SyncOrchestrator().health_check()

        self.assertEqual(status['status'], 'unhealthy')
        self.assertEqual(status['checks']['configuration']['status'], 'fail')

    @patch('uyuni_ldap_sync.main.UyuniClient')
    @patch('uyuni_ldap_sync.main.LDAPClient')
    @patch('uyuni_ldap_sync.main.load_config')
    def test_all_checks_pass(self, mock_load_config, mock_ldap, mock_uyuni):
        mock_load_config.return_value = {'directory': {}, 'spacewalk': {}}

        status = SyncOrchestrator().health_check()

        self.assertEqual(status['status'], 'healthy')
        self.assertEqual(set(status['checks']), {'configuration', 'ldap', 'uyuni'})
        mock_uyuni.return_value.logout.assert_called_once()

    @patch('uyuni_ldap_sync.main.UyuniClient')
    @patch('uyuni_ldap_sync.main.LDAPClient')
    @patch('uyuni_ldap_sync.main.load_config')
    def test_ldap_failure(self, mock_load_config, mock_ldap, mock_uyuni):
        mock_load_config.return_value = {'directory': {}, 'spacewalk': {}}
        mock_ldap.return_value.connect.side_effect = LDAPConnectionError("refused")

        status = SyncOrchestrator().health_check()

        self.assertEqual(status['status'], 'unhealthy')
        self.assertEqual(status['checks']['ldap']['status'], 'fail')
        self.assertEqual(status['checks']['uyuni']['status'], 'pass')


if __name__ == '__main__':
    unittest.main()
