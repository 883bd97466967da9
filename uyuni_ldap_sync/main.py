"""
Main orchestrator for Uyuni LDAP Sync.

This module wires configuration, logging, the LDAP and Uyuni clients and the
reconciliation engine together, and maps the outcome of a run to an exit code.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, Optional

from uyuni_ldap_sync.config import load_config, ConfigurationError
from uyuni_ldap_sync.engine import UserReconciler, SyncAbort, LockoutError, describe_user
from uyuni_ldap_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from uyuni_ldap_sync.logging_setup import setup_logging
from uyuni_ldap_sync.notifications import (
    send_failure_notification,
    send_failed_users_notification,
    send_success_summary,
    send_test_notification,
)
from uyuni_ldap_sync.uyuni_client import UyuniClient, UyuniAPIError, UyuniAuthenticationError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED_USERS = 1
EXIT_CONFIG_ERROR = 2
EXIT_LDAP_CONNECTION_ERROR = 3
EXIT_ABORTED = 4
EXIT_UNEXPECTED_ERROR = 5

PHASE_SETUP = 'setup'
PHASE_CLASSIFY = 'classification'
PHASE_PUSH = 'push'


class SyncOrchestrator:
    """
    Runs one LDAP to Uyuni synchronization pass.

    Both the directory connection and the Uyuni session are opened once and
    closed when the run ends, whatever its outcome.
    """

    def __init__(self, config_path: Optional[str] = None, dry_run: bool = False):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            dry_run: Classify users and report the plan without pushing changes
        """
        self.config_path = config_path
        self.dry_run = dry_run
        self.config = None
        self.ldap_client = None
        self.uyuni_client = None
        self.reconciler = None
        self.phase = PHASE_SETUP

        self.sync_stats = {
            'users_added': 0,
            'users_updated': 0,
            'users_removed': 0,
            'failed_users': [],
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
        }

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            logger.info("Starting Uyuni LDAP Sync" + (" (dry run)" if self.dry_run else ""))

            self._create_clients()
            self.uyuni_client.login()

            self.phase = PHASE_CLASSIFY
            self.reconciler.start()

            if self.dry_run:
                self._report_plan()
                return EXIT_OK

            self.phase = PHASE_PUSH
            failed = self.reconciler.sync_users()
            self._record_result()
            self._log_sync_summary()

            if failed:
                failed_uids = [user.uid for user in failed]
                logger.warning(f"Sync completed, but {len(failed)} users could not be created: "
                               f"{', '.join(failed_uids)}")
                self._notify(send_failed_users_notification, failed_uids)
                self._notify(send_success_summary, self.sync_stats)
                return EXIT_FAILED_USERS

            self._notify(send_success_summary, self.sync_stats)
            logger.info("Sync completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self._notify_failure("LDAP Connection Failed", str(e))
            return EXIT_LDAP_CONNECTION_ERROR
        except LockoutError as e:
            logger.critical(str(e))
            self._notify_failure("Lockout Guard Failed", str(e))
            return EXIT_ABORTED
        except (SyncAbort, LDAPQueryError, UyuniAuthenticationError) as e:
            logger.error(f"Sync aborted: {e}")
            self._notify_failure("Sync Aborted", str(e))
            return EXIT_ABORTED
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._notify_failure("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _create_clients(self):
        error_config = self.config.get('error_handling', {})
        self.ldap_client = LDAPClient(self.config['directory'], error_config)
        try:
            self.uyuni_client = UyuniClient(self.config['spacewalk'], error_config)
        except UyuniAPIError as e:
            # Unreadable CA bundle or truststore
            raise ConfigurationError(f"Invalid spacewalk SSL settings: {e}")
        self.reconciler = UserReconciler(self.config['directory'], self.ldap_client, self.uyuni_client)

    def _record_result(self):
        result = self.reconciler.result
        self.sync_stats['users_added'] = result.added
        self.sync_stats['users_updated'] = result.updated
        self.sync_stats['users_removed'] = result.removed
        self.sync_stats['failed_users'] = [user.uid for user in result.failed_users]

        self.sync_stats['end_time'] = datetime.now()
        self.sync_stats['runtime_seconds'] = (
            self.sync_stats['end_time'] - self.sync_stats['start_time']
        ).total_seconds()

    def _report_plan(self):
        """Print and log what a real run would change."""
        for action, users in self.reconciler.plan().items():
            logger.info(f"{len(users)} {action} users")
            print(f"{action.capitalize()} users ({len(users)}):")
            for user in users:
                print(f"  {describe_user(user)}")
                logger.info(f"  {action}: {describe_user(user)}")

    def _notify(self, sender, *args, **kwargs):
        """Send a notification; never lets a notification problem end the run."""
        if not self.config:
            return
        try:
            sender(*args, self.config.get('notifications', {}), **kwargs)
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")

    def _notify_failure(self, title: str, error_message: str):
        """Report an aborted run, saying whether Uyuni may already have been changed."""
        self._notify(send_failure_notification, title, error_message,
                     additional_info={
                         'Phase': self.phase,
                         'Changes pushed to Uyuni': 'possibly, see the log' if self.phase == PHASE_PUSH else 'none',
                     })

    def _log_sync_summary(self):
        stats = self.sync_stats
        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {stats['runtime_seconds']:.2f} seconds")
        logger.info(f"Users added: {stats['users_added']}")
        logger.info(f"Users updated: {stats['users_updated']}")
        logger.info(f"Users removed: {stats['users_removed']}")
        logger.info(f"Failed creations: {len(stats['failed_users'])}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            test_client = LDAPClient(self.config['directory'])
            test_client.connect(max_retries=1, retry_wait=1)
            test_client.disconnect()
            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': 'LDAP connection successful'
            }
        except LDAPConnectionError as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            test_uyuni = UyuniClient(self.config['spacewalk'], {'max_retries': 1, 'retry_wait_seconds': 1})
            test_uyuni.login()
            test_uyuni.logout()
            health_status['checks']['uyuni'] = {
                'status': 'pass',
                'message': 'Uyuni API login successful'
            }
        except UyuniAPIError as e:
            health_status['checks']['uyuni'] = {
                'status': 'fail',
                'message': f'Uyuni API login failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.reconciler:
            self.reconciler.finish()
        if self.uyuni_client:
            self.uyuni_client.logout()


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Synchronize LDAP users and roles into Uyuni')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--dry-run', action='store_true',
                      help='Show new, outdated and deleted users without changing Uyuni')
    mode.add_argument('--health-check', action='store_true',
                      help='Perform health check instead of sync')
    mode.add_argument('--test-email', action='store_true',
                      help='Send test email notification')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config, dry_run=args.dry_run)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(EXIT_CONFIG_ERROR)

        if send_test_notification(orchestrator.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
