"""
Main orchestrator for IdP User Sync application.

This module wires configuration, the IdP client, the local store and the
reconciler together, and exposes the scheduled and manual import entry
points plus the command line interface.
"""

import sys
import json
import logging
import argparse
import contextlib
from datetime import datetime
from typing import Dict, Any, List, Optional

from idp_user_sync.api_client import ApiClient, IdPError
from idp_user_sync.config import (load_config, ConfigurationError, ImportConfiguration,
                                  apply_flat_values, decrypt_secret, auth_type_errors,
                                  PROVISIONED_AUTH_TYPE)
from idp_user_sync.directory import (SqlUserDirectory, SqlConfigStore, StoreError,
                                     create_store_engine, init_schema)
from idp_user_sync.groups import GroupDirectory, FilterCompileError
from idp_user_sync.logging_setup import setup_logging, audit_logger
from idp_user_sync.notifications import (
    send_failure_notification,
    send_filter_error_notification,
    send_configuration_error,
    send_success_summary,
    test_notification_config
)
from idp_user_sync.provisioning import StoreProvisioner
from idp_user_sync.reconciler import Reconciler, ImportResult
from idp_user_sync.run_lock import RunLock, RunLockError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_STORE = 3
EXIT_UNEXPECTED = 4
EXIT_FILTER = 5
EXIT_LOCKED = 6


class SyncOrchestrator:
    """
    Entry points of the import.

    Every component is built lazily from configuration and reused for the
    lifetime of the orchestrator. The effective import configuration is
    captured once, before the first request to the IdP.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            config: Already loaded configuration, bypasses config_path
        """
        self.config_path = config_path
        self.config = config
        self.engine = None
        self.client = None
        self._import_config = None
        self._group_directory = None
        self._reconciler = None

        self.sync_stats = {
            'groups': 0,
            'listed': 0,
            'imported': 0,
            'rejected': 0,
            'activated': 0,
            'deactivated': 0,
            'unresolved_managers': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0
        }

    def _load_configuration(self):
        """Load and validate configuration."""
        if self.config is None:
            self.config = load_config(self.config_path)

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _get_engine(self):
        if self.engine is None:
            self.engine = create_store_engine(self.config['database']['url'])
        return self.engine

    def _config_store(self) -> SqlConfigStore:
        return SqlConfigStore(self._get_engine(), self.config['idp'].get('secret_key'))

    def _stored_values(self) -> Dict[str, Any]:
        if not self.config['database'].get('use_config_table', True):
            return {}
        return self._config_store().get_config_values()

    def _prepare(self):
        """Build every component; configuration errors surface here, before any IdP request."""
        if self._reconciler is not None:
            return

        self._load_configuration()
        values = self._stored_values()

        self._import_config = ImportConfiguration.from_dict(
            apply_flat_values(self.config.get('import', {}), values)
        )
        self.client = self._build_client(values)
        self._group_directory = GroupDirectory(self.client)

        auth_types = self.config['database'].get('auth_types', [3, 4])
        errors = auth_type_errors(auth_types)
        if errors:
            raise ConfigurationError("; ".join(errors))

        directory = SqlUserDirectory(
            self._get_engine(),
            auth_types=auth_types,
            groups_field=self._import_config.groups_field or 'groups'
        )
        self._reconciler = Reconciler(
            self._group_directory,
            directory,
            StoreProvisioner(self._get_engine(), auth_type=PROVISIONED_AUTH_TYPE),
            self._import_config,
            audit=audit_logger
        )

    def _build_client(self, values: Dict[str, Any]) -> ApiClient:
        idp_config = dict(self.config['idp'])
        if values.get('url'):
            idp_config['base_url'] = values['url']

        api_key = None
        if values.get('api_key'):
            # Keys in the configuration store are always encrypted
            api_key = decrypt_secret(values['api_key'], idp_config.get('secret_key'))
        return ApiClient.from_config(idp_config, self.config.get('error_handling'), api_key=api_key)

    def _run_lock(self):
        lock_config = self.config.get('run_lock', {})
        if not lock_config.get('enabled', True):
            return contextlib.nullcontext()
        return RunLock(lock_config.get('path', 'idp_user_sync.lock'))

    @property
    def import_configuration(self) -> ImportConfiguration:
        self._prepare()
        return self._import_config

    @property
    def group_directory(self) -> GroupDirectory:
        self._prepare()
        return self._group_directory

    def authorized_groups(self) -> Dict[str, str]:
        """
        Groups selected by the configured name or pattern.

        Raises:
            FilterCompileError: If the configured pattern does not compile
        """
        selector = self.import_configuration.group_selector()
        if not selector:
            logger.warning("No group or group pattern configured, nothing to import")
            return {}
        return self.group_directory.groups_by_pattern(selector)

    def import_users(self, authorized_groups: Dict[str, str], full_import: bool = False,
                     user_id: Optional[str] = None) -> ImportResult:
        """
        Manual import of the given groups, or of a single remote user.

        Raises:
            RunLockError: If another run is in progress
            StoreError: If the local store fails
        """
        self._prepare()
        with self._run_lock():
            result = self._reconciler.import_users(authorized_groups, full_import, user_id)

        self.sync_stats['groups'] = len(authorized_groups)
        self.sync_stats.update(result.as_stats())
        return result

    def scheduled_import(self) -> int:
        """
        Import from the configured groups with stored settings.

        Returns:
            Number of users created or updated, reported as the run volume
        """
        groups = self.authorized_groups()
        if not groups:
            logger.info("No authorized groups matched, nothing to import")
            return 0
        result = self.import_users(groups, self.import_configuration.full_import)
        return result.volume

    def resolve_group_labels(self, group_ids: List[str]) -> Dict[str, str]:
        """Map explicit group ids to their names, keeping the id when the IdP does not know it."""
        names = self.group_directory.list_groups()
        return {group_id: names.get(group_id, group_id) for group_id in group_ids}

    def run(self, group_ids: Optional[List[str]] = None, user_id: Optional[str] = None,
            full_import: Optional[bool] = None) -> int:
        """
        Run an import and report the outcome as an exit code.

        Without arguments the scheduled import runs. With group ids or a user
        id, a manual import of exactly those runs instead.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            self._setup_logging()

            logger.info("Starting IdP User Sync")

            if group_ids or user_id:
                if full_import is None:
                    full_import = self.import_configuration.full_import
                groups = self.resolve_group_labels(group_ids) if group_ids else self.authorized_groups()
                result = self.import_users(groups, full_import, user_id)
                volume = result.volume
            else:
                volume = self.scheduled_import()

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

            self._log_sync_summary()
            self._send_success_notification()

            logger.info(f"Import completed successfully, volume={volume}")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            self._send_configuration_error(str(e))
            return EXIT_CONFIG
        except FilterCompileError as e:
            logger.error(f"Group filter error: {e}")
            self._send_filter_error(e)
            return EXIT_FILTER
        except RunLockError as e:
            logger.warning(f"Import not started: {e}")
            return EXIT_LOCKED
        except StoreError as e:
            logger.error(f"Local store error: {e}")
            self._send_failure_notification("Local Store Failure", str(e))
            return EXIT_STORE
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Import Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def save_settings(self, values: Dict[str, Any]) -> List[str]:
        """
        Validate and save flat settings to the configuration store.

        Raises:
            ConfigurationError: If the resulting import configuration is invalid
        """
        self._load_configuration()
        store = self._config_store()
        merged = dict(store.get_config_values())
        merged.update(values)
        ImportConfiguration.from_dict(apply_flat_values(self.config.get('import', {}), merged))

        saved = store.update_config_values(values)
        audit_logger.config_changed(saved)
        return saved

    def init_database(self):
        self._load_configuration()
        init_schema(self._get_engine())

    def _notifications_config(self) -> Dict[str, Any]:
        return (self.config or {}).get('notifications', {})

    def _send_failure_notification(self, title: str, error_message: str):
        """Send email notification for failures."""
        try:
            send_failure_notification(title, error_message, self._notifications_config())
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _send_configuration_error(self, error_message: str):
        try:
            send_configuration_error(error_message, self.config_path, self._notifications_config())
        except Exception as e:
            logger.error(f"Failed to send configuration error notification: {e}")

    def _send_filter_error(self, error: FilterCompileError):
        try:
            send_filter_error_notification(error.pattern, str(error.error), self._notifications_config())
        except Exception as e:
            logger.error(f"Failed to send filter error notification: {e}")

    def _send_success_notification(self):
        """Send email notification for successful import."""
        try:
            send_success_summary(self.sync_stats, self._notifications_config())
        except Exception as e:
            logger.error(f"Failed to send success notification: {e}")

    def _log_sync_summary(self):
        """Log final import statistics."""
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Import Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Groups imported: {stats['groups']}")
        logger.info(f"Users listed: {stats['listed']}")
        logger.info(f"Users imported: {stats['imported']}")
        logger.info(f"Users rejected: {stats['rejected']}")
        logger.info(f"Users reactivated: {stats['activated']}")
        logger.info(f"Users deactivated: {stats['deactivated']}")
        logger.info(f"Unresolved managers: {stats['unresolved_managers']}")

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
            values = self._stored_values()
            health_status['checks']['database'] = {
                'status': 'pass',
                'message': f'Local store reachable, {len(values)} stored setting(s)'
            }
        except StoreError as e:
            values = {}
            health_status['checks']['database'] = {
                'status': 'fail',
                'message': f'Local store error: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            client = self._build_client(values)
            try:
                client.max_retries = 0
                client.request('api/v1/groups?limit=1')
            finally:
                client.close()
            health_status['checks']['idp'] = {
                'status': 'pass',
                'message': 'IdP API reachable and key accepted'
            }
        except (IdPError, ConfigurationError) as e:
            health_status['checks']['idp'] = {
                'status': 'fail',
                'message': f'IdP check failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        notifications_config = self._notifications_config()
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Notification configuration invalid: missing {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.client:
            self.client.close()


def _parse_assignments(pairs: List[str]) -> Dict[str, str]:
    values = {}
    for pair in pairs:
        key, sep, value = pair.partition('=')
        if not sep or not key.strip():
            raise ConfigurationError(f"Expected KEY=VALUE, got '{pair}'")
        values[key.strip()] = value
    return values


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='IdP User Sync Application')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of import')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')
    parser.add_argument('--list-groups', nargs='?', const='', metavar='PATTERN',
                        help='List IdP groups, optionally only those matching PATTERN')
    parser.add_argument('--list-members', metavar='GROUP_ID',
                        help='List the members of an IdP group')
    parser.add_argument('--group', action='append', dest='groups', metavar='GROUP_ID',
                        help='Import only this group (repeatable)')
    parser.add_argument('--user', metavar='REMOTE_ID',
                        help='Import or refresh a single IdP user')
    parser.add_argument('--full-import', action='store_true', default=None,
                        help='Overwrite profiles of existing accounts')
    parser.add_argument('--init-db', action='store_true',
                        help='Create the local store tables')
    parser.add_argument('--set', action='append', dest='settings', metavar='KEY=VALUE',
                        help='Save a setting to the configuration store (repeatable)')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    orchestrator = SyncOrchestrator(config_path=args.config)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    if args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(EXIT_CONFIG)
        if test_notification_config(orchestrator._notifications_config()):
            print("Test email sent successfully")
            sys.exit(EXIT_OK)
        print("Failed to send test email")
        sys.exit(1)

    if args.init_db or args.settings or args.list_groups is not None or args.list_members:
        sys.exit(_run_admin_command(orchestrator, args))

    sys.exit(orchestrator.run(group_ids=args.groups, user_id=args.user, full_import=args.full_import))


def _run_admin_command(orchestrator: SyncOrchestrator, args) -> int:
    try:
        if args.init_db:
            orchestrator.init_database()
            print("Local store schema created")
        if args.settings:
            saved = orchestrator.save_settings(_parse_assignments(args.settings))
            print(f"Saved settings: {', '.join(saved) or 'none'}")
        if args.list_groups is not None:
            directory = orchestrator.group_directory
            if args.list_groups:
                groups = directory.groups_by_pattern(args.list_groups)
            else:
                groups = directory.list_groups()
            print(json.dumps(groups, indent=2))
        if args.list_members:
            print(json.dumps(orchestrator.group_directory.member_choices(args.list_members), indent=2))
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        return EXIT_CONFIG
    except FilterCompileError as e:
        print(f"Invalid group pattern: {e}")
        return EXIT_FILTER
    except StoreError as e:
        print(f"Local store error: {e}")
        return EXIT_STORE
    finally:
        orchestrator._cleanup()
    return EXIT_OK


if __name__ == "__main__":
    main()
