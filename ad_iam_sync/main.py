"""
Main orchestrator for AD/IAM Group Sync.

This module drives a sync run: it connects to Active Directory and AWS IAM,
finds the users known to both, and reconciles each user's group memberships
in the destination system with the source of truth chosen in configuration.
"""

import sys
import time
import logging
import threading
from enum import Enum
from datetime import datetime
from concurrent.futures import ThreadPoolExecutor, FIRST_COMPLETED, wait
from typing import Dict, Any, List, Optional, Set

from ad_iam_sync.config import load_config, ConfigurationError, ControllerMode, SyncConfig
from ad_iam_sync.clients.base import DirectoryClientBase, CloudIdentityClientBase
from ad_iam_sync.clients.directory import LDAPDirectoryClient
from ad_iam_sync.clients.iam import IAMClient
from ad_iam_sync.diff_engine import (
    ActionType, Identity, compute_action, effective_mappings, intersect_identities, normalize_names
)
from ad_iam_sync.errors import (
    ConnectionFailure,
    FetchError,
    RunDeadlineExceeded,
    SyncAbortedError,
    ValidationFailure,
)
from ad_iam_sync.logging_setup import AuditSink, setup_logging
from ad_iam_sync.mutator import MutationResult, RoleMutator
from ad_iam_sync.validator import Validator
from ad_iam_sync.notifications import format_runtime, send_failure_notification, send_run_report

logger = logging.getLogger(__name__)


class RunState(Enum):
    IDLE = 'idle'
    FETCHING_SNAPSHOTS = 'fetching_snapshots'
    INTERSECTING = 'intersecting'
    ITERATING = 'iterating'
    DONE = 'done'
    FATAL_CONFIG_ERROR = 'fatal_config_error'
    ABORTED = 'aborted'


# Exit codes
EXIT_SUCCESS = 0
EXIT_MUTATION_FAILURES = 1
EXIT_CONFIG_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4
EXIT_ABORTED = 5


class SyncOrchestrator:
    """
    Orchestrates a reconciliation run between Active Directory and AWS IAM.

    Configuration and clients can be passed in directly, which is how the
    orchestrator is embedded in another process or tested; otherwise they are
    built from the configuration file.
    """

    def __init__(self, config: Optional[SyncConfig] = None, config_path: Optional[str] = None,
                 directory: Optional[DirectoryClientBase] = None,
                 cloud: Optional[CloudIdentityClientBase] = None,
                 audit: Optional[AuditSink] = None, dry_run: bool = False):
        """
        Initialize sync orchestrator.

        Args:
            config: Loaded configuration; read from config_path when None
            config_path: Path to configuration file
            directory: Directory client (built from config when None)
            cloud: Cloud identity client (built from config when None)
            audit: Audit trail (built from config when None)
            dry_run: Compute and record actions without changing anything
        """
        self.config = config
        self.config_path = config_path
        self.directory = directory
        self.cloud = cloud
        self.audit = audit
        self.dry_run = dry_run
        self._owns_audit = audit is None

        self.validator = None
        self.mutator = None
        self.state = RunState.IDLE

        self.sync_stats = self._new_stats()
        self.failures: List[MutationResult] = []

        self._stats_lock = threading.Lock()
        self._cancel = threading.Event()
        self._fatal_error: Optional[BaseException] = None
        self._deadline: Optional[float] = None

    @staticmethod
    def _new_stats() -> Dict[str, Any]:
        return {
            'controller': None,
            'identities_total': 0,
            'identities_processed': 0,
            'identities_skipped': 0,
            'users_added': 0,
            'users_removed': 0,
            'actions_unchanged': 0,
            'mutations_failed': 0,
            'validation_failures': 0,
            'cloud_fetch_failures': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0
        }

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._load_configuration()
            setup_logging(self.config.logging_config)

            logger.info("Starting AD/IAM Group Sync")
            self.sync()

            self._log_sync_summary()
            self._send_run_report()

            if self.failures:
                logger.warning(f"Sync completed with {len(self.failures)} failed membership changes")
                return EXIT_MUTATION_FAILURES
            logger.info("Sync completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            self._send_failure_notification("Configuration Error", str(e))
            return EXIT_CONFIG_ERROR
        except ConnectionFailure as e:
            logger.error(f"Connection error: {e}")
            self._send_failure_notification("Connection Failed", str(e))
            return EXIT_CONNECTION_ERROR
        except SyncAbortedError as e:
            logger.error(f"Sync aborted: {e}")
            self._log_sync_summary()
            self._send_failure_notification("Sync Aborted", str(e))
            return EXIT_ABORTED
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def sync(self) -> Dict[str, Any]:
        """
        Reconcile memberships once.

        Returns:
            Run statistics

        Raises:
            ConfigurationError: If the controller value is not recognized
            ConnectionFailure: If either system cannot be reached
            SyncAbortedError: If a fatal validation or fetch error, or the
                run deadline, stopped the run
        """
        self.state = RunState.IDLE
        self.sync_stats = self._new_stats()
        self.sync_stats['start_time'] = datetime.now()
        self.failures = []
        self._cancel.clear()
        self._fatal_error = None

        try:
            self._load_configuration()
            self._ensure_audit()
            mode = self._read_controller_mode()
            self.sync_stats['controller'] = mode.value
            self._ensure_components()
            self._start_deadline()

            self._transition(RunState.FETCHING_SNAPSHOTS)
            self._connect()
            directory_users, cloud_users = self._fetch_user_listings()

            self._transition(RunState.INTERSECTING)
            identities = intersect_identities(directory_users, cloud_users)
            self.sync_stats['identities_total'] = len(identities)
            self.audit.message(f"{len(identities)} users exist in both the directory "
                               f"({len(directory_users)}) and IAM ({len(cloud_users)})")

            self._transition(RunState.ITERATING)
            self._process_identities(identities, mode)
            self._raise_fatal_error()

            self._transition(RunState.DONE)
            self.audit.message(f"Sync finished: {self.sync_stats['users_added']} added, "
                               f"{self.sync_stats['users_removed']} removed, "
                               f"{len(self.failures)} failed")
            return self.report()

        except ConfigurationError:
            self.state = RunState.FATAL_CONFIG_ERROR
            raise
        except BaseException:
            if self.state is not RunState.DONE:
                self.state = RunState.ABORTED
            raise
        finally:
            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()
            self._release_audit()

    def report(self) -> Dict[str, Any]:
        """Return run statistics together with the failed changes."""
        report = dict(self.sync_stats)
        report['state'] = self.state.value
        report['failures'] = [result.message for result in self.failures]
        return report

    def _transition(self, state: RunState):
        logger.debug(f"Sync state {self.state.value} -> {state.value}")
        self.state = state

    def _load_configuration(self):
        """Load and validate configuration."""
        if self.config is not None:
            return
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _ensure_audit(self):
        if self.audit is None:
            self.audit = AuditSink(self.config.audit)
            self._owns_audit = True

    def _release_audit(self):
        """Close an audit sink this orchestrator opened itself."""
        if self.audit is not None and self._owns_audit:
            self.audit.close()
            self.audit = None

    def _read_controller_mode(self) -> ControllerMode:
        try:
            return ControllerMode.parse(self.config.controller_mode)
        except ConfigurationError as e:
            self.state = RunState.FATAL_CONFIG_ERROR
            self.audit.fatal(f"Run halted before any changes: {e}")
            raise

    def _ensure_components(self):
        if self.directory is None:
            self.directory = LDAPDirectoryClient(self.config.directory, self.config.error_handling)
        if self.cloud is None:
            self.cloud = IAMClient(self.config.cloud, self.config.error_handling)

        self.validator = Validator(
            self.directory,
            self.audit,
            bypass_user=self.config.bypass_user_validation,
            cloud=self.cloud
        )
        self.mutator = RoleMutator(
            self.directory,
            self.cloud,
            self.validator,
            self.audit,
            abort_on_validation_failure=self.config.abort_on_validation_failure,
            dry_run=self.dry_run
        )

    def _start_deadline(self):
        deadline_seconds = self.config.run_deadline_seconds
        self._deadline = time.monotonic() + deadline_seconds if deadline_seconds > 0 else None

    def _connect(self):
        self.audit.call("Connect to AWS IAM")
        self.cloud.connect()
        self.audit.call("Connect to directory")
        self.directory.connect()

    def _fetch_user_listings(self):
        try:
            self.audit.call("List IAM users")
            cloud_users = self.cloud.list_users()
            self.audit.call("List directory users")
            directory_users = self.directory.list_users()
        except FetchError as e:
            self.audit.fatal(f"Could not list users: {e}")
            raise SyncAbortedError(f"Could not list users: {e}", cause=e) from e
        return directory_users, cloud_users

    def _process_identities(self, identities: List[Identity], mode: ControllerMode):
        """Reconcile every identity, sequentially or on a bounded worker pool."""
        workers = self.config.max_workers
        if workers <= 1:
            for identity in identities:
                if self._cancel.is_set():
                    break
                self._run_identity(identity, mode)
            return

        logger.info(f"Processing {len(identities)} users with {workers} workers")
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='ad-iam-sync') as executor:
            pending = set()
            for identity in identities:
                if self._cancel.is_set():
                    break
                # Keep at most two tasks per worker queued
                if len(pending) >= workers * 2:
                    _, pending = wait(pending, return_when=FIRST_COMPLETED)
                pending.add(executor.submit(self._run_identity, identity, mode))
            wait(pending)

    def _run_identity(self, identity: Identity, mode: ControllerMode):
        """Process one identity, turning fatal errors into run cancellation."""
        if self._cancel.is_set():
            return
        if self._deadline_passed():
            self._abort(RunDeadlineExceeded(
                f"Run deadline of {self.config.run_deadline_seconds:.0f}s exceeded before processing {identity}"
            ))
            return

        try:
            if self._process_identity(identity, mode):
                self._increment('identities_processed')
        except (ValidationFailure, FetchError) as e:
            self._abort(e)
        except Exception as e:
            logger.error(f"Unexpected error processing {identity}: {e}", exc_info=True)
            self._abort(e)

    def _process_identity(self, identity: Identity, mode: ControllerMode) -> bool:
        """
        Reconcile every mapping for one identity.

        Returns:
            False if the identity was skipped
        """
        logger.debug(f"Processing {identity}")

        if mode is ControllerMode.DIRECTORY:
            source = self._fetch_directory_groups(identity)
            if source is None:
                return False
            destination = None
        else:
            source = self._fetch_cloud_groups(identity)
            destination = self._fetch_directory_groups(identity)
            if destination is None:
                return False

        # One decision per destination group, however many mappings share it
        for mapping in effective_mappings(self.config.group_mappings, source, mode):
            if self._cancel.is_set():
                return True

            action = compute_action(identity, mapping, source, destination, mode)
            if action.is_noop:
                self._increment('actions_unchanged')
                continue

            self._record(self.mutator.apply(action))

        return True

    def _fetch_directory_groups(self, identity: Identity) -> Optional[Set[str]]:
        self.audit.call(f"Get directory group memberships of {identity.directory_name}")
        try:
            return normalize_names(self.directory.get_user_group_names(identity.directory_name))
        except Exception as e:
            if not self.config.isolate_fetch_errors:
                self.audit.fatal(f"Could not read directory groups of {identity.directory_name}: {e}")
                if isinstance(e, FetchError):
                    raise
                raise FetchError(f"Could not read directory groups of {identity.directory_name}: {e}") from e
            self.audit.error(f"Could not read directory groups of {identity.directory_name}; skipping user: {e}")
            self._increment('identities_skipped')
            return None

    def _fetch_cloud_groups(self, identity: Identity) -> Set[str]:
        self.audit.call(f"Get IAM group memberships of {identity.cloud_name}")
        try:
            return normalize_names(self.cloud.list_groups_for_user(identity.cloud_name))
        except Exception as e:
            # Continue as if the user held no IAM groups
            self.audit.error(f"Could not read IAM groups of {identity.cloud_name}; "
                             f"treating as no memberships: {e}")
            self._increment('cloud_fetch_failures')
            return set()

    def _record(self, result: MutationResult):
        with self._stats_lock:
            if result.success:
                if result.action.action_type is ActionType.ADD:
                    self.sync_stats['users_added'] += 1
                else:
                    self.sync_stats['users_removed'] += 1
                return

            self.failures.append(result)
            if result.error_kind == 'validation':
                self.sync_stats['validation_failures'] += 1
            else:
                self.sync_stats['mutations_failed'] += 1

    def _increment(self, key: str):
        with self._stats_lock:
            self.sync_stats[key] += 1

    def _deadline_passed(self) -> bool:
        return self._deadline is not None and time.monotonic() > self._deadline

    def _abort(self, error: BaseException):
        """Record the first fatal error and cancel the rest of the run."""
        with self._stats_lock:
            if self._fatal_error is None:
                self._fatal_error = error
        if isinstance(error, RunDeadlineExceeded):
            self.audit.fatal(str(error))
        self._cancel.set()

    def _raise_fatal_error(self):
        error = self._fatal_error
        if error is None:
            return
        if isinstance(error, SyncAbortedError):
            raise error
        if isinstance(error, (ValidationFailure, FetchError)):
            raise SyncAbortedError(f"Run aborted: {error}", cause=error) from error
        raise error

    def _send_failure_notification(self, title: str, error_message: str):
        """Send email notification for failures."""
        if not self.config:
            return
        try:
            send_failure_notification(title, error_message, self.config.notifications)
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _send_run_report(self):
        try:
            send_run_report(self.sync_stats, self.report()['failures'], self.config.notifications)
        except Exception as e:
            logger.error(f"Failed to send run report: {e}")

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        logger.info("=== Sync Summary ===")
        logger.info(f"Source of truth: {stats['controller']}")
        logger.info(f"Final state: {self.state.value}")
        logger.info(f"Total runtime: {format_runtime(stats['runtime_seconds'])}")
        logger.info(f"Users in both systems: {stats['identities_total']}")
        logger.info(f"Users processed: {stats['identities_processed']}")
        logger.info(f"Users skipped: {stats['identities_skipped']}")
        logger.info(f"Memberships added: {stats['users_added']}")
        logger.info(f"Memberships removed: {stats['users_removed']}")
        logger.info(f"Memberships unchanged: {stats['actions_unchanged']}")
        logger.info(f"Failed changes: {stats['mutations_failed']}")
        logger.info(f"Validation failures: {stats['validation_failures']}")
        logger.info(f"IAM lookups treated as empty: {stats['cloud_fetch_failures']}")

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

        def record(name: str, ok: bool, message: str):
            health_status['checks'][name] = {'status': 'pass' if ok else 'fail', 'message': message}
            if not ok:
                health_status['status'] = 'unhealthy'

        try:
            self._load_configuration()
            ControllerMode.parse(self.config.controller_mode)
            record('configuration', True, 'Configuration loaded successfully')
        except Exception as e:
            record('configuration', False, f'Configuration error: {e}')
            return health_status

        self._ensure_audit()
        self._ensure_components()

        try:
            self.directory.connect()
            user_base_dn = self.config.directory.get('user_base_dn')
            if user_base_dn and not self.validator.validate_ou(user_base_dn):
                record('directory', False, f'User base OU not found: {user_base_dn}')
            else:
                record('directory', True, 'Directory connection successful')
        except Exception as e:
            record('directory', False, f'Directory connection failed: {e}')
        finally:
            self.directory.disconnect()
            self._release_audit()

        try:
            self.cloud.connect()
            record('cloud', True, 'AWS session verified')
        except Exception as e:
            record('cloud', False, f'AWS session failed: {e}')

        notifications_config = self.config.notifications
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                record('notifications', False, f'Missing notification config: {missing_fields}')
            else:
                record('notifications', True, 'Email notification configuration valid')
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.directory:
            try:
                self.directory.disconnect()
            except Exception as e:
                logger.warning(f"Error disconnecting from directory: {e}")
        self._release_audit()


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Synchronize group memberships between Active Directory and AWS IAM')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')
    parser.add_argument('--dry-run', action='store_true',
                        help='Record the changes a sync would make without making them')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config, dry_run=args.dry_run)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            orchestrator._load_configuration()

            from ad_iam_sync.notifications import send_test_email
            if send_test_email(orchestrator.config.notifications):
                print("Test email sent successfully")
                sys.exit(0)
            else:
                print("Failed to send test email")
                sys.exit(1)
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
