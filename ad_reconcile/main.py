"""
Main orchestrator for AD Reconcile.

This module wires configuration, logging, the Active Directory source and the
configured target modules into one reconciliation run per target, then reports
the resulting ledgers.
"""

import sys
import json
import logging
import argparse
import importlib
from datetime import datetime
from typing import Dict, Any, List, Optional
from ad_reconcile.config import load_config, ConfigurationError
from ad_reconcile.ldap_client import ADClient, LDAPConnectionError
from ad_reconcile.logging_setup import setup_logging, ledger_path
from ad_reconcile.engine.models import (
    AttributeMapping, ChangeLimitExceededError, DuplicateKeyError,
    EmptyCollectionError, SourceFetchError, Status, TargetFetchError, utc_now
)
from ad_reconcile.engine.normalizer import EntityNormalizer
from ad_reconcile.engine.pipeline import Reconciler
from ad_reconcile.targets.base import TargetAPIBase, TargetAPIError
from ad_reconcile.notifications import send_failure_notification, send_run_report

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_CONFIG = 2
EXIT_SOURCE = 3
EXIT_TARGET = 4
EXIT_CHANGE_LIMIT = 5
EXIT_DATA_INTEGRITY = 6


class ReconcileOrchestrator:
    """
    Runs every configured reconciliation in order.

    A fatal error in any reconciliation stops the run; per-item failures are
    only recorded in the ledgers.
    """

    def __init__(self, config_path: Optional[str] = None,
                 overrides: Optional[Dict[str, Any]] = None, clock=utc_now):
        """
        Initialize orchestrator.

        Args:
            config_path: Path to configuration file
            overrides: Command-line overrides (search_base, groups, bind_dn,
                bind_password, dry_run, max_changes, only, verbose)
            clock: Time source passed to the reconciliation engine
        """
        self.config = None
        self.config_path = config_path
        self.overrides = overrides or {}
        self.clock = clock
        self.ad_client = None
        self.ledgers = []
        self._ledgers_written = False
        self.started_at = None

    def run(self) -> int:
        """
        Run the reconciliation process.

        Returns:
            Exit code (0 on normal completion, non-zero on fatal errors)
        """
        self.started_at = datetime.now()
        try:
            self._load_configuration()
            self._setup_logging()

            logger.info(f"Starting AD Reconcile (dry_run={self.dry_run})")

            self._connect_ldap()

            for reconciliation in self._selected_reconciliations():
                self.ledgers.append(self._run_reconciliation(reconciliation))

            self._report()
            logger.info("Reconciliation run completed")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG
        except (LDAPConnectionError, SourceFetchError) as e:
            logger.error(f"Source fetch failed: {e}")
            self._fatal("Source Fetch Failed", e)
            return EXIT_SOURCE
        except TargetFetchError as e:
            logger.error(f"Target fetch failed: {e}")
            self._fatal("Target Fetch Failed", e)
            return EXIT_TARGET
        except ChangeLimitExceededError as e:
            logger.error(f"Change limit exceeded: {e}")
            self._fatal("Change Limit Exceeded", e)
            return EXIT_CHANGE_LIMIT
        except (EmptyCollectionError, DuplicateKeyError) as e:
            logger.error(f"Data integrity check failed: {e}")
            self._fatal("Data Integrity Check Failed", e)
            return EXIT_DATA_INTEGRITY
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._fatal("Run Failed", e)
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    @property
    def dry_run(self) -> bool:
        if self.overrides.get('dry_run'):
            return True
        return bool(self.config and self.config['run'].get('dry_run'))

    def _load_configuration(self):
        """Load configuration and apply command-line overrides."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

        ldap_config = self.config['ldap']
        for option in ('bind_dn', 'bind_password', 'search_base'):
            if self.overrides.get(option):
                ldap_config[option] = self.overrides[option]

        max_changes = self.overrides.get('max_changes')
        if max_changes is not None:
            if max_changes < 0:
                raise ConfigurationError("--max-changes must be non-negative")
            self.config['run']['max_changes'] = max_changes

        only = self.overrides.get('only')
        if only and only not in [r['name'] for r in self.config['reconciliations']]:
            raise ConfigurationError(f"Unknown reconciliation: {only}")

        logger.debug("Configuration loaded successfully")

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}), verbose=self.overrides.get('verbose', False))

    def _connect_ldap(self):
        self.ad_client = ADClient(self.config['ldap'])
        try:
            self.ad_client.connect()
        except LDAPConnectionError:
            self.ad_client = None
            raise

    def _selected_reconciliations(self) -> List[Dict[str, Any]]:
        only = self.overrides.get('only')
        return [r for r in self.config['reconciliations'] if not only or r['name'] == only]

    def _run_reconciliation(self, reconciliation: Dict[str, Any]):
        """Build and run the Reconciler for one configured target."""
        name = reconciliation['name']
        source_cfg = reconciliation['source']
        target_cfg = dict(reconciliation['target'], name=name)
        mappings = [AttributeMapping.from_config(m) for m in reconciliation['mappings']]

        groups = self.overrides.get('groups') or source_cfg['groups']
        search_base = self.overrides.get('search_base') or source_cfg['search_base']
        extra_attributes = [source_cfg['key_attribute']] + [m.source for m in mappings]

        def fetch_source():
            return self.ad_client.fetch_entries(
                kind=source_cfg['kind'],
                search_base=search_base,
                groups=groups,
                attributes=extra_attributes
            )

        target = self._load_target_module(target_cfg)
        try:
            try:
                authenticated = target.authenticate()
            except TargetAPIError as e:
                raise TargetFetchError(f"Authentication failed for target {name}: {e}") from e
            if not authenticated:
                raise TargetFetchError(f"Authentication failed for target {name}")

            reconciler = Reconciler(
                name=name,
                fetch_source=fetch_source,
                target=target,
                source_normalizer=EntityNormalizer(
                    key_field=source_cfg['key_attribute'],
                    key_format=source_cfg['key_format'],
                    clock=self.clock
                ),
                target_normalizer=EntityNormalizer(
                    key_field=target_cfg['key_attribute'],
                    id_field=target_cfg['id_attribute'],
                    clock=self.clock
                ),
                mappings=mappings,
                strict_keys=reconciliation['strict_keys'],
                require_source=reconciliation['require_source_entities'],
                require_target=reconciliation['require_target_entities'],
                clock=self.clock
            )
            return reconciler.run(dry_run=self.dry_run, max_changes=self._max_changes(reconciliation))
        finally:
            target.close_connection()

    def _max_changes(self, reconciliation: Dict[str, Any]) -> Optional[int]:
        """Effective ceiling: the stricter of the run-wide and per-target limits."""
        limits = [limit for limit in (self.config['run'].get('max_changes'),
                                      reconciliation.get('max_changes')) if limit is not None]
        return min(limits) if limits else None

    def _load_target_module(self, target_config: Dict[str, Any]) -> TargetAPIBase:
        """Dynamically load a target module and create its API instance."""
        module_name = target_config['module']

        try:
            target_module = importlib.import_module(f"ad_reconcile.targets.{module_name}")
        except ImportError as e:
            raise ConfigurationError(f"Failed to import target module {module_name}: {e}")

        target_class = None
        for attr_name in dir(target_module):
            attr = getattr(target_module, attr_name)
            if (isinstance(attr, type) and
                    issubclass(attr, TargetAPIBase) and
                    attr is not TargetAPIBase):
                target_class = attr
                break

        if not target_class:
            raise ConfigurationError(f"No TargetAPIBase subclass found in module {module_name}")

        try:
            return target_class(target_config)
        except Exception as e:
            raise ConfigurationError(f"Failed to initialize target {target_config['name']}: {e}")

    def _report(self):
        """Dump the ledgers, write the ledger file and send the run report."""
        self._write_ledgers()
        send_run_report(self.ledgers, self.config.get('notifications', {}), dry_run=self.dry_run)

    def _write_ledgers(self):
        """Render the ledgers collected so far and write them to the ledger file once."""
        if self._ledgers_written or not self.ledgers:
            return
        self._ledgers_written = True

        for ledger in self.ledgers:
            logger.info(f"\n{ledger.render()}")

        if self.config['logging'].get('ledger_file', True):
            path = ledger_path(self.started_at)
            for i, ledger in enumerate(self.ledgers):
                ledger.write(path, append=i > 0)
            logger.info(f"Ledger written to {path}")

    def _fatal(self, title: str, error: Exception):
        if not self.config:
            return
        try:
            self._write_ledgers()
        except OSError as e:
            logger.error(f"Could not write ledger file: {e}")

        completed = [f"{ledger.name} ({sum(ledger.counts_by_action(Status.SUCCESS).values())} applied)"
                     for ledger in self.ledgers]
        send_failure_notification(title, str(error), self.config.get('notifications', {}),
                                  {'Completed reconciliations': ', '.join(completed) or 'none',
                                   'Dry run': self.dry_run})

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of configuration, LDAP and target modules.

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

        client = ADClient(self.config['ldap'])
        try:
            client.connect()
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
        finally:
            client.disconnect()

        target_checks = {}
        for reconciliation in self._selected_reconciliations():
            name = reconciliation['name']
            try:
                self._load_target_module(dict(reconciliation['target'], name=name))
                target_checks[name] = {'status': 'pass', 'message': 'Module loaded successfully'}
            except ConfigurationError as e:
                target_checks[name] = {'status': 'fail', 'message': f'Module loading failed: {e}'}
                health_status['status'] = 'unhealthy'
        health_status['checks']['targets'] = target_checks

        return health_status

    def _cleanup(self):
        if self.ad_client:
            self.ad_client.disconnect()
            self.ad_client = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Reconcile GitHub SCIM and GLPI against Active Directory')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--search-base', help='Override the LDAP search base')
    parser.add_argument('--group', action='append', dest='groups', metavar='GROUP_DN',
                        help='Restrict the source to members of this group (repeatable)')
    parser.add_argument('--bind-dn', help='Override the LDAP bind DN')
    parser.add_argument('--bind-password', help='Override the LDAP bind password')
    parser.add_argument('--dry-run', action='store_true', help='Plan changes without applying them')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging on the console')
    parser.add_argument('--max-changes', type=int, help='Abort if more changes than this are planned')
    parser.add_argument('--only', metavar='NAME', help='Run a single named reconciliation')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of reconciling')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    overrides = {
        'search_base': args.search_base,
        'groups': args.groups,
        'bind_dn': args.bind_dn,
        'bind_password': args.bind_password,
        'dry_run': args.dry_run,
        'max_changes': args.max_changes,
        'only': args.only,
        'verbose': args.verbose,
    }
    orchestrator = ReconcileOrchestrator(config_path=args.config, overrides=overrides)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    if args.test_email:
        from ad_reconcile.notifications import test_notification_config
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(EXIT_CONFIG)
        notifications_config = orchestrator.config.get('notifications', {})
        if test_notification_config(notifications_config):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
