#!/usr/bin/env python3
"""
Unit tests for the main reconcile orchestrator.

Tests exit codes and reconciliation wiring with a mocked directory and target.
"""

import copy
import tempfile
import unittest
from unittest.mock import Mock, patch
import sys
import os

# Add parent directory to path to import ad_reconcile modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ad_reconcile.main import (
    ReconcileOrchestrator, build_parser, main,
    EXIT_OK, EXIT_CONFIG, EXIT_SOURCE, EXIT_TARGET, EXIT_CHANGE_LIMIT, EXIT_DATA_INTEGRITY
)
from ad_reconcile.config import ConfigurationError
from ad_reconcile.engine.models import Status
from ad_reconcile.ldap_client import LDAPConnectionError, LDAPQueryError
from ad_reconcile.targets.base import TargetAPIError
from ad_reconcile.targets.github_scim import GitHubSCIMAPI

TEST_CONFIG = {
    'ldap': {
        'server_url': 'ldaps://dc01.example.com',
        'bind_dn': 'CN=svc,DC=example,DC=com',
        'bind_password': 'secret',
        'search_base': 'OU=Staff,DC=example,DC=com',
    },
    'reconciliations': [
        {
            'name': 'github',
            'source': {
                'kind': 'users',
                'groups': ['CN=GitHub,OU=Groups,DC=example,DC=com'],
                'search_base': None,
                'key_attribute': 'mail',
                'key_format': 'email',
            },
            'target': {
                'module': 'github_scim',
                'base_url': 'https://api.github.com',
                'organization': 'acme',
                'key_attribute': 'email',
                'id_attribute': 'id',
                'auth': {'method': 'token', 'token': 't0ken'},
            },
            'mappings': [{'source': 'givenName', 'target': 'givenName'}],
            'strict_keys': False,
            'require_source_entities': True,
            'require_target_entities': False,
            'max_changes': None,
        }
    ],
    'logging': {'level': 'INFO', 'log_dir': 'logs', 'ledger_file': False},
    'notifications': {'enable_email': False},
    'run': {'dry_run': False, 'max_changes': None},
}


class TestReconcileOrchestrator(unittest.TestCase):
    """Test cases for ReconcileOrchestrator."""

    def setUp(self):
        """Set up test fixtures."""
        self.config = copy.deepcopy(TEST_CONFIG)

        self.target = Mock()
        self.target.authenticate.return_value = True
        self.target.fetch_entities.return_value = [
            {'id': '7', 'email': 'kept@example.com', 'givenName': 'Kept'},
        ]
        self.target.create_entity.return_value = '8'

        self.ad_client = Mock()
        self.ad_client.fetch_entries.return_value = [
            {'dn': 'CN=Kept', 'mail': 'kept@example.com', 'givenName': 'Kept', 'disabled': False, 'expires': None},
            {'dn': 'CN=New', 'mail': 'new@example.com', 'givenName': 'Nina', 'disabled': False, 'expires': None},
        ]

        patchers = [
            patch('ad_reconcile.main.load_config', return_value=self.config),
            patch('ad_reconcile.main.ADClient', return_value=self.ad_client),
            patch('ad_reconcile.main.setup_logging'),
            patch('ad_reconcile.main.send_run_report'),
            patch('ad_reconcile.main.send_failure_notification'),
            patch.object(ReconcileOrchestrator, '_load_target_module', return_value=self.target),
        ]
        self.mocks = [patcher.start() for patcher in patchers]
        for patcher in patchers:
            self.addCleanup(patcher.stop)
        self.mock_load_config = self.mocks[0]
        self.mock_failure_notification = self.mocks[4]

    def test_successful_run(self):
        """Test a run that creates the missing account."""
        orchestrator = ReconcileOrchestrator()

        self.assertEqual(orchestrator.run(), EXIT_OK)

        self.target.create_entity.assert_called_once_with('new@example.com', {'givenName': 'Nina'})
        self.target.close_connection.assert_called_once()
        self.ad_client.disconnect.assert_called_once()

        ledger = orchestrator.ledgers[0]
        self.assertEqual(ledger.name, 'github')
        self.assertEqual(ledger.summary(), {'success': 1, 'failed': 0, 'skipped': 1})

        kwargs = self.ad_client.fetch_entries.call_args.kwargs
        self.assertEqual(kwargs['kind'], 'users')
        self.assertEqual(kwargs['groups'], ['CN=GitHub,OU=Groups,DC=example,DC=com'])
        self.assertIn('givenName', kwargs['attributes'])

    def test_dry_run_override(self):
        orchestrator = ReconcileOrchestrator(overrides={'dry_run': True})

        self.assertEqual(orchestrator.run(), EXIT_OK)

        self.target.create_entity.assert_not_called()
        self.assertEqual(orchestrator.ledgers[0].summary()['success'], 0)

    def test_group_and_search_base_overrides(self):
        orchestrator = ReconcileOrchestrator(overrides={'groups': ['CN=Other,DC=example,DC=com'],
                                                        'search_base': 'OU=Other,DC=example,DC=com'})
        orchestrator.run()

        kwargs = self.ad_client.fetch_entries.call_args.kwargs
        self.assertEqual(kwargs['groups'], ['CN=Other,DC=example,DC=com'])
        self.assertEqual(kwargs['search_base'], 'OU=Other,DC=example,DC=com')

    def test_item_failures_do_not_change_exit_code(self):
        self.target.create_entity.side_effect = TargetAPIError('HTTP 422', 422)
        orchestrator = ReconcileOrchestrator()

        self.assertEqual(orchestrator.run(), EXIT_OK)

        self.assertTrue(orchestrator.ledgers[0].has_failures())
        self.assertEqual(orchestrator.ledgers[0].snapshot()[-1].status, Status.FAILED)

    def test_fatal_error_keeps_earlier_ledgers(self):
        """A breaker trip in the second reconciliation still reports the first one's changes."""
        second = copy.deepcopy(self.config['reconciliations'][0])
        second['name'] = 'glpi'
        second['max_changes'] = 0
        self.config['reconciliations'].append(second)
        self.config['logging']['ledger_file'] = True

        with tempfile.TemporaryDirectory() as temp_dir:
            path = os.path.join(temp_dir, 'ledger-run.log')
            with patch('ad_reconcile.main.ledger_path', return_value=path):
                orchestrator = ReconcileOrchestrator()
                self.assertEqual(orchestrator.run(), EXIT_CHANGE_LIMIT)

            with open(path, encoding='utf-8') as f:
                written = f.read()

        self.target.create_entity.assert_called_once_with('new@example.com', {'givenName': 'Nina'})
        self.assertEqual([ledger.name for ledger in orchestrator.ledgers], ['github'])
        self.assertIn('=== github:', written)
        self.assertIn('new@example.com', written)

        title, _, _, info = self.mock_failure_notification.call_args.args
        self.assertEqual(title, 'Change Limit Exceeded')
        self.assertEqual(info['Completed reconciliations'], 'github (1 applied)')

    def test_configuration_error(self):
        self.mock_load_config.side_effect = ConfigurationError('bad config')

        self.assertEqual(ReconcileOrchestrator().run(), EXIT_CONFIG)

    def test_negative_max_changes_override(self):
        self.assertEqual(ReconcileOrchestrator(overrides={'max_changes': -1}).run(), EXIT_CONFIG)

    def test_unknown_only_override(self):
        self.assertEqual(ReconcileOrchestrator(overrides={'only': 'jira'}).run(), EXIT_CONFIG)

    def test_ldap_connection_error(self):
        self.ad_client.connect.side_effect = LDAPConnectionError('unreachable')

        self.assertEqual(ReconcileOrchestrator().run(), EXIT_SOURCE)
        self.target.fetch_entities.assert_not_called()
        self.mock_failure_notification.assert_called_once()

    def test_source_fetch_error(self):
        self.ad_client.fetch_entries.side_effect = LDAPQueryError('size limit')

        self.assertEqual(ReconcileOrchestrator().run(), EXIT_SOURCE)
        self.target.create_entity.assert_not_called()

    def test_target_fetch_error(self):
        self.target.fetch_entities.side_effect = TargetAPIError('HTTP 500', 500)

        self.assertEqual(ReconcileOrchestrator().run(), EXIT_TARGET)
        self.target.close_connection.assert_called_once()

    def test_target_authentication_refused(self):
        self.target.authenticate.return_value = False

        self.assertEqual(ReconcileOrchestrator().run(), EXIT_TARGET)
        self.target.fetch_entities.assert_not_called()

    def test_change_limit(self):
        orchestrator = ReconcileOrchestrator(overrides={'max_changes': 0})

        self.assertEqual(orchestrator.run(), EXIT_CHANGE_LIMIT)
        self.target.create_entity.assert_not_called()

    def test_empty_source(self):
        self.ad_client.fetch_entries.return_value = []

        self.assertEqual(ReconcileOrchestrator().run(), EXIT_DATA_INTEGRITY)
        self.target.remove_entity.assert_not_called()

    def test_strict_duplicate_keys(self):
        self.config['reconciliations'][0]['strict_keys'] = True
        self.ad_client.fetch_entries.return_value.append(
            {'dn': 'CN=Dup', 'mail': 'NEW@example.com', 'disabled': False, 'expires': None})

        self.assertEqual(ReconcileOrchestrator().run(), EXIT_DATA_INTEGRITY)

    def test_max_changes_takes_stricter_limit(self):
        orchestrator = ReconcileOrchestrator()
        orchestrator.config = self.config
        self.config['run']['max_changes'] = 10

        self.assertEqual(orchestrator._max_changes({'max_changes': 3}), 3)
        self.assertEqual(orchestrator._max_changes({'max_changes': None}), 10)
        self.config['run']['max_changes'] = None
        self.assertIsNone(orchestrator._max_changes({'max_changes': None}))


class TestTargetModuleLoading(unittest.TestCase):
    """Test cases for dynamic target module loading."""

    def test_loads_target_class(self):
        target_config = dict(TEST_CONFIG['reconciliations'][0]['target'], name='github')

        target = ReconcileOrchestrator()._load_target_module(target_config)

        self.assertIsInstance(target, GitHubSCIMAPI)
        self.assertEqual(target.organization, 'acme')

    def test_unknown_module(self):
        with self.assertRaises(ConfigurationError):
            ReconcileOrchestrator()._load_target_module({'module': 'no_such_target', 'name': 'x'})

    def test_invalid_target_config(self):
        target_config = dict(TEST_CONFIG['reconciliations'][0]['target'], name='github')
        del target_config['organization']

        with self.assertRaises(ConfigurationError):
            ReconcileOrchestrator()._load_target_module(target_config)


class TestCommandLine(unittest.TestCase):
    """Test cases for argument parsing and the entry point."""

    def test_parser(self):
        args = build_parser().parse_args([
            '-c', 'custom.yaml', '--group', 'CN=A,DC=x', '--group', 'CN=B,DC=x',
            '--dry-run', '--max-changes', '5', '--only', 'github', '-v'
        ])

        self.assertEqual(args.config, 'custom.yaml')
        self.assertEqual(args.groups, ['CN=A,DC=x', 'CN=B,DC=x'])
        self.assertTrue(args.dry_run)
        self.assertEqual(args.max_changes, 5)
        self.assertEqual(args.only, 'github')
        self.assertTrue(args.verbose)

    def test_parser_defaults(self):
        args = build_parser().parse_args([])

        self.assertIsNone(args.groups)
        self.assertFalse(args.dry_run)
        self.assertIsNone(args.max_changes)

    @patch('ad_reconcile.main.ReconcileOrchestrator')
    def test_main_exits_with_run_code(self, mock_orchestrator):
        mock_orchestrator.return_value.run.return_value = EXIT_CHANGE_LIMIT

        with self.assertRaises(SystemExit) as ctx:
            main(['--dry-run', '--bind-password', 'pw'])

        self.assertEqual(ctx.exception.code, EXIT_CHANGE_LIMIT)
        overrides = mock_orchestrator.call_args.kwargs['overrides']
        self.assertTrue(overrides['dry_run'])
        self.assertEqual(overrides['bind_password'], 'pw')

    @patch('builtins.print')
    @patch('ad_reconcile.main.ReconcileOrchestrator')
    def test_main_health_check(self, mock_orchestrator, mock_print):
        mock_orchestrator.return_value.health_check.return_value = {'status': 'unhealthy', 'checks': {}}

        with self.assertRaises(SystemExit) as ctx:
            main(['--health-check'])

        self.assertEqual(ctx.exception.code, 1)
        mock_orchestrator.return_value.run.assert_not_called()


if __name__ == '__main__':
    unittest.main()
