#!/usr/bin/env python3
"""
Unit tests for configuration loading and validation.
"""

import os
import sys
import tempfile
import unittest
from unittest.mock import patch

import yaml

# Add parent directory to path to import ad_reconcile modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ad_reconcile.config import ConfigLoader, ConfigurationError, env_prefix, load_config


def base_config():
    return {
        'ldap': {
            'server_url': 'ldaps://dc01.example.com:636',
            'bind_dn': 'CN=svc,OU=Service,DC=example,DC=com',
            'bind_password': 'secret',
        },
        'reconciliations': [
            {
                'name': 'github',
                'source': {'kind': 'users', 'groups': ['CN=GitHub,DC=example,DC=com']},
                'target': {
                    'module': 'github_scim',
                    'base_url': 'https://api.github.com',
                    'key_attribute': 'email',
                    'organization': 'acme',
                    'auth': {'method': 'token'},
                },
                'mappings': [{'source': 'givenName', 'target': 'givenName', 'pattern': '^[A-Za-z]+$'}],
            },
            {
                'name': 'my-glpi',
                'source': {'kind': 'computers'},
                'target': {
                    'module': 'glpi',
                    'base_url': 'https://glpi.example.com/apirest.php',
                    'key_attribute': 'name',
                },
            },
        ],
    }


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = os.path.join(self.temp_dir.name, 'config.yaml')
        # Keep host secrets out of the loaded configuration
        self.env_patcher = patch.dict(os.environ, {}, clear=True)
        self.env_patcher.start()

    def tearDown(self):
        self.env_patcher.stop()
        self.temp_dir.cleanup()

    def write_config(self, config):
        with open(self.config_path, 'w') as f:
            yaml.safe_dump(config, f)

    def test_load_valid_config_applies_defaults(self):
        self.write_config(base_config())

        config = load_config(self.config_path)

        self.assertTrue(config['ldap']['use_ssl'])
        self.assertEqual(config['ldap']['page_size'], 500)
        self.assertTrue(config['ldap']['nested_groups'])
        self.assertEqual(config['logging']['log_dir'], 'logs')
        self.assertFalse(config['notifications']['enable_email'])
        self.assertEqual(config['run'], {'dry_run': False, 'max_changes': None})

        github, glpi = config['reconciliations']
        self.assertEqual(github['source']['key_attribute'], 'mail')
        self.assertEqual(github['source']['key_format'], 'email')
        self.assertTrue(github['require_source_entities'])
        self.assertFalse(github['require_target_entities'])
        self.assertFalse(github['strict_keys'])
        self.assertEqual(glpi['source']['key_attribute'], 'cn')
        self.assertEqual(glpi['source']['key_format'], 'hostname')
        self.assertEqual(glpi['mappings'], [])
        self.assertEqual(glpi['target']['id_attribute'], 'id')
        self.assertEqual(glpi['target']['auth'], {})

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(os.path.join(self.temp_dir.name, 'missing.yaml')).load()
        self.assertIn('not found', str(ctx.exception))

    def test_invalid_yaml(self):
        with open(self.config_path, 'w') as f:
            f.write('ldap: [unclosed\n')

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_non_mapping_root(self):
        with open(self.config_path, 'w') as f:
            f.write('- just\n- a list\n')

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_collects_all_validation_errors(self):
        config = base_config()
        del config['ldap']['bind_dn']
        config['reconciliations'][0]['source']['kind'] = 'printers'
        config['reconciliations'][0]['mappings'][0]['pattern'] = '([unclosed'
        del config['reconciliations'][1]['target']['base_url']
        self.write_config(config)

        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self.config_path)

        message = str(ctx.exception)
        self.assertIn('bind_dn', message)
        self.assertIn('kind', message)
        self.assertIn('Invalid pattern', message)
        self.assertIn('base_url', message)

    def test_requires_reconciliations(self):
        config = base_config()
        config['reconciliations'] = []
        self.write_config(config)

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_duplicate_names_rejected(self):
        config = base_config()
        config['reconciliations'][1]['name'] = 'github'
        self.write_config(config)

        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self.config_path)
        self.assertIn('Duplicate reconciliation name', str(ctx.exception))

    def test_invalid_max_changes(self):
        for value in [-1, 'ten', True]:
            with self.subTest(value=value):
                config = base_config()
                config['run'] = {'max_changes': value}
                self.write_config(config)

                with self.assertRaises(ConfigurationError):
                    load_config(self.config_path)

    def test_zero_max_changes_allowed(self):
        config = base_config()
        config['reconciliations'][0]['max_changes'] = 0
        self.write_config(config)

        self.assertEqual(load_config(self.config_path)['reconciliations'][0]['max_changes'], 0)

    def test_invalid_module_name(self):
        config = base_config()
        config['reconciliations'][0]['target']['module'] = '../evil'
        self.write_config(config)

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_environment_overrides(self):
        config = base_config()
        del config['ldap']['bind_password']
        self.write_config(config)

        with patch.dict(os.environ, {'LDAP_BIND_PASSWORD': 'from-env',
                                     'GITHUB_TOKEN': 'gh-token',
                                     'MY_GLPI_USER_TOKEN': 'glpi-user',
                                     'MY_GLPI_APP_TOKEN': 'glpi-app'}):
            loaded = load_config(self.config_path)

        self.assertEqual(loaded['ldap']['bind_password'], 'from-env')
        self.assertEqual(loaded['reconciliations'][0]['target']['auth'],
                         {'method': 'token', 'token': 'gh-token'})
        self.assertEqual(loaded['reconciliations'][1]['target']['auth'],
                         {'user_token': 'glpi-user', 'app_token': 'glpi-app'})

    def test_config_path_from_environment(self):
        self.write_config(base_config())

        with patch.dict(os.environ, {'CONFIG_PATH': self.config_path}):
            loader = ConfigLoader()

        self.assertEqual(loader.config_path, self.config_path)

    def test_env_prefix(self):
        self.assertEqual(env_prefix('my-glpi'), 'MY_GLPI')
        self.assertEqual(env_prefix('github'), 'GITHUB')


if __name__ == '__main__':
    unittest.main()
