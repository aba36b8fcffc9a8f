#!/usr/bin/env python3
"""
Unit tests for the Active Directory client.

Tests the AD state decoding helpers, filter construction and paged fetch with a
mocked ldap3 connection.
"""

import unittest
from unittest.mock import Mock, patch
import sys
import os
from datetime import datetime, timezone

# Add parent directory to path to import ad_reconcile modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3.core.exceptions import LDAPSocketOpenError

from ad_reconcile.ldap_client import (
    ADClient, LDAPConnectionError, LDAPQueryError, decode_account_expires, decode_disabled
)

# 2020-01-01T00:00:00Z as a FILETIME
FILETIME_2020 = 132223104000000000


class TestDecoding(unittest.TestCase):
    """Test cases for userAccountControl and accountExpires decoding."""

    def test_account_expires_never(self):
        for value in [None, '', [], 0, '0', 0x7FFFFFFFFFFFFFFF, str(0x7FFFFFFFFFFFFFFF)]:
            with self.subTest(value=value):
                self.assertIsNone(decode_account_expires(value))

    def test_account_expires_filetime(self):
        self.assertEqual(decode_account_expires(FILETIME_2020),
                         datetime(2020, 1, 1, tzinfo=timezone.utc))
        self.assertEqual(decode_account_expires(str(FILETIME_2020)),
                         datetime(2020, 1, 1, tzinfo=timezone.utc))

    def test_account_expires_past_datetime_range(self):
        self.assertIsNone(decode_account_expires(0x7FFFFFFFFFFFFFFE))

    def test_account_expires_datetime(self):
        """ldap3 returns datetimes when the schema is loaded."""
        self.assertIsNone(decode_account_expires(datetime(1601, 1, 1, tzinfo=timezone.utc)))
        self.assertIsNone(decode_account_expires(datetime(9999, 12, 31, 23, 59, 59)))
        self.assertEqual(decode_account_expires(datetime(2026, 3, 1)),
                         datetime(2026, 3, 1, tzinfo=timezone.utc))

    def test_account_expires_invalid(self):
        with self.assertRaises(LDAPQueryError):
            decode_account_expires('soon')

    def test_disabled_bit(self):
        self.assertTrue(decode_disabled(514))
        self.assertTrue(decode_disabled('66050'))
        self.assertFalse(decode_disabled(512))
        self.assertFalse(decode_disabled(None))

    def test_disabled_invalid(self):
        with self.assertRaises(LDAPQueryError):
            decode_disabled('enabled')


class TestADClient(unittest.TestCase):
    """Test cases for ADClient."""

    def setUp(self):
        """Set up test fixtures."""
        self.config = {
            'server_url': 'ldap://dc01.example.com',
            'bind_dn': 'CN=svc,OU=Service,DC=example,DC=com',
            'bind_password': 'secret',
            'search_base': 'OU=Staff,DC=example,DC=com',
            'page_size': 200,
            'nested_groups': True,
        }

    def connected_client(self, config=None):
        client = ADClient(config or self.config)
        client.connection = Mock()
        client._connected = True
        return client

    def test_build_filter_without_groups(self):
        client = ADClient(self.config)
        self.assertEqual(client.build_filter('users'), '(&(objectCategory=person)(objectClass=user))')
        self.assertEqual(client.build_filter('computers'), '(objectClass=computer)')

    def test_build_filter_nested_group(self):
        client = ADClient(self.config)

        search_filter = client.build_filter('users', ['CN=GitHub,OU=Groups,DC=example,DC=com'])

        self.assertEqual(search_filter,
                         '(&(&(objectCategory=person)(objectClass=user))'
                         '(memberOf:1.2.840.113556.1.4.1941:=CN=GitHub,OU=Groups,DC=example,DC=com))')

    def test_build_filter_direct_members_of_several_groups(self):
        client = ADClient(dict(self.config, nested_groups=False))

        search_filter = client.build_filter('computers', ['CN=A,DC=x', 'CN=B,DC=x'])

        self.assertEqual(search_filter, '(&(objectClass=computer)(|(memberOf=CN=A,DC=x)(memberOf=CN=B,DC=x)))')

    def test_build_filter_escapes_group_dn(self):
        client = ADClient(self.config)

        search_filter = client.build_filter('users', ['CN=Team (Ops),DC=x'])

        self.assertIn('CN=Team \\28Ops\\29,DC=x', search_filter)

    def test_build_filter_unknown_kind(self):
        with self.assertRaises(LDAPQueryError):
            ADClient(self.config).build_filter('printers')

    def test_fetch_entries_flattens_and_decodes(self):
        client = self.connected_client()
        client.connection.extend.standard.paged_search.return_value = [
            {
                'type': 'searchResEntry',
                'dn': 'CN=Alice,OU=Staff,DC=example,DC=com',
                'attributes': {
                    'mail': ['alice@example.com'],
                    'givenName': 'Alice',
                    'proxyAddresses': ['smtp:a@x.com', 'smtp:b@x.com'],
                    'department': [],
                    'userAccountControl': 514,
                    'accountExpires': FILETIME_2020,
                },
            },
            {'type': 'searchResRef', 'uri': ['ldap://other.example.com/DC=other']},
        ]

        records = client.fetch_entries('users', groups=['CN=GitHub,DC=example,DC=com'], attributes=['room'])

        self.assertEqual(len(records), 1)
        record = records[0]
        self.assertEqual(record['dn'], 'CN=Alice,OU=Staff,DC=example,DC=com')
        self.assertEqual(record['mail'], 'alice@example.com')
        self.assertEqual(record['proxyAddresses'], ['smtp:a@x.com', 'smtp:b@x.com'])
        self.assertIsNone(record['department'])
        self.assertTrue(record['disabled'])
        self.assertEqual(record['expires'], datetime(2020, 1, 1, tzinfo=timezone.utc))

        kwargs = client.connection.extend.standard.paged_search.call_args.kwargs
        self.assertEqual(kwargs['search_base'], 'OU=Staff,DC=example,DC=com')
        self.assertEqual(kwargs['paged_size'], 200)
        self.assertFalse(kwargs['generator'])
        self.assertIn('room', kwargs['attributes'])
        self.assertIn('userAccountControl', kwargs['attributes'])
        self.assertIn('memberOf:1.2.840.113556.1.4.1941:=', kwargs['search_filter'])

    def test_fetch_entries_defaults_to_domain_base(self):
        client = self.connected_client(dict(self.config, search_base=''))
        client.connection.extend.standard.paged_search.return_value = []

        self.assertEqual(client.fetch_entries('computers'), [])
        kwargs = client.connection.extend.standard.paged_search.call_args.kwargs
        self.assertEqual(kwargs['search_base'], 'DC=example,DC=com')

    def test_fetch_entries_requires_connection(self):
        with self.assertRaises(LDAPQueryError):
            ADClient(self.config).fetch_entries('users')

    def test_fetch_entries_wraps_ldap_errors(self):
        client = self.connected_client()
        client.connection.extend.standard.paged_search.side_effect = LDAPSocketOpenError('socket closed')

        with self.assertRaises(LDAPQueryError):
            client.fetch_entries('users')

    @patch('ad_reconcile.ldap_client.Connection')
    @patch('ad_reconcile.ldap_client.Server')
    def test_connect_success(self, mock_server, mock_connection):
        """Test a successful open and bind."""
        connection = mock_connection.return_value
        connection.open.return_value = True
        connection.bind.return_value = True

        client = ADClient(self.config)

        self.assertTrue(client.connect())
        self.assertTrue(client.get_connection_stats()['connected'])
        self.assertEqual(mock_connection.call_args.kwargs['user'], self.config['bind_dn'])
        connection.start_tls.assert_not_called()

    @patch('ad_reconcile.ldap_client.time.sleep')
    @patch('ad_reconcile.ldap_client.Connection')
    @patch('ad_reconcile.ldap_client.Server')
    def test_connect_bind_failure(self, mock_server, mock_connection, mock_sleep):
        """Test that a refused bind is retried, then reported."""
        connection = mock_connection.return_value
        connection.open.return_value = True
        connection.bind.return_value = False

        client = ADClient(dict(self.config, connect_attempts=2))

        with self.assertRaises(LDAPConnectionError):
            client.connect()
        self.assertEqual(connection.bind.call_count, 2)
        mock_sleep.assert_called_once()
        self.assertIsNone(client.connection)

    @patch('ad_reconcile.ldap_client.Connection')
    @patch('ad_reconcile.ldap_client.Server')
    def test_connect_start_tls(self, mock_server, mock_connection):
        connection = mock_connection.return_value
        connection.open.return_value = True
        connection.start_tls.return_value = True
        connection.bind.return_value = True

        client = ADClient(dict(self.config, start_tls=True))
        client.connect()

        connection.start_tls.assert_called_once()

    def test_disconnect(self):
        client = self.connected_client()
        connection = client.connection

        client.disconnect()

        connection.unbind.assert_called_once()
        self.assertIsNone(client.connection)


if __name__ == '__main__':
    unittest.main()
