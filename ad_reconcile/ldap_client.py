"""
Active Directory client for the reconciliation source side.

This module connects to AD over LDAP(S) and returns raw user or computer records,
optionally restricted to members of one or more groups, with the AD account state
(userAccountControl, accountExpires) already decoded into ``disabled`` and
``expires``.
"""

import logging
import ssl
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Any, Iterable, Optional
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

logger = logging.getLogger(__name__)

# userAccountControl flag ACCOUNTDISABLE
UAC_ACCOUNT_DISABLED = 0x0002

# accountExpires sentinels meaning "never"
FILETIME_NEVER = (0, 0x7FFFFFFFFFFFFFFF)
FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)

# LDAP_MATCHING_RULE_IN_CHAIN, resolves nested group membership server-side
MATCHING_RULE_IN_CHAIN = '1.2.840.113556.1.4.1941'

OBJECT_FILTERS = {
    'users': '(&(objectCategory=person)(objectClass=user))',
    'computers': '(objectClass=computer)',
}

DEFAULT_ATTRIBUTES = {
    'users': ['mail', 'userPrincipalName', 'sAMAccountName', 'givenName', 'sn',
              'displayName', 'department', 'title', 'employeeID',
              'userAccountControl', 'accountExpires'],
    'computers': ['cn', 'dNSHostName', 'operatingSystem', 'operatingSystemVersion',
                  'description', 'location', 'userAccountControl', 'accountExpires'],
}


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


def decode_account_expires(value: Any) -> Optional[datetime]:
    """
    Convert an accountExpires value to a UTC datetime.

    ldap3 returns a datetime when the schema is loaded and the raw FILETIME
    integer otherwise. Both "never" sentinels map to None.
    """
    if value in (None, '', []):
        return None

    if isinstance(value, datetime):
        if value.year <= 1601 or value.year >= 9999:
            return None
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    try:
        filetime = int(value)
    except (TypeError, ValueError):
        raise LDAPQueryError(f"Unrecognized accountExpires value: {value!r}")

    if filetime in FILETIME_NEVER or filetime < 0:
        return None
    # FILETIME counts 100ns intervals since 1601-01-01
    try:
        return FILETIME_EPOCH + timedelta(microseconds=filetime // 10)
    except OverflowError:
        # Past datetime.max, effectively never
        return None


def decode_disabled(value: Any) -> bool:
    """True if the userAccountControl ACCOUNTDISABLE bit is set."""
    if value in (None, '', []):
        return False
    try:
        return bool(int(value) & UAC_ACCOUNT_DISABLED)
    except (TypeError, ValueError):
        raise LDAPQueryError(f"Unrecognized userAccountControl value: {value!r}")


class ADClient:
    """
    Active Directory client for fetching reconciliation source records.

    Group membership is resolved with a memberOf filter, using the in-chain
    matching rule when nested groups are enabled.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize AD client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.search_base = config.get('search_base') or ''

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)
        self.page_size = config.get('page_size', 500)
        self.connect_attempts = max(1, config.get('connect_attempts', 1))
        self.retry_wait = config.get('retry_wait_seconds', 5)
        self.nested_groups = config.get('nested_groups', True)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self) -> bool:
        """
        Establish and bind the LDAP connection.

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all attempts
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(self.connect_attempts):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise LDAPConnectionError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return True

            except (LDAPException, LDAPConnectionError) as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{self.connect_attempts} failed: {e}")
                self._discard_connection()
                if attempt < self.connect_attempts - 1:
                    time.sleep(self.retry_wait)

        raise LDAPConnectionError(
            f"Failed to connect to LDAP after {self.connect_attempts} attempt(s): {last_exception}")

    def _create_tls_config(self) -> Optional[Tls]:
        """Build the ldap3 TLS configuration, or None for plain LDAP."""
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring unbind error on failed connection: {e}")
            self.connection = None

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def build_filter(self, kind: str, groups: Iterable[str] = ()) -> str:
        """Search filter for an object kind, restricted to group members."""
        if kind not in OBJECT_FILTERS:
            raise LDAPQueryError(f"Unsupported object kind: {kind}")

        groups = [group for group in groups if group]
        if not groups:
            return OBJECT_FILTERS[kind]

        rule = f":{MATCHING_RULE_IN_CHAIN}:" if self.nested_groups else ''
        clauses = ''.join(f"(memberOf{rule}={escape_filter_chars(group)})" for group in groups)
        membership = clauses if len(groups) == 1 else f"(|{clauses})"
        return f"(&{OBJECT_FILTERS[kind]}{membership})"

    def fetch_entries(self, kind: str = 'users', search_base: Optional[str] = None,
                      groups: Iterable[str] = (),
                      attributes: Iterable[str] = ()) -> List[Dict[str, Any]]:
        """
        Fetch raw user or computer records.

        Args:
            kind: 'users' or 'computers'
            search_base: Base DN (defaults to the configured search base or domain root)
            groups: Group DNs; when given only their members are returned
            attributes: Extra attributes to read in addition to the defaults

        Returns:
            List of flat record dictionaries

        Raises:
            LDAPQueryError: If the search fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        search_filter = self.build_filter(kind, groups)
        base = search_base or self.search_base or self._get_domain_base()
        requested = list(dict.fromkeys(DEFAULT_ATTRIBUTES[kind] + [a for a in attributes if a]))

        logger.info(f"Searching {kind} in {base}")
        logger.debug(f"Search filter: {search_filter}, attributes: {requested}")

        try:
            entries = self.connection.extend.standard.paged_search(
                search_base=base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=requested,
                paged_size=self.page_size,
                generator=False
            )
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP query failed: {e}")

        records = [self._to_record(entry) for entry in entries if entry.get('type') == 'searchResEntry']
        logger.info(f"Retrieved {len(records)} {kind} from {base}")
        return records

    def _to_record(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        """Flatten an ldap3 search entry and decode the AD account state."""
        record = {'dn': entry.get('dn')}
        for name, value in (entry.get('attributes') or {}).items():
            if isinstance(value, list):
                value = None if not value else value[0] if len(value) == 1 else value
            record[name] = value

        record['disabled'] = decode_disabled(record.get('userAccountControl'))
        record['expires'] = decode_account_expires(record.get('accountExpires'))
        return record

    def _get_domain_base(self) -> str:
        """Derive the domain base DN from the bind DN or server info."""
        dc_parts = [part.strip() for part in self.bind_dn.split(',')
                    if part.strip().upper().startswith('DC=')]
        if dc_parts:
            return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine domain base DN")

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if not self._connected:
                self.connect()
            return self.connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['namingContexts']
            )
        except Exception as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def validate_group_dn(self, group_dn: str) -> bool:
        """Check that a group DN exists and is readable."""
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        try:
            success = self.connection.search(
                search_base=group_dn,
                search_filter='(objectClass=group)',
                search_scope=BASE,
                attributes=['objectClass']
            )
        except LDAPException as e:
            logger.error(f"Failed to validate group DN {group_dn}: {e}")
            return False

        if success and self.connection.entries:
            logger.debug(f"Group DN validated: {group_dn}")
            return True
        logger.warning(f"Group DN not found or inaccessible: {group_dn}")
        return False

    def get_connection_stats(self) -> Dict[str, Any]:
        """Connection status for health checks."""
        return {
            'connected': self._connected,
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'search_base': self.search_base,
            'page_size': self.page_size,
            'nested_groups': self.nested_groups
        }

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
