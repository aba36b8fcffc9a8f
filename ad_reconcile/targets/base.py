"""
Base target API interface and common functionality.

This module defines the abstract base class that every target system integration
implements (fetch, create, remove, update), along with the shared JSON-over-HTTP
client, SSL truststore handling and authentication headers.
"""

import json
import ssl
import base64
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection

logger = logging.getLogger(__name__)


class TargetAPIError(Exception):
    """Base exception for target API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TargetAuthenticationError(TargetAPIError):
    """Raised when authentication to the target API fails."""
    pass


class TargetAPIBase(ABC):
    """
    Abstract base class for target system integrations.

    Subclasses translate between the target's REST resources and flat raw
    records, and implement the four operations the reconciliation engine needs.
    """

    content_type = 'application/json'
    accept = 'application/json'

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize target API client.

        Args:
            config: Target configuration dictionary
        """
        self.config = config
        self.name = config.get('name', self.__class__.__name__)
        self.base_url = config['base_url']
        self.auth_config = config.get('auth') or {}
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom CA certificates from a PEM or PKCS12 truststore."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
            elif truststore_type == 'PKCS12':
                from cryptography.hazmat.primitives import serialization
                from cryptography.hazmat.primitives.serialization import pkcs12

                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )

                ca_certs = [cert.public_bytes(serialization.Encoding.PEM)
                            for cert in [certificate] + list(additional_certificates or []) if cert]
                if ca_certs:
                    self.ssl_context.load_verify_locations(cadata=b'\n'.join(ca_certs).decode('ascii'))
            else:
                raise TargetAPIError(f"Unsupported truststore type: {truststore_type}")

            logger.info(f"Loaded {truststore_type} truststore for {self.name}: {truststore_file}")

        except TargetAPIError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise TargetAPIError(f"Truststore loading failed: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if username and password:
                credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
                self.auth_headers['Authorization'] = f"Basic {credentials}"
                logger.debug(f"Configured Basic authentication for {self.name}")
            else:
                logger.error(f"Basic auth configured but missing username or password for {self.name}")

        elif auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"Bearer {token}"
                logger.debug(f"Configured Bearer token authentication for {self.name}")
            else:
                logger.error(f"Token auth configured but missing token for {self.name}")

        elif auth_method:
            # Target modules with their own handshake read auth_config themselves
            logger.debug(f"Authentication method '{auth_method}' handled by {self.__class__.__name__}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def request(self, method: str, path: str, body: Optional[Any] = None,
                params: Optional[Dict[str, Any]] = None,
                headers: Optional[Dict[str, str]] = None) -> Any:
        """
        Make a JSON request to the target API.

        Args:
            method: HTTP method (GET, POST, PUT, PATCH, DELETE)
            path: Endpoint path relative to base_url
            body: JSON-serializable request body
            params: Query string parameters
            headers: Additional headers

        Returns:
            Parsed JSON response ({} for an empty body)

        Raises:
            TargetAuthenticationError: On HTTP 401/403
            TargetAPIError: On any other failure
        """
        full_path = f"{self.base_path}/{path.lstrip('/')}"
        if params:
            full_path = f"{full_path}?{urlencode(params)}"

        request_headers = {'Accept': self.accept}
        request_headers.update(self.auth_headers)
        if headers:
            request_headers.update(headers)

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = self.content_type

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)

            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
            logger.debug(f"Response status: {response.status} {response.reason}")
        except (ConnectionError, OSError) as e:
            # Drop the broken connection so the next call reconnects
            self.close_connection()
            raise TargetAPIError(f"Connection error to {self.name}: {e}")

        if response.status in (401, 403):
            raise TargetAuthenticationError(
                f"Authentication failed for {self.name}: HTTP {response.status}", response.status)
        if response.status >= 400:
            raise TargetAPIError(
                f"HTTP {response.status} {response.reason}: {response_data[:200]}", response.status)

        if not response_data:
            return {}
        try:
            return json.loads(response_data)
        except json.JSONDecodeError as e:
            raise TargetAPIError(f"Invalid JSON response from {self.name}: {e}")

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    def authenticate(self) -> bool:
        """
        Perform any session handshake the target needs before use.

        Header-based methods are configured at construction, so the default
        implementation only checks that credentials are present when required.

        Returns:
            True if authentication successful
        """
        auth_method = self.auth_config.get('method', '').lower()
        if auth_method in ('basic', 'token', 'bearer'):
            return 'Authorization' in self.auth_headers
        return True

    @abstractmethod
    def fetch_entities(self) -> List[Dict[str, Any]]:
        """
        Fetch every entity currently present in the target.

        Returns:
            List of flat raw records
        """
        pass

    @abstractmethod
    def create_entity(self, key: str, attributes: Dict[str, Any]) -> str:
        """
        Create an entity.

        Args:
            key: Comparison key of the new entity
            attributes: Target attribute name -> value

        Returns:
            Identifier assigned by the target
        """
        pass

    @abstractmethod
    def remove_entity(self, entity_id: str) -> None:
        """Remove (deprovision) an entity by target identifier."""
        pass

    @abstractmethod
    def update_entity(self, entity_id: str, attribute: str, value: Any) -> None:
        """Set one attribute of an entity."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()
