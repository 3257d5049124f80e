"""
Base identity service interface and common functionality.

This module defines the abstract base class the sync steps talk to, along with
the HTTP client plumbing, SSL and authentication handling shared by concrete
server integrations.
"""

import os
import json
import ssl
import base64
import logging
import tempfile
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, urlencode, quote
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from tfs_user_sync.models import Collection, Identity

logger = logging.getLogger(__name__)


class TfsAPIError(Exception):
    """Base exception for identity server errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TfsAuthenticationError(TfsAPIError):
    """Raised when the server rejects the configured credentials."""
    pass


class TfsConnectionError(TfsAPIError):
    """Raised when the server cannot be reached."""
    pass


class IdentityServiceBase(ABC):
    """
    Abstract base class for identity server integrations.

    Concrete services implement collection listing, identity lookup and
    membership changes on top of the JSON ``request`` helper provided here.
    """

    def __init__(self, base_url: str, config: Optional[Dict[str, Any]] = None):
        """
        Initialize identity service client.

        Args:
            base_url: Server (or collection) URL, e.g. http://tfs:8080/tfs
            config: Server configuration section (auth, TLS, timeouts)
        """
        self.config = config or {}
        self.base_url = base_url.rstrip('/')
        self.auth_config = self.config.get('auth') or {}
        self.verify_ssl = self.config.get('verify_ssl', True)
        self.timeout = self.config.get('timeout_seconds', 30)
        self.api_version = str(self.config.get('api_version', '2.0'))

        # Parse base URL
        self.parsed_url = urlparse(self.base_url)
        if self.parsed_url.scheme not in ('http', 'https') or not self.parsed_url.netloc:
            raise TfsAPIError(f"Invalid server URL: {base_url}")
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        # HTTP connection
        self.connection = None
        self.ssl_context = None

        # Authentication state
        self.auth_headers = {}

        # Initialize SSL context and authentication
        self._setup_ssl_context()
        self._setup_authentication()

    @property
    def name(self) -> str:
        return self.base_url

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            # Create unverified context
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        # Create default context
        self.ssl_context = ssl.create_default_context()

        # Load custom truststore if specified
        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

        # Load client certificate if specified
        keystore_file = self.config.get('keystore_file')
        if keystore_file:
            self._load_client_cert(keystore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom CA certificates."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)

            elif truststore_type == 'PKCS12':
                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                # Load PKCS12 and extract certificates
                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )

                # Convert certificates to PEM and load
                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(serialization.Encoding.PEM).decode('ascii'))
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(serialization.Encoding.PEM).decode('ascii'))

                if not ca_certs:
                    raise TfsAPIError(f"No certificates found in {truststore_file}")
                self.ssl_context.load_verify_locations(cadata='\n'.join(ca_certs))

            else:
                raise TfsAPIError(f"Unsupported truststore type: {truststore_type}")

            logger.info(f"Loaded {truststore_type} truststore: {truststore_file}")

        except TfsAPIError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise TfsAPIError(f"Truststore loading failed: {e}")

    def _load_client_cert(self, keystore_file: str):
        """Load client certificate for mutual TLS."""
        keystore_type = self.config.get('keystore_type', 'PEM').upper()
        keystore_password = self.config.get('keystore_password')

        try:
            if keystore_type == 'PEM':
                self.ssl_context.load_cert_chain(
                    keystore_file, self.config.get('key_file'), password=keystore_password
                )

            elif keystore_type == 'PKCS12':
                with open(keystore_file, 'rb') as f:
                    p12_data = f.read()

                private_key, certificate, _ = pkcs12.load_key_and_certificates(
                    p12_data, keystore_password.encode() if keystore_password else None
                )
                if not (private_key and certificate):
                    raise TfsAPIError(f"No key and certificate pair in {keystore_file}")

                # ssl only loads certificate chains from files
                with tempfile.NamedTemporaryFile(mode='wb', delete=False, suffix='.pem') as pem_file:
                    pem_file.write(certificate.public_bytes(serialization.Encoding.PEM))
                    pem_file.write(private_key.private_bytes(
                        encoding=serialization.Encoding.PEM,
                        format=serialization.PrivateFormat.PKCS8,
                        encryption_algorithm=serialization.NoEncryption()
                    ))
                    pem_path = pem_file.name
                try:
                    self.ssl_context.load_cert_chain(pem_path)
                finally:
                    os.unlink(pem_path)

            else:
                raise TfsAPIError(f"Unsupported keystore type: {keystore_type}")

            logger.info(f"Loaded {keystore_type} client certificate: {keystore_file}")

        except TfsAPIError:
            raise
        except Exception as e:
            logger.error(f"Failed to load client certificate {keystore_file}: {e}")
            raise TfsAPIError(f"Client certificate loading failed: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = (self.auth_config.get('method') or '').lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
            self.auth_headers['Authorization'] = f"Basic {credentials}"
            logger.debug(f"Configured Basic authentication for {self.name}")

        elif auth_method in ('token', 'pat'):
            # Personal access tokens go as basic auth with an empty user name
            token = self.auth_config.get('token')
            credentials = base64.b64encode(f":{token}".encode()).decode()
            self.auth_headers['Authorization'] = f"Basic {credentials}"
            logger.debug(f"Configured personal access token authentication for {self.name}")

        elif auth_method == 'bearer':
            self.auth_headers['Authorization'] = f"Bearer {self.auth_config.get('token')}"
            logger.debug(f"Configured Bearer token authentication for {self.name}")

        elif auth_method:
            raise TfsAPIError(f"Unknown authentication method '{auth_method}' for {self.name}")

        else:
            logger.debug(f"No authentication method configured for {self.name}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def build_path(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        """
        Join ``path`` to the base path and append the query string.

        api-version is added unless ``params`` sets it to None.
        """
        full_path = f"{self.base_path}/{path.lstrip('/')}"
        query = dict(params or {})
        query.setdefault('api-version', self.api_version)
        query = {key: value for key, value in query.items() if value is not None}
        if not query:
            return full_path
        return f"{full_path}?{urlencode(query, quote_via=quote)}"

    def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                body: Optional[Any] = None) -> Dict[str, Any]:
        """
        Make a JSON request to the server.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path: API path relative to base_url
            params: Query parameters (api-version is added)
            body: Request body, serialized as JSON

        Returns:
            Parsed response data ({} for an empty body)

        Raises:
            TfsAuthenticationError: On 401/403
            TfsConnectionError: If the server cannot be reached
            TfsAPIError: For any other failed request
        """
        # Build full path
        full_path = self.build_path(path, params)

        # Prepare headers
        request_headers = dict(self.auth_headers)
        request_headers['Accept'] = 'application/json'

        # Prepare body
        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)

            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (OSError, HTTPException) as e:
            self.close_connection()
            raise TfsConnectionError(f"Connection error to {self.name}: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")

        # Handle HTTP errors
        if response.status in (401, 403):
            raise TfsAuthenticationError(
                f"Authentication failed for {self.name}: HTTP {response.status}", response.status
            )
        if response.status >= 400:
            raise TfsAPIError(
                f"HTTP {response.status}: {self._error_message(response_data) or response.reason}",
                response.status
            )

        # Parse response
        try:
            return json.loads(response_data) if response_data else {}
        except json.JSONDecodeError as e:
            raise TfsAPIError(f"Invalid JSON response from {self.name}: {e}")

    def _error_message(self, response_data: str) -> Optional[str]:
        """Pull the server's error message out of a JSON error body."""
        try:
            return json.loads(response_data).get('message')
        except (ValueError, AttributeError):
            return None

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    # Abstract methods that identity services must implement

    @abstractmethod
    def authenticate(self) -> str:
        """
        Make sure the server accepts the configured credentials.

        Returns:
            Name of the authenticated user

        Raises:
            TfsAuthenticationError: If the credentials are rejected
        """
        pass

    @abstractmethod
    def list_collections(self) -> List[Collection]:
        """List the project collections of a configuration server."""
        pass

    @abstractmethod
    def list_valid_users(self, collection: Collection) -> List[Identity]:
        """
        Read the expanded membership of a collection's valid users group.

        The result is not filtered: groups and system identities are included.
        """
        pass

    @abstractmethod
    def resolve_identity(self, account_name: str) -> Optional[Identity]:
        """Look up an identity by account name; None when it does not exist."""
        pass

    @abstractmethod
    def add_member(self, group: Identity, member: Identity) -> None:
        """
        Add ``member`` to the container identity ``group``.

        Raises:
            TfsAPIError: If the server refuses the change
        """
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close_connection()
