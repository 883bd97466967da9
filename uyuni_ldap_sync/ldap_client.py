"""
LDAP client for connecting to and querying LDAP directories.

This module provides a single long-lived directory session and a subtree
search that returns entries with multi-valued attributes.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, ALL, ALL_ATTRIBUTES, DEREF_NEVER, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError

from uyuni_ldap_sync.retry import retry_call, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

RESULT_SUCCESS = 0
# Result code returned when the search base does not exist
NO_SUCH_OBJECT = 32

PAGED_RESULTS_CONTROL = '1.2.840.113556.1.4.319'


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class DirectoryEntry:
    """
    A single directory entry returned by a search.

    Attribute names are case-insensitive, as they are in LDAP.
    """

    def __init__(self, dn: str, attributes: Optional[Dict[str, Any]] = None):
        self.dn = dn
        self._attributes = {}
        for name, values in (attributes or {}).items():
            if values is None:
                values = []
            elif not isinstance(values, (list, tuple)):
                values = [values]
            self._attributes[name.lower()] = [self._to_str(v) for v in values]

    @staticmethod
    def _to_str(value: Any) -> str:
        if isinstance(value, bytes):
            return value.decode('utf-8', errors='replace')
        return str(value)

    def get_values(self, name: str) -> List[str]:
        """Return every value of an attribute, or an empty list."""
        return list(self._attributes.get(name.lower(), []))

    def get_value(self, name: str) -> str:
        """Return the first value of an attribute, or an empty string."""
        values = self._attributes.get(name.lower())
        return values[0] if values else ''

    def __repr__(self):
        return f"DirectoryEntry({self.dn!r})"


class LDAPClient:
    """
    LDAP client for connecting to and querying LDAP directories.

    One bound connection is opened per run and reused for every search.
    """

    def __init__(self, config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None):
        """
        Initialize LDAP client with configuration.

        Args:
            config: Directory configuration dictionary
            error_config: Retry settings used while establishing the connection
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 500)

        error_config = error_config or {}
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Does nothing if the client is already connected.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        if self._connected:
            return True

        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait if retry_wait is not None else self.retry_wait

        try:
            tls_config = self._create_tls_config()
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=tls_config,
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        try:
            retry_call(
                self._open_connection,
                max_attempts=max(1, max_retries),
                delay=retry_wait,
                exceptions=(LDAPSocketOpenError, LDAPBindError, LDAPException, LDAPConnectionError),
                on_retry=create_retry_callback("LDAP connection")
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(
                f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}")

        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _open_connection(self):
        """Open, secure and bind a single connection attempt."""
        self.connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            if not self.connection.open():
                raise LDAPConnectionError(f"Failed to open connection: {self.connection.result}")

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise LDAPBindError(f"Bind failed: {self.connection.result}")
        except Exception:
            self._drop_connection()
            raise

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while dropping LDAP connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

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

    def search(self, base_dn: str, search_filter: str = '(objectClass=*)',
               attributes: Any = ALL_ATTRIBUTES) -> List[DirectoryEntry]:
        """
        Run a whole-subtree search without dereferencing aliases.

        A search base that does not exist yields an empty result.

        Args:
            base_dn: Distinguished name to search under
            search_filter: LDAP filter string
            attributes: Attribute names to fetch (all user attributes by default)

        Returns:
            List of matching directory entries

        Raises:
            LDAPQueryError: If not connected or the search fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        logger.debug(f"Searching with filter: {search_filter} in base: {base_dn}")

        entries = []
        cookie = None
        try:
            while True:
                kwargs = {}
                if self.page_size:
                    kwargs['paged_size'] = self.page_size
                    if cookie:
                        kwargs['paged_cookie'] = cookie

                success = self.connection.search(
                    search_base=base_dn,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    dereference_aliases=DEREF_NEVER,
                    attributes=attributes,
                    **kwargs
                )

                # ldap3 reports a successful search without matches as False
                if not success:
                    result_code = self.connection.result.get('result')
                    if result_code == NO_SUCH_OBJECT:
                        logger.debug(f"Search base does not exist: {base_dn}")
                        return entries
                    if result_code != RESULT_SUCCESS:
                        raise LDAPQueryError(f"Search failed: {self.connection.result}")

                entries.extend(self._process_search_results())

                cookie = self._paged_cookie()
                if not cookie:
                    break
        except LDAPQueryError:
            raise
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP query failed: {e}")
        except Exception as e:
            raise LDAPQueryError(f"Unexpected error during LDAP query: {e}")

        logger.debug(f"Search in {base_dn} returned {len(entries)} entries")
        return entries

    def _paged_cookie(self) -> Optional[bytes]:
        """Return the paged results cookie of the last search, if any."""
        controls = self.connection.result.get('controls') or {}
        control = controls.get(PAGED_RESULTS_CONTROL)
        if not control:
            return None
        return control.get('value', {}).get('cookie') or None

    def _process_search_results(self) -> List[DirectoryEntry]:
        """Convert the entries of the last search into DirectoryEntry objects."""
        return [
            DirectoryEntry(str(entry.entry_dn), entry.entry_attributes_as_dict)
            for entry in self.connection.entries
        ]

