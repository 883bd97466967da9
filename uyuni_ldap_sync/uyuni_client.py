"""
Uyuni XML-RPC API client.

This module wraps the Uyuni (Spacewalk) XML-RPC API: it sets up the SSL
context, logs in once per run and forwards named remote calls with the
session key prepended to their arguments.
"""

import ssl
import logging
import xmlrpc.client
from typing import Dict, Any, Optional
from urllib.parse import urlparse

from uyuni_ldap_sync.retry import retry_call, create_retry_callback, is_retryable_error, MaxRetriesExceeded
from uyuni_ldap_sync.logging_setup import security_logger

logger = logging.getLogger(__name__)


class UyuniAPIError(Exception):
    """Base exception for Uyuni API errors."""

    def __init__(self, message: str, fault_code: Optional[int] = None):
        super().__init__(message)
        self.fault_code = fault_code


class UyuniAuthenticationError(UyuniAPIError):
    """Raised when logging in to the Uyuni API fails."""
    pass


class UyuniConnectionError(UyuniAPIError):
    """Raised when the Uyuni server cannot be reached or answers garbage."""
    pass


class _TimeoutTransport(xmlrpc.client.Transport):
    """Plain HTTP transport with a socket timeout."""

    def __init__(self, timeout: float, **kwargs):
        super().__init__(**kwargs)
        self.timeout = timeout

    def make_connection(self, host):
        conn = super().make_connection(host)
        conn.timeout = self.timeout
        return conn


class _TimeoutSafeTransport(xmlrpc.client.SafeTransport):
    """HTTPS transport with a socket timeout."""

    def __init__(self, timeout: float, **kwargs):
        super().__init__(**kwargs)
        self.timeout = timeout

    def make_connection(self, host):
        conn = super().make_connection(host)
        conn.timeout = self.timeout
        return conn


class UyuniClient:
    """
    Session-based client for the Uyuni XML-RPC API.

    A single session key is obtained with ``auth.login`` and reused for
    every call of the run.
    """

    def __init__(self, config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None):
        """
        Initialize Uyuni API client.

        Args:
            config: ``spacewalk`` configuration section
            error_config: Retry settings used while logging in
        """
        self.config = config
        self.url = config['url']
        self.user = config['user']
        self.password = config['password']
        self.check_ssl = config.get('checkssl', True)
        self.timeout = config.get('timeout', 30)

        error_config = error_config or {}
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.parsed_url = urlparse(self.url)
        self.ssl_context = None
        self._session = None

        self._setup_ssl_context()
        self.proxy = xmlrpc.client.ServerProxy(self.url, transport=self._create_transport(), allow_none=True)

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.check_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.url}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_cert_file = self.config.get('ca_cert_file')
        if ca_cert_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_cert_file)
                logger.info(f"Loaded PEM CA bundle: {ca_cert_file}")
            except (OSError, ssl.SSLError) as e:
                raise UyuniAPIError(f"Failed to load CA bundle {ca_cert_file}: {e}")

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_pkcs12_truststore(truststore_file)

    def _load_pkcs12_truststore(self, truststore_file: str):
        """Load CA certificates from a PKCS12 truststore."""
        truststore_password = self.config.get('truststore_password')

        try:
            from cryptography.hazmat.primitives import serialization
            from cryptography.hazmat.primitives.serialization import pkcs12
        except ImportError:
            logger.error("cryptography library not available for PKCS12 truststore support")
            raise UyuniAPIError("PKCS12 truststore requires cryptography library")

        try:
            with open(truststore_file, 'rb') as f:
                p12_data = f.read()

            _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                p12_data, truststore_password.encode() if truststore_password else None
            )

            ca_certs = []
            if certificate:
                ca_certs.append(certificate.public_bytes(serialization.Encoding.PEM))
            for cert in (additional_certificates or []):
                ca_certs.append(cert.public_bytes(serialization.Encoding.PEM))

            if ca_certs:
                self.ssl_context.load_verify_locations(cadata=b'\n'.join(ca_certs).decode('ascii'))
                logger.info(f"Loaded PKCS12 truststore: {truststore_file}")
            else:
                logger.warning(f"PKCS12 truststore contains no certificates: {truststore_file}")
        except (OSError, ValueError, ssl.SSLError) as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise UyuniAPIError(f"Truststore loading failed: {e}")

    def _create_transport(self) -> xmlrpc.client.Transport:
        if self.parsed_url.scheme == 'https':
            return _TimeoutSafeTransport(self.timeout, context=self.ssl_context)
        return _TimeoutTransport(self.timeout)

    def _invoke(self, method: str, *args) -> Any:
        """Invoke a remote method, translating transport failures."""
        target = self.proxy
        for name in method.split('.'):
            target = getattr(target, name)
        try:
            return target(*args)
        except xmlrpc.client.Fault as e:
            raise UyuniAPIError(f"{method} failed: {e.faultString}", fault_code=e.faultCode)
        except xmlrpc.client.ProtocolError as e:
            raise UyuniConnectionError(f"{method} failed: HTTP {e.errcode} {e.errmsg}")
        except (OSError, xmlrpc.client.ResponseError) as e:
            raise UyuniConnectionError(f"{method} failed: {e}")

    def _login_once(self) -> str:
        try:
            return self._invoke('auth.login', self.user, self.password)
        except UyuniAPIError as e:
            if e.fault_code is not None:
                # Rejected credentials, retrying will not help
                raise UyuniAuthenticationError(f"Authentication failed for {self.user}: {e}")
            raise

    def login(self) -> str:
        """
        Log in and store the session key.

        Returns:
            The session key

        Raises:
            UyuniAuthenticationError: If credentials are rejected or the server stays unreachable
        """
        try:
            self._session = retry_call(
                self._login_once,
                max_attempts=max(1, self.max_retries),
                delay=self.retry_wait,
                exceptions=(UyuniConnectionError,),
                on_retry=create_retry_callback("Uyuni login")
            )
        except UyuniAuthenticationError:
            security_logger.log_authentication_attempt('uyuni', self.user, False)
            raise
        except MaxRetriesExceeded as e:
            security_logger.log_authentication_attempt('uyuni', self.user, False)
            if is_retryable_error(e.last_exception):
                logger.warning(f"Uyuni server unreachable after {e.attempts} attempts")
            raise UyuniAuthenticationError(f"Unable to log in to {self.url}: {e.last_exception}")

        security_logger.log_authentication_attempt('uyuni', self.user, True)
        logger.info(f"Logged in to Uyuni API at {self.url} as {self.user}")
        return self._session

    def session(self) -> str:
        """Return the session key, logging in on first use."""
        if self._session is None:
            self.login()
        return self._session

    def call(self, method: str, *args) -> Any:
        """
        Call a session-bound API method.

        Args:
            method: Dotted API method name, e.g. ``user.listRoles``
            *args: Method arguments following the session key

        Returns:
            The decoded XML-RPC result

        Raises:
            UyuniAPIError: On XML-RPC fault or transport failure
        """
        logger.debug(f"Calling {method} with {len(args)} arguments")
        return self._invoke(method, self.session(), *args)

    def logout(self):
        """End the API session."""
        if self._session is None:
            return
        try:
            self._invoke('auth.logout', self._session)
            logger.debug("Uyuni API session closed")
        except UyuniAPIError as e:
            logger.warning(f"Error closing Uyuni API session: {e}")
        finally:
            self._session = None
