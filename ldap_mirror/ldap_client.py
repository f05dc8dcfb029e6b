"""
LDAP client for connecting to and querying the source directory.

This module opens authenticated sessions against the remote directory and
executes single pages of a Simple Paged Results search. Continuation state
(the paging cookie) is owned entirely by the caller.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, ALL_ATTRIBUTES, Tls
from ldap3.core.exceptions import LDAPException
from ldap3.core.results import RESULT_SUCCESS

from ldap_mirror.entry import DirectoryEntry
from ldap_mirror.logging_setup import security_logger

logger = logging.getLogger(__name__)

PAGED_RESULTS_CONTROL_OID = '1.2.840.113556.1.4.319'


class LDAPConnectionError(Exception):
    """Raised when a session to the source directory cannot be established."""
    pass


class LDAPQueryError(Exception):
    """Raised when fetching a page of search results fails."""
    pass


class SearchPage:
    """One page of search results plus the server's continuation information."""

    def __init__(self, entries: List[DirectoryEntry], cookie: Optional[bytes] = None,
                 more_results: bool = False):
        self.entries = entries
        self.cookie = cookie
        self.more_results = more_results

    def __len__(self):
        return len(self.entries)

    def __repr__(self):
        return (f"SearchPage({len(self.entries)} entries, "
                f"more_results={self.more_results})")


class RemoteSession:
    """
    A bound connection to the source directory.

    Usable as a context manager; the connection is unbound on exit.
    """

    def __init__(self, connection: Connection, server_name: str):
        self.connection = connection
        self.server_name = server_name
        self.closed = False

    def close(self):
        """Unbind the connection. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        try:
            self.connection.unbind()
            logger.debug(f"Session to {self.server_name} closed")
        except Exception as e:
            logger.warning(f"Error closing session to {self.server_name}: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class LDAPClient:
    """
    Client for the remote (source) directory.

    Holds only static configuration. Every call to :meth:`fetch_page` is
    independent; the paging cookie is passed in and handed back.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: ``source`` section of the configuration
        """
        self.config = config
        self.host = config['host']
        self.port = config.get('port', 389)
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.search_base = config.get('search_base', '')
        self.attributes = config.get('attributes', [ALL_ATTRIBUTES])
        self.page_size = config.get('page_size', 250)

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', False)
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)

    @property
    def server_name(self) -> str:
        scheme = 'ldaps' if self.use_ssl else 'ldap'
        return f"{scheme}://{self.host}:{self.port}"

    def connect(self) -> RemoteSession:
        """
        Open and bind a session to the source directory.

        Returns:
            Bound session

        Raises:
            LDAPConnectionError: On server creation, socket, TLS or bind
                failure. The original exception is chained as the cause.
        """
        try:
            tls_config = self._create_tls_config()
            server = Server(
                self.host,
                port=self.port,
                use_ssl=self.use_ssl,
                tls=tls_config,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_name} "
                         f"(SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}") from e

        connection = None
        try:
            connection = Connection(
                server,
                user=self.bind_dn,
                password=self.bind_password,
                auto_bind=False,
                receive_timeout=self.receive_timeout
            )

            connection.open()
            if connection.closed:
                raise LDAPConnectionError(f"Failed to open connection: {connection.result}")

            if self.start_tls and not self.use_ssl:
                if not connection.start_tls():
                    raise LDAPConnectionError(f"Failed to start TLS: {connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not connection.bind():
                raise LDAPConnectionError(f"Bind failed: {connection.result}")

        except LDAPConnectionError:
            security_logger.log_bind_attempt(self.server_name, self.bind_dn, False)
            self._discard(connection)
            raise
        except LDAPException as e:
            security_logger.log_bind_attempt(self.server_name, self.bind_dn, False)
            self._discard(connection)
            raise LDAPConnectionError(f"Failed to connect to {self.server_name}: {e}") from e

        security_logger.log_bind_attempt(self.server_name, self.bind_dn, True)
        logger.info(f"Successfully connected and bound to LDAP server {self.server_name}")
        return RemoteSession(connection, self.server_name)

    def _discard(self, connection: Optional[Connection]):
        if connection is None:
            return
        try:
            connection.unbind()
        except Exception as e:
            logger.debug(f"Ignoring error while discarding failed connection: {e}")

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
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}") from e

    def fetch_page(self, session: RemoteSession, cookie: Optional[bytes], query: str) -> SearchPage:
        """
        Fetch one page of results for ``query``.

        Args:
            session: Bound session from :meth:`connect`
            cookie: Continuation cookie from the previous page, None for the first
            query: LDAP filter string

        Returns:
            The page's entries with the next cookie and the more-results flag

        Raises:
            LDAPQueryError: If the filter is rejected or the search fails
        """
        if session.closed:
            raise LDAPQueryError("Session is closed")

        connection = session.connection
        try:
            connection.search(
                search_base=self.search_base,
                search_filter=query,
                search_scope=SUBTREE,
                attributes=self.attributes,
                paged_size=self.page_size,
                paged_cookie=cookie
            )
        except LDAPException as e:
            raise LDAPQueryError(f"Search for {query} failed: {e}") from e

        # search() also returns False for a successful search with no entries
        result = connection.result or {}
        if result.get('result') != RESULT_SUCCESS:
            raise LDAPQueryError(f"Search for {query} failed: "
                                 f"{result.get('description', 'unknown error')} "
                                 f"({result.get('result', '?')})")

        entries = [self._to_entry(item) for item in (connection.response or [])
                   if item.get('type') == 'searchResEntry']
        next_cookie = self._extract_cookie(connection.result or {})
        page = SearchPage(entries, next_cookie, more_results=bool(next_cookie))
        logger.debug(f"Fetched page with {len(entries)} entries for {query} "
                     f"(more results: {page.more_results})")
        return page

    def _extract_cookie(self, result: Dict[str, Any]) -> Optional[bytes]:
        controls = result.get('controls') or {}
        control = controls.get(PAGED_RESULTS_CONTROL_OID)
        if not control:
            return None
        return control.get('value', {}).get('cookie') or None

    def _to_entry(self, item: Dict[str, Any]) -> DirectoryEntry:
        """Convert an ldap3 response item, keeping the raw values in order."""
        attributes = {}
        for name, raw_values in item.get('raw_attributes', {}).items():
            attributes[name] = [self._decode_value(value) for value in raw_values]
        return DirectoryEntry(item['dn'], attributes)

    @staticmethod
    def _decode_value(value):
        if isinstance(value, bytes):
            try:
                return value.decode('utf-8')
            except UnicodeDecodeError:
                return value
        return value

    def test_connection(self) -> bool:
        """
        Test connectivity to the source without throwing exceptions.

        Returns:
            True if a session could be opened and bound
        """
        try:
            with self.connect():
                return True
        except LDAPConnectionError as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def get_connection_stats(self) -> Dict[str, Any]:
        """
        Get the client's connection settings for diagnostics.

        Returns:
            Dictionary with connection information
        """
        return {
            'server': self.server_name,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'bind_dn': self.bind_dn,
            'search_base': self.search_base,
            'page_size': self.page_size
        }
