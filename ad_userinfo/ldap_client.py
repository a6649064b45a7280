"""
LDAP client for connecting to and querying Active Directory.

This module owns the ldap3 server object and hands out bound sessions that
are released when the caller leaves the ``with`` block.
"""

import os
import ssl
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from ldap3 import ALL, BASE, KERBEROS, NTLM, SASL, SIMPLE, SUBTREE, Connection, Server, Tls
from ldap3.core.exceptions import LDAPException

from .config import ConnectionConfig
from .logging_setup import security_logger
from .models import DirectoryEntry

logger = logging.getLogger(__name__)


PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

RESULT_SUCCESS = 0
RESULT_SIZE_LIMIT_EXCEEDED = 4
RESULT_NO_SUCH_OBJECT = 32


class DirectoryConnectionError(Exception):
    """Raised when the directory server cannot be reached or bound to."""
    pass


class DirectoryQueryError(Exception):
    """Raised when the directory rejects a search."""
    pass


def domain_to_base_dn(domain: str) -> str:
    """Turn ``corp.example.com`` into ``DC=corp,DC=example,DC=com``."""
    domain = (domain or '').strip().strip('.')
    if not domain:
        return ''
    return ','.join(f"DC={part}" for part in domain.split('.') if part)


class DirectorySession:
    """A bound connection and the search base it was opened for."""

    def __init__(self, connection: Connection, search_base: str, page_size: int = 1000):
        self.connection = connection
        self.search_base = search_base
        self.page_size = page_size

    def search(self, search_filter: str, attributes: Optional[Sequence[str]] = None,
               size_limit: int = 0) -> List[DirectoryEntry]:
        """
        Run a paged subtree search under the session's search base.

        Args:
            search_filter: LDAP filter
            attributes: Attributes to load
            size_limit: Maximum number of entries, 0 for no limit

        Returns:
            List of matching entries

        Raises:
            DirectoryQueryError: If the server rejects the search
        """
        logger.debug(f"Searching with filter: {search_filter} in base: {self.search_base}")

        entries = []
        cookie = None
        page_count = 0
        while True:
            self.connection.search(
                search_base=self.search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=list(attributes) if attributes else None,
                size_limit=size_limit,
                paged_size=self.page_size,
                paged_cookie=cookie
            )
            self._check_result(search_filter)
            page_count += 1
            entries.extend(self._collect_entries())

            if size_limit and len(entries) >= size_limit:
                return entries[:size_limit]

            cookie = self._paged_cookie()
            if not cookie:
                break

        logger.debug(f"Retrieved {len(entries)} entries across {page_count} pages")
        return entries

    def read(self, dn: str, attributes: Optional[Sequence[str]] = None,
             search_filter: str = '(objectClass=*)') -> Optional[DirectoryEntry]:
        """
        Read a single entry by distinguished name.

        Returns:
            The entry, or None if no object exists at ``dn``
        """
        self.connection.search(
            search_base=dn,
            search_filter=search_filter,
            search_scope=BASE,
            attributes=list(attributes) if attributes else None
        )
        if self.connection.result.get('result') == RESULT_NO_SUCH_OBJECT:
            return None
        self._check_result(search_filter)
        entries = self._collect_entries()
        return entries[0] if entries else None

    def _check_result(self, search_filter: str):
        result = self.connection.result or {}
        if result.get('result') not in (RESULT_SUCCESS, RESULT_SIZE_LIMIT_EXCEEDED):
            raise DirectoryQueryError(
                f"Search failed for {search_filter}: {result.get('description')} {result.get('message', '')}".strip()
            )

    def _collect_entries(self) -> List[DirectoryEntry]:
        entries = []
        for item in self.connection.response or []:
            if item.get('type') != 'searchResEntry':
                continue
            entries.append(DirectoryEntry(dn=item.get('dn', ''), attributes=dict(item.get('attributes') or {})))
        return entries

    def _paged_cookie(self) -> Optional[bytes]:
        controls = (self.connection.result or {}).get('controls') or {}
        control = controls.get(PAGED_RESULTS_OID)
        if not control:
            return None
        return control.get('value', {}).get('cookie') or None


class LDAPClient:
    """
    LDAP client for an Active Directory domain.

    Each call to :meth:`session` opens and binds a new connection, so one
    client can serve several threads at once.
    """

    def __init__(self, config: ConnectionConfig):
        """
        Initialize LDAP client with connection settings.

        Args:
            config: Connection configuration
        """
        self.config = config
        self.server_url = config.server_url or config.domain or os.getenv('USERDNSDOMAIN')
        self.use_ssl = config.use_ssl or bool(self.server_url and self.server_url.lower().startswith('ldaps://'))
        self._server = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.config.start_tls):
            return None

        tls_config = {
            'validate': ssl.CERT_REQUIRED if self.config.verify_ssl else ssl.CERT_NONE
        }
        if not self.config.verify_ssl:
            logger.warning("SSL certificate verification disabled")
        if self.config.ca_cert_file:
            tls_config['ca_certs_file'] = self.config.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.config.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise DirectoryConnectionError(f"Failed to create TLS configuration: {e}") from e

    def _get_server(self) -> Server:
        if self._server is None:
            if not self.server_url:
                raise DirectoryConnectionError(
                    "No domain configured and USERDNSDOMAIN is not set; cannot locate a domain controller"
                )
            try:
                self._server = Server(
                    self.server_url,
                    use_ssl=self.use_ssl,
                    tls=self._create_tls_config(),
                    get_info=ALL,
                    connect_timeout=self.config.connection_timeout
                )
            except LDAPException as e:
                raise DirectoryConnectionError(f"Failed to create LDAP server: {e}") from e
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, "
                         f"StartTLS: {self.config.start_tls})")
        return self._server

    def _domain_name(self) -> Optional[str]:
        """DNS name used to qualify bare account names; the logon domain when none is configured."""
        return self.config.domain or os.getenv('USERDNSDOMAIN')

    def _bind_arguments(self, username: Optional[str], password: Optional[str],
                        method: Optional[str] = None) -> Dict[str, Any]:
        """Choose the bind mechanism and identity for a username."""
        method = method or self.config.authentication
        if method == 'auto':
            if not username:
                method = 'kerberos'
            elif '\\' in username:
                method = 'ntlm'
            else:
                method = 'simple'

        if method == 'kerberos':
            return {'authentication': SASL, 'sasl_mechanism': KERBEROS}

        if method == 'ntlm':
            if '\\' not in username:
                netbios = (self._domain_name() or '').split('.')[0].upper()
                username = f"{netbios}\\{username}"
            return {'authentication': NTLM, 'user': username, 'password': password}

        domain = self._domain_name()
        if '@' not in username and '=' not in username and domain:
            username = f"{username}@{domain}"
        return {'authentication': SIMPLE, 'user': username, 'password': password}

    def _open(self, username: Optional[str], password: Optional[str],
              method: Optional[str] = None) -> Connection:
        """Open a connection without binding it."""
        connection = Connection(
            self._get_server(),
            auto_bind=False,
            receive_timeout=self.config.receive_timeout,
            **self._bind_arguments(username, password, method)
        )
        if not connection.open():
            raise DirectoryConnectionError(f"Failed to open connection: {connection.result}")
        if self.config.start_tls and not self.use_ssl:
            if not connection.start_tls():
                raise DirectoryConnectionError(f"Failed to start TLS: {connection.result}")
            logger.debug("StartTLS negotiation successful")
        return connection

    def _get_search_base(self, connection: Connection) -> str:
        """Derive the search base from the container, the domain or the server's root DSE."""
        if self.config.container:
            return self.config.container
        if self.config.domain:
            return domain_to_base_dn(self.config.domain)

        info = connection.server.info
        if info is not None:
            default_context = (info.other or {}).get('defaultNamingContext')
            if default_context:
                return default_context[0]
            if info.naming_contexts:
                return info.naming_contexts[0]

        raise DirectoryConnectionError("Cannot determine the default naming context")

    @contextmanager
    def session(self) -> Iterator[DirectorySession]:
        """
        Open a bound session with the configured identity.

        The connection is unbound when the block exits, including on errors.

        Raises:
            DirectoryConnectionError: If the connection or bind fails
        """
        connection = None
        try:
            try:
                connection = self._open(self.config.username, self.config.password)
                if not connection.bind():
                    raise DirectoryConnectionError(f"Bind failed: {connection.result}")
            except LDAPException as e:
                raise DirectoryConnectionError(f"Failed to connect to {self.server_url}: {e}") from e

            identity = self.config.username or 'current user'
            security_logger.log_directory_bind(self.config.search_path, identity)
            yield DirectorySession(connection, self._get_search_base(connection), self.config.page_size)
        finally:
            if connection is not None:
                try:
                    connection.unbind()
                except LDAPException as e:
                    logger.warning(f"Error closing LDAP connection: {e}")

    def check_credentials(self, username: str, password: str) -> bool:
        """
        Check a username and password by binding with them.

        Returns:
            True if the bind succeeded

        Raises:
            DirectoryConnectionError: If the server cannot be reached
        """
        if not username or not password:
            # an empty password would be an unauthenticated bind, which always succeeds
            return False

        connection = None
        try:
            method = 'ntlm' if '\\' in username else 'simple'
            connection = self._open(username, password, method)
            return bool(connection.bind())
        except LDAPException as e:
            raise DirectoryConnectionError(f"Credential check against {self.server_url} failed: {e}") from e
        finally:
            if connection is not None:
                try:
                    connection.unbind()
                except LDAPException:
                    pass

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if a bound session could be opened
        """
        try:
            with self.session() as session:
                logger.debug(f"Connection test succeeded, search base {session.search_base}")
            return True
        except Exception as e:
            logger.debug(f"Connection test failed: {e}")
            return False
