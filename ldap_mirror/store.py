"""
Local directory store.

The mirror writes into a :class:`DirectoryStore`. The default implementation
keeps the directory information tree in memory using the ldap3 mock strategy
and hands out bound ldap3 connections to local clients.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Tuple
from ldap3 import (Server, Connection, MOCK_SYNC, NONE, BASE, LEVEL, SUBTREE,
                   ALL_ATTRIBUTES, MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE)
from ldap3.core.exceptions import LDAPException

from ldap_mirror.entry import DirectoryEntry, normalize_dn, parent_dn, is_within
from ldap_mirror.logging_setup import security_logger

logger = logging.getLogger(__name__)

SCHEMA_DN = 'cn=schema'
ADMIN_DN = 'cn=Directory Manager'

SEARCH_SCOPES = {
    'base': BASE,
    'one': LEVEL,
    'level': LEVEL,
    'sub': SUBTREE,
    'subtree': SUBTREE,
}

MODIFY_OPERATIONS = {
    'add': MODIFY_ADD,
    'delete': MODIFY_DELETE,
    'replace': MODIFY_REPLACE,
}


class DirectoryStoreError(Exception):
    """Raised when the store rejects an operation."""
    pass


class StoreStartError(Exception):
    """Raised when the store cannot start serving."""
    pass


# (operation, attribute, values); operation is 'add', 'delete' or 'replace'
Modification = Tuple[str, str, List[Any]]


class DirectoryStore(ABC):
    """Contract for the local directory the mirror writes into."""

    @abstractmethod
    def start_listening(self) -> None:
        """Start serving. Raises StoreStartError on failure."""
        pass

    @abstractmethod
    def shut_down(self) -> None:
        """Stop serving and release resources. Must be idempotent."""
        pass

    @property
    @abstractmethod
    def is_listening(self) -> bool:
        pass

    @abstractmethod
    def add_entry(self, entry: DirectoryEntry) -> None:
        pass

    @abstractmethod
    def modify_entry(self, dn: str, modifications: List[Modification]) -> None:
        pass

    @abstractmethod
    def delete_entry(self, dn: str) -> None:
        pass

    @abstractmethod
    def search(self, base: str, search_filter: str = '(objectClass=*)',
               scope: str = 'subtree') -> List[DirectoryEntry]:
        pass

    @abstractmethod
    def entry_count(self) -> int:
        pass

    def apply_change(self, record) -> None:
        """
        Apply one LDIF change record.

        Args:
            record: :class:`ldap_mirror.ldif.ChangeRecord`
        """
        if record.changetype == 'add':
            self.add_entry(DirectoryEntry(record.dn, record.attributes))
        elif record.changetype == 'modify':
            self.modify_entry(record.dn, record.modifications)
        elif record.changetype == 'delete':
            self.delete_entry(record.dn)
        else:
            raise DirectoryStoreError(f"Unsupported change type {record.changetype} for {record.dn}")


class InMemoryDirectoryStore(DirectoryStore):
    """
    In-memory directory built on the ldap3 ``MOCK_SYNC`` strategy.

    Only entries below one of the configured base DNs are accepted, and every
    entry except a base DN itself needs an existing parent. Additional bind
    credentials configured for the store can open connections through
    :meth:`open_connection`.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Args:
            config: ``store`` section of the configuration
        """
        self.config = config
        self.host = config.get('host', 'localhost')
        self.port = config.get('port', 44484)
        self.base_dns = list(config.get('base_dns', []))
        self.bind_credentials = {
            cred['bind_dn']: cred['password'] for cred in config.get('bind_credentials', [])
        }

        self._server = None
        self._connection = None
        self._client_connections: List[Connection] = []
        self._index: Dict[str, str] = {}
        self._listening = False

    @property
    def server_name(self) -> str:
        return f"ldap://{self.host}:{self.port}"

    @property
    def is_listening(self) -> bool:
        return self._listening

    def start_listening(self) -> None:
        if self._listening:
            logger.debug(f"Store {self.server_name} already listening")
            return
        if not self.base_dns:
            raise StoreStartError("At least one base DN is required")

        admin_password = uuid.uuid4().hex
        try:
            for base in self.base_dns:
                normalize_dn(base)
            self._server = Server(self.server_name, get_info=NONE)
            self._connection = Connection(self._server, user=ADMIN_DN, password=admin_password,
                                          client_strategy=MOCK_SYNC)
            strategy = self._connection.strategy
            strategy.add_entry(ADMIN_DN, {'objectClass': ['person'], 'cn': ['Directory Manager'],
                                          'sn': ['Manager'], 'userPassword': admin_password})
            for bind_dn, password in self.bind_credentials.items():
                strategy.add_entry(bind_dn, {'userPassword': password})
            strategy.add_entry(SCHEMA_DN, {'objectClass': ['top', 'subschema'], 'cn': ['schema']})

            if not self._connection.bind():
                raise StoreStartError(f"Administrative bind failed: {self._connection.result}")
        except StoreStartError:
            self._reset()
            raise
        except (LDAPException, ValueError, TypeError) as e:
            self._reset()
            raise StoreStartError(f"Failed to start directory store on {self.server_name}: {e}") from e

        self._listening = True
        logger.info(f"In-memory directory store ready, local connections only "
                    f"(mock server {self.server_name}, base DNs: {', '.join(self.base_dns)})")

    def shut_down(self) -> None:
        if not self._listening and self._connection is None:
            return
        for connection in self._client_connections:
            self._unbind_quietly(connection)
        self._unbind_quietly(self._connection)
        self._reset()
        logger.info(f"In-memory directory store on {self.server_name} shut down")

    def _reset(self):
        self._server = None
        self._connection = None
        self._client_connections = []
        self._index = {}
        self._listening = False

    @staticmethod
    def _unbind_quietly(connection: Optional[Connection]):
        if connection is None:
            return
        try:
            connection.unbind()
        except LDAPException as e:
            logger.debug(f"Ignoring error while unbinding: {e}")

    def _require_listening(self):
        if not self._listening:
            raise DirectoryStoreError("Directory store is not listening")

    @staticmethod
    def _normalize(dn: str) -> str:
        try:
            return normalize_dn(dn)
        except ValueError as e:
            raise DirectoryStoreError(str(e)) from e

    def _is_base_dn(self, normalized: str) -> bool:
        return any(normalized == normalize_dn(base) for base in self.base_dns)

    def add_entry(self, entry: DirectoryEntry) -> None:
        self._require_listening()
        normalized = self._normalize(entry.dn)

        if not any(is_within(normalized, base) for base in self.base_dns):
            raise DirectoryStoreError(f"Entry {entry.dn} is not within any base DN")
        if normalized in self._index:
            raise DirectoryStoreError(f"Entry {entry.dn} already exists")
        parent = parent_dn(normalized)
        if not self._is_base_dn(normalized) and parent not in self._index:
            raise DirectoryStoreError(f"Parent entry of {entry.dn} does not exist")

        attributes = {name: list(values) for name, values in entry.attributes.items()}
        try:
            success = self._connection.add(entry.dn, attributes=attributes)
        except LDAPException as e:
            raise DirectoryStoreError(f"Failed to add {entry.dn}: {e}") from e
        if not success:
            raise DirectoryStoreError(f"Failed to add {entry.dn}: "
                                      f"{self._connection.result.get('description')}")

        self._index[normalized] = entry.dn
        logger.debug(f"Added entry {entry.dn}")

    def modify_entry(self, dn: str, modifications: List[Modification]) -> None:
        self._require_listening()
        changes = {}
        for operation, attribute, values in modifications:
            if operation not in MODIFY_OPERATIONS:
                raise DirectoryStoreError(f"Unsupported modification {operation} for {dn}")
            changes.setdefault(attribute, []).append((MODIFY_OPERATIONS[operation], list(values)))

        try:
            success = self._connection.modify(dn, changes)
        except LDAPException as e:
            raise DirectoryStoreError(f"Failed to modify {dn}: {e}") from e
        if not success:
            raise DirectoryStoreError(f"Failed to modify {dn}: "
                                      f"{self._connection.result.get('description')}")
        logger.debug(f"Modified entry {dn}")

    def delete_entry(self, dn: str) -> None:
        self._require_listening()
        normalized = self._normalize(dn)
        if normalized not in self._index:
            raise DirectoryStoreError(f"Entry {dn} does not exist")
        if any(parent_dn(child) == normalized for child in self._index):
            raise DirectoryStoreError(f"Entry {dn} has children")

        try:
            success = self._connection.delete(self._index[normalized])
        except LDAPException as e:
            raise DirectoryStoreError(f"Failed to delete {dn}: {e}") from e
        if not success:
            raise DirectoryStoreError(f"Failed to delete {dn}: "
                                      f"{self._connection.result.get('description')}")
        del self._index[normalized]
        logger.debug(f"Deleted entry {dn}")

    def search(self, base: str, search_filter: str = '(objectClass=*)',
               scope: str = 'subtree') -> List[DirectoryEntry]:
        self._require_listening()
        if scope not in SEARCH_SCOPES:
            raise DirectoryStoreError(f"Unknown search scope: {scope}")
        try:
            self._connection.search(base, search_filter, search_scope=SEARCH_SCOPES[scope],
                                    attributes=ALL_ATTRIBUTES)
        except LDAPException as e:
            raise DirectoryStoreError(f"Search under {base} failed: {e}") from e
        return [DirectoryEntry(item.entry_dn, item.entry_attributes_as_dict)
                for item in self._connection.entries]

    def contains(self, dn: str) -> bool:
        return self._normalize(dn) in self._index

    def entry_count(self) -> int:
        return len(self._index)

    def open_connection(self, bind_dn: str, password: str) -> Connection:
        """
        Open a bound connection to the in-memory directory.

        Raises:
            DirectoryStoreError: If the store is not listening or the
                credentials are not accepted
        """
        self._require_listening()
        connection = Connection(self._server, user=bind_dn, password=password,
                                client_strategy=MOCK_SYNC)
        if not connection.bind():
            security_logger.log_bind_attempt(self.server_name, bind_dn, False)
            raise DirectoryStoreError(f"Invalid credentials for {bind_dn}")
        security_logger.log_bind_attempt(self.server_name, bind_dn, True)
        self._client_connections.append(connection)
        return connection

    def get_store_stats(self) -> Dict[str, Any]:
        return {
            'server': self.server_name,
            'listening': self._listening,
            'base_dns': self.base_dns,
            'entries': self.entry_count(),
            'bind_identities': list(self.bind_credentials),
        }
