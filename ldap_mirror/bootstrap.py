"""
Bootstrap loading of the static schema and organizational hierarchy.

Both resources are LDIF files applied to the store in a fixed order before any
entries are mirrored. Unless configured otherwise the files shipped in
``ldap_mirror/resources`` are used.
"""

import logging
import os
from importlib import resources
from typing import Dict, Any, Optional

from ldap_mirror.ldif import LDIFError, read_ldif_file
from ldap_mirror.store import DirectoryStore, DirectoryStoreError

logger = logging.getLogger(__name__)

SCHEMA_RESOURCE = 'schema.ldif'
HIERARCHY_RESOURCE = 'hierarchy.ldif'


class BootstrapError(Exception):
    """Raised when a bootstrap resource is malformed or cannot be applied."""
    pass


def default_resource_path(name: str) -> str:
    """Path of a bootstrap resource shipped inside the package."""
    return str(resources.files('ldap_mirror').joinpath('resources').joinpath(name))


class BootstrapLoader:
    """Applies the schema and hierarchy LDIF resources to a store."""

    def __init__(self, store: DirectoryStore, config: Optional[Dict[str, Any]] = None):
        """
        Args:
            store: Store to apply the records to
            config: ``store`` section of the configuration; ``schema_file`` and
                ``hierarchy_file`` override the packaged resources
        """
        config = config or {}
        self.store = store
        self.schema_file = config.get('schema_file') or default_resource_path(SCHEMA_RESOURCE)
        self.hierarchy_file = config.get('hierarchy_file') or default_resource_path(HIERARCHY_RESOURCE)

    def import_schema(self) -> int:
        """Merge the schema definitions into the existing subschema entry."""
        return self.apply_file('schema', self.schema_file, merge=True)

    def import_hierarchy(self) -> int:
        return self.apply_file('hierarchy', self.hierarchy_file)

    def apply_file(self, label: str, path: str, merge: bool = False) -> int:
        """
        Apply every record of an LDIF file in order.

        With ``merge`` set, add records extend existing entries instead of
        creating them.

        A missing file is logged and skipped. Application stops at the first
        failing record; records before it stay applied.

        Returns:
            Number of records applied

        Raises:
            BootstrapError: If the file cannot be read, parsed or applied
        """
        if not os.path.isfile(path):
            logger.warning(f"LDIF file for {label} not found: {path}")
            return 0

        try:
            records = read_ldif_file(path)
        except LDIFError as e:
            raise BootstrapError(f"Malformed {label} LDIF {path}: {e}") from e
        except OSError as e:
            raise BootstrapError(f"Cannot read {label} LDIF {path}: {e}") from e

        applied = 0
        for record in records:
            if merge:
                record = record.as_merge()
            try:
                self.store.apply_change(record)
            except DirectoryStoreError as e:
                raise BootstrapError(f"Failed to apply {label} record {record.dn} "
                                     f"after {applied} records: {e}") from e
            applied += 1

        logger.info(f"Applied {applied} {label} records from {path}")
        return applied
