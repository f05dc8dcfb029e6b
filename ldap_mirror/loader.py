"""
Bulk loading of mirrored entries into the local store.

Loading is best effort: every entry is added on its own and a failing entry
is recorded in the report without stopping the batch.
"""

import logging
from typing import Iterable, List, Optional, Set

from ldap_mirror.entry import DirectoryEntry

logger = logging.getLogger(__name__)


class LoadError(Exception):
    """A single entry that could not be committed to the store."""

    def __init__(self, dn: str, identifier: Optional[str], cause: Exception):
        self.dn = dn
        self.identifier = identifier
        self.cause = cause
        super().__init__(f"Failed to load {dn} ({identifier}): {cause}")


class LoadReport:
    """Outcome of one :meth:`BulkLoader.load` call."""

    def __init__(self):
        self.succeeded = 0
        self.skipped = 0
        self.failures: List[LoadError] = []

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def total(self) -> int:
        return self.succeeded + self.skipped + self.failed

    @property
    def failed_keys(self) -> List[str]:
        return [failure.dn for failure in self.failures]

    def as_dict(self):
        return {
            'succeeded': self.succeeded,
            'failed': self.failed,
            'skipped': self.skipped,
            'failures': [{'dn': f.dn, 'identifier': f.identifier, 'error': str(f.cause)}
                         for f in self.failures],
        }

    def __repr__(self):
        return (f"LoadReport(succeeded={self.succeeded}, failed={self.failed}, "
                f"skipped={self.skipped})")


class BulkLoader:
    """
    Commits transformed entries to a store, each DN at most once.

    The loader remembers the DNs it has committed, so an entry matched by
    more than one query is only added the first time it is seen.
    """

    def __init__(self, diagnostic_attribute: str = 'uid'):
        self.diagnostic_attribute = diagnostic_attribute
        self._committed: Set[str] = set()

    def _identifier(self, entry: DirectoryEntry) -> Optional[str]:
        value = entry.get_value(self.diagnostic_attribute)
        if isinstance(value, bytes):
            return value.decode('utf-8', 'replace')
        return value

    def load(self, store, entries: Iterable[DirectoryEntry]) -> LoadReport:
        """
        Add every entry to ``store``.

        Returns:
            LoadReport with success, skip and failure details
        """
        report = LoadReport()
        for entry in entries:
            key = entry.normalized_dn
            if key in self._committed:
                report.skipped += 1
                logger.debug(f"Skipping {entry.dn}, already loaded")
                continue
            try:
                store.add_entry(entry)
            except Exception as e:
                failure = LoadError(entry.dn, self._identifier(entry), e)
                report.failures.append(failure)
                logger.error(f"Error inserting entry with {self.diagnostic_attribute}: "
                             f"{failure.identifier} ({entry.dn}): {e}")
                continue
            self._committed.add(key)
            report.succeeded += 1

        logger.info(f"Loaded {report.succeeded} entries, {report.failed} failed, "
                    f"{report.skipped} skipped")
        return report
