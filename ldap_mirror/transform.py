"""
Entry transformation applied to every record fetched from the source directory.

Some attributes are computed by the source server (collective attributes) and
cannot be stored verbatim in the local directory. They are stripped here.
"""

import logging
from typing import Iterable, Optional

from ldap_mirror.entry import DirectoryEntry

logger = logging.getLogger(__name__)

DEFAULT_DENIED_ATTRIBUTES = ('collectiveLanguage',)


class EntryTransformer:
    """Removes deny-listed attributes from directory entries."""

    def __init__(self, denied_attributes: Optional[Iterable[str]] = None):
        if denied_attributes is None:
            denied_attributes = DEFAULT_DENIED_ATTRIBUTES
        self.denied_attributes = frozenset(name.lower() for name in denied_attributes)

    def is_denied(self, attribute_name: str) -> bool:
        # Options such as ';lang-en' do not change the attribute type
        base_name = attribute_name.split(';', 1)[0]
        return base_name.lower() in self.denied_attributes

    def transform(self, entry: DirectoryEntry) -> DirectoryEntry:
        """
        Build a storable copy of ``entry``.

        Every attribute that is not deny-listed is kept with its values in
        their original order. The input entry is not modified.
        """
        kept = {}
        for name, values in entry.attributes.items():
            if self.is_denied(name):
                logger.debug(f"Dropping attribute {name} from {entry.dn}")
                continue
            kept[name] = list(values)
        return DirectoryEntry(entry.dn, kept)

    __call__ = transform
