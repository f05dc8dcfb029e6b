"""
Directory entry model shared by the remote client, the store and the loader.
"""

from typing import Dict, List, Any, Optional, Tuple, Union
from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import parse_dn

AttributeValue = Union[str, bytes]


def _rdns(dn: str) -> List[List[Tuple[str, str]]]:
    """
    Parse a DN into RDNs, each a list of (attribute type, value) pairs.

    Raises:
        ValueError: If the DN is not a valid string representation
    """
    try:
        components = parse_dn(dn, strip=True)
    except LDAPInvalidDnError as e:
        raise ValueError(f"Invalid DN {dn!r}: {e}") from e

    rdns = []
    current = []
    for attribute_type, value, separator in components:
        current.append((attribute_type, value))
        if separator != '+':
            rdns.append(current)
            current = []
    return rdns


def _join_rdn(rdn: List[Tuple[str, str]]) -> str:
    return '+'.join(f"{attribute_type}={value}" for attribute_type, value in rdn)


def _normalized_rdns(dn: str) -> List[str]:
    return [_join_rdn([(t.lower(), v.lower()) for t, v in rdn]) for rdn in _rdns(dn)]


def split_dn(dn: str) -> List[str]:
    """Split a DN into its RDN components, keeping escaped values as written."""
    return [_join_rdn(rdn) for rdn in _rdns(dn)]


def normalize_dn(dn: str) -> str:
    """
    Return a comparable form of a DN.

    Attribute types and values are lowercased and whitespace around the
    RDN separators and the '=' signs is dropped.
    """
    return ','.join(_normalized_rdns(dn))


def parent_dn(dn: str) -> Optional[str]:
    """Return the normalized parent of a DN, or None for a single-RDN DN."""
    components = _normalized_rdns(dn)
    if len(components) < 2:
        return None
    return ','.join(components[1:])


def is_within(dn: str, base_dn: str) -> bool:
    """True if ``dn`` equals ``base_dn`` or sits below it."""
    components = _normalized_rdns(dn)
    base = _normalized_rdns(base_dn)
    return len(components) >= len(base) and components[len(components) - len(base):] == base


class DirectoryEntry:
    """
    A directory entry: a DN plus an ordered mapping of attribute name to values.

    Attribute names keep the spelling they were created with but are looked up
    case-insensitively, as LDAP attribute descriptions are.
    """

    def __init__(self, dn: str, attributes: Optional[Dict[str, Any]] = None):
        self.dn = dn
        self.attributes: Dict[str, List[AttributeValue]] = {}
        for name, values in (attributes or {}).items():
            self.attributes[name] = self._as_list(values)

    @staticmethod
    def _as_list(values) -> List[AttributeValue]:
        if isinstance(values, (str, bytes)):
            return [values]
        return list(values)

    def _find_name(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for existing in self.attributes:
            if existing.lower() == wanted:
                return existing
        return None

    def has_attribute(self, name: str) -> bool:
        return self._find_name(name) is not None

    def get_values(self, name: str) -> List[AttributeValue]:
        existing = self._find_name(name)
        if existing is None:
            return []
        return list(self.attributes[existing])

    def get_value(self, name: str) -> Optional[AttributeValue]:
        """Return the first value of an attribute, or None."""
        values = self.get_values(name)
        return values[0] if values else None

    def set_values(self, name: str, values) -> None:
        existing = self._find_name(name) or name
        self.attributes[existing] = self._as_list(values)

    def remove_attribute(self, name: str) -> bool:
        existing = self._find_name(name)
        if existing is None:
            return False
        del self.attributes[existing]
        return True

    def copy(self) -> 'DirectoryEntry':
        return DirectoryEntry(self.dn, self.attributes)

    @property
    def normalized_dn(self) -> str:
        return normalize_dn(self.dn)

    def __eq__(self, other):
        if not isinstance(other, DirectoryEntry):
            return NotImplemented
        return (self.normalized_dn == other.normalized_dn and
                list(self.attributes.items()) == list(other.attributes.items()))

    def __repr__(self):
        return f"DirectoryEntry({self.dn!r}, {len(self.attributes)} attributes)"
