"""
LDIF reading for the bootstrap resources.

Parsing is done by :mod:`ldif3`. This module maps the parsed records onto
:class:`ChangeRecord` objects the store can apply: content records and
``changetype: add`` become adds, ``changetype: delete`` becomes a delete.
"""

import logging
from typing import Any, BinaryIO, Dict, Iterator, List, Optional, Tuple

from ldif3 import LDIFParser

logger = logging.getLogger(__name__)


class LDIFError(Exception):
    """Raised when LDIF input cannot be parsed."""

    def __init__(self, message: str, line_number: Optional[int] = None):
        self.line_number = line_number
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)


class ChangeRecord:
    """A single LDIF record: add, modify or delete of one DN."""

    def __init__(self, dn: str, changetype: str = 'add',
                 attributes: Optional[Dict[str, List[Any]]] = None,
                 modifications: Optional[List[Tuple[str, str, List[Any]]]] = None):
        self.dn = dn
        self.changetype = changetype
        self.attributes = attributes or {}
        self.modifications = modifications or []

    def as_merge(self) -> 'ChangeRecord':
        """
        Turn an add into a modify that adds every value to an existing entry.

        Schema files list their definitions as a content record of the
        subschema entry, which already exists in the store.
        """
        if self.changetype != 'add':
            return self
        return ChangeRecord(self.dn, 'modify', modifications=[
            ('add', name, list(values)) for name, values in self.attributes.items()
        ])

    def __repr__(self):
        return f"ChangeRecord({self.changetype} {self.dn!r})"


def _to_record(dn: str, entry: Dict[str, List[Any]]) -> ChangeRecord:
    attributes = {}
    changetype = None
    for name, values in entry.items():
        if name.lower() == 'changetype':
            if changetype is not None or len(values) != 1:
                raise LDIFError(f"record for {dn} has more than one changetype")
            changetype = str(values[0]).strip().lower()
        else:
            attributes[name] = values

    if changetype is None:
        return ChangeRecord(dn, 'add', attributes=attributes)
    if changetype == 'add':
        if not attributes:
            raise LDIFError(f"add record for {dn} has no attributes")
        return ChangeRecord(dn, 'add', attributes=attributes)
    if changetype == 'delete':
        if attributes:
            raise LDIFError(f"delete record for {dn} must not carry attributes")
        return ChangeRecord(dn, 'delete')
    raise LDIFError(f"unsupported changetype {changetype} for {dn}")


def parse_ldif(input_file: BinaryIO) -> Iterator[ChangeRecord]:
    """
    Parse LDIF from a binary file object.

    Yields:
        ChangeRecord for every record in order

    Raises:
        LDIFError: On malformed input or unsupported change types
    """
    parser = LDIFParser(input_file)
    try:
        for dn, entry in parser.parse():
            # a block holding only the version line
            if dn is None:
                continue
            yield _to_record(dn, entry)
    except ValueError as e:
        raise LDIFError(str(e), parser.line_counter) from e


def read_ldif_file(path: str) -> List[ChangeRecord]:
    """Read every record of an LDIF file."""
    with open(path, 'rb') as f:
        records = list(parse_ldif(f))
    logger.debug(f"Read {len(records)} LDIF records from {path}")
    return records
