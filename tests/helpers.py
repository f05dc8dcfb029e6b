"""
Test doubles shared by the test modules.
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_mirror.entry import DirectoryEntry, normalize_dn
from ldap_mirror.ldap_client import SearchPage, LDAPQueryError
from ldap_mirror.store import DirectoryStore, DirectoryStoreError


def make_person(uid, extra=None, ou='people'):
    attributes = {
        'objectClass': ['top', 'person', 'inetOrgPerson'],
        'uid': [uid],
        'cn': [f'User {uid}'],
        'sn': [uid.capitalize()],
    }
    attributes.update(extra or {})
    return DirectoryEntry(f'uid={uid},ou={ou},dc=example,dc=com', attributes)


class FakeStore(DirectoryStore):
    """Dictionary-backed store that can be told to reject specific DNs."""

    def __init__(self, fail_on=None, fail_start=False):
        self.entries = {}
        self.modifications = []
        self.applied = []
        self.fail_on = {normalize_dn(dn) for dn in (fail_on or [])}
        self.fail_start = fail_start
        self.listening = False
        self.shutdown_calls = 0

    @property
    def is_listening(self):
        return self.listening

    def start_listening(self):
        from ldap_mirror.store import StoreStartError
        if self.fail_start:
            raise StoreStartError("Address already in use")
        self.listening = True

    def shut_down(self):
        self.shutdown_calls += 1
        self.listening = False

    def add_entry(self, entry):
        key = entry.normalized_dn
        if key in self.fail_on:
            raise DirectoryStoreError(f"Rejected {entry.dn}")
        if key in self.entries:
            raise DirectoryStoreError(f"Entry {entry.dn} already exists")
        self.entries[key] = entry

    def modify_entry(self, dn, modifications):
        if normalize_dn(dn) in self.fail_on:
            raise DirectoryStoreError(f"Rejected {dn}")
        self.modifications.append((dn, modifications))

    def delete_entry(self, dn):
        self.entries.pop(normalize_dn(dn))

    def apply_change(self, record):
        self.applied.append(record)
        super().apply_change(record)

    def search(self, base, search_filter='(objectClass=*)', scope='subtree'):
        return list(self.entries.values())

    def entry_count(self):
        return len(self.entries)


class FakeSource:
    """
    Simulated paged source.

    Serves ``entries`` in pages of ``page_size``. The cookie is the offset of
    the next page encoded as bytes.
    """

    def __init__(self, entries, page_size=250, fail_on_call=None):
        self.entries = entries
        self.page_size = page_size
        self.fail_on_call = fail_on_call
        self.calls = []

    def __call__(self, session, cookie, query):
        self.calls.append((session, cookie, query))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise LDAPQueryError("Server is unwilling to perform")
        offset = int(cookie) if cookie else 0
        page = self.entries[offset:offset + self.page_size]
        next_offset = offset + len(page)
        more = next_offset < len(self.entries)
        return SearchPage(page, str(next_offset).encode() if more else b'', more_results=more)


class ScriptedSource:
    """Returns pre-built pages in order, regardless of cookie."""

    def __init__(self, pages):
        self.pages = list(pages)
        self.calls = []

    def __call__(self, session, cookie, query):
        self.calls.append((session, cookie, query))
        return self.pages[len(self.calls) - 1]
