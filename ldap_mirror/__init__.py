"""
LDAP Mirror - Bootstrap an in-memory directory and populate it from a remote LDAP source.

This package loads a static schema and organizational hierarchy into a local
in-memory directory, then mirrors the entries matched by a fixed set of paged
queries against a remote directory.
"""

__version__ = "1.0.0"
__author__ = "LDAP Mirror Team"
