#!/usr/bin/env python3
"""
Unit tests for bootstrap loading of schema and hierarchy resources.
"""

import os
import sys
import shutil
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from helpers import FakeStore
from ldap_mirror.bootstrap import BootstrapLoader, BootstrapError, default_resource_path
from ldap_mirror.store import InMemoryDirectoryStore

HIERARCHY = (
    "dn: dc=example,dc=com\n"
    "objectClass: domain\n"
    "dc: example\n"
    "\n"
    "dn: ou=people,dc=example,dc=com\n"
    "objectClass: organizationalUnit\n"
    "ou: people\n"
)


class TestBootstrapLoader(unittest.TestCase):
    """Test cases for BootstrapLoader."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='ldap_mirror_bootstrap_')

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write(self, name, content):
        path = os.path.join(self.temp_dir, name)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(content)
        return path

    def test_defaults_to_packaged_resources(self):
        loader = BootstrapLoader(FakeStore())
        self.assertEqual(loader.schema_file, default_resource_path('schema.ldif'))
        self.assertEqual(loader.hierarchy_file, default_resource_path('hierarchy.ldif'))
        self.assertTrue(os.path.isfile(loader.schema_file))
        self.assertTrue(os.path.isfile(loader.hierarchy_file))

    def test_packaged_resources_apply(self):
        store = FakeStore()
        loader = BootstrapLoader(store)

        self.assertEqual(loader.import_schema(), 1)
        self.assertEqual(loader.import_hierarchy(), 3)
        self.assertEqual(store.modifications[0][0], 'cn=schema')
        self.assertIn('ou=people,dc=example,dc=com', store.entries)

    def test_schema_records_are_merged(self):
        store = FakeStore()
        path = self.write('schema.ldif',
                          "dn: cn=schema\n"
                          "attributeTypes: ( 1.3.6.1.4.1.32473.1.1.1 NAME 'cNumber' )\n"
                          "objectClasses: ( 1.3.6.1.4.1.32473.1.2.1 NAME 'corporatePerson' )\n")

        applied = BootstrapLoader(store, {'schema_file': path}).import_schema()

        self.assertEqual(applied, 1)
        self.assertEqual(store.entries, {})
        dn, modifications = store.modifications[0]
        self.assertEqual(dn, 'cn=schema')
        self.assertEqual([(op, attr) for op, attr, _ in modifications],
                         [('add', 'attributeTypes'), ('add', 'objectClasses')])

    def test_packaged_resources_apply_to_in_memory_store(self):
        store = InMemoryDirectoryStore({'base_dns': ['dc=example,dc=com']})
        store.start_listening()
        try:
            loader = BootstrapLoader(store)
            self.assertEqual(loader.import_schema(), 1)
            self.assertEqual(loader.import_hierarchy(), 3)
            self.assertEqual(store.entry_count(), 3)
            schema = store.search('cn=schema', scope='base')[0]
            self.assertEqual(len(schema.get_values('objectClasses')), 1)
        finally:
            store.shut_down()

    def test_configured_files_applied_in_order(self):
        store = FakeStore()
        config = {'hierarchy_file': self.write('hierarchy.ldif', HIERARCHY)}

        applied = BootstrapLoader(store, config).import_hierarchy()

        self.assertEqual(applied, 2)
        self.assertEqual([r.dn for r in store.applied],
                         ['dc=example,dc=com', 'ou=people,dc=example,dc=com'])

    def test_missing_file_is_a_warning(self):
        store = FakeStore()
        loader = BootstrapLoader(store, {'hierarchy_file': os.path.join(self.temp_dir, 'absent.ldif')})

        with self.assertLogs('ldap_mirror.bootstrap', level='WARNING') as logs:
            applied = loader.import_hierarchy()

        self.assertEqual(applied, 0)
        self.assertIn('not found', logs.output[0])
        self.assertEqual(store.applied, [])

    def test_malformed_file(self):
        path = self.write('broken.ldif', "objectClass: top\n")
        with self.assertRaises(BootstrapError):
            BootstrapLoader(FakeStore(), {'schema_file': path}).import_schema()

    def test_store_rejection_stops_at_failing_record(self):
        store = FakeStore(fail_on=['ou=people,dc=example,dc=com'])
        path = self.write('hierarchy.ldif', HIERARCHY)

        with self.assertRaises(BootstrapError) as ctx:
            BootstrapLoader(store, {'hierarchy_file': path}).import_hierarchy()

        self.assertIn('ou=people', str(ctx.exception))
        self.assertIn('dc=example,dc=com', store.entries)


if __name__ == '__main__':
    unittest.main()
