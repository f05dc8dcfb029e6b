#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers configuration loading, validation, defaults and environment variable
overrides.
"""

import os
import sys
import tempfile
import yaml
import unittest
from unittest.mock import patch
from typing import Dict, Any

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_mirror.config import ConfigLoader, ConfigurationError, load_config


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'source': {
                'host': 'source-ldap.example.com',
                'port': 1389,
                'bind_dn': 'cn=mirror,ou=services,dc=example,dc=com',
                'bind_password': 'password'
            },
            'store': {
                'port': 44484,
                'base_dns': ['dc=example,dc=com'],
                'bind_credentials': [
                    {'bind_dn': 'cn=admin,dc=example,dc=com', 'password': 'adminpass'}
                ]
            },
            'sync': {
                'queries': ['(departmentNumber=1001)', '(departmentNumber=1002)', '(employeeType=contractor)']
            }
        }
        self.files = []

    def tearDown(self):
        for path in self.files:
            os.unlink(path)

    def create_test_config(self, config_data: Dict[str, Any]) -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.safe_dump(config_data, f)
        self.files.append(f.name)
        return f.name

    def test_valid_config(self):
        config = ConfigLoader(self.create_test_config(self.valid_config)).load()

        self.assertEqual(config['source']['host'], 'source-ldap.example.com')
        self.assertEqual(len(config['sync']['queries']), 3)

    def test_defaults_applied(self):
        config = load_config(self.create_test_config(self.valid_config))

        self.assertEqual(config['sync']['page_size'], 250)
        self.assertEqual(config['sync']['max_results'], 10000)
        self.assertEqual(config['sync']['denied_attributes'], ['collectiveLanguage'])
        self.assertEqual(config['sync']['diagnostic_attribute'], 'uid')
        self.assertEqual(config['source']['search_base'], '')
        self.assertFalse(config['source']['use_ssl'])
        self.assertIsNone(config['store']['hierarchy_file'])
        self.assertEqual(config['logging']['level'], 'INFO')

    def test_explicit_values_kept(self):
        self.valid_config['sync']['page_size'] = 100
        config = load_config(self.create_test_config(self.valid_config))
        self.assertEqual(config['sync']['page_size'], 100)
        self.assertEqual(config['source']['port'], 1389)

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader('/nonexistent/config.yaml').load()
        self.assertIn('not found', str(ctx.exception))

    def test_invalid_yaml(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("source: [unclosed\n")
        self.files.append(f.name)
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(f.name).load()
        self.assertIn('Invalid YAML', str(ctx.exception))

    def test_missing_source_fields(self):
        del self.valid_config['source']['bind_dn']
        del self.valid_config['source']['host']
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self.create_test_config(self.valid_config))
        message = str(ctx.exception)
        self.assertIn('source field: bind_dn', message)
        self.assertIn('source field: host', message)

    def test_missing_base_dns(self):
        self.valid_config['store']['base_dns'] = []
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self.create_test_config(self.valid_config))
        self.assertIn('store.base_dns', str(ctx.exception))

    def test_bind_credentials_validated(self):
        self.valid_config['store']['bind_credentials'] = [{'bind_dn': 'cn=admin,dc=example,dc=com'}]
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self.create_test_config(self.valid_config))
        self.assertIn('store.bind_credentials[0].password', str(ctx.exception))

    def test_queries_must_be_strings(self):
        self.valid_config['sync']['queries'] = ['(uid=*)', '', 42]
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self.create_test_config(self.valid_config))
        message = str(ctx.exception)
        self.assertIn('sync.queries[1]', message)
        self.assertIn('sync.queries[2]', message)

    def test_page_size_must_be_positive(self):
        self.valid_config['sync']['page_size'] = 0
        with self.assertRaises(ConfigurationError):
            load_config(self.create_test_config(self.valid_config))

    def test_no_queries_is_valid(self):
        del self.valid_config['sync']
        config = load_config(self.create_test_config(self.valid_config))
        self.assertEqual(config['sync']['queries'], [])

    def test_password_env_override(self):
        del self.valid_config['source']['bind_password']
        path = self.create_test_config(self.valid_config)
        with patch.dict(os.environ, {'SOURCE_BIND_PASSWORD': 'from-env'}):
            config = load_config(path)
        self.assertEqual(config['source']['bind_password'], 'from-env')

    def test_config_path_env(self):
        path = self.create_test_config(self.valid_config)
        with patch.dict(os.environ, {'CONFIG_PATH': path}):
            loader = ConfigLoader()
        self.assertEqual(loader.config_path, path)


if __name__ == '__main__':
    unittest.main()
