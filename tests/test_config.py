#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers loading the optional YAML file, defaults, environment variable
overrides for credentials and validation errors.
"""

import os
import sys
import shutil
import tempfile
import yaml
import unittest
from unittest.mock import patch
from typing import Dict, Any

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tfs_user_sync.config import (
    ConfigLoader, ConfigurationError, load_config, DEFAULT_EXCLUDED_IDENTITY_TYPES
)


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp(prefix='tfs_sync_config_test_')
        self.original_cwd = os.getcwd()
        os.chdir(self.temp_dir)

        self.env_patcher = patch.dict(os.environ, {}, clear=True)
        self.env_patcher.start()

        self.valid_config = {
            'source': {
                'auth': {'method': 'basic', 'username': 'CONTOSO\\sync', 'password': 'secret'},
                'verify_ssl': False,
            },
            'target': {
                'auth': {'method': 'pat', 'token': 'abc123'},
                'api_version': '5.0',
                'batch_size': 50,
            },
            'sync': {
                'excluded_identity_types': ['Microsoft.TeamFoundation.ServiceIdentity'],
            },
            'logging': {
                'level': 'DEBUG',
                'log_dir': 'sync_logs',
            }
        }

    def tearDown(self):
        self.env_patcher.stop()
        os.chdir(self.original_cwd)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def create_test_config(self, config_data: Dict[str, Any], name: str = 'custom.yaml') -> str:
        """Write config data to a file in the temp directory."""
        path = os.path.join(self.temp_dir, name)
        with open(path, 'w') as f:
            yaml.safe_dump(config_data, f)
        return path

    def test_defaults_without_config_file(self):
        config = ConfigLoader().load()

        self.assertEqual(config['source']['api_version'], '2.0')
        self.assertEqual(config['source']['timeout_seconds'], 30)
        self.assertEqual(config['target']['batch_size'], 100)
        self.assertTrue(config['target']['verify_ssl'])
        self.assertEqual(config['source']['auth'], {})
        self.assertEqual(config['sync']['valid_users_group'], 'Project Collection Valid Users')
        self.assertEqual(config['sync']['excluded_identity_types'], DEFAULT_EXCLUDED_IDENTITY_TYPES)
        self.assertEqual(config['logging']['level'], 'INFO')
        self.assertEqual(config['logging']['console_level'], 'WARNING')

    def test_default_file_in_working_directory(self):
        self.create_test_config(self.valid_config, name='tfs_sync.yaml')

        config = load_config()

        self.assertEqual(config['target']['api_version'], '5.0')

    def test_valid_config(self):
        path = self.create_test_config(self.valid_config)

        config = load_config(path)

        self.assertFalse(config['source']['verify_ssl'])
        self.assertEqual(config['source']['timeout_seconds'], 30)
        self.assertEqual(config['target']['batch_size'], 50)
        self.assertEqual(config['sync']['excluded_identity_types'], ['Microsoft.TeamFoundation.ServiceIdentity'])
        self.assertEqual(config['sync']['valid_users_group'], 'Project Collection Valid Users')
        self.assertEqual(config['logging']['log_dir'], 'sync_logs')
        self.assertEqual(config['logging']['retention_days'], 7)

    def test_explicit_missing_file(self):
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(os.path.join(self.temp_dir, 'missing.yaml'))

        self.assertIn('not found', str(ctx.exception))

    def test_env_path_missing_file(self):
        with patch.dict(os.environ, {'TFS_SYNC_CONFIG': os.path.join(self.temp_dir, 'missing.yaml')}):
            with self.assertRaises(ConfigurationError):
                load_config()

    def test_env_path_used(self):
        path = self.create_test_config(self.valid_config)

        with patch.dict(os.environ, {'TFS_SYNC_CONFIG': path}):
            config = load_config()

        self.assertEqual(config['target']['api_version'], '5.0')

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, 'broken.yaml')
        with open(path, 'w') as f:
            f.write("source: [unclosed\n")

        with self.assertRaises(ConfigurationError):
            load_config(path)

    def test_root_must_be_mapping(self):
        path = os.path.join(self.temp_dir, 'list.yaml')
        with open(path, 'w') as f:
            f.write("- source\n- target\n")

        with self.assertRaises(ConfigurationError):
            load_config(path)

    def test_empty_sections_get_defaults(self):
        path = os.path.join(self.temp_dir, 'empty_sections.yaml')
        with open(path, 'w') as f:
            f.write("source:\ntarget:\nsync:\nlogging:\n")

        config = load_config(path)

        self.assertEqual(config['source']['batch_size'], 100)
        self.assertEqual(config['target']['auth'], {})

    def test_env_token_override_sets_method(self):
        with patch.dict(os.environ, {'TFS_SOURCE_TOKEN': 'env-token'}):
            config = load_config()

        self.assertEqual(config['source']['auth']['token'], 'env-token')
        self.assertEqual(config['source']['auth']['method'], 'pat')
        self.assertEqual(config['target']['auth'], {})

    def test_env_password_override(self):
        config_data = {'target': {'auth': {'method': 'basic', 'username': 'CONTOSO\\sync'}}}
        path = self.create_test_config(config_data)

        with patch.dict(os.environ, {'TFS_TARGET_PASSWORD': 'env-secret'}):
            config = load_config(path)

        self.assertEqual(config['target']['auth']['password'], 'env-secret')

    def test_basic_auth_requires_password(self):
        config_data = {'source': {'auth': {'method': 'basic', 'username': 'CONTOSO\\sync'}}}
        path = self.create_test_config(config_data)

        with self.assertRaises(ConfigurationError) as ctx:
            load_config(path)

        self.assertIn('Basic auth for source', str(ctx.exception))

    def test_token_auth_requires_token(self):
        path = self.create_test_config({'target': {'auth': {'method': 'bearer'}}})

        with self.assertRaises(ConfigurationError):
            load_config(path)

    def test_unknown_auth_method(self):
        path = self.create_test_config({'source': {'auth': {'method': 'kerberos'}}})

        with self.assertRaises(ConfigurationError) as ctx:
            load_config(path)

        self.assertIn("Unknown auth method 'kerberos'", str(ctx.exception))

    def test_invalid_numbers(self):
        path = self.create_test_config({
            'source': {'batch_size': 0},
            'target': {'timeout_seconds': 'soon'},
            'logging': {'retention_days': -1}
        })

        with self.assertRaises(ConfigurationError) as ctx:
            load_config(path)

        message = str(ctx.exception)
        self.assertIn('source.batch_size', message)
        self.assertIn('target.timeout_seconds', message)
        self.assertIn('logging.retention_days', message)

    def test_excluded_types_must_be_list(self):
        path = self.create_test_config({'sync': {'excluded_identity_types': 'Microsoft.TeamFoundation.ServiceIdentity'}})

        with self.assertRaises(ConfigurationError):
            load_config(path)

    def test_auth_must_be_mapping(self):
        path = self.create_test_config({'source': {'auth': 'basic'}})

        with self.assertRaises(ConfigurationError):
            load_config(path)


if __name__ == '__main__':
    unittest.main()
