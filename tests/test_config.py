#!/usr/bin/env python3
"""
Unit tests for configuration module.

This module provides unit tests for the configuration loading, validation,
default handling and environment variable override functionality.
"""

import os
import sys
import json
import tempfile
import yaml
import unittest
from unittest.mock import patch
from typing import Dict, Any

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ad_iam_sync.config import (
    ConfigLoader, ConfigurationError, ControllerMode, GroupMapping,
    SyncConfig, build_sync_config, load_config
)


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'controller': 'directory',
            'group_mappings': [
                {'directory_group': 'HR-Managers', 'cloud_group': 'hr-managers-grp'},
                {'directory_group': 'Engineering', 'cloud_group': 'engineering'}
            ],
            'directory': {
                'server_url': 'ldaps://dc01.example.com:636',
                'bind_dn': 'CN=svc-sync,OU=Service,DC=example,DC=com',
                'bind_password': 'password',
                'user_base_dn': 'OU=Users,DC=example,DC=com'
            },
            'cloud': {
                'region': 'eu-west-1'
            },
            'logging': {
                'level': 'INFO',
                'log_dir': 'logs'
            },
            'notifications': {
                'enable_email': True,
                'smtp_server': 'smtp.example.com',
                'smtp_password': 'smtppass',
                'email_from': 'alerts@example.com',
                'email_to': ['admin@example.com']
            }
        }
        self.temp_files = []

    def tearDown(self):
        """Remove temporary config files."""
        for path in self.temp_files:
            if os.path.exists(path):
                os.unlink(path)

    def create_test_config(self, config_data: Dict[str, Any], suffix: str = '.yaml') -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix=suffix, delete=False) as f:
            if suffix == '.json':
                json.dump(config_data, f)
            else:
                yaml.safe_dump(config_data, f)
        self.temp_files.append(f.name)
        return f.name

    def load(self, config_data: Dict[str, Any], env: Dict[str, str] = None) -> SyncConfig:
        path = self.create_test_config(config_data)
        with patch.dict(os.environ, env or {}, clear=True):
            return ConfigLoader(path).load()

    def test_valid_config(self):
        """Test loading a valid configuration."""
        config = self.load(self.valid_config)

        self.assertIsInstance(config, SyncConfig)
        self.assertEqual(config.controller_mode, ControllerMode.DIRECTORY)
        self.assertEqual(config.group_mappings[0], GroupMapping('HR-Managers', 'hr-managers-grp'))
        self.assertEqual(len(config.group_mappings), 2)
        self.assertEqual(config.directory['server_url'], 'ldaps://dc01.example.com:636')
        self.assertEqual(config.cloud['region'], 'eu-west-1')

    def test_defaults_applied(self):
        """Test default values for optional settings."""
        config = self.load(self.valid_config)

        self.assertEqual(config.directory['user_filter'], '(&(objectCategory=person)(objectClass=user))')
        self.assertEqual(config.directory['page_size'], 1000)
        self.assertIsNone(config.cloud['profile'])
        self.assertEqual(config.cloud['read_timeout'], 30)
        self.assertEqual(config.logging_config['retention_days'], 7)
        self.assertEqual(config.audit['log_dir'], 'logs')
        self.assertEqual(config.error_handling['max_retries'], 3)
        self.assertEqual(config.max_workers, 1)
        self.assertEqual(config.run_deadline_seconds, 0)
        self.assertFalse(config.isolate_fetch_errors)
        self.assertFalse(config.bypass_user_validation)
        self.assertTrue(config.abort_on_validation_failure)
        self.assertFalse(config.notifications['email_on_success'])

    def test_json_config_file(self):
        """Test that JSON configuration files load as well."""
        path = self.create_test_config(self.valid_config, suffix='.json')
        with patch.dict(os.environ, {}, clear=True):
            config = load_config(path)
        self.assertEqual(config.controller_mode, ControllerMode.DIRECTORY)

    def test_cloud_controller_aliases(self):
        """Test that controller values are case-insensitive with aliases."""
        for value in ('cloud', 'CLOUD', 'aws', ' Cloud '):
            self.valid_config['controller'] = value
            config = self.load(self.valid_config)
            self.assertEqual(config.controller_mode, ControllerMode.CLOUD, value)

    def test_invalid_controller(self):
        """Test that an unrecognized controller is rejected."""
        self.valid_config['controller'] = 'sideways'
        with self.assertRaises(ConfigurationError) as context:
            self.load(self.valid_config)
        self.assertIn("Unrecognized controller value 'sideways'", str(context.exception))

    def test_missing_controller(self):
        """Test that the controller setting is required."""
        del self.valid_config['controller']
        with self.assertRaises(ConfigurationError):
            self.load(self.valid_config)

    def test_all_validation_errors_reported(self):
        """Test that every validation problem is listed at once."""
        del self.valid_config['directory']['server_url']
        self.valid_config['group_mappings'] = [{'directory_group': 'HR-Managers'}]
        self.valid_config['concurrency'] = {'max_workers': 0}

        with self.assertRaises(ConfigurationError) as context:
            self.load(self.valid_config)

        message = str(context.exception)
        self.assertIn('server_url', message)
        self.assertIn('Missing cloud_group for group_mappings[0]', message)
        self.assertIn('max_workers', message)

    def test_empty_group_mappings(self):
        """Test that at least one mapping is required."""
        self.valid_config['group_mappings'] = []
        with self.assertRaises(ConfigurationError) as context:
            self.load(self.valid_config)
        self.assertIn('At least one group mapping', str(context.exception))

    def test_validation_policy(self):
        """Test the validation failure policy and user bypass flag."""
        self.valid_config['validation'] = {'on_failure': 'skip', 'bypass': {'user': True}}
        config = self.load(self.valid_config)
        self.assertFalse(config.abort_on_validation_failure)
        self.assertTrue(config.bypass_user_validation)

        self.valid_config['validation'] = {'on_failure': 'ignore'}
        with self.assertRaises(ConfigurationError):
            self.load(self.valid_config)

        self.valid_config['validation'] = {'bypass': {'user': 'yes'}}
        with self.assertRaises(ConfigurationError):
            self.load(self.valid_config)

    def test_environment_overrides(self):
        """Test secrets and profile taken from the environment."""
        env = {
            'LDAP_BIND_PASSWORD': 'env_ldap_pass',
            'SMTP_PASSWORD': 'env_smtp_pass',
            'AWS_PROFILE': 'sync-profile'
        }
        del self.valid_config['directory']['bind_password']
        config = self.load(self.valid_config, env)

        self.assertEqual(config.directory['bind_password'], 'env_ldap_pass')
        self.assertEqual(config.notifications['smtp_password'], 'env_smtp_pass')
        self.assertEqual(config.cloud['profile'], 'sync-profile')

    def test_configured_profile_not_overridden(self):
        """Test that AWS_PROFILE only fills an unset profile."""
        self.valid_config['cloud']['profile'] = 'configured'
        config = self.load(self.valid_config, {'AWS_PROFILE': 'sync-profile'})
        self.assertEqual(config.cloud['profile'], 'configured')

    def test_missing_config_file(self):
        """Test handling of missing configuration file."""
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader('/nonexistent/config.yaml').load()
        self.assertIn('Configuration file not found', str(context.exception))

    def test_invalid_yaml(self):
        """Test handling of invalid YAML syntax."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write('controller: directory\ngroup_mappings: [unclosed\n')
        self.temp_files.append(f.name)

        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(f.name).load()
        self.assertIn('Invalid YAML', str(context.exception))

    def test_non_mapping_document(self):
        """Test that a document which is not a mapping is rejected."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write('- just\n- a list\n')
        self.temp_files.append(f.name)

        with self.assertRaises(ConfigurationError):
            ConfigLoader(f.name).load()

    def test_config_path_from_environment(self):
        """Test CONFIG_PATH selects the configuration file."""
        with patch.dict(os.environ, {'CONFIG_PATH': '/etc/ad-iam-sync/config.yaml'}, clear=True):
            loader = ConfigLoader()
        self.assertEqual(loader.config_path, '/etc/ad-iam-sync/config.yaml')


class TestBuildSyncConfig(unittest.TestCase):
    """Test cases for building SyncConfig from a dictionary."""

    def test_mapping_names_trimmed(self):
        """Test that group names are stripped of surrounding whitespace."""
        config = build_sync_config({
            'controller': 'ad',
            'group_mappings': [{'directory_group': ' HR-Managers ', 'cloud_group': 'hr-managers-grp '}]
        })
        self.assertEqual(config.controller_mode, ControllerMode.DIRECTORY)
        self.assertEqual(config.group_mappings, (GroupMapping('HR-Managers', 'hr-managers-grp'),))

    def test_controller_parse_passthrough(self):
        """Test that an already-parsed mode is returned unchanged."""
        self.assertIs(ControllerMode.parse(ControllerMode.CLOUD), ControllerMode.CLOUD)
        with self.assertRaises(ConfigurationError):
            ControllerMode.parse(None)


if __name__ == '__main__':
    unittest.main()
