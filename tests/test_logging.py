#!/usr/bin/env python3
"""
Unit tests for logging infrastructure.

Covers log file creation, console output on stderr, sensitive data
filtering and the audit trail for membership changes.
"""

import os
import sys
import shutil
import logging
import tempfile
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tfs_user_sync.logging_setup import (
    SensitiveDataFilter, setup_logging, reset_logging, get_log_stats, audit_logger
)


def make_record(msg):
    return logging.LogRecord('test', logging.INFO, __file__, 1, msg, None, None)


class TestSensitiveDataFilter(unittest.TestCase):
    """Test cases for scrubbing secrets out of log messages."""

    def setUp(self):
        self.filter = SensitiveDataFilter()

    def scrub(self, msg):
        record = make_record(msg)
        self.assertTrue(self.filter.filter(record))
        return record.msg

    def test_key_value_pairs(self):
        self.assertEqual(self.scrub('password=secret123'), 'password=****')
        self.assertEqual(self.scrub('token=abc123def456, next=1'), 'token=****, next=1')

    def test_json_values(self):
        self.assertEqual(self.scrub('{"password": "topsecret"}'), '{"password": "****"}')
        self.assertEqual(self.scrub('{"token": "abc"}'), '{"token": "****"}')

    def test_dict_repr_values(self):
        self.assertEqual(
            self.scrub("auth={'method': 'pat', 'token': 'abc123'}"),
            "auth={'method': 'pat', 'token': '****'}"
        )

    def test_authorization_headers(self):
        self.assertEqual(self.scrub('Authorization: Basic OmFiYzEyMw=='), 'Authorization: Basic ****')
        self.assertEqual(self.scrub('Authorization: Bearer eyJhbGciOi'), 'Authorization: Bearer ****')

    def test_plain_messages_untouched(self):
        message = 'Adding CONTOSO\\alice to [Agile TFVC]\\WTOTemp path=/tfs/_apis/identities'
        self.assertEqual(self.scrub(message), message)


class TestLoggingSetup(unittest.TestCase):
    """Test cases for setup_logging."""

    def setUp(self):
        reset_logging()
        self.temp_dir = tempfile.mkdtemp(prefix='tfs_sync_test_logs_')

    def tearDown(self):
        reset_logging()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def read_log(self):
        with open(os.path.join(self.temp_dir, 'app.log'), 'r', encoding='utf-8') as f:
            return f.read()

    def test_writes_log_file(self):
        setup_logging({'level': 'DEBUG', 'log_dir': self.temp_dir, 'console_output': False})

        logger = logging.getLogger('tfs_user_sync.test')
        logger.debug("debug message")
        logger.info("info message")

        content = self.read_log()
        self.assertIn('debug message', content)
        self.assertIn('info message', content)
        stats = get_log_stats()
        self.assertTrue(stats['configured'])
        self.assertEqual(stats['log_directory'], self.temp_dir)
        self.assertEqual(stats['log_files_count'], 1)
        self.assertGreater(stats['total_size_bytes'], 0)

    def test_level_filters_file_output(self):
        setup_logging({'level': 'WARNING', 'log_dir': self.temp_dir, 'console_output': False})

        logger = logging.getLogger('tfs_user_sync.test')
        logger.info("quiet message")
        logger.warning("loud message")

        content = self.read_log()
        self.assertNotIn('quiet message', content)
        self.assertIn('loud message', content)

    def test_secrets_scrubbed_in_file(self):
        setup_logging({'level': 'INFO', 'log_dir': self.temp_dir, 'console_output': False})

        logging.getLogger('tfs_user_sync.test').info("Using token=abc123 for source")

        content = self.read_log()
        self.assertIn('token=****', content)
        self.assertNotIn('abc123', content)

    def test_console_handler_uses_stderr(self):
        setup_logging({'level': 'INFO', 'log_dir': self.temp_dir, 'console_output': True,
                       'console_level': 'ERROR'})

        stream_handlers = [
            handler for handler in logging.getLogger().handlers
            if type(handler) is logging.StreamHandler
        ]
        self.assertEqual(len(stream_handlers), 1)
        self.assertIs(stream_handlers[0].stream, sys.stderr)
        self.assertEqual(stream_handlers[0].level, logging.ERROR)

    def test_second_setup_is_ignored(self):
        setup_logging({'level': 'INFO', 'log_dir': self.temp_dir, 'console_output': False})
        handler_count = len(logging.getLogger().handlers)

        setup_logging({'level': 'DEBUG', 'log_dir': self.temp_dir, 'console_output': True})

        self.assertEqual(len(logging.getLogger().handlers), handler_count)

    def test_membership_audit_trail(self):
        setup_logging({'level': 'INFO', 'log_dir': self.temp_dir, 'console_output': False})

        audit_logger.log_membership_change('[ProjectX]\\TeamA', 'CONTOSO\\alice', True)
        audit_logger.log_membership_change('[ProjectX]\\TeamA', 'CONTOSO\\bob', False)

        content = self.read_log()
        self.assertIn('Membership add SUCCESS: group=[ProjectX]\\TeamA user=CONTOSO\\alice', content)
        self.assertIn('Membership add FAILURE: group=[ProjectX]\\TeamA user=CONTOSO\\bob', content)


if __name__ == '__main__':
    unittest.main()
