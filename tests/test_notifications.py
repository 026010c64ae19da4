#!/usr/bin/env python3
"""
Tests for SMTP notifications.
"""

import os
import sys
import smtplib
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from idp_user_sync.notifications import (send_configuration_error, send_email, send_failure_notification,
                                         send_filter_error_notification, send_success_summary,
                                         test_notification_config as send_test_notification)

CONFIG = {
    'enable_email': True,
    'email_on_failure': True,
    'email_on_success': True,
    'smtp_server': 'smtp.example.com',
    'smtp_port': 587,
    'smtp_username': 'sync@example.com',
    'smtp_password': 'hunter2',
    'smtp_tls': True,
    'email_from': 'sync@example.com',
    'email_to': ['ops@example.com', 'idm@example.com'],
}


def sent_body(smtp):
    return smtp.return_value.sendmail.call_args[0][2]


@patch('idp_user_sync.notifications.smtplib.SMTP')
class TestSendEmail(unittest.TestCase):

    def test_sends_with_starttls_and_login(self, smtp):
        self.assertTrue(send_email('Subject', 'Body', CONFIG))

        smtp.assert_called_once_with('smtp.example.com', 587)
        server = smtp.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('sync@example.com', 'hunter2')
        self.assertEqual(server.sendmail.call_args[0][1], ['ops@example.com', 'idm@example.com'])
        server.quit.assert_called_once()

    def test_disabled_sends_nothing(self, smtp):
        self.assertFalse(send_email('Subject', 'Body', dict(CONFIG, enable_email=False)))
        self.assertFalse(send_email('Subject', 'Body', {}))
        smtp.assert_not_called()

    def test_missing_server_or_recipients(self, smtp):
        self.assertFalse(send_email('Subject', 'Body', dict(CONFIG, smtp_server=None)))
        self.assertFalse(send_email('Subject', 'Body', dict(CONFIG, email_to=[])))
        smtp.assert_not_called()

    def test_smtp_failure_returns_false(self, smtp):
        smtp.return_value.sendmail.side_effect = smtplib.SMTPRecipientsRefused({})

        with self.assertLogs('idp_user_sync.notifications', level='ERROR'):
            self.assertFalse(send_email('Subject', 'Body', CONFIG))

    def test_connection_failure_returns_false(self, smtp):
        smtp.side_effect = ConnectionRefusedError('refused')

        self.assertFalse(send_email('Subject', 'Body', CONFIG))

    def test_single_recipient_string(self, smtp):
        send_email('Subject', 'Body', dict(CONFIG, email_to='ops@example.com'))

        self.assertEqual(smtp.return_value.sendmail.call_args[0][1], ['ops@example.com'])


@patch('idp_user_sync.notifications.smtplib.SMTP')
class TestReports(unittest.TestCase):

    def test_failure_report_includes_context(self, smtp):
        send_failure_notification('Store Error', 'database is locked', CONFIG, {'Component': 'Local store'})

        body = sent_body(smtp)
        self.assertIn('Failure Type: Store Error', body)
        self.assertIn('Component: Local store', body)

    def test_failure_report_can_be_disabled(self, smtp):
        self.assertFalse(send_failure_notification('x', 'y', dict(CONFIG, email_on_failure=False)))
        smtp.assert_not_called()

    def test_filter_error_names_pattern(self, smtp):
        send_filter_error_notification('portal[', 'unterminated character set', CONFIG)

        body = sent_body(smtp)
        self.assertIn('Pattern: portal[', body)
        self.assertIn('Invalid Group Pattern', body)

    def test_configuration_error(self, smtp):
        send_configuration_error('Missing required IdP field: base_url', None, CONFIG)

        self.assertIn('Config Path: default', sent_body(smtp))

    def test_success_summary(self, smtp):
        stats = {'runtime_seconds': 75.5, 'groups': 2, 'listed': 10, 'imported': 3, 'rejected': 1,
                 'activated': 1, 'deactivated': 4, 'unresolved_managers': 0}

        self.assertTrue(send_success_summary(stats, CONFIG))

        body = sent_body(smtp)
        self.assertIn('Total runtime: 1m 15.5s', body)
        self.assertIn('Users imported: 3', body)
        self.assertIn('Users deactivated: 4', body)

    def test_success_summary_off_by_default(self, smtp):
        self.assertFalse(send_success_summary({}, dict(CONFIG, email_on_success=False)))
        smtp.assert_not_called()

    def test_configuration_test_message(self, smtp):
        self.assertTrue(send_test_notification(CONFIG))

        self.assertIn('SMTP Server: smtp.example.com', sent_body(smtp))


if __name__ == '__main__':
    unittest.main()
