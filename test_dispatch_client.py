#!/usr/bin/env python3
"""
Tests for the outbound email dispatch client
"""

import os
import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

sys.path.append(str(Path(__file__).parent))

from dispatch_client import DEFAULT_BASE_URL, DispatchClient, DispatchConfig


class TestDispatchClient(unittest.TestCase):

    def setUp(self):
        self.session = MagicMock()
        self.config = DispatchConfig(base_url="https://email.example.com/", timeout_seconds=5.0)
        self.client = DispatchClient(self.config, session=self.session)

    def respond_with(self, status_code, error=None):
        response = MagicMock(status_code=status_code)
        if error is not None:
            response.raise_for_status.side_effect = error
        self.session.post.return_value = response
        return response

    def test_successful_send_posts_message(self):
        self.respond_with(200)

        result = self.client.send("Ada Lovelace", "ada@example.com", "birthday-7")

        self.assertTrue(result.success)
        self.assertEqual(result.status_code, 200)
        self.assertIsNone(result.error)
        self.session.post.assert_called_once_with(
            "https://email.example.com/send-email",
            json={'email': "ada@example.com", 'message': "Hey, Ada Lovelace it's your birthday."},
            headers={'Content-Type': 'application/json', 'X-Correlation-ID': "birthday-7"},
            timeout=5.0,
        )

    def test_timeout_is_a_failed_result(self):
        self.session.post.side_effect = requests.Timeout("read timed out")

        with self.assertLogs('dispatch_client', level='WARNING'):
            result = self.client.send("Ada Lovelace", "ada@example.com", "birthday-7")

        self.assertFalse(result.success)
        self.assertEqual(result.error, "Timed out after 5.0s")

    def test_server_error_is_a_failed_result(self):
        error_response = MagicMock(status_code=503)
        self.respond_with(503, requests.HTTPError("503 Server Error: Service Unavailable",
                                                  response=error_response))

        result = self.client.send("Ada Lovelace", "ada@example.com", "birthday-7")

        self.assertFalse(result.success)
        self.assertEqual(result.status_code, 503)
        self.assertIn("503", result.error)

    def test_connection_error_is_a_failed_result(self):
        self.session.post.side_effect = requests.ConnectionError("Connection refused")

        result = self.client.send("Ada Lovelace", "ada@example.com", "birthday-7")

        self.assertFalse(result.success)
        self.assertIn("Connection refused", result.error)
        self.assertIsNone(result.status_code)

    def test_message_template_is_configurable(self):
        self.config.message_template = "Happy birthday, {full_name}!"
        self.assertEqual(self.client.build_payload("Grace Hopper", "grace@example.com"),
                         {'email': "grace@example.com", 'message': "Happy birthday, Grace Hopper!"})

    def test_default_session(self):
        self.assertIsInstance(DispatchClient(self.config).session, requests.Session)


class TestDispatchConfig(unittest.TestCase):

    def test_default_base_url(self):
        with patch.dict(os.environ):
            os.environ.pop("EMAIL_API_BASE_URL", None)
            config = DispatchConfig()
        self.assertEqual(config.base_url, DEFAULT_BASE_URL)
        self.assertEqual(config.url, f"{DEFAULT_BASE_URL}/send-email")
        self.assertEqual(config.timeout_seconds, 5.0)

    def test_environment_overrides_base_url(self):
        with patch.dict(os.environ, {"EMAIL_API_BASE_URL": "http://localhost:8080"}):
            config = DispatchConfig()
        self.assertEqual(config.url, "http://localhost:8080/send-email")


if __name__ == '__main__':
    unittest.main(verbosity=2)
