"""Tests for request utility functions."""

from unittest.mock import MagicMock

import pytest

from app.core.request_utils import _is_valid_ip, derive_device_class, get_client_ip

RULES = {"Chrome-Extension": "chrome-extension", "SilenceNotes-iOS": "ios"}


class TestIsValidIP:
    """Tests for _is_valid_ip function."""

    def test_valid_addresses(self):
        assert _is_valid_ip("192.168.1.1") is True
        assert _is_valid_ip("8.8.8.8") is True
        assert _is_valid_ip("::1") is True
        assert _is_valid_ip("2001:db8::1") is True

    def test_invalid_addresses(self):
        assert _is_valid_ip("") is False
        assert _is_valid_ip("not-an-ip") is False
        assert _is_valid_ip("256.1.1.1") is False
        assert _is_valid_ip("192.168.1.1:8080") is False
        assert _is_valid_ip(" 192.168.1.1") is False


class TestGetClientIP:
    """Tests for get_client_ip function."""

    def _create_mock_request(self, x_real_ip=None, x_forwarded_for=None, client_host=None):
        """Create a mock FastAPI request."""
        request = MagicMock()

        headers = {}
        if x_real_ip:
            headers["X-Real-IP"] = x_real_ip
        if x_forwarded_for:
            headers["X-Forwarded-For"] = x_forwarded_for

        request.headers.get = lambda key, default=None: headers.get(key, default)

        if client_host:
            request.client = MagicMock()
            request.client.host = client_host
        else:
            request.client = None

        return request

    def test_x_real_ip_from_localhost(self):
        """X-Real-IP is trusted only behind a local proxy."""
        request = self._create_mock_request(x_real_ip="5.6.7.8", client_host="127.0.0.1")
        assert get_client_ip(request) == "5.6.7.8"

    def test_x_real_ip_not_trusted_from_external(self):
        request = self._create_mock_request(x_real_ip="5.6.7.8", client_host="203.0.113.9")
        assert get_client_ip(request) == "203.0.113.9"

    def test_invalid_x_real_ip_falls_back(self):
        request = self._create_mock_request(x_real_ip="garbage", client_host="::1")
        assert get_client_ip(request) == "::1"

    def test_forwarded_for_is_ignored(self):
        request = self._create_mock_request(x_forwarded_for="1.1.1.1", client_host="203.0.113.9")
        assert get_client_ip(request) == "203.0.113.9"

    def test_no_client(self):
        assert get_client_ip(self._create_mock_request()) is None


class TestDeriveDeviceClass:
    def test_explicit_class_wins(self):
        assert derive_device_class("ext-A", "Chrome-Extension/1.0", RULES, "web") == "ext-A"

    def test_explicit_class_is_trimmed(self):
        assert derive_device_class("  tablet ", None, RULES, "web") == "tablet"

    @pytest.mark.parametrize(
        "user_agent, expected",
        [
            ("Mozilla/5.0 Chrome-Extension/2.1", "chrome-extension"),
            ("SilenceNotes-iOS/3.0 CFNetwork", "ios"),
            ("Mozilla/5.0 (X11; Linux x86_64) Firefox/130.0", "web"),
            (None, "web"),
        ],
    )
    def test_user_agent_rules(self, user_agent, expected):
        assert derive_device_class(None, user_agent, RULES, "web") == expected

    def test_blank_explicit_class_uses_rules(self):
        assert derive_device_class("   ", "Chrome-Extension", RULES, "web") == "chrome-extension"

    def test_first_matching_rule_wins(self):
        rules = {"Chrome": "browser", "Chrome-Extension": "chrome-extension"}
        assert derive_device_class(None, "Chrome-Extension/1.0", rules, "web") == "browser"
