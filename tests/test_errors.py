"""Tests for error classification."""

import pytest

from quota_radar.errors import (
    USER_ENV_CATEGORIES,
    CommandTimeoutError,
    ConnectionFailedError,
    CorruptResponseError,
    MalformedResponseError,
    RequestTimedOutError,
    ServerReportedError,
    classify_error,
    is_connection_loss,
    is_server_error,
)


class TestConnectionLoss:
    def test_refused_connection(self):
        assert is_connection_loss(ConnectionFailedError("x", refused=True))

    def test_other_connection_failure(self):
        assert not is_connection_loss(ConnectionFailedError("ssl handshake failed"))

    def test_timeout_and_corrupt_body(self):
        assert is_connection_loss(RequestTimedOutError())
        assert is_connection_loss(CorruptResponseError("Empty response from server"))

    def test_decode_errors_are_not_connection_loss(self):
        assert not is_connection_loss(MalformedResponseError("{}"))
        assert not is_connection_loss(ServerReportedError("Not signed in"))


def test_is_server_error():
    assert is_server_error(ServerReportedError("quota service unavailable"))
    assert not is_server_error(RuntimeError("quota service unavailable"))


class TestClassifyError:
    @pytest.mark.parametrize(
        "err,category",
        [
            (CommandTimeoutError("ps -ax", 15), "cmd_timeout"),
            (RequestTimedOutError(), "network_timeout"),
            (ConnectionFailedError("Cannot connect", refused=True), "connection_refused"),
            (OSError("connect ECONNREFUSED 127.0.0.1:42100"), "connection_refused"),
            (OSError("getaddrinfo ENOTFOUND localhost"), "dns_failure"),
            (OSError("407 Proxy Authentication Required"), "proxy_error"),
            (PermissionError("Permission denied"), "permission_denied"),
            (RuntimeError("No matching process not found"), "process_not_found"),
            (ServerReportedError("You are not logged in"), "unauthorized"),
            (CorruptResponseError("Expecting value: line 1 column 1"), "parse_error"),
            (AttributeError("'NoneType' object has no attribute 'get'"), "null_reference"),
            (RuntimeError("something else"), "unknown"),
        ],
    )
    def test_categories(self, err, category):
        assert classify_error(err) == category

    def test_user_env_categories(self):
        assert "network_timeout" in USER_ENV_CATEGORIES
        assert "parse_error" not in USER_ENV_CATEGORIES
        assert "unknown" not in USER_ENV_CATEGORIES
