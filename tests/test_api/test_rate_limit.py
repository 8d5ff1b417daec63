"""Tests for the rate limit key and limit providers."""

from starlette.requests import Request

from topic_tracker.api.rate_limit import client_key, trigger_limit


def _request(headers: dict[str, str] | None = None) -> Request:
    return Request({
        "type": "http",
        "method": "POST",
        "path": "/topics/python-releases/process",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": ("10.0.0.7", 50000),
    })


class TestClientKey:
    def test_peer_address(self):
        assert client_key(_request()) == "10.0.0.7"

    def test_first_forwarded_hop(self):
        request = _request({"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
        assert client_key(request) == "203.0.113.9"

    def test_blank_forwarded_header_ignored(self):
        assert client_key(_request({"X-Forwarded-For": " "})) == "10.0.0.7"


def test_trigger_limit_from_settings():
    assert trigger_limit() == "10/minute"
