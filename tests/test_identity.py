"""
Tests for gateway-forwarded identity.
"""
import unittest

from fastapi import Request

from app.identity import HeaderIdentityProvider


def request_with(headers):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/chat",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
    }
    return Request(scope)


class TestHeaderIdentityProvider(unittest.TestCase):

    def test_subject_from_default_header(self):
        assert HeaderIdentityProvider().identify(request_with({"X-User-Id": "ext-1"})) == "ext-1"

    def test_missing_or_blank_header_is_anonymous(self):
        provider = HeaderIdentityProvider()
        assert provider.identify(request_with({})) is None
        assert provider.identify(request_with({"X-User-Id": "   "})) is None

    def test_custom_header_ignores_the_default_one(self):
        provider = HeaderIdentityProvider(header_name="X-Auth-Subject")

        assert provider.identify(request_with({"X-User-Id": "forged"})) is None
        assert provider.identify(request_with({"X-Auth-Subject": "ext-2"})) == "ext-2"


if __name__ == "__main__":
    unittest.main()
