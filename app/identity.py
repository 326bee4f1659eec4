"""
Identity resolution.

Authentication happens upstream (identity provider / gateway), which forwards the
authenticated subject id in a request header. A missing header means anonymous.

The header is only trustworthy behind that gateway: it must strip any
client-supplied copy of the header (X-User-Id by default, see IDENTITY_HEADER)
from inbound requests before setting its own. Never expose this service
directly to clients.
"""
from typing import Optional

from fastapi import Request


class HeaderIdentityProvider:
    """Reads the opaque external subject id from a trusted request header."""

    def __init__(self, header_name: str = "X-User-Id"):
        self.header_name = header_name

    def identify(self, request: Request) -> Optional[str]:
        value = request.headers.get(self.header_name, "").strip()
        return value or None
