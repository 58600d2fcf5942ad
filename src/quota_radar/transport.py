"""aiohttp plumbing shared by the port probe and the reactor.

The language server listens on loopback with a self-signed certificate, so
sessions skip certificate checks, ignore proxy environment variables and
never reuse connections.
"""

from __future__ import annotations

import aiohttp

from quota_radar.constants import (
    CSRF_HEADER,
    LOOPBACK_HOST,
    PROTOCOL_VERSION,
    PROTOCOL_VERSION_HEADER,
)


def loopback_url(port: int, endpoint: str, scheme: str = "https") -> str:
    """Build the URL of an endpoint on the local language server."""
    return f"{scheme}://{LOOPBACK_HOST}:{port}{endpoint}"


def request_headers(token: str) -> dict[str, str]:
    """Headers for an authenticated Connect RPC call."""
    return {
        "Content-Type": "application/json",
        PROTOCOL_VERSION_HEADER: PROTOCOL_VERSION,
        CSRF_HEADER: token,
    }


def loopback_session(timeout: float) -> aiohttp.ClientSession:
    """Create a one-shot session for loopback requests.

    The caller owns the session and must close it (use `async with`).
    """
    return aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=timeout),
        connector=aiohttp.TCPConnector(ssl=False, force_close=True),
        trust_env=False,  # No proxies for 127.0.0.1
    )
