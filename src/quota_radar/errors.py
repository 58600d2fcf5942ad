"""Exception taxonomy for discovery, transport and decoding.

Every error raised by the engine derives from QuotaRadarError so callers can
branch on the concrete type. ServerReportedError is special: it carries a
message the backend chose to show (e.g. "not signed in") and is never treated
as a defect.
"""

from __future__ import annotations


class QuotaRadarError(Exception):
    """Base class for all quota-radar errors."""


# --- Transport ---


class NotEngagedError(QuotaRadarError):
    """A request was attempted before the reactor was engaged."""

    def __init__(self, message: str = "System not ready (reactor not engaged)") -> None:
        super().__init__(message)


class ConnectionFailedError(QuotaRadarError):
    """The TCP/TLS connection to the language server could not be made."""

    def __init__(self, message: str, *, refused: bool = False) -> None:
        super().__init__(f"Connection failed: {message}")
        self.refused = refused


class RequestTimedOutError(QuotaRadarError):
    """No response arrived within the request timeout."""

    def __init__(self, message: str = "Signal lost: request timed out") -> None:
        super().__init__(message)


class CorruptResponseError(QuotaRadarError):
    """The response body was empty or not valid JSON."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"Signal corrupted: {detail}")


# --- Decoding ---


class MalformedResponseError(QuotaRadarError):
    """The response parsed but did not have the expected shape."""

    def __init__(self, preview: str) -> None:
        super().__init__(f"Invalid response from language server: {preview}")


class ServerReportedError(QuotaRadarError):
    """The backend answered with its own human-readable error message."""

    def __init__(self, server_message: str) -> None:
        super().__init__(f"Language server reported: {server_message}")
        self.server_message = server_message


# --- Discovery ---


class ProcessNotFoundError(QuotaRadarError):
    """No process matching the language server was found."""


class PortDiscoveryError(QuotaRadarError):
    """Listening ports of a candidate process could not be listed."""


class VerificationFailedError(QuotaRadarError):
    """None of a candidate's ports answered the loopback probe."""


class CommandTimeoutError(QuotaRadarError):
    """An OS command did not finish within its timeout."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(f"Command timed out after {timeout}s: {command[:80]}")
        self.command = command
        self.timeout = timeout


# --- Classification ---


def is_server_error(err: BaseException) -> bool:
    """Return True for errors that originate from the backend, not from us."""
    return isinstance(err, ServerReportedError)


def is_connection_loss(err: BaseException) -> bool:
    """Return True if the error suggests the backend moved or went away.

    Refused connections, timeouts and corrupted bodies usually mean the
    language server restarted on a different port.
    """
    if isinstance(err, ConnectionFailedError):
        return err.refused
    return isinstance(err, (RequestTimedOutError, CorruptResponseError))


# Categories that point at the user's environment rather than at our code
USER_ENV_CATEGORIES = frozenset(
    {
        "network_timeout",
        "connection_refused",
        "dns_failure",
        "proxy_error",
        "permission_denied",
        "cmd_timeout",
        "process_not_found",
        "unauthorized",
    }
)


def classify_error(err: BaseException) -> str:
    """Classify an error by its message into a coarse category."""
    msg = str(err).lower()

    if isinstance(err, CommandTimeoutError):
        return "cmd_timeout"
    if "etimedout" in msg or "timed out" in msg:
        return "network_timeout"
    if "econnrefused" in msg or "connection refused" in msg:
        return "connection_refused"
    if isinstance(err, ConnectionFailedError) and err.refused:
        return "connection_refused"
    if "enotfound" in msg or "getaddrinfo" in msg or "name resolution" in msg:
        return "dns_failure"
    if "proxy" in msg or "407" in msg:
        return "proxy_error"
    if "permission" in msg or "access denied" in msg or "eacces" in msg:
        return "permission_denied"
    if "timeout" in msg and ("command" in msg or "powershell" in msg):
        return "cmd_timeout"
    if "process" in msg and ("not found" in msg or "no matching" in msg):
        return "process_not_found"
    if "not logged in" in msg or "not signed in" in msg or "unauthorized" in msg:
        return "unauthorized"
    if "json" in msg or "parse" in msg or "expecting value" in msg:
        return "parse_error"
    if "nonetype" in msg or "has no attribute" in msg:
        return "null_reference"
    return "unknown"
