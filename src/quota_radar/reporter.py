"""Error reporting collaborator.

The reactor hands failures it considers defects to an ErrorReporter along
with scan diagnostics. The default implementation writes a structured log
event; nothing leaves the machine.
"""

from __future__ import annotations

from typing import Any, Protocol

import structlog

from quota_radar.errors import USER_ENV_CATEGORIES, classify_error

log = structlog.get_logger()


class ErrorReporter(Protocol):
    def capture(self, error: BaseException, context: dict[str, Any] | None = None) -> None: ...


class LogErrorReporter:
    """Reports errors as `error_captured` log events."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self.captured = 0

    def capture(self, error: BaseException, context: dict[str, Any] | None = None) -> None:
        if not self.enabled:
            return
        category = classify_error(error)
        self.captured += 1
        log.error(
            "error_captured",
            error=str(error),
            error_type=type(error).__name__,
            category=category,
            likely_user_env=category in USER_ENV_CATEGORIES,
            **(context or {}),
        )
