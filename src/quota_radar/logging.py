"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Level-based styling
3. Core log functions (log, info, warn, error)
4. Domain-specific helpers (scan_found, quota_updated, rescan_requested, etc.)
5. Structlog configuration (configure)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from quota_radar.config import Config
    from quota_radar.models import QuotaSnapshot

# Rich console for colorful human-readable output
_console = Console(highlight=False)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output.

    Use via autocomplete: Icon.<TAB> to see all available icons.
    """

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    SCAN = "🔍"
    QUOTA = "[magenta]◆[/]"
    SAVE = "💾"
    SIGNAL = "⚡"
    CONNECTED = "[green]⬤[/]"
    DISCONNECTED = "[red]⬤[/]"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Styling Helpers
# ─────────────────────────────────────────────────────────────────────────────


def quota_color(percentage: float | None) -> str:
    """Return Rich color name for a remaining-quota percentage."""
    if percentage is None:
        return "dim"
    if percentage <= 10:
        return "bright_red"
    if percentage <= 30:
        return "bright_yellow"
    return "green"


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def monitor_started() -> None:
    """Log monitor startup complete."""
    info("Monitor started", Icon.OK)


def monitor_stopping() -> None:
    """Log monitor shutdown initiated."""
    info("Monitor stopping...", Icon.WAIT)


def monitor_stopped() -> None:
    info("Monitor stopped", Icon.OK)


def signal_received(name: str) -> None:
    """Log signal received."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def scan_started(target: str) -> None:
    """Log discovery started."""
    info(f"Scanning for [cyan]{target}[/]", Icon.SCAN)


def scan_found(port: int, pid: int | None) -> None:
    """Log discovery success."""
    pid_part = f" [dim](PID {pid})[/]" if pid else ""
    info(f"Language server on port [cyan]{port}[/]{pid_part}", Icon.CONNECTED)


def scan_failed(message: str, requirements: list[str]) -> None:
    """Log discovery failure with what the user should check."""
    error(message, Icon.FAIL)
    for item in requirements:
        info(f"[dim]• {item}[/]")


def boot_retry(attempt: int, max_attempts: int, delay: float) -> None:
    """Log an automatic re-scan after a failed boot."""
    warn(f"Retrying scan {attempt}/{max_attempts} in {delay:g}s", Icon.WAIT)


def quota_updated(snapshot: QuotaSnapshot) -> None:
    """Log a compact one-line quota summary."""
    if snapshot.groups:
        items = [(g.group_name, g.remaining_percentage) for g in snapshot.groups]
    else:
        items = [(m.label, m.remaining_percentage) for m in snapshot.models]
    if not items:
        info("[dim]No quota data[/]", Icon.QUOTA)
        return
    parts = []
    for name, pct in items:
        value = "N/A" if pct is None else f"{pct:.0f}%"
        parts.append(f"{name} [{quota_color(pct)}]{value}[/]")
    info(", ".join(parts), Icon.QUOTA)


def malfunction(message: str) -> None:
    """Log a telemetry failure."""
    error(message, Icon.FAIL)


def rescan_requested(attempt: int, max_attempts: int) -> None:
    """Log a re-scan after the connection was lost."""
    warn(f"Connection lost, re-scanning [dim]({attempt}/{max_attempts})[/]", Icon.DISCONNECTED)


def backend_process_gone(pid: int) -> None:
    info(f"[dim]Language server PID {pid} has exited[/]")


def groups_created(count: int) -> None:
    """Log automatic quota grouping."""
    info(f"Grouped models into [cyan]{count}[/] quota pools", Icon.SAVE)


def config_summary(interval: float, grouping: bool) -> None:
    """Log config summary."""
    state = "[green]on[/]" if grouping else "[dim]off[/]"
    info(f"Config: refresh=[cyan]{interval:g}s[/], grouping={state}")


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config, source: str = "monitor") -> None:
    """Configure structlog to write JSON lines to the rotating log file.

    Args:
        config: Application config with paths and log settings
        source: Value of the `source` field on every event
    """
    level = _LEVELS.get(config.system.log_level.lower(), logging.INFO)

    # Ensure state directory exists for log file
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(level)
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source(source),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            _add_source(source),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Console output is handled by Rich (see log functions above)
