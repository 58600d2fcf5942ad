"""Long-running quota monitor.

QuotaMonitor is the composition root: it builds the platform strategy, the
hunter, the preference store and the reactor once and wires the reactor's
callbacks back to itself.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass
from datetime import datetime

import psutil
import structlog

from quota_radar import logging as console
from quota_radar.config import Config
from quota_radar.grouping import calculate_group_mappings
from quota_radar.hunter import ProcessHunter
from quota_radar.models import EnvironmentScanResult, QuotaSnapshot
from quota_radar.platforms import select_platform
from quota_radar.preferences import PreferenceStore
from quota_radar.reactor import ReactorCore
from quota_radar.reporter import LogErrorReporter

log = structlog.get_logger()


@dataclass
class MonitorState:
    """Runtime state of the monitor."""

    running: bool = False
    engaged_pid: int | None = None
    engaged_port: int | None = None
    snapshot: QuotaSnapshot | None = None
    last_error: str | None = None
    update_count: int = 0
    last_update_time: datetime | None = None

    def record_snapshot(self, snapshot: QuotaSnapshot) -> None:
        self.snapshot = snapshot
        self.last_error = None
        self.update_count += 1
        self.last_update_time = datetime.now()


class QuotaMonitor:
    """Discovers the language server and keeps quota telemetry fresh."""

    def __init__(self, config: Config, preferences: PreferenceStore | None = None):
        self.config = config
        self.state = MonitorState()

        self.strategy = select_platform(product_name=config.discovery.product_name)
        self.hunter = ProcessHunter(self.strategy, config)

        if preferences is None:
            preferences = PreferenceStore(config.preferences_path, config.grouping.enabled)
            preferences.load()
        self.preferences = preferences

        self.reactor = ReactorCore(
            config,
            preferences=self.preferences,
            reporter=LogErrorReporter(enabled=config.reporting.enabled),
        )
        self.reactor.on_telemetry(self._handle_telemetry)
        self.reactor.on_malfunction(self._handle_malfunction)
        self.reactor.on_rescan(self._rescan)

        self._shutdown_event = asyncio.Event()
        self._auto_group_task: asyncio.Task | None = None

    async def boot(self) -> bool:
        """Find the language server and start polling it.

        A failed scan is repeated boot.max_auto_retry times before the
        monitor settles on an offline snapshot.

        Returns:
            True if the reactor was engaged
        """
        boot = self.config.boot
        console.scan_started(self.strategy.target_process)

        for attempt in range(boot.max_auto_retry + 1):
            if attempt:
                console.boot_retry(attempt, boot.max_auto_retry, boot.auto_retry_delay)
                await asyncio.sleep(boot.auto_retry_delay)

            result = await self.hunter.scan_environment(self.config.discovery.max_attempts)
            if result is not None:
                await self.connect(result)
                return True

        messages = self.hunter.error_messages()
        reason = str(self.hunter.last_failure or messages.process_not_found)
        console.scan_failed(reason, messages.requirements)
        log.error("boot_failed", attempts=boot.max_auto_retry + 1, reason=reason)
        self.state.engaged_pid = None
        self.state.snapshot = QuotaSnapshot.offline(reason)
        self.state.last_error = reason
        return False

    async def connect(self, result: EnvironmentScanResult) -> None:
        """Engage the reactor with a verified scan result and start polling."""
        self.state.engaged_pid = result.pid
        self.state.engaged_port = result.connect_port
        console.scan_found(result.connect_port, result.pid)

        self.reactor.engage(
            result.connect_port,
            result.csrf_token,
            self.hunter.get_last_diagnostics(),
        )
        await self.reactor.start_reactor(self.config.reactor.refresh_interval)

    def _handle_telemetry(self, snapshot: QuotaSnapshot) -> None:
        self.state.record_snapshot(snapshot)
        console.quota_updated(snapshot)

        # First run with grouping on: seed the mapping from live quota state
        if (
            self.config.grouping.enabled
            and snapshot.models
            and not self.preferences.mappings
            and self._auto_group_task is None
        ):
            mappings = calculate_group_mappings(snapshot.models)
            self._auto_group_task = asyncio.ensure_future(self._auto_group(mappings))

    async def _auto_group(self, mappings: dict[str, str]) -> None:
        try:
            await self.preferences.update_mappings(mappings)
        except OSError as e:
            log.error("auto_group_save_failed", error=str(e))
            return
        console.groups_created(len(set(mappings.values())))
        self.reactor.reprocess()

    def _handle_malfunction(self, err: BaseException) -> None:
        self.state.last_error = str(err)
        if not self.reactor.has_cache:
            self.state.snapshot = QuotaSnapshot.offline(str(err))
        console.malfunction(str(err))

    async def _rescan(self) -> None:
        """Re-discover the language server after the connection was lost."""
        pid = self.state.engaged_pid
        if pid is not None and not psutil.pid_exists(pid):
            log.info("backend_process_gone", pid=pid)
            console.backend_process_gone(pid)
        else:
            log.info("backend_port_changed", pid=pid, port=self.state.engaged_port)

        console.rescan_requested(
            self.reactor.consecutive_rescans, self.config.reactor.max_consecutive_rescans
        )
        await self.boot()

    async def start(self) -> None:
        """Start the monitor and run until a shutdown signal."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        self.state.running = True
        console.config_summary(self.config.reactor.refresh_interval, self.config.grouping.enabled)
        console.monitor_started()
        log.info("monitor_started", platform=self.strategy.name)

        await self.boot()
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the monitor gracefully."""
        console.monitor_stopping()
        self.state.running = False

        if self._auto_group_task is not None:
            self._auto_group_task.cancel()
            try:
                await self._auto_group_task
            except asyncio.CancelledError:
                pass
            self._auto_group_task = None

        await self.reactor.close()
        log.info("monitor_stopped")
        console.monitor_stopped()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()


async def fetch_snapshot(config: Config, preferences: PreferenceStore | None = None):
    """Discover the language server and run a single sync.

    Returns:
        (scan result, snapshot); both None if discovery failed

    Raises:
        QuotaRadarError: The sync itself failed
    """
    strategy = select_platform(product_name=config.discovery.product_name)
    hunter = ProcessHunter(strategy, config)
    result = await hunter.scan_environment(config.discovery.max_attempts)
    if result is None:
        return None, None

    reactor = ReactorCore(config, preferences=preferences)
    reactor.engage(result.connect_port, result.csrf_token, hunter.get_last_diagnostics())
    try:
        await reactor.sync_telemetry_core()
    finally:
        await reactor.close()
    return result, reactor.get_latest_snapshot()


async def run_monitor(config: Config | None = None) -> None:
    """Run the monitor until shutdown.

    Args:
        config: Optional config, loads from file if not provided
    """
    if config is None:
        config = Config.load()

    console.configure(config)

    monitor = QuotaMonitor(config)

    try:
        await monitor.start()
    except Exception as e:
        log.exception("monitor_crashed", error=str(e))
        raise
    finally:
        await monitor.stop()
