"""Reactor: owns the connection to the language server and polls it.

Lifecycle: unengaged -> engaged (port + token known) -> polling. The first
sync after start_reactor() retries with a linear backoff; periodic syncs do
not retry, except that a lost connection asks the owner to re-scan because
the language server has probably moved to a new port.
"""

from __future__ import annotations

import asyncio
import errno
import json
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp
import structlog

from quota_radar.config import Config
from quota_radar.constants import CLIENT_METADATA, LOOPBACK_HOST, USER_STATUS_ENDPOINT
from quota_radar.decoder import decode_signal
from quota_radar.errors import (
    ConnectionFailedError,
    CorruptResponseError,
    NotEngagedError,
    RequestTimedOutError,
    is_connection_loss,
    is_server_error,
)
from quota_radar.formatting import format_percentage
from quota_radar.grouping import GroupingSettings
from quota_radar.models import DecodeResult, QuotaSnapshot, ScanDiagnostics
from quota_radar.preferences import PreferenceStore
from quota_radar.reporter import ErrorReporter
from quota_radar.retry import init_backoff_delay
from quota_radar.transport import loopback_session, loopback_url, request_headers

log = structlog.get_logger()

TelemetryHandler = Callable[[QuotaSnapshot], None]
MalfunctionHandler = Callable[[BaseException], None]
RescanHook = Callable[[], Awaitable[None]]

BODY_PREVIEW_LIMIT = 200


class ReactorCore:
    """Polls the language server for quota telemetry and decodes it."""

    def __init__(
        self,
        config: Config,
        preferences: PreferenceStore | None = None,
        reporter: ErrorReporter | None = None,
    ) -> None:
        self.config = config
        self.preferences = preferences
        self.reporter = reporter

        self.http_timeout = config.reactor.http_timeout
        self.scheme = config.reactor.scheme
        self.max_consecutive_rescans = config.reactor.max_consecutive_rescans

        # Connection session
        self._port = 0
        self._token = ""
        self._diagnostics: ScanDiagnostics | None = None
        self.current_interval = 0.0

        self._last_snapshot: QuotaSnapshot | None = None
        self._last_raw: Any = None
        self._has_succeeded = False
        self._consecutive_rescans = 0

        self._telemetry_handler: TelemetryHandler | None = None
        self._malfunction_handler: MalfunctionHandler | None = None
        self._rescan_hook: RescanHook | None = None

        self._sync_lock = asyncio.Lock()
        self._pulse_task: asyncio.Task | None = None
        self._init_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    # --- Session ---

    def engage(self, port: int, token: str, diagnostics: ScanDiagnostics | None = None) -> None:
        """Set the connection parameters for all later requests."""
        self._port = port
        self._token = token
        self._diagnostics = diagnostics
        log.info("reactor_engaged", port=port)

    @property
    def engaged(self) -> bool:
        return bool(self._port)

    @property
    def port(self) -> int:
        return self._port

    def get_latest_snapshot(self) -> QuotaSnapshot | None:
        return self._last_snapshot

    @property
    def has_cache(self) -> bool:
        return self._last_snapshot is not None

    @property
    def has_succeeded(self) -> bool:
        """True once any sync has produced a snapshot."""
        return self._has_succeeded

    @property
    def consecutive_rescans(self) -> int:
        """Re-scans requested since the last successful sync."""
        return self._consecutive_rescans

    def on_telemetry(self, handler: TelemetryHandler) -> None:
        self._telemetry_handler = handler

    def on_malfunction(self, handler: MalfunctionHandler) -> None:
        self._malfunction_handler = handler

    def on_rescan(self, hook: RescanHook) -> None:
        """Register the coroutine run when the server seems to have moved."""
        self._rescan_hook = hook

    # --- Polling ---

    async def start_reactor(self, interval: float | None = None) -> None:
        """Start the retried first sync and the periodic sync task."""
        self.shutdown()
        self.current_interval = interval or self.config.reactor.refresh_interval
        log.info("reactor_started", interval=self.current_interval)

        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        self._init_task = asyncio.create_task(self.init_with_retry())
        self._pulse_task = asyncio.create_task(self._pulse(self.current_interval))

    async def _pulse(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.sync_telemetry()

    async def init_with_retry(self, max_retries: int | None = None) -> None:
        """First sync, retried with 2s/4s/6s delays before giving up.

        After the last retry fails the error is reported (unless the server
        itself explained it), the malfunction handler fires once and a lost
        connection triggers a re-scan.
        """
        if max_retries is None:
            max_retries = self.config.reactor.init_max_retries
        base = self.config.reactor.init_backoff_base

        for retry in range(max_retries + 1):
            try:
                await self.sync_telemetry_core()
                return
            except Exception as e:
                if retry < max_retries:
                    delay = init_backoff_delay(retry, base)
                    log.warning(
                        "init_sync_retry",
                        retry=retry + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    continue

                log.error("init_sync_failed", retries=max_retries, error=str(e))
                if not is_server_error(e):
                    self._report(e, phase="init_sync", retry_count=retry, max_retries=max_retries)
                self._emit_malfunction(e)
                self._maybe_rescan(e)

    async def sync_telemetry(self) -> None:
        """One periodic sync. Failures are handled here, never raised."""
        try:
            await self.sync_telemetry_core()
        except Exception as e:
            log.error("telemetry_sync_failed", error=str(e))

            if not self._has_succeeded and not is_server_error(e):
                self._report(e, phase="telemetry_sync")

            self._emit_malfunction(e)
            self._maybe_rescan(e)

    def _maybe_rescan(self, err: BaseException) -> None:
        """Ask the owner to re-discover the server after a lost connection."""
        if not self._should_rescan(err):
            return
        self._consecutive_rescans += 1
        log.warning(
            "rescan_requested",
            attempt=self._consecutive_rescans,
            max_attempts=self.max_consecutive_rescans,
            error=str(err),
        )
        self._spawn(self._rescan_hook(), "rescan")  # type: ignore[misc]

    def _should_rescan(self, err: BaseException) -> bool:
        if self._rescan_hook is None or not is_connection_loss(err):
            return False
        if self._consecutive_rescans >= self.max_consecutive_rescans:
            log.error("rescan_budget_exhausted", attempts=self._consecutive_rescans)
            return False
        return True

    async def sync_telemetry_core(self) -> None:
        """Fetch, decode, cache and publish one snapshot. Raises on failure."""
        async with self._sync_lock:
            raw = await self.transmit(USER_STATUS_ENDPOINT, {"metadata": dict(CLIENT_METADATA)})

            snapshot = self._decode(raw)
            self._last_raw = raw
            self._last_snapshot = snapshot

            log.info(
                "quota_update",
                models={
                    m.label: format_percentage(m.remaining_percentage) for m in snapshot.models
                },
            )

            self._has_succeeded = True
            self._consecutive_rescans = 0
            self._emit_telemetry(snapshot)

    async def transmit(self, endpoint: str, payload: dict) -> Any:
        """POST a JSON payload to the engaged language server.

        Raises:
            NotEngagedError: engage() has not been called
            ConnectionFailedError: The connection could not be made
            RequestTimedOutError: No complete response within http_timeout
            CorruptResponseError: The body was empty or not JSON
        """
        if not self._port:
            raise NotEngagedError()

        url = loopback_url(self._port, endpoint, self.scheme)
        log.info("transmit", endpoint=endpoint)

        try:
            async with loopback_session(self.http_timeout) as session:
                async with session.post(
                    url, json=payload, headers=request_headers(self._token)
                ) as response:
                    status = response.status
                    body = await response.text()
        except aiohttp.ClientConnectorError as e:
            raise ConnectionFailedError(str(e), refused=_is_refused(e.os_error)) from e
        except asyncio.TimeoutError as e:
            raise RequestTimedOutError() from e
        except aiohttp.ClientError as e:
            raise ConnectionFailedError(str(e) or type(e).__name__) from e

        log.info("signal_received", status=status, body_length=len(body))

        if not body.strip():
            log.warning("empty_response", endpoint=endpoint)
            raise CorruptResponseError("Empty response from server")
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            preview = body[:BODY_PREVIEW_LIMIT] + "..." if len(body) > BODY_PREVIEW_LIMIT else body
            log.error("response_parse_failed", preview=preview)
            raise CorruptResponseError(str(e)) from e

    def reprocess(self) -> None:
        """Re-publish telemetry after a settings change, without a request."""
        if self._telemetry_handler is None:
            log.warning("reprocess_skipped", reason="no telemetry handler")
            return
        if self._last_raw is not None:
            log.info("reprocess_cached_response")
            snapshot = self._decode(self._last_raw)
            self._last_snapshot = snapshot
            self._emit_telemetry(snapshot)
        elif self._last_snapshot is not None:
            log.info("reprocess_cached_snapshot")
            self._emit_telemetry(self._last_snapshot)
        else:
            log.warning("reprocess_skipped", reason="no cached data")

    def shutdown(self) -> None:
        """Stop periodic syncs. In-flight requests end via their own timeout."""
        if self._pulse_task is not None:
            self._pulse_task.cancel()
            self._pulse_task = None

    async def close(self) -> None:
        """Cancel every task the reactor owns and wait for them."""
        self.shutdown()
        tasks = [t for t in (self._init_task, *self._background) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._init_task = None
        self._background.clear()

    # --- Decoding ---

    def _grouping_settings(self) -> GroupingSettings:
        if self.preferences is not None:
            return self.preferences.grouping_settings()
        return GroupingSettings(enabled=self.config.grouping.enabled)

    def _decode(self, raw: Any) -> QuotaSnapshot:
        result = decode_signal(raw, self._grouping_settings())
        self._apply_corrections(result)
        return result.snapshot

    def _apply_corrections(self, result: DecodeResult) -> None:
        """Drop evicted models from the saved mapping in the background."""
        if not result.evicted_model_ids or self.preferences is None:
            return
        self._spawn(
            self.preferences.remove_from_groups(result.evicted_model_ids),
            "group_correction",
        )

    # --- Helpers ---

    def _spawn(self, coro: Awaitable[None], name: str) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                log.error("background_task_failed", task=name, error=str(exc))

        task.add_done_callback(_done)

    def _emit_telemetry(self, snapshot: QuotaSnapshot) -> None:
        if self._telemetry_handler is not None:
            self._telemetry_handler(snapshot)

    def _emit_malfunction(self, err: BaseException) -> None:
        if self._malfunction_handler is not None:
            self._malfunction_handler(err)

    def _report(self, err: BaseException, phase: str, **extra: Any) -> None:
        if self.reporter is None:
            return
        self.reporter.capture(
            err,
            {
                "phase": phase,
                "endpoint": USER_STATUS_ENDPOINT,
                "host": LOOPBACK_HOST,
                "port": self._port,
                "timeout": self.http_timeout,
                "interval": self.current_interval,
                "has_token": bool(self._token),
                "scan": self._diagnostics.to_dict() if self._diagnostics else None,
                **extra,
            },
        )


def _is_refused(os_error: OSError | None) -> bool:
    if isinstance(os_error, ConnectionRefusedError):
        return True
    return getattr(os_error, "errno", None) == errno.ECONNREFUSED
