"""Discover the running language server and prove we can talk to it.

The hunter finds candidate processes with the platform strategy, lists each
candidate's listening ports, and probes them with an authenticated ping.
The first port answering 200 wins. Discovery failures are logged and turned
into a None result; nothing raises past scan_environment().
"""

from __future__ import annotations

import asyncio
import re

import aiohttp
import structlog

from quota_radar.commands import run_command
from quota_radar.config import Config
from quota_radar.constants import PING_ENDPOINT, REDACTED
from quota_radar.errors import (
    CommandTimeoutError,
    PortDiscoveryError,
    ProcessNotFoundError,
    QuotaRadarError,
    VerificationFailedError,
)
from quota_radar.models import EnvironmentScanResult, ProcessCandidate, ScanDiagnostics
from quota_radar.platforms import PlatformErrorMessages, PlatformStrategy, WindowsStrategy
from quota_radar.retry import ScanRetryPolicy
from quota_radar.transport import loopback_session, loopback_url, request_headers

log = structlog.get_logger()

DIAGNOSTIC_OUTPUT_LIMIT = 2000
DIAGNOSTIC_STDERR_LIMIT = 500

_TOKEN_VALUE_RE = re.compile(r"(--csrf_token[=\s]+)([a-f0-9-]+)", re.IGNORECASE)

# Lowercased substrings of known Windows shell failures
_EXECUTION_POLICY_SIGNATURES = (
    "cannot be loaded because running scripts is disabled",
    "executionpolicy",
    "禁止运行脚本",
)
_WMI_SIGNATURES = ("rpc server", "wmi", "invalid class", "无效类")
_TIMEOUT_SIGNATURES = ("timeout", "timed out", "超时")

EXECUTION_POLICY_HINT = (
    "PowerShell execution policy blocks scripts. Run: "
    "Set-ExecutionPolicy -Scope CurrentUser -ExecutionPolicy RemoteSigned"
)
WMI_HINT = "WMI service is unavailable. Run: net start winmgmt (as administrator)"


def redact_tokens(text: str) -> str:
    """Replace every --csrf_token value with a placeholder."""
    return _TOKEN_VALUE_RE.sub(rf"\g<1>{REDACTED}", text)


def windows_hints(error_text: str) -> list[str]:
    """Return actionable hints for known PowerShell failure messages."""
    lowered = error_text.lower()
    hints = []
    if any(sig in lowered for sig in _EXECUTION_POLICY_SIGNATURES):
        hints.append(EXECUTION_POLICY_HINT)
    if any(sig in lowered for sig in _WMI_SIGNATURES):
        hints.append(WMI_HINT)
    return hints


def looks_like_timeout(error_text: str) -> bool:
    lowered = error_text.lower()
    return any(sig in lowered for sig in _TIMEOUT_SIGNATURES)


class ProcessHunter:
    """Finds the language server with a platform strategy and verifies it."""

    def __init__(self, strategy: PlatformStrategy, config: Config) -> None:
        self.strategy = strategy
        self.discovery = config.discovery
        self.http_timeout = config.reactor.http_timeout
        self.scheme = config.reactor.scheme
        self._diagnostics = ScanDiagnostics(target_process=strategy.target_process)
        self._failure: QuotaRadarError | None = None

    @property
    def is_windows(self) -> bool:
        return isinstance(self.strategy, WindowsStrategy)

    def get_last_diagnostics(self) -> ScanDiagnostics:
        """Diagnostics of the most recent scan (a copy)."""
        return self._diagnostics.copy()

    def error_messages(self) -> PlatformErrorMessages:
        return self.strategy.error_messages()

    @property
    def last_failure(self) -> QuotaRadarError | None:
        """Why the most recent scan failed; None after a success."""
        return self._failure

    async def scan_environment(
        self, max_attempts: int | None = None
    ) -> EnvironmentScanResult | None:
        """Locate the language server.

        Tries the process-name scan with bounded retries, then the keyword
        scan where the platform has one. When both fail, logs a diagnostic
        process listing.

        Returns:
            The verified connection, or None if nothing answered
        """
        max_attempts = max_attempts or self.discovery.max_attempts
        self._failure = None
        self._diagnostics = ScanDiagnostics(
            scan_method="process_name",
            target_process=self.strategy.target_process,
        )
        log.info(
            "scan_started",
            platform=self.strategy.name,
            target=self.strategy.target_process,
            max_attempts=max_attempts,
        )

        result = await self._scan_by_process_name(max_attempts)
        if result is not None:
            return result

        if self.strategy.supports_keyword_scan:
            result = await self._scan_by_keyword()
            if result is not None:
                return result

        if self._failure is None:
            self._failure = ProcessNotFoundError(self.error_messages().process_not_found)

        await self._run_diagnostics()
        log.error(
            "scan_failed",
            platform=self.strategy.name,
            reason=type(self._failure).__name__,
            **self._diagnostics.to_dict(),
        )
        return None

    async def _scan_by_process_name(self, max_attempts: int) -> EnvironmentScanResult | None:
        policy = ScanRetryPolicy(max_attempts)
        command = self.strategy.build_process_list_command(self.strategy.target_process)

        while not policy.exhausted:
            self._diagnostics.attempts = policy.attempt
            log.debug("scan_attempt", attempt=policy.attempt, max_attempts=max_attempts)

            try:
                result = await run_command(command, timeout=self.discovery.command_timeout)
            except CommandTimeoutError as e:
                log.warning("process_list_timeout", attempt=policy.attempt, error=str(e))
                if policy.record_failure(timed_out=True, grace_allowed=self.is_windows):
                    log.info("shell_cold_start_grace", delay=self.discovery.cold_start_delay)
                    await asyncio.sleep(self.discovery.cold_start_delay)
                    continue
                await self._pause_between(policy)
                continue
            except OSError as e:
                log.warning("process_list_failed", attempt=policy.attempt, error=str(e))
                policy.record_failure()
                await self._pause_between(policy)
                continue

            if not result.stdout.strip():
                if result.stderr.strip():
                    self._log_shell_failure(result.stderr)
                log.debug("process_list_empty", attempt=policy.attempt)
                policy.record_failure()
                await self._pause_between(policy)
                continue

            candidates = self.strategy.parse_process_info(result.stdout)
            self._diagnostics.found_candidates = len(candidates)
            if candidates:
                found = await self._verify_candidates(candidates)
                if found is not None:
                    return found

            policy.record_failure()
            await self._pause_between(policy)

        return None

    async def _pause_between(self, policy: ScanRetryPolicy) -> None:
        if not policy.exhausted:
            await asyncio.sleep(self.discovery.scan_retry_delay)

    def _log_shell_failure(self, error_text: str) -> None:
        log.warning("process_list_stderr", stderr=error_text[:DIAGNOSTIC_STDERR_LIMIT])
        if not self.is_windows:
            return
        for hint in windows_hints(error_text):
            log.warning("windows_shell_hint", hint=hint)
        if looks_like_timeout(error_text):
            log.warning("windows_shell_slow", hint="PowerShell may still be starting up")

    async def _scan_by_keyword(self) -> EnvironmentScanResult | None:
        self._diagnostics.scan_method = "keyword"
        self._diagnostics.attempts = 1
        log.info("keyword_scan_started", platform=self.strategy.name)

        try:
            result = await run_command(
                self.strategy.build_keyword_command(),
                timeout=self.discovery.command_timeout,
            )
        except (CommandTimeoutError, OSError) as e:
            log.warning("keyword_scan_failed", error=str(e))
            return None

        candidates = self.strategy.parse_process_info(result.stdout)
        self._diagnostics.found_candidates = len(candidates)
        if not candidates:
            return None
        return await self._verify_candidates(candidates)

    async def _verify_candidates(
        self, candidates: list[ProcessCandidate]
    ) -> EnvironmentScanResult | None:
        for candidate in candidates:
            ports = await self._identify_ports(candidate.pid)
            self._diagnostics.ports = ports

            port = await self.verify_connection(ports, candidate.csrf_token)
            self._diagnostics.verified_port = port
            self._diagnostics.verification_success = port is not None

            if port is None:
                log.info("candidate_rejected", pid=candidate.pid, ports=ports)
                if ports:
                    self._failure = VerificationFailedError(
                        f"No port of PID {candidate.pid} answered the probe: {ports}"
                    )
                continue

            log.info(
                "scan_succeeded",
                pid=candidate.pid,
                extension_port=candidate.extension_port,
                connect_port=port,
                method=self._diagnostics.scan_method,
            )
            self._failure = None
            return EnvironmentScanResult(
                extension_port=candidate.extension_port,
                connect_port=port,
                csrf_token=candidate.csrf_token,
                pid=candidate.pid,
            )
        return None

    async def _identify_ports(self, pid: int) -> list[int]:
        """List the ports a process listens on. Failures yield no ports."""
        await self.strategy.prepare_port_listing(self.discovery.tool_probe_timeout)
        command = self.strategy.build_port_list_command(pid)
        try:
            result = await run_command(command, timeout=self.discovery.command_timeout)
        except (CommandTimeoutError, OSError) as e:
            log.warning("port_list_failed", pid=pid, error=str(e))
            self._failure = PortDiscoveryError(f"Could not list ports of PID {pid}: {e}")
            return []
        ports = self.strategy.parse_listening_ports(result.stdout)
        if not ports:
            self._failure = PortDiscoveryError(f"PID {pid} has no listening ports")
        return ports

    async def verify_connection(self, ports: list[int], token: str) -> int | None:
        """Return the first port that answers the ping, or None."""
        for port in ports:
            if await self.ping_port(port, token):
                return port
        return None

    async def ping_port(self, port: int, token: str) -> bool:
        """Probe one port with an authenticated ping; True on HTTP 200."""
        url = loopback_url(port, PING_ENDPOINT, self.scheme)
        try:
            async with loopback_session(self.http_timeout) as session:
                async with session.post(
                    url, json={"wrapper_data": {}}, headers=request_headers(token)
                ) as response:
                    ok = response.status == 200
                    log.debug("port_probe", port=port, status=response.status)
                    return ok
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            log.debug("port_probe_failed", port=port, error=str(e) or type(e).__name__)
            return False

    async def _run_diagnostics(self) -> None:
        """Log anything that looks related, with tokens redacted."""
        try:
            result = await run_command(
                self.strategy.build_diagnostic_command(),
                timeout=self.discovery.diagnostic_timeout,
            )
        except (CommandTimeoutError, OSError) as e:
            log.warning("diagnostics_failed", error=str(e))
            return

        output = redact_tokens(result.stdout).strip()
        if output:
            log.info("diagnostic_processes", output=output[:DIAGNOSTIC_OUTPUT_LIMIT])
        else:
            log.warning("diagnostic_no_processes", platform=self.strategy.name)
        if result.stderr.strip():
            log.debug("diagnostic_stderr", stderr=result.stderr[:DIAGNOSTIC_STDERR_LIMIT])

        if self.is_windows:
            messages = self.error_messages()
            log.info("troubleshooting_requirements", requirements=messages.requirements)
