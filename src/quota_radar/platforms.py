"""Per-OS process and port discovery primitives.

Two strategies exist, selected once at startup: WindowsStrategy (PowerShell
JSON + netstat) and UnixStrategy (ps + lsof/ss/netstat) for macOS and Linux.
Strategies build shell commands and hand their output to the pure parser
functions below, which are tested against captured command output.
"""

from __future__ import annotations

import json
import os
import platform as _platform
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import structlog

from quota_radar.commands import command_available
from quota_radar.constants import DEFAULT_PRODUCT_NAME, PROCESS_NAMES
from quota_radar.models import ProcessCandidate

log = structlog.get_logger()

PORT_FLAG = "--extension_server_port"
TOKEN_FLAG = "--csrf_token"

_PORT_ARG_RE = re.compile(r"--extension_server_port[=\s]+(\d+)")
_WINDOWS_TOKEN_RE = re.compile(r"--csrf_token[=\s]+([a-f0-9-]+)", re.IGNORECASE)
_UNIX_TOKEN_RE = re.compile(r"--csrf_token[=\s]+([a-zA-Z0-9-]+)", re.IGNORECASE)

# Listening-port grammars
_WINDOWS_NETSTAT_RE = re.compile(
    r"(?:127\.0\.0\.1|0\.0\.0\.0|\[::1?\]):(\d+)\s+\S+\s+LISTENING", re.IGNORECASE
)
_LSOF_RE = re.compile(
    r"(?:TCP|UDP)\s+(?:\*|[\d.]+|\[[\da-f:]+\]):(\d+)\s+\(LISTEN\)", re.IGNORECASE
)
_DARWIN_LSOF_RE = re.compile(r"(?:\*|[\d.:]+|\[[\da-f:]*\]):(\d+)\s+\(LISTEN\)", re.IGNORECASE)
_SS_RE = re.compile(r"LISTEN\s+\d+\s+\d+\s+(?:\*|[\d.]+|\[[\da-f:]*\]):(\d+)", re.IGNORECASE)
_NETSTAT_RE = re.compile(r"^tcp6?\s+\d+\s+\d+\s+\S*:(\d+)\s+\S+\s+LISTEN\b", re.MULTILINE)

# PowerShell writes UTF-8 only when told to; chcp fixes the cmd.exe side
_PS_UTF8 = "[Console]::OutputEncoding = [System.Text.Encoding]::UTF8; "

PORT_TOOLS = ("lsof", "ss", "netstat")


@dataclass
class PlatformErrorMessages:
    """User-facing hints when discovery fails on a platform."""

    process_not_found: str
    command_not_available: str
    requirements: list[str] = field(default_factory=list)


# --- Pure parsers ---


def is_target_process(cmdline: str, product_name: str = DEFAULT_PRODUCT_NAME) -> bool:
    """Return True if a command line belongs to the language server.

    All three must hold: a port flag, a token flag, and an app data dir
    flag whose value is the product name.
    """
    if PORT_FLAG not in cmdline:
        return False
    if TOKEN_FLAG not in cmdline:
        return False
    app_dir = re.compile(rf"--app_data_dir\s+{re.escape(product_name)}\b", re.IGNORECASE)
    return app_dir.search(cmdline) is not None


def extract_extension_port(cmdline: str) -> int:
    """Return the --extension_server_port value, or 0 when absent."""
    match = _PORT_ARG_RE.search(cmdline)
    return int(match.group(1)) if match else 0


def strip_json_noise(stdout: str) -> str:
    """Drop anything before the first '[' or '{' (console code page banners)."""
    starts = [i for i in (stdout.find("["), stdout.find("{")) if i >= 0]
    if not starts:
        return stdout
    return stdout[min(starts) :]


def parse_windows_process_json(
    stdout: str,
    product_name: str = DEFAULT_PRODUCT_NAME,
) -> list[ProcessCandidate]:
    """Parse `Get-CimInstance Win32_Process | ConvertTo-Json` output.

    ConvertTo-Json emits a bare object for a single match and an array
    otherwise. Unparsable output yields no candidates.
    """
    try:
        data = json.loads(strip_json_noise(stdout).strip())
    except json.JSONDecodeError as e:
        preview = stdout[:200] + "..." if len(stdout) > 200 else stdout
        log.debug("windows_json_parse_failed", error=str(e), preview=preview)
        return []

    if not isinstance(data, list):
        data = [data]

    candidates: list[ProcessCandidate] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        cmdline = item.get("CommandLine") or ""
        if not cmdline or not is_target_process(cmdline, product_name):
            continue

        pid = item.get("ProcessId")
        if not pid:
            continue

        token_match = _WINDOWS_TOKEN_RE.search(cmdline)
        if not token_match:
            log.warning("csrf_token_missing", pid=pid)
            continue

        candidates.append(
            ProcessCandidate(
                pid=int(pid),
                extension_port=extract_extension_port(cmdline),
                csrf_token=token_match.group(1),
            )
        )

    log.info("windows_processes_parsed", total=len(data), matched=len(candidates))
    return candidates


def parse_unix_process_table(
    stdout: str,
    product_name: str = DEFAULT_PRODUCT_NAME,
    current_pid: int | None = None,
) -> list[ProcessCandidate]:
    """Parse `ps -ww -eo pid,ppid,args` lines into candidates.

    Children of current_pid are ordered first since they are most likely the
    server we spawned, but every candidate is returned.
    """
    if current_pid is None:
        current_pid = os.getpid()

    candidates: list[ProcessCandidate] = []
    for line in stdout.splitlines():
        parts = line.split()
        if len(parts) < 3:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        cmdline = " ".join(parts[2:])

        token_match = _UNIX_TOKEN_RE.search(cmdline)
        if not token_match or not is_target_process(cmdline, product_name):
            continue

        candidates.append(
            ProcessCandidate(
                pid=pid,
                extension_port=extract_extension_port(cmdline),
                csrf_token=token_match.group(1),
                ppid=ppid,
            )
        )
        log.debug("unix_candidate_found", pid=pid, ppid=ppid)

    # Stable sort keeps ps order among equals
    candidates.sort(key=lambda c: 0 if c.ppid == current_pid else 1)
    return candidates


def _unique_sorted_ports(pattern: re.Pattern[str], text: str) -> list[int]:
    return sorted({int(m.group(1)) for m in pattern.finditer(text)})


def parse_windows_netstat(stdout: str) -> list[int]:
    """Parse `netstat -ano` LISTENING rows on loopback or any-address."""
    return _unique_sorted_ports(_WINDOWS_NETSTAT_RE, stdout)


def parse_darwin_lsof(stdout: str) -> list[int]:
    """Parse macOS `lsof -iTCP -sTCP:LISTEN` rows."""
    lines = [line for line in stdout.splitlines() if "(LISTEN)" in line]
    return _unique_sorted_ports(_DARWIN_LSOF_RE, "\n".join(lines))


def parse_lsof(stdout: str) -> list[int]:
    """Parse Linux `lsof` rows (TCP/UDP host:port (LISTEN))."""
    return _unique_sorted_ports(_LSOF_RE, stdout)


def parse_ss(stdout: str) -> list[int]:
    """Parse `ss -tlnp` rows."""
    return _unique_sorted_ports(_SS_RE, stdout)


def parse_netstat(stdout: str) -> list[int]:
    """Parse Linux `netstat -tulpn` rows in LISTEN state."""
    return _unique_sorted_ports(_NETSTAT_RE, stdout)


def parse_linux_ports(stdout: str) -> list[int]:
    """Parse whichever tool's output this is: ss, then lsof, then netstat."""
    for parser in (parse_ss, parse_lsof, parse_netstat):
        ports = parser(stdout)
        if ports:
            return ports
    return []


# --- Strategies ---


class PlatformStrategy(ABC):
    """OS-specific discovery commands and parsers."""

    name: str = "unknown"
    supports_keyword_scan: bool = False

    def __init__(self, target_process: str, product_name: str = DEFAULT_PRODUCT_NAME) -> None:
        self.target_process = target_process
        self.product_name = product_name

    def is_target_process(self, cmdline: str) -> bool:
        """Return True if a command line belongs to the language server."""
        return is_target_process(cmdline, self.product_name)

    @abstractmethod
    def build_process_list_command(self, process_name: str) -> str:
        """Command listing processes with the given binary name."""

    @abstractmethod
    def parse_process_info(self, stdout: str) -> list[ProcessCandidate]:
        """Parse process listing output into candidates."""

    @abstractmethod
    def build_port_list_command(self, pid: int) -> str:
        """Command listing the listening ports of a process."""

    @abstractmethod
    def parse_listening_ports(self, stdout: str) -> list[int]:
        """Parse port listing output into sorted unique ports."""

    @abstractmethod
    def build_diagnostic_command(self) -> str:
        """Command listing anything that looks related, for logs only."""

    @abstractmethod
    def error_messages(self) -> PlatformErrorMessages:
        """User-facing hints for this platform."""

    def build_keyword_command(self) -> str:
        """Command listing every process carrying a csrf token."""
        raise NotImplementedError(f"{self.name} has no keyword scan")

    async def prepare_port_listing(self, timeout: float) -> None:
        """Hook run before the first port listing."""


class WindowsStrategy(PlatformStrategy):
    """PowerShell + netstat discovery on Windows."""

    name = "windows"
    supports_keyword_scan = True

    def build_process_list_command(self, process_name: str) -> str:
        # Single quotes inside the -Filter value are doubled for WQL
        return (
            'chcp 65001 >nul && powershell -NoProfile -Command "'
            f"{_PS_UTF8}Get-CimInstance Win32_Process -Filter 'name=''{process_name}''' "
            '| Select-Object ProcessId,CommandLine | ConvertTo-Json"'
        )

    def build_keyword_command(self) -> str:
        return (
            'chcp 65001 >nul && powershell -NoProfile -Command "'
            f"{_PS_UTF8}Get-CimInstance Win32_Process "
            "| Where-Object { $_.CommandLine -match 'csrf_token' } "
            '| Select-Object ProcessId,Name,CommandLine | ConvertTo-Json"'
        )

    def parse_process_info(self, stdout: str) -> list[ProcessCandidate]:
        return parse_windows_process_json(stdout, self.product_name)

    def build_port_list_command(self, pid: int) -> str:
        return f'chcp 65001 >nul && netstat -ano | findstr "{pid}" | findstr "LISTENING"'

    def parse_listening_ports(self, stdout: str) -> list[int]:
        ports = parse_windows_netstat(stdout)
        log.debug("ports_parsed", platform=self.name, ports=ports)
        return ports

    def build_diagnostic_command(self) -> str:
        return (
            'chcp 65001 >nul && powershell -NoProfile -Command "'
            f"{_PS_UTF8}Get-Process "
            "| Where-Object { $_.ProcessName -match 'language|antigravity' } "
            '| Select-Object Id,ProcessName,Path | Format-Table -AutoSize"'
        )

    def error_messages(self) -> PlatformErrorMessages:
        return PlatformErrorMessages(
            process_not_found="language_server process not found",
            command_not_available="PowerShell command failed; please check system permissions",
            requirements=[
                "Antigravity is running",
                f"{self.target_process} process is running",
                "The system has permission to run PowerShell and netstat commands",
            ],
        )


class UnixStrategy(PlatformStrategy):
    """ps + lsof/ss/netstat discovery on macOS and Linux."""

    def __init__(
        self,
        platform: str,
        target_process: str,
        product_name: str = DEFAULT_PRODUCT_NAME,
    ) -> None:
        super().__init__(target_process, product_name)
        self.name = platform
        self.port_tool: str | None = None
        self._port_tool_checked = False

    async def prepare_port_listing(self, timeout: float) -> None:
        """Find the first installed port tool (lsof > ss > netstat), once."""
        if self._port_tool_checked:
            return
        self._port_tool_checked = True

        for tool in PORT_TOOLS:
            if await command_available(tool, timeout):
                self.port_tool = tool
                log.info("port_tool_detected", tool=tool)
                return
        log.warning("port_tool_missing", tried=list(PORT_TOOLS))

    def build_process_list_command(self, process_name: str) -> str:
        # -ww keeps long command lines from being truncated
        return f'ps -ww -eo pid,ppid,args | grep "{process_name}" | grep -v grep'

    def parse_process_info(self, stdout: str) -> list[ProcessCandidate]:
        candidates = parse_unix_process_table(stdout, self.product_name)
        if not candidates:
            log.warning("no_target_process", platform=self.name)
        return candidates

    def build_port_list_command(self, pid: int) -> str:
        lsof = f'lsof -nP -a -iTCP -sTCP:LISTEN -p {pid} 2>/dev/null | grep -E "^\\S+\\s+{pid}\\s"'
        ss = f'ss -tlnp 2>/dev/null | grep "pid={pid},"'
        netstat = f"netstat -tulpn 2>/dev/null | grep {pid}"

        if self.name == "darwin":
            return lsof
        if self.port_tool == "lsof":
            return lsof
        if self.port_tool == "ss":
            return ss
        if self.port_tool == "netstat":
            return netstat
        return f"{ss} || {lsof} || {netstat}"

    def parse_listening_ports(self, stdout: str) -> list[int]:
        if self.name == "darwin":
            ports = parse_darwin_lsof(stdout)
        else:
            ports = parse_linux_ports(stdout)
        log.debug("ports_parsed", platform=self.name, ports=ports)
        return ports

    def build_diagnostic_command(self) -> str:
        return "ps aux | grep -E 'language|antigravity' | grep -v grep"

    def error_messages(self) -> PlatformErrorMessages:
        return PlatformErrorMessages(
            process_not_found="Process not found",
            command_not_available="Command check failed",
            requirements=["lsof, ss or netstat"],
        )


def select_platform(
    system: str | None = None,
    machine: str | None = None,
    product_name: str = DEFAULT_PRODUCT_NAME,
) -> PlatformStrategy:
    """Build the strategy for the running OS and CPU architecture."""
    system = (system or _platform.system()).lower()
    machine = (machine or _platform.machine()).lower()

    if system == "windows":
        strategy: PlatformStrategy = WindowsStrategy(PROCESS_NAMES["windows"], product_name)
    elif system == "darwin":
        is_arm = machine in ("arm64", "aarch64")
        target = PROCESS_NAMES["darwin_arm"] if is_arm else PROCESS_NAMES["darwin_x64"]
        strategy = UnixStrategy("darwin", target, product_name)
    else:
        strategy = UnixStrategy("linux", PROCESS_NAMES["linux"], product_name)

    log.debug(
        "platform_selected",
        system=system,
        machine=machine,
        strategy=strategy.name,
        target=strategy.target_process,
    )
    return strategy
