"""Tests for platform strategies and their output parsers."""

from unittest.mock import AsyncMock, patch

import pytest

from quota_radar.platforms import (
    UnixStrategy,
    WindowsStrategy,
    is_target_process,
    parse_darwin_lsof,
    parse_linux_ports,
    parse_lsof,
    parse_netstat,
    parse_ss,
    parse_unix_process_table,
    parse_windows_netstat,
    parse_windows_process_json,
    select_platform,
    strip_json_noise,
)

TOKEN = "0f3c2b9e-1a2b-4c3d-8e9f-0123456789ab"
CMDLINE = (
    "/opt/Antigravity/language_server_linux --enable_lsp "
    f"--extension_server_port 42100 --csrf_token {TOKEN} "
    "--app_data_dir antigravity --random_port"
)

# === Captured command output ===

WINDOWS_JSON_ARRAY = (
    "Active code page: 65001\r\n"
    "[\r\n"
    "  {\r\n"
    '    "ProcessId": 1234,\r\n'
    '    "CommandLine": "C:\\\\Ag\\\\language_server_windows_x64.exe '
    "--extension_server_port=42100 --csrf_token=" + TOKEN + ' --app_data_dir antigravity"\r\n'
    "  },\r\n"
    "  {\r\n"
    '    "ProcessId": 5678,\r\n'
    '    "CommandLine": "C:\\\\Other\\\\language_server_windows_x64.exe '
    '--extension_server_port=1 --csrf_token=abc --app_data_dir windsurf"\r\n'
    "  }\r\n"
    "]\r\n"
)

WINDOWS_JSON_SINGLE = (
    "{"
    '"ProcessId": 4321, '
    '"CommandLine": "language_server_windows_x64.exe --extension_server_port 42200 '
    "--csrf_token " + TOKEN + ' --app_data_dir Antigravity"'
    "}"
)

WINDOWS_NETSTAT = """\
  TCP    127.0.0.1:42101        0.0.0.0:0              LISTENING       1234
  TCP    127.0.0.1:42100        0.0.0.0:0              LISTENING       1234
  TCP    0.0.0.0:42102          0.0.0.0:0              LISTENING       1234
  TCP    [::1]:42101            [::]:0                 LISTENING       1234
  TCP    127.0.0.1:42100        127.0.0.1:50000        ESTABLISHED     1234
"""

PS_OUTPUT = """\
  2001     1 /usr/bin/language_server_linux --extension_server_port 40000 --csrf_token aaaa-1111 --app_data_dir antigravity
  2002   999 /usr/bin/language_server_linux --extension_server_port 40001 --csrf_token bbbb-2222 --app_data_dir antigravity
  2003   999 /usr/bin/language_server_linux --extension_server_port 40002 --app_data_dir antigravity
  2004     1 /usr/bin/language_server_linux --extension_server_port 40003 --csrf_token cccc-3333 --app_data_dir windsurf
garbage line
"""

DARWIN_LSOF = """\
COMMAND     PID USER   FD   TYPE             DEVICE SIZE/OFF NODE NAME
language_ 15684 ada    12u  IPv4 0x310104f1c3b7d8e1      0t0  TCP 127.0.0.1:53125 (LISTEN)
language_ 15684 ada    13u  IPv4 0x310104f1c3b7d8e2      0t0  TCP *:53126 (LISTEN)
language_ 15684 ada    14u  IPv6 0x310104f1c3b7d8e3      0t0  TCP [::1]:53127 (LISTEN)
language_ 15684 ada    15u  IPv4 0x310104f1c3b7d8e4      0t0  TCP 127.0.0.1:53125->127.0.0.1:60000 (ESTABLISHED)
language_ 15684 ada    16u  IPv4 0x310104f1c3b7d8e5      0t0  TCP 127.0.0.1:53125 (LISTEN)
"""

LINUX_SS = """\
LISTEN 0      4096       127.0.0.1:42101      0.0.0.0:*    users:(("language_server",pid=2001,fd=10))
LISTEN 0      4096       127.0.0.1:42100      0.0.0.0:*    users:(("language_server",pid=2001,fd=9))
LISTEN 0      4096           [::1]:42102         [::]:*    users:(("language_server",pid=2001,fd=11))
"""

LINUX_LSOF = """\
language_ 2001 ada   9u  IPv4 123456 0t0  TCP 127.0.0.1:42100 (LISTEN)
language_ 2001 ada  10u  IPv4 123457 0t0  TCP *:42101 (LISTEN)
"""

LINUX_NETSTAT = """\
tcp        0      0 127.0.0.1:42100         0.0.0.0:*               LISTEN      2001/language_serve
tcp6       0      0 :::42103                :::*                    LISTEN      2001/language_serve
udp        0      0 0.0.0.0:5353            0.0.0.0:*                           2001/language_serve
"""


class TestIsTargetProcess:
    """All three markers are required."""

    def test_all_markers_present(self):
        assert is_target_process(CMDLINE) is True

    def test_markers_in_any_order_and_spacing(self):
        cmdline = f"--app_data_dir   antigravity --csrf_token={TOKEN}   --extension_server_port=1"
        assert is_target_process(cmdline) is True

    def test_case_insensitive_app_dir(self):
        assert is_target_process(CMDLINE.replace("antigravity", "AntiGravity")) is True

    @pytest.mark.parametrize(
        "missing",
        ["--extension_server_port 42100", f"--csrf_token {TOKEN}", "--app_data_dir antigravity"],
    )
    def test_missing_marker(self, missing):
        assert is_target_process(CMDLINE.replace(missing, "")) is False

    def test_app_dir_must_match_whole_word(self):
        assert is_target_process(CMDLINE.replace("antigravity", "antigravity_next")) is False

    def test_other_product(self):
        assert is_target_process(CMDLINE, product_name="windsurf") is False


class TestWindowsProcessJson:
    """Windows PowerShell JSON parsing."""

    def test_strips_code_page_banner(self):
        assert strip_json_noise("garbage\x00[1]").startswith("[")

    def test_array_keeps_only_target(self):
        candidates = parse_windows_process_json(WINDOWS_JSON_ARRAY)
        assert len(candidates) == 1
        assert candidates[0].pid == 1234
        assert candidates[0].extension_port == 42100
        assert candidates[0].csrf_token == TOKEN

    def test_single_object(self):
        candidates = parse_windows_process_json(WINDOWS_JSON_SINGLE)
        assert [c.pid for c in candidates] == [4321]
        assert candidates[0].extension_port == 42200

    def test_unparsable_output(self):
        assert parse_windows_process_json("Access is denied.") == []

    def test_missing_extension_port_is_zero(self):
        # Target check needs the flag, but a non-numeric value yields port 0
        output = (
            '{"ProcessId": 9, "CommandLine": "x --extension_server_port --csrf_token '
            + TOKEN
            + ' --app_data_dir antigravity"}'
        )
        candidates = parse_windows_process_json(output)
        assert candidates[0].extension_port == 0


class TestUnixProcessTable:
    """ps output parsing."""

    def test_filters_and_prefers_own_children(self):
        candidates = parse_unix_process_table(PS_OUTPUT, current_pid=999)
        assert [c.pid for c in candidates] == [2002, 2001]
        assert candidates[0].csrf_token == "bbbb-2222"
        assert candidates[0].ppid == 999

    def test_keeps_ps_order_without_children(self):
        candidates = parse_unix_process_table(PS_OUTPUT, current_pid=42)
        assert [c.pid for c in candidates] == [2001, 2002]

    def test_empty(self):
        assert parse_unix_process_table("", current_pid=1) == []


class TestPortParsers:
    """Listening-port parsers return unique ascending ports."""

    def test_windows_netstat(self):
        assert parse_windows_netstat(WINDOWS_NETSTAT) == [42100, 42101, 42102]

    def test_darwin_lsof(self):
        assert parse_darwin_lsof(DARWIN_LSOF) == [53125, 53126, 53127]

    def test_linux_ss(self):
        assert parse_ss(LINUX_SS) == [42100, 42101, 42102]

    def test_linux_lsof(self):
        assert parse_lsof(LINUX_LSOF) == [42100, 42101]

    def test_linux_netstat(self):
        assert parse_netstat(LINUX_NETSTAT) == [42100, 42103]

    def test_linux_falls_through_tools(self):
        assert parse_linux_ports(LINUX_SS) == [42100, 42101, 42102]
        assert parse_linux_ports(LINUX_LSOF) == [42100, 42101]
        assert parse_linux_ports(LINUX_NETSTAT) == [42100, 42103]
        assert parse_linux_ports("") == []


class TestWindowsStrategy:
    def test_commands(self):
        strategy = WindowsStrategy("language_server_windows_x64.exe")
        cmd = strategy.build_process_list_command("language_server_windows_x64.exe")
        assert "name=''language_server_windows_x64.exe''" in cmd
        assert "ConvertTo-Json" in cmd
        assert "csrf_token" in strategy.build_keyword_command()
        assert strategy.build_port_list_command(1234).endswith('findstr "LISTENING"')
        assert strategy.supports_keyword_scan is True

    def test_error_messages(self):
        messages = WindowsStrategy("language_server_windows_x64.exe").error_messages()
        assert messages.process_not_found == "language_server process not found"
        assert len(messages.requirements) == 3


class TestUnixStrategy:
    def test_darwin_always_uses_lsof(self):
        strategy = UnixStrategy("darwin", "language_server_macos_arm")
        strategy.port_tool = "ss"
        assert strategy.build_port_list_command(15684).startswith("lsof -nP")

    def test_linux_without_detected_tool_chains_all(self):
        strategy = UnixStrategy("linux", "language_server_linux")
        cmd = strategy.build_port_list_command(2001)
        assert cmd.index("ss -tlnp") < cmd.index("lsof") < cmd.index("netstat")
        assert " || " in cmd

    def test_linux_uses_detected_tool(self):
        strategy = UnixStrategy("linux", "language_server_linux")
        strategy.port_tool = "netstat"
        assert strategy.build_port_list_command(2001) == "netstat -tulpn 2>/dev/null | grep 2001"

    def test_process_list_command(self):
        strategy = UnixStrategy("linux", "language_server_linux")
        cmd = strategy.build_process_list_command("language_server_linux")
        assert cmd.startswith("ps -ww -eo pid,ppid,args")
        assert strategy.supports_keyword_scan is False
        with pytest.raises(NotImplementedError):
            strategy.build_keyword_command()

    @pytest.mark.asyncio
    async def test_tool_detection_runs_once_in_priority_order(self):
        strategy = UnixStrategy("linux", "language_server_linux")
        probe = AsyncMock(side_effect=lambda name, timeout: name == "ss")

        with patch("quota_radar.platforms.command_available", probe):
            await strategy.prepare_port_listing(3.0)
            await strategy.prepare_port_listing(3.0)

        assert strategy.port_tool == "ss"
        assert [c.args[0] for c in probe.call_args_list] == ["lsof", "ss"]

    @pytest.mark.asyncio
    async def test_no_tool_detected(self):
        strategy = UnixStrategy("linux", "language_server_linux")
        probe = AsyncMock(return_value=False)

        with patch("quota_radar.platforms.command_available", probe):
            await strategy.prepare_port_listing(3.0)

        assert strategy.port_tool is None
        assert probe.call_count == 3


class TestSelectPlatform:
    @pytest.mark.parametrize(
        "system,machine,name,target",
        [
            ("Windows", "AMD64", "windows", "language_server_windows_x64.exe"),
            ("Darwin", "arm64", "darwin", "language_server_macos_arm"),
            ("Darwin", "x86_64", "darwin", "language_server_macos"),
            ("Linux", "x86_64", "linux", "language_server_linux"),
        ],
    )
    def test_selection(self, system, machine, name, target):
        strategy = select_platform(system, machine)
        assert strategy.name == name
        assert strategy.target_process == target
