"""Run OS shell commands under asyncio."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass

import structlog

from quota_radar.errors import CommandTimeoutError

log = structlog.get_logger()


@dataclass
class CommandResult:
    """Decoded output of a finished command."""

    stdout: str
    stderr: str
    returncode: int


async def run_command(command: str, timeout: float) -> CommandResult:
    """Run a shell command and collect its output.

    Pipelines like `ps ... | grep ...` exit non-zero when nothing matched, so
    a non-zero exit status is reported in the result, not raised.

    Raises:
        CommandTimeoutError: If the command did not finish within timeout
        OSError: If the shell could not be started
    """
    process = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.DEVNULL,  # No tty interaction
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            pass  # Exited between the timeout and the kill
        await process.wait()
        raise CommandTimeoutError(command, timeout) from None

    return CommandResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        returncode=process.returncode if process.returncode is not None else -1,
    )


async def command_available(name: str, timeout: float) -> bool:
    """Return True if `which <name>` finds the tool."""
    try:
        result = await run_command(f"which {name}", timeout=timeout)
    except (CommandTimeoutError, OSError) as e:
        log.debug("command_probe_failed", command=name, error=str(e))
        return False
    if result.returncode == 0 and result.stdout.strip():
        return True
    # `which` may be missing on minimal images
    return shutil.which(name) is not None
