"""Async subprocess utilities.

Provides non-blocking subprocess execution for collaborators that shell out
to external tools, so a slow worker never stalls the event loop that drives
the other lanes.

Key Features:
    - Non-blocking execution compatible with asyncio
    - Configurable timeout with automatic process cleanup
    - Process cleanup when the awaiting coroutine is cancelled
    - Extra environment variables merged over the parent environment

Example:
    >>> from specforge.utils.async_subprocess import run_shell_command
    >>> stdout, stderr, code = await run_shell_command("make test", cwd="/repo", timeout=600)
"""

import asyncio
import os
from collections.abc import Mapping
from pathlib import Path


async def run_shell_command(
    command: str,
    *,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> tuple[str, str, int]:
    """Run a shell command asynchronously and capture its output.

    Args:
        command: Complete shell command string, passed to /bin/sh -c.
        cwd: Working directory. None uses the parent's working directory.
        env: Variables added to (or overriding) the parent environment.
        timeout: Maximum seconds to wait. The process is killed if exceeded.
            None means wait indefinitely.

    Returns:
        Tuple of (stdout, stderr, return_code), decoded as UTF-8 with
        replacement for invalid bytes.

    Raises:
        TimeoutError: If timeout is exceeded. The process is killed first.
        asyncio.CancelledError: If the caller is cancelled. The process is
            killed first.

    Warning:
        The command is subject to shell parsing. Quote interpolated values
        (see ``shlex.quote``).
    """
    process_env = None
    if env:
        process_env = {**os.environ, **env}

    process = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        env=process_env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(),
            timeout=timeout,
        )
    except (TimeoutError, asyncio.CancelledError):
        process.kill()
        await process.wait()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    return stdout, stderr, process.returncode or 0
