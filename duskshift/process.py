"""Async wrapper for the X11 command-line tools we shell out to."""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


async def run_command(
    *cmd: str,
    timeout: float = DEFAULT_TIMEOUT,
    failure_level: int = logging.WARNING,
) -> Optional[str]:
    """Run a command without blocking the loop; return stdout or None on failure.

    A command that outlives ``timeout`` is killed.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        logger.log(failure_level, f"{cmd[0]} not found")
        return None

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.log(failure_level, f"{' '.join(cmd)} timed out after {timeout}s")
        return None

    if proc.returncode != 0:
        logger.log(failure_level, f"{' '.join(cmd)} failed: {stderr.decode(errors='replace').strip()}")
        return None
    return stdout.decode(errors="replace")
