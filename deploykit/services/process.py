"""Subprocess helpers shared by the build and probe services."""

import asyncio
import logging
import subprocess
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    output: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


# Async callable taking (argv, timeout); lets tests replace real processes.
CommandRunner = Callable[[Sequence[str], Optional[float]], Awaitable[CommandResult]]


async def run_command(argv: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
    """
    Run `argv` to completion in a worker thread, merging stdout and stderr.

    A timeout kills the process and is reported as `timed_out=True` rather
    than raised. OSError (e.g. binary not found) propagates to the caller.
    Output is decoded as UTF-8 with undecodable bytes replaced, since
    compiler and docker output is not guaranteed to be valid UTF-8.
    """
    logger.debug("Running %s (timeout=%s)", " ".join(argv), timeout)
    try:
        completed = await asyncio.to_thread(
            subprocess.run,
            list(argv),
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        output = exc.output or ""
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        return CommandResult(returncode=-1, output=output, timed_out=True)

    output = (completed.stdout or "") + (completed.stderr or "")
    return CommandResult(returncode=completed.returncode, output=output)


def clip_output(output: str, max_lines: int = 40) -> str:
    """Keep the last `max_lines` lines of `output`, noting how many were dropped."""
    lines = (output or "<no output>").rstrip().splitlines()
    if max_lines <= 0 or len(lines) <= max_lines:
        return "\n".join(lines)
    hidden = len(lines) - max_lines
    tail = lines[-max_lines:]
    return "\n".join([f"<clipped {hidden} lines>", *tail])
