"""Bounded execution of external commands.

Each call spawns its own process in a fresh session (process group) so a
timeout can take down the toolchain together with anything it forked.
Nothing is shared between calls.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
from asyncio.subprocess import PIPE
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .config import MAX_OUTPUT_BYTES
from .errors import CommandFailedError, CommandTimeoutError, ToolchainNotFoundError


logger = logging.getLogger(__name__)

_TRUNCATION_MARKER = "\n[output truncated]\n"
# How long to wait for pipes to close after the process group is killed.
_DRAIN_GRACE_SECONDS = 2.0


@dataclass(frozen=True)
class ProcessOutput:
    stdout: str
    stderr: str
    returncode: int


class _BoundedBuffer:
    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.data = bytearray()
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        room = self.limit - len(self.data)
        if room > 0:
            self.data.extend(chunk[:room])
        if len(chunk) > room:
            self.truncated = True

    def text(self) -> str:
        out = self.data.decode("utf-8", errors="replace")
        if self.truncated:
            out += _TRUNCATION_MARKER
        return out


async def _pump(stream: Optional[asyncio.StreamReader], buf: _BoundedBuffer) -> None:
    # Keep reading past the limit so the child never blocks on a full pipe.
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        buf.feed(chunk)


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    try:
        if os.name == "posix":
            # The group can outlive its leader, so kill it even after exit.
            os.killpg(proc.pid, signal.SIGKILL)
        elif proc.returncode is None:
            proc.kill()
    except ProcessLookupError:
        pass


async def _reap(proc: asyncio.subprocess.Process, readers: Sequence[asyncio.Task]) -> None:
    _kill_process_group(proc)
    try:
        # wait() also waits for the pipes, which close once every process
        # holding them is gone.
        await asyncio.wait_for(proc.wait(), timeout=_DRAIN_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("pid %s: pipes still open after kill", proc.pid)
    _, pending = await asyncio.wait(readers, timeout=_DRAIN_GRACE_SECONDS)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def run_command(
    command: Sequence[str],
    cwd: Path,
    timeout: float,
    *,
    env: Optional[Mapping[str, str]] = None,
    max_output_bytes: int = MAX_OUTPUT_BYTES,
) -> ProcessOutput:
    """Run command in cwd and wait at most timeout seconds.

    Returns the captured output on exit status 0.
    Raises CommandFailedError on a non-zero exit, CommandTimeoutError when the
    deadline passes (the process group is killed first) and
    ToolchainNotFoundError when the executable does not exist.
    """
    if not command:
        raise ValueError("Empty command")
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=PIPE,
            stderr=PIPE,
            env=dict(env) if env is not None else None,
            start_new_session=(os.name == "posix"),
        )
    except FileNotFoundError as exc:
        raise ToolchainNotFoundError(f"Executable not found: {command[0]}") from exc

    out_buf = _BoundedBuffer(max_output_bytes)
    err_buf = _BoundedBuffer(max_output_bytes)
    readers = [
        asyncio.create_task(_pump(proc.stdout, out_buf)),
        asyncio.create_task(_pump(proc.stderr, err_buf)),
    ]

    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Command %s exceeded %.1fs, killing pid %s", command[0], timeout, proc.pid)
        await _reap(proc, readers)
        raise CommandTimeoutError(
            timeout,
            stdout=out_buf.text(),
            stderr=err_buf.text() or f"Execution exceeded {timeout:g} seconds",
        )
    except BaseException:
        # Cancelled from outside: never leave the child running.
        await _reap(proc, readers)
        raise

    await asyncio.gather(*readers)
    if os.name == "posix":
        # Background children that let go of the pipes are still ours.
        _kill_process_group(proc)

    result = ProcessOutput(stdout=out_buf.text(), stderr=err_buf.text(), returncode=proc.returncode)
    if result.returncode != 0:
        raise CommandFailedError(result.returncode, stdout=result.stdout, stderr=result.stderr)
    return result
