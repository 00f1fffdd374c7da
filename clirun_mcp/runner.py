"""
Process runner for clirun-mcp tools.

Every tool executes its CLI through ProcessRunner.run:
- Exact argv, never a shell
- Concurrent capture of stdout/stderr with a per-stream byte cap
- Deadline timer that kills the whole process group (exit code 124)
- ANSI stripping and home-directory sanitisation of output
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from clirun_mcp.errors import (
    CommandNotFoundError,
    InputRejectedError,
    SpawnError,
    SpawnPermissionError,
)

logger = logging.getLogger("clirun-mcp.runner")

TIMEOUT_EXIT_CODE = 124
DEFAULT_TIMEOUT = 60.0
DEFAULT_MAX_OUTPUT_BYTES = 1_048_576

# Seconds to wait for pipes to close after the group was killed
_KILL_GRACE = 2.0
_READ_CHUNK = 65_536

_ANSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")
_HOME_RE = re.compile(r"/(?:home|Users)/[^/\s]+/|/root/")

_EXITED = "exited"
_TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class RunRequest:
    """One subprocess invocation."""

    command: str
    args: tuple[str, ...] = ()
    cwd: str | None = None
    stdin: str | None = None
    timeout: float | None = None
    env: Mapping[str, str] | None = field(default=None, compare=False)


@dataclass(frozen=True)
class RunResult:
    """Outcome of a run. Non-zero exit codes are data, not errors."""

    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def to_dict(self) -> dict:
        return {
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration": self.duration_ms,
            "timedOut": self.timed_out,
            "truncated": self.truncated,
        }


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences."""
    return _ANSI_RE.sub("", text)


def sanitize_output(text: str) -> str:
    """Replace user home directories with ~ so usernames do not leak."""
    return _HOME_RE.sub("~/", text)


def timeout_message(command: str, timeout: float) -> str:
    return f'Command "{command}" timed out after {timeout:g}s and was killed.'


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the child's process group. Errors mean it is already gone."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.debug(f"killpg({proc.pid}) failed: {e}, falling back to kill()")
        try:
            proc.kill()
        except ProcessLookupError:
            pass


async def _drain(stream: asyncio.StreamReader, limit: int) -> tuple[bytes, bool]:
    """Read a stream to EOF, keeping at most limit bytes."""
    chunks: list[bytes] = []
    size = 0
    truncated = False
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        if size >= limit:
            truncated = True
            continue
        kept = chunk[: limit - size]
        chunks.append(kept)
        size += len(kept)
        if len(kept) < len(chunk):
            truncated = True
    return b"".join(chunks), truncated


async def _feed(proc: asyncio.subprocess.Process, data: str) -> None:
    """Write all of data to the child's stdin, then close it."""
    assert proc.stdin is not None
    try:
        proc.stdin.write(data.encode("utf-8"))
        await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("Child closed stdin before all input was written")
    finally:
        proc.stdin.close()


class ProcessRunner:
    """Spawns CLI processes with a timeout and bounded output capture."""

    def __init__(
        self,
        default_timeout: float = DEFAULT_TIMEOUT,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ):
        self.default_timeout = default_timeout
        self.max_output_bytes = max_output_bytes

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: str | Path | None = None,
        timeout: float | None = None,
        stdin: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> RunResult:
        """
        Run command with args and wait for it, or for the deadline.

        Args:
            command: Executable name or path
            args: Arguments, passed through verbatim
            cwd: Working directory (default: current)
            timeout: Seconds before the child is killed (default: runner default)
            stdin: Text written to the child's stdin, which is then closed
            env: Variables merged over the current environment

        Returns:
            RunResult. A timeout yields exit_code 124 and timed_out=True.

        Raises:
            CommandNotFoundError: The executable does not exist
            SpawnPermissionError: The executable may not be run
            SpawnError: Any other failure to start the process
            InputRejectedError: timeout is zero or negative
        """
        request = RunRequest(
            command=command,
            args=tuple(args),
            cwd=str(cwd) if cwd is not None else None,
            stdin=stdin,
            timeout=timeout,
            env=env,
        )
        return await self.execute(request)

    async def execute(self, request: RunRequest) -> RunResult:
        """Run a prepared RunRequest. See run() for semantics."""
        timeout = request.timeout if request.timeout is not None else self.default_timeout
        if timeout <= 0:
            raise InputRejectedError(
                f"Invalid timeout: {timeout:g}. Timeout must be greater than zero.", field_name="timeout"
            )
        start = time.monotonic()
        proc = await self._spawn(request)
        loop = asyncio.get_running_loop()

        # Single-assignment outcome: whichever of exit or deadline settles it first wins
        outcome: asyncio.Future[str] = loop.create_future()

        def settle(value: str) -> None:
            if not outcome.done():
                outcome.set_result(value)

        assert proc.stdout is not None and proc.stderr is not None
        stdout_task = asyncio.ensure_future(_drain(proc.stdout, self.max_output_bytes))
        stderr_task = asyncio.ensure_future(_drain(proc.stderr, self.max_output_bytes))
        wait_task = asyncio.ensure_future(proc.wait())
        tasks = [wait_task, stdout_task, stderr_task]
        if request.stdin is not None:
            tasks.append(asyncio.ensure_future(_feed(proc, request.stdin)))

        completion = asyncio.gather(*tasks, return_exceptions=True)
        completion.add_done_callback(lambda _: settle(_EXITED))
        deadline = loop.call_later(timeout, settle, _TIMED_OUT)

        try:
            result = await outcome
            if result == _TIMED_OUT:
                _kill_group(proc)
                # A descendant that escaped the group can hold the pipes open
                _, pending = await asyncio.wait(tasks, timeout=_KILL_GRACE)
                if pending:
                    logger.debug(f"{len(pending)} reader(s) still open after kill, abandoning")
        finally:
            deadline.cancel()
            if proc.returncode is None:
                _kill_group(proc)
            for task in tasks:
                if not task.done():
                    task.cancel()

        timed_out = result == _TIMED_OUT
        stdout_bytes, stdout_truncated = _task_output(stdout_task)
        stderr_bytes, stderr_truncated = _task_output(stderr_task)
        stdout = strip_ansi(stdout_bytes.decode("utf-8", errors="replace"))
        stderr = sanitize_output(strip_ansi(stderr_bytes.decode("utf-8", errors="replace")))

        if timed_out:
            exit_code = TIMEOUT_EXIT_CODE
            if stderr and not stderr.endswith("\n"):
                stderr += "\n"
            stderr += timeout_message(request.command, timeout)
        else:
            exit_code = _exit_code(proc.returncode)

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.debug(
            f"run {request.command} {list(request.args)} -> exit={exit_code} "
            f"timed_out={timed_out} ({duration_ms}ms)"
        )
        return RunResult(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
            timed_out=timed_out,
            truncated=stdout_truncated or stderr_truncated,
        )

    async def _spawn(self, request: RunRequest) -> asyncio.subprocess.Process:
        env = None
        if request.env:
            env = {**os.environ, **request.env}

        try:
            return await asyncio.create_subprocess_exec(
                request.command,
                *request.args,
                cwd=request.cwd,
                env=env,
                stdin=asyncio.subprocess.PIPE if request.stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            if request.cwd is not None and e.filename == request.cwd:
                raise SpawnError(
                    f'Working directory "{request.cwd}" does not exist.', request.command
                ) from e
            raise CommandNotFoundError(
                f'Command not found: "{request.command}". '
                "Ensure it is installed and available in your PATH.",
                request.command,
            ) from e
        except PermissionError as e:
            raise SpawnPermissionError(
                f'Permission denied executing "{request.command}". '
                "Check file permissions and ensure the binary is executable.",
                request.command,
            ) from e
        except OSError as e:
            raise SpawnError(f'Failed to start "{request.command}": {e}', request.command) from e


def _task_output(task: asyncio.Future) -> tuple[bytes, bool]:
    """Result of a drain task, or empty when it was cancelled or failed."""
    if task.cancelled() or not task.done():
        return b"", True
    if task.exception() is not None:
        logger.debug(f"Output reader failed: {task.exception()}")
        return b"", False
    return task.result()


def _exit_code(returncode: int | None) -> int:
    """Map a signal death (negative returncode) to the shell's 128+N convention."""
    if returncode is None:
        return -1
    if returncode < 0:
        return 128 - returncode
    return returncode
