"""Streaming shell command execution with an idle-based timeout.

Two reader tasks drain stdout and stderr line by line, forward each line to
an optional callback and signal a bounded activity queue. A third task waits
for the process to exit once both readers hit EOF. ``_supervise`` is the only
place that ends the run: it resets the idle timer on activity, asks the user
whether to keep waiting after a quiet period, and owns killing the process
group on every non-success path.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import os
import shutil
import signal
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable

from aiq.errors import CommandCancelledError, CommandTimeoutError
from aiq.security.command_guard import (
    BLOCKED_COMMANDS,
    INTERACTIVE_COMMANDS,
    ensure_command_allowed,
    split_env_prefix,
)

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 60.0
MAX_OUTPUT_BYTES = 10 * 1024 * 1024
SUCCESS_TAIL_LINES = 20
FAILURE_TAIL_LINES = 100
ACTIVITY_QUEUE_SIZE = 100
STREAM_LINE_LIMIT = 1024 * 1024

ConfirmFn = Callable[[str], Awaitable[bool] | bool]
LineCallback = Callable[[str], None]


@dataclass(slots=True)
class CommandResult:
    stdout: str
    stderr: str
    truncated_stdout: str
    truncated_stderr: str
    exit_code: int


class OutputBuffer:
    """Keeps the tail of a stream, dropping whole lines from the front past ``limit`` bytes."""

    def __init__(self, limit: int = MAX_OUTPUT_BYTES) -> None:
        self.limit = limit
        self._lines: deque[str] = deque()
        self._size = 0

    def append(self, line: str) -> None:
        self._lines.append(line)
        self._size += len(line.encode("utf-8")) + 1
        while self._size > self.limit and len(self._lines) > 1:
            dropped = self._lines.popleft()
            self._size -= len(dropped.encode("utf-8")) + 1

    def text(self) -> str:
        return "\n".join(self._lines)


def tail_lines(output: str, max_lines: int) -> str:
    if max_lines <= 0:
        return output
    lines = output.split("\n")
    if len(lines) <= max_lines:
        return output
    return "\n".join(lines[-max_lines:])


def _shell() -> str:
    if shutil.which("sh"):
        return "/bin/sh"
    return "/bin/bash"


class CommandExecutor:
    def __init__(
        self,
        *,
        confirm: ConfirmFn | None = None,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        blocked: frozenset[str] = BLOCKED_COMMANDS,
        interactive: frozenset[str] = INTERACTIVE_COMMANDS,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
    ) -> None:
        self.confirm = confirm
        self.idle_timeout = idle_timeout
        self.blocked = blocked
        self.interactive = interactive
        self.max_output_bytes = max_output_bytes

    async def execute(
        self,
        command: str,
        *,
        working_dir: str | None = None,
        timeout: float | None = None,
        on_line: LineCallback | None = None,
    ) -> CommandResult:
        """Run ``command`` through ``sh -c``.

        Raises:
            CommandBlockedError: the command is refused before anything is spawned.
            CommandTimeoutError: the user declined to keep waiting on an idle command.
            CommandCancelledError: the caller was cancelled or the idle prompt was aborted.
        """
        ensure_command_allowed(command, blocked=self.blocked, interactive=self.interactive)

        env_overrides, _ = split_env_prefix(command)
        env = {**os.environ, **env_overrides}
        idle_timeout = timeout if timeout and timeout > 0 else self.idle_timeout

        proc = await asyncio.create_subprocess_exec(
            _shell(),
            "-c",
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=working_dir or None,
            env=env,
            start_new_session=True,
            limit=STREAM_LINE_LIMIT,
        )
        logger.debug("command started pid=%s idle_timeout=%.1fs", proc.pid, idle_timeout)

        activity: asyncio.Queue[None] = asyncio.Queue(maxsize=ACTIVITY_QUEUE_SIZE)
        stdout_buf = OutputBuffer(self.max_output_bytes)
        stderr_buf = OutputBuffer(self.max_output_bytes)
        readers = [
            asyncio.create_task(_pump(proc.stdout, stdout_buf, activity, on_line)),
            asyncio.create_task(_pump(proc.stderr, stderr_buf, activity, on_line)),
        ]
        waiter = asyncio.create_task(_wait_for_exit(proc, readers))

        try:
            exit_code = await self._supervise(waiter, activity, idle_timeout)
        except asyncio.CancelledError:
            await _terminate(proc, readers, waiter)
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            raise CommandCancelledError(f"command execution cancelled: {command}") from None
        except BaseException:
            await _terminate(proc, readers, waiter)
            raise

        stdout = stdout_buf.text()
        stderr = stderr_buf.text()
        keep = SUCCESS_TAIL_LINES if exit_code == 0 else FAILURE_TAIL_LINES
        return CommandResult(
            stdout=stdout,
            stderr=stderr,
            truncated_stdout=tail_lines(stdout, keep),
            truncated_stderr=tail_lines(stderr, keep),
            exit_code=exit_code,
        )

    async def _supervise(self, waiter: asyncio.Task[int], activity: asyncio.Queue[None], idle_timeout: float) -> int:
        while True:
            signal_task = asyncio.create_task(activity.get())
            try:
                done, _ = await asyncio.wait(
                    {waiter, signal_task},
                    timeout=idle_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                if not signal_task.done():
                    signal_task.cancel()

            if waiter in done:
                return waiter.result()
            if signal_task in done:
                continue

            if not await self._keep_waiting(idle_timeout):
                raise CommandTimeoutError(f"command execution timeout: no output for {idle_timeout:g}s")

    async def _keep_waiting(self, idle_timeout: float) -> bool:
        if self.confirm is None:
            return False
        prompt = f"Command has been idle for {idle_timeout:g}s. Continue waiting?"
        try:
            answer = self.confirm(prompt)
            if inspect.isawaitable(answer):
                answer = await answer
        except (EOFError, KeyboardInterrupt) as exc:
            raise CommandCancelledError(f"command execution cancelled: {exc.__class__.__name__}") from exc
        return bool(answer)


async def _pump(
    stream: asyncio.StreamReader | None,
    buffer: OutputBuffer,
    activity: asyncio.Queue[None],
    on_line: LineCallback | None,
) -> None:
    if stream is None:
        return
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            # line longer than STREAM_LINE_LIMIT; the reader already discarded it
            raw = b"[line truncated]\n"
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        buffer.append(line)
        if on_line is not None:
            on_line(line)
        try:
            activity.put_nowait(None)
        except asyncio.QueueFull:
            pass


async def _wait_for_exit(proc: asyncio.subprocess.Process, readers: list[asyncio.Task[None]]) -> int:
    await asyncio.gather(*readers)
    return await proc.wait()


async def _terminate(
    proc: asyncio.subprocess.Process,
    readers: list[asyncio.Task[None]],
    waiter: asyncio.Task[int],
) -> None:
    if proc.returncode is None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError:
            proc.kill()
    for task in (*readers, waiter):
        if not task.done():
            task.cancel()
    await asyncio.gather(*readers, waiter, return_exceptions=True)
    if proc.returncode is None:
        await proc.wait()
    logger.debug("command terminated pid=%s", proc.pid)
