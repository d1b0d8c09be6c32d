"""
Executors — the collaborators that actually run a job.

The scheduler never knows what a job does. It hands the job's opaque
``executor_ref`` and a CancellationToken to an Executor and waits for an
ExecutionResult. Cancellation is cooperative: when a job outlives its
``max_runtime`` the token is cancelled and the executor is expected to
wind down; the scheduler records the timeout without waiting for it.

Implementations:
    CallableExecutor — wraps an async function (e.g. "send this message
                       to that agent")
    ShellExecutor    — runs ``executor_ref["command"]`` in a subprocess
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from tickwork.core.errors import ExecutionError

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    One-shot cancellation signal shared by the dispatcher and an executor.

    Executors either poll ``cancelled`` or ``await token.wait()``.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class ExecutionResult:
    """What an executor reports back."""

    success: bool
    output: str = ""
    error: str | None = None

    @classmethod
    def ok(cls, output: str = "") -> "ExecutionResult":
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str, output: str = "") -> "ExecutionResult":
        return cls(success=False, output=output, error=error)


class Executor(ABC):
    """
    Runs one occurrence of a job.

    Return ExecutionResult(success=False, ...) or raise ExecutionError to
    report a failure; any other exception is treated as a failure too.
    """

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    async def execute(self, executor_ref: Any, token: CancellationToken) -> ExecutionResult:
        ...


ExecuteFunc = Callable[[Any, CancellationToken], Awaitable[Any]]


class CallableExecutor(Executor):
    """
    Adapts an async function into an Executor.

    The function may return an ExecutionResult, a bool (success flag), or
    anything else (taken as successful output, stringified).

    Usage::

        async def ask_agent(ref, token):
            return await agents[ref["agent"]].send(ref["message"])

        executor = CallableExecutor(ask_agent)
    """

    def __init__(self, func: ExecuteFunc, name: str | None = None) -> None:
        self._func = func
        self._name = name or getattr(func, "__name__", "callable")

    @property
    def name(self) -> str:
        return self._name

    async def execute(self, executor_ref: Any, token: CancellationToken) -> ExecutionResult:
        result = await self._func(executor_ref, token)
        if isinstance(result, ExecutionResult):
            return result
        if isinstance(result, bool):
            return ExecutionResult(success=result, error=None if result else "reported failure")
        return ExecutionResult.ok("" if result is None else str(result))


class ShellExecutor(Executor):
    """
    Runs a shell command per occurrence.

    ``executor_ref`` is either the command string or a dict with a
    ``command`` key (and optional ``cwd`` / ``env``). A non-zero exit
    code is a failure. When the token is cancelled the process is killed.
    """

    def __init__(
        self,
        shell: str | None = None,
        cwd: Path | None = None,
        max_output: int = 4000,
    ) -> None:
        self._shell = shell
        self._cwd = cwd
        self._max_output = max_output

    @property
    def name(self) -> str:
        return "shell"

    async def execute(self, executor_ref: Any, token: CancellationToken) -> ExecutionResult:
        command, cwd, env = self._unpack(executor_ref)

        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=env,
            executable=self._shell,
        )
        logger.debug(f"Started pid={process.pid}: {command}")

        communicate = asyncio.ensure_future(process.communicate())
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {communicate, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
            if communicate not in done:
                await self._kill(process)
                communicate.cancel()
                return ExecutionResult.fail(f"Command {token.reason or 'cancelled'}")
            stdout_bytes, stderr_bytes = communicate.result()
        except asyncio.CancelledError:
            communicate.cancel()
            await self._kill(process)
            raise
        finally:
            cancelled.cancel()

        stdout = self._clip(stdout_bytes)
        stderr = self._clip(stderr_bytes)
        if process.returncode != 0:
            return ExecutionResult.fail(
                f"exit code {process.returncode}: {stderr.strip() or stdout.strip()}",
                output=stdout,
            )
        return ExecutionResult.ok(stdout)

    def _unpack(self, executor_ref: Any) -> tuple[str, Path | None, dict[str, str] | None]:
        if isinstance(executor_ref, str):
            return executor_ref, self._cwd, None
        if isinstance(executor_ref, dict) and executor_ref.get("command"):
            env = None
            if executor_ref.get("env"):
                env = {**os.environ, **{k: str(v) for k, v in executor_ref["env"].items()}}
            cwd = Path(executor_ref["cwd"]).expanduser() if executor_ref.get("cwd") else self._cwd
            return str(executor_ref["command"]), cwd, env
        raise ExecutionError(f"No command in executor reference: {executor_ref!r}", executor=self.name)

    def _clip(self, data: bytes | None) -> str:
        text = (data or b"").decode("utf-8", errors="replace")
        if len(text) > self._max_output:
            return text[: self._max_output] + "\n... (truncated)"
        return text

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
