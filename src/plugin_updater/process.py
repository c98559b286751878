"""Hardened subprocess execution for every external tool the updater runs.

All subprocess calls of the package go through ``ProcessRunner.run``:

- executables are resolved against a fixed set of approved directories
  instead of the ambient ``PATH``
- arguments are passed as a list, never through a shell
- children get a minimal environment with git redirection variables removed
- each child leads its own process group so a timeout reclaims every
  descendant, first with SIGTERM and then with SIGKILL
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from plugin_updater.constants import (
    CHILD_SEARCH_PATH,
    GIT_REDIRECT_ENV_VARS,
    INHERITED_ENV_VARS,
    NOT_FOUND_EXIT_CODE,
    SAFE_COMMAND_DIRS,
    TIMEOUT_EXIT_CODE,
)
from plugin_updater.logging import get_logger

log = get_logger("plugin_updater.process")

LineObserver = Callable[[str], None]

# Max bytes buffered for a single output line
_STREAM_LIMIT = 1024 * 1024


class CommandStatus(Enum):
    OK = "ok"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    NOT_FOUND = "not_found"


@dataclass
class CommandResult:
    """Outcome of one subprocess invocation."""

    argv: list[str]
    returncode: int
    output: str  # combined stdout + stderr, in arrival order
    duration: float
    status: CommandStatus

    @property
    def ok(self) -> bool:
        return self.status is CommandStatus.OK

    @property
    def timed_out(self) -> bool:
        return self.status is CommandStatus.TIMED_OUT

    def tail(self, limit: int = 500) -> str:
        return self.output[-limit:].strip()


class ProcessRunner:
    """Runs external tools with path pinning, a minimal env and timeouts."""

    def __init__(
        self,
        cwd: str | Path,
        *,
        search_dirs: Sequence[str] = SAFE_COMMAND_DIRS,
        runtime_dir: str | Path | None = None,
        default_timeout: float = 120,
        kill_grace_seconds: float = 5,
    ) -> None:
        self._cwd = Path(cwd)
        self._search_dirs = tuple(search_dirs)
        self._runtime_dir = Path(runtime_dir) if runtime_dir else Path(sys.executable).parent
        self._default_timeout = default_timeout
        self._grace = kill_grace_seconds

    @property
    def cwd(self) -> Path:
        return self._cwd

    # ------------------------------------------------------------------
    # Resolution and environment
    # ------------------------------------------------------------------

    def resolve(self, command: str) -> str:
        """Map a tool name to an executable in an approved directory.

        Absolute paths are used as given. Falls back to the bare name,
        which the child then looks up in its own minimal search path.
        """
        if os.path.isabs(command):
            return command
        if os.sep in command:
            raise ValueError(f"relative command paths are not allowed: {command!r}")

        for directory in (*self._search_dirs, str(self._runtime_dir)):
            candidate = os.path.join(directory, command)
            if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
                return candidate
        return command

    def build_env(
        self,
        executable: str,
        extra: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """Build the child's environment from an allowlist of parent vars."""
        env = {name: os.environ[name] for name in INHERITED_ENV_VARS if name in os.environ}
        for name in GIT_REDIRECT_ENV_VARS:
            env.pop(name, None)

        search = list(CHILD_SEARCH_PATH)
        if os.path.isabs(executable):
            # Tools such as npm re-exec their runtime from the same directory
            tool_dir = os.path.dirname(executable)
            if tool_dir not in search:
                search.insert(0, tool_dir)
        env["PATH"] = os.pathsep.join(search)
        env["LC_ALL"] = "C"
        env["LANG"] = "C"
        env["GIT_TERMINAL_PROMPT"] = "0"

        if extra:
            env.update(extra)
        return env

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: str | Path | None = None,
        timeout: float | None = None,
        on_line: LineObserver | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Run *command* with *args* and return its result.

        Never raises for tool failures; inspect ``CommandResult.status``.
        """
        executable = self.resolve(command)
        argv = [executable, *args]
        timeout = self._default_timeout if timeout is None else timeout
        workdir = Path(cwd) if cwd is not None else self._cwd
        start = time.monotonic()

        log.debug("command_started", argv=argv, cwd=str(workdir), timeout=timeout)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(workdir),
                env=self.build_env(executable, env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            log.warning("command_not_found", argv=argv, error=str(exc))
            return CommandResult(
                argv=argv,
                returncode=NOT_FOUND_EXIT_CODE,
                output=f"{command}: {exc}",
                duration=time.monotonic() - start,
                status=CommandStatus.NOT_FOUND,
            )

        chunks: list[str] = []
        assert proc.stdout is not None
        reader = asyncio.create_task(self._pump(proc.stdout, chunks, on_line))
        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except TimeoutError:
            timed_out = True
            log.warning("command_timed_out", argv=argv, timeout=timeout)
            await self._terminate_group(proc)
        except asyncio.CancelledError:
            await self._terminate_group(proc)
            reader.cancel()
            raise

        # Descendants that outlive the child can hold the pipe open
        try:
            await asyncio.wait_for(reader, timeout=max(self._grace, 1.0))
        except TimeoutError:
            reader.cancel()

        duration = time.monotonic() - start
        output = "".join(chunks)
        if timed_out:
            output += f"\nCommand timed out after {timeout:g}s and was terminated\n"
            return CommandResult(argv, TIMEOUT_EXIT_CODE, output, duration, CommandStatus.TIMED_OUT)

        returncode = proc.returncode if proc.returncode is not None else 1
        if returncode != 0:
            log.warning(
                "command_failed",
                argv=argv,
                returncode=returncode,
                output=output[-500:],
            )
            return CommandResult(argv, returncode, output, duration, CommandStatus.FAILED)

        log.debug("command_finished", argv=argv, duration=round(duration, 2))
        return CommandResult(argv, 0, output, duration, CommandStatus.OK)

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        chunks: list[str],
        on_line: LineObserver | None,
    ) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Overlong line: readline drops it, keep reading the rest
                raw = await stream.read(_STREAM_LIMIT)
            if not raw:
                return
            text = raw.decode("utf-8", errors="replace")
            chunks.append(text)
            if on_line is None:
                continue
            line = text.rstrip("\r\n")
            if not line.strip():
                continue
            try:
                on_line(line)
            except Exception as exc:
                log.warning("line_observer_failed", error=str(exc))

    async def _terminate_group(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the child's process group, then SIGKILL after the grace window."""
        self._signal_group(proc.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._grace)
        except TimeoutError:
            pass
        # Unconditional: grandchildren may ignore SIGTERM after the child exits
        self._signal_group(proc.pid, signal.SIGKILL)
        await proc.wait()

    @staticmethod
    def _signal_group(pgid: int, sig: signal.Signals) -> None:
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            log.warning("process_group_signal_denied", pgid=pgid, signal=sig.name, error=str(exc))
