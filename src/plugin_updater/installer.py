"""Dependency installation for the plugin checkout.

Prefers the reproducible lockfile install (``npm ci``) and falls back to
ordinary resolution (``npm install``) only when that fails. Install-time
scripts are disabled unless explicitly allowed.
"""

from __future__ import annotations

import asyncio
import shutil
from collections.abc import Callable
from pathlib import Path

from plugin_updater.constants import DEPENDENCY_DIR, LOCKFILE_FILENAME
from plugin_updater.exceptions import InstallFailureError
from plugin_updater.fallback import Strategy, StrategiesExhaustedError, first_successful
from plugin_updater.logging import get_logger
from plugin_updater.process import LineObserver, ProcessRunner

log = get_logger("plugin_updater.installer")

Logger = Callable[[str], None]


class DependencyInstaller:
    """Install the plugin's dependencies with npm."""

    def __init__(
        self,
        runner: ProcessRunner,
        path: str | Path,
        *,
        allow_scripts: bool = False,
        production_only: bool = False,
        timeout: float = 300,
        tool: str = "npm",
    ) -> None:
        self._runner = runner
        self._path = Path(path)
        self._allow_scripts = allow_scripts
        self._production_only = production_only
        self._timeout = timeout
        self._tool = tool

    @property
    def dependency_dir(self) -> Path:
        return self._path / DEPENDENCY_DIR

    def _common_flags(self) -> list[str]:
        flags = ["--no-audit", "--no-fund"]
        if not self._allow_scripts:
            flags.append("--ignore-scripts")
        if self._production_only:
            flags.append("--omit=dev")
        return flags

    def strategies(self, on_line: LineObserver | None = None) -> list[Strategy[str]]:
        """Install modes in preference order."""
        modes: list[tuple[str, list[str]]] = []
        if (self._path / LOCKFILE_FILENAME).is_file():
            modes.append(("lockfile", ["ci", *self._common_flags()]))
        modes.append(("resolve", ["install", *self._common_flags()]))

        def make(name: str, args: list[str]) -> Strategy[str]:
            async def attempt() -> str:
                result = await self._runner.run(
                    self._tool, args, cwd=self._path, timeout=self._timeout, on_line=on_line
                )
                if not result.ok:
                    raise InstallFailureError(
                        f"{self._tool} {args[0]} failed "
                        f"({result.status.value}, exit {result.returncode})",
                        transcript=result.output,
                    )
                return name

            return Strategy(name=name, attempt=attempt)

        return [make(name, args) for name, args in modes]

    async def install(
        self,
        on_log: Logger | None = None,
        on_line: LineObserver | None = None,
    ) -> str:
        """Install dependencies; return the mode that succeeded."""
        emit = on_log or (lambda _msg: None)
        if self._allow_scripts:
            emit("Dependency install scripts are ENABLED by configuration")

        try:
            outcome = await first_successful(
                self.strategies(on_line),
                on_failure=lambda name, exc: emit(f"Install mode '{name}' failed: {exc.message}"),
            )
        except StrategiesExhaustedError as exc:
            last = exc.last
            raise InstallFailureError(
                last.message if last else "Dependency installation failed",
                transcript=exc.transcript,
            ) from exc

        log.info("dependencies_installed", mode=outcome.name)
        emit(f"Dependencies installed ({outcome.name} mode)")
        return outcome.name

    async def purge(self) -> None:
        """Remove the installed dependency tree."""
        target = self.dependency_dir
        if not target.exists():
            return
        await asyncio.to_thread(shutil.rmtree, target)
        log.info("dependencies_purged", path=str(target))
