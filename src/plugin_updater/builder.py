"""Atomic build output replacement.

The build writes into a fresh scratch directory next to the live output.
Only a complete, successful build is swapped in, with two renames:

    live    -> .<out>.previous-<id>
    scratch -> live

so readers see either the old tree or the new one, never a partial one.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import uuid
from collections.abc import Callable
from pathlib import Path

from plugin_updater.exceptions import BuildFailureError
from plugin_updater.logging import get_logger
from plugin_updater.process import LineObserver, ProcessRunner

log = get_logger("plugin_updater.builder")

Logger = Callable[[str], None]


class AtomicBuilder:
    """Build into scratch space and swap the result into place."""

    def __init__(
        self,
        runner: ProcessRunner,
        path: str | Path,
        *,
        output_dir: str = "dist",
        build_script: str = "build:plugin",
        timeout: float = 300,
        tool: str = "npm",
    ) -> None:
        self._runner = runner
        self._path = Path(path)
        self._output_name = output_dir
        self._script = build_script
        self._timeout = timeout
        self._tool = tool

    @property
    def live_dir(self) -> Path:
        return self._path / self._output_name

    def build_args(self, out_dir: Path) -> list[str]:
        # tsc-style compilers accept an output directory override
        return ["run", self._script, "--", "--outDir", str(out_dir)]

    def _scratch_name(self, kind: str) -> Path:
        return self._path / f".{self._output_name}.{kind}-{uuid.uuid4().hex[:12]}"

    async def cleanup_leftovers(self) -> None:
        """Remove scratch and backup directories left by a crashed attempt."""
        prefixes = (f".{self._output_name}.build-", f".{self._output_name}.previous-")
        for entry in self._path.iterdir():
            if entry.is_dir() and entry.name.startswith(prefixes):
                log.warning("build_leftover_removed", path=str(entry))
                await asyncio.to_thread(shutil.rmtree, entry, True)

    async def build(
        self,
        on_log: Logger | None = None,
        on_line: LineObserver | None = None,
    ) -> Path:
        """Build and atomically publish the output; return the live path."""
        emit = on_log or (lambda _msg: None)
        await self.cleanup_leftovers()

        scratch = self._scratch_name("build")
        emit(f"Building into scratch directory {scratch.name}...")
        try:
            result = await self._runner.run(
                self._tool,
                self.build_args(scratch),
                cwd=self._path,
                timeout=self._timeout,
                on_line=on_line,
            )
            if not result.ok:
                raise BuildFailureError(
                    f"Build failed ({result.status.value}, exit {result.returncode})",
                    transcript=result.output,
                )
            if not scratch.is_dir() or not any(scratch.iterdir()):
                raise BuildFailureError(
                    "Build reported success but produced no output", transcript=result.output
                )
            self.swap_into_place(scratch)
        finally:
            if scratch.exists():
                await asyncio.to_thread(shutil.rmtree, scratch, True)

        emit(f"Build output published to {self.live_dir.name}/")
        log.info("build_published", path=str(self.live_dir))
        return self.live_dir

    def swap_into_place(self, scratch: Path) -> None:
        """Replace the live output with *scratch* using renames only."""
        live = self.live_dir
        backup = self._scratch_name("previous")
        had_live = live.exists()

        if had_live:
            try:
                os.rename(live, backup)
            except OSError as exc:
                raise BuildFailureError(f"Cannot move live output aside: {exc}") from exc

        try:
            os.rename(scratch, live)
        except OSError as exc:
            if had_live:
                try:
                    os.rename(backup, live)
                except OSError as restore_exc:
                    log.error(
                        "build_output_restore_failed",
                        live=str(live),
                        backup=str(backup),
                        error=str(restore_exc),
                    )
            raise BuildFailureError(f"Cannot publish new build output: {exc}") from exc

        if had_live:
            shutil.rmtree(backup, ignore_errors=True)
