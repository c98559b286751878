"""Update orchestrator: the single entry point for self-updates.

Lifecycle:
1. Validate the plugin path and acquire the update lock
2. Check git and pick a mirror
3. Capture the BackupPoint, point the remote at the mirror, discard
   local drift, fetch the branch
4. Resolve the fetched tip to a hash and verify its signature
5. Adopt exactly that hash, install dependencies, build atomically
6. Schedule the service reload; the lock is released once it has run
7. On any failure after step 3, roll back to the BackupPoint
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from plugin_updater.builder import AtomicBuilder
from plugin_updater.config import Settings, get_settings
from plugin_updater.constants import MANIFEST_FILENAME
from plugin_updater.exceptions import (
    LockBusyError,
    PathInvalidError,
    RestartSchedulingError,
    UnexpectedUpdateError,
    UpdateError,
)
from plugin_updater.installer import DependencyInstaller
from plugin_updater.lock import AttemptCoordinator, LockManager, UpdateLock, get_coordinator
from plugin_updater.logging import get_logger
from plugin_updater.mirrors import MirrorSelector
from plugin_updater.models import PluginInfo, UpdateAttempt, UpdateResult, UpdateStep
from plugin_updater.process import ProcessRunner
from plugin_updater.progress import ProgressCallback, ProgressEmitter
from plugin_updater.repository import CheckoutCommitter, GitRepository
from plugin_updater.restart import RestartScheduler
from plugin_updater.rollback import RollbackManager
from plugin_updater.signature import SignatureVerifier

log = get_logger("plugin_updater.orchestrator")

Recorder = Callable[[UpdateStep, str], None]


@dataclass(frozen=True)
class PathValidation:
    valid: bool
    message: str


class UpdateOrchestrator:
    """Runs signed self-updates of the plugin checkout."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        coordinator: AttemptCoordinator | None = None,
        runner: ProcessRunner | None = None,
        selector: MirrorSelector | None = None,
        verifier: SignatureVerifier | None = None,
        restart_scheduler: RestartScheduler | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        s = self._settings
        self._path = Path(s.plugin_path).resolve()

        self._runner = runner or ProcessRunner(
            self._path,
            default_timeout=s.command_timeout_seconds,
            kill_grace_seconds=s.kill_grace_seconds,
        )
        self._locks = LockManager(
            UpdateLock(self._path / s.lock_filename, ttl_seconds=s.lock_ttl_seconds),
            coordinator or get_coordinator(),
        )
        self._selector = selector or MirrorSelector(
            probe_timeout=s.probe_timeout_seconds,
            region_timeout=s.region_probe_timeout_seconds,
        )
        self._repo = GitRepository(
            self._runner,
            self._path,
            remote=s.remote_name,
            branch=s.branch,
            fetch_timeout=s.fetch_timeout_seconds,
        )
        self._committer = CheckoutCommitter(self._repo)
        self._verifier = verifier or SignatureVerifier(self._runner, self._path)
        self._installer = DependencyInstaller(
            self._runner,
            self._path,
            allow_scripts=s.allow_install_scripts,
            production_only=s.install_production_only,
            timeout=s.install_timeout_seconds,
            tool=s.npm_command,
        )
        self._builder = AtomicBuilder(
            self._runner,
            self._path,
            output_dir=s.build_output_dir,
            build_script=s.build_script,
            timeout=s.build_timeout_seconds,
            tool=s.npm_command,
        )
        self._rollback = RollbackManager(self._repo, self._installer, self._builder)
        self._restart = restart_scheduler or RestartScheduler(
            self._runner,
            s.service_name,
            delay_seconds=s.restart_delay_seconds,
            timeout=s.restart_timeout_seconds,
            supervisor=s.supervisor_command,
        )

    @property
    def plugin_path(self) -> Path:
        return self._path

    @property
    def is_busy(self) -> bool:
        return self._locks.busy

    @property
    def restart_scheduler(self) -> RestartScheduler:
        return self._restart

    # ------------------------------------------------------------------
    # Read-only diagnostics
    # ------------------------------------------------------------------

    def validate_path(self) -> PathValidation:
        """Check the checkout is something we can safely update."""
        if not self._path.is_dir():
            return PathValidation(False, f"Plugin path does not exist: {self._path}")
        manifest = self._path / MANIFEST_FILENAME
        if not manifest.is_file():
            return PathValidation(False, f"Manifest not found: {manifest}")
        if not os.access(self._path, os.W_OK):
            return PathValidation(False, f"Plugin path is not writable: {self._path}")
        if not (self._path / ".git").exists():
            return PathValidation(
                False, f"Plugin path is not a git working copy (no .git): {self._path}"
            )
        return PathValidation(True, "Plugin path is valid")

    def get_plugin_info(self) -> PluginInfo:
        """Cheap diagnostic; does not take the update lock."""
        validation = self.validate_path()
        return PluginInfo(
            path=str(self._path), is_valid=validation.valid, message=validation.message
        )

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def perform_update(self, progress: ProgressCallback | None = None) -> UpdateResult:
        """Run one update attempt. Concurrent calls are rejected, not queued."""
        s = self._settings
        attempt = UpdateAttempt(path=str(self._path), max_log_lines=s.max_log_lines)
        emitter = ProgressEmitter(progress, min_interval=s.progress_min_interval_seconds)

        def record(step: UpdateStep, message: str) -> None:
            attempt.record(step, message)
            log.info("update_progress", step=step.value, message=message)
            emitter(step, message)

        def finish_failed(exc: UpdateError) -> UpdateResult:
            attempt.finish(
                False,
                exc.message,
                error=exc.message,
                error_code=exc.code,
                transcript=exc.transcript,
            )
            return attempt.to_result()

        def fail(exc: UpdateError) -> UpdateResult:
            record(UpdateStep.FAILED, exc.message)
            return finish_failed(exc)

        validation = self.validate_path()
        if not validation.valid:
            return fail(PathInvalidError(validation.message))

        try:
            self._locks.acquire()
        except LockBusyError as exc:
            log.info("update_rejected_busy", reason=exc.message)
            return fail(exc)
        except OSError as exc:
            log.error("lock_acquire_failed", path=str(s.lock_path), error=str(exc))
            return fail(LockBusyError(f"Cannot acquire update lock: {exc}"))

        try:
            return await self._run_pipeline(attempt, record)
        except UpdateError as exc:
            log.warning("update_failed", code=exc.code, error=exc.message)
            record(UpdateStep.FAILED, exc.message)
            await self._rollback_if_possible(attempt, record)
            return finish_failed(exc)
        except Exception as exc:
            log.exception("update_unexpected_error")
            wrapped = UnexpectedUpdateError(f"Unexpected error: {exc}")
            record(UpdateStep.FAILED, wrapped.message)
            await self._rollback_if_possible(attempt, record)
            return finish_failed(wrapped)
        finally:
            emitter.flush()
            # A scheduled reload releases the lock once it has run
            if not attempt.restart_scheduled:
                self._locks.release()

    async def wait_for_restart(self) -> None:
        """Block until any scheduled reload has finished."""
        await self._restart.wait()

    async def _run_pipeline(self, attempt: UpdateAttempt, record: Recorder) -> UpdateResult:
        def step_logger(step: UpdateStep) -> Callable[[str], None]:
            return lambda message: record(step, message)

        detecting = step_logger(UpdateStep.DETECTING)
        pulling = step_logger(UpdateStep.PULLING)
        building = step_logger(UpdateStep.BUILDING)
        restarting = step_logger(UpdateStep.RESTARTING)

        detecting(f"Plugin path: {self._path}")
        detecting("Checking git installation...")
        detecting(await self._repo.ensure_git_available())

        detecting("Selecting the best mirror...")
        selection = await self._selector.select(on_log=detecting)
        detecting(f"Using mirror {selection.candidate.name} ({selection.candidate.url})")

        # Nothing may be modified before the rollback target is known
        attempt.backup = await self._repo.capture_backup_point()
        pulling(f"Current version: {attempt.backup.short}")

        if await self._repo.ensure_remote(selection.candidate.url):
            pulling(f"Remote {self._settings.remote_name} now points at {selection.candidate.url}")

        pulling("Discarding local changes...")
        await self._repo.discard_local_changes(on_line=pulling)

        pulling("Fetching latest code...")
        await self._repo.fetch(on_line=pulling)
        target = await self._repo.resolve_fetched_tip()
        pulling(f"Fetched {self._repo.tracking_ref} at {target[:8]}")

        pulling("Verifying commit signature...")
        attempt.target = await self._verifier.verify(target, on_log=pulling)

        if attempt.target.commit == attempt.backup.commit:
            record(UpdateStep.COMPLETED, f"Already up to date ({attempt.backup.short})")
            attempt.finish(True, "Plugin is already up to date")
            return attempt.to_result()

        await self._committer.adopt(attempt.target, on_line=pulling)
        pulling(f"Checked out verified commit {attempt.target.short}")

        building("Installing dependencies...")
        attempt.dependencies_touched = True
        await self._installer.install(on_log=building, on_line=building)
        building("Compiling...")
        await self._builder.build(on_log=building, on_line=building)
        building("Build complete")

        service = self._settings.service_name
        supervisor = Path(self._settings.supervisor_command).name
        restarting(f"Scheduling zero-downtime reload of {service}...")
        try:
            self._restart.schedule(on_done=self._locks.release)
        except RestartSchedulingError as exc:
            log.warning("restart_not_scheduled", error=exc.message)
            restarting(f"Could not schedule reload: {exc.message}. Restart {service} manually.")
        else:
            attempt.restart_scheduled = True
            restarting(
                f"Reload scheduled in {self._restart.delay_seconds:g}s; "
                f"if the service misbehaves check: {supervisor} logs {service}"
            )

        record(UpdateStep.COMPLETED, f"Updated to {attempt.target.short}")
        attempt.finish(True, "Plugin updated successfully")
        return attempt.to_result()

    async def _rollback_if_possible(self, attempt: UpdateAttempt, record: Recorder) -> None:
        if attempt.backup is None:
            record(UpdateStep.FAILED, "No backup point was captured; working copy left untouched")
            return
        report = await self._rollback.rollback(
            attempt.backup,
            restore_artifacts=attempt.dependencies_touched,
            on_log=lambda message: record(UpdateStep.FAILED, message),
        )
        if report.degraded:
            log.error("rollback_degraded", warnings=report.warnings)
