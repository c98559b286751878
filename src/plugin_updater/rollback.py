"""Restore the working copy, dependencies and build to a BackupPoint."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from plugin_updater.builder import AtomicBuilder
from plugin_updater.exceptions import UpdateError
from plugin_updater.installer import DependencyInstaller
from plugin_updater.logging import get_logger
from plugin_updater.models import BackupPoint
from plugin_updater.repository import GitRepository

log = get_logger("plugin_updater.rollback")

Logger = Callable[[str], None]


@dataclass
class RollbackReport:
    """What a rollback managed to restore."""

    backup: BackupPoint
    code_restored: bool = False
    dependencies_restored: bool | None = None  # None: not needed
    build_restored: bool | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return (
            not self.code_restored
            or self.dependencies_restored is False
            or self.build_restored is False
        )


class RollbackManager:
    """Bring the checkout back to the commit captured before the attempt."""

    def __init__(
        self,
        repo: GitRepository,
        installer: DependencyInstaller,
        builder: AtomicBuilder,
    ) -> None:
        self._repo = repo
        self._installer = installer
        self._builder = builder

    async def rollback(
        self,
        backup: BackupPoint,
        *,
        restore_artifacts: bool = True,
        on_log: Logger | None = None,
    ) -> RollbackReport:
        """Reset code, then (if needed) reinstall dependencies and rebuild.

        *restore_artifacts* is False when the failed attempt never touched
        the dependency tree or build output, in which case only the code is
        reset. Never raises for tool failures; see ``RollbackReport``.
        """
        emit = on_log or (lambda _msg: None)
        report = RollbackReport(backup=backup)

        emit(f"Rolling back to {backup.short}...")
        result = await self._repo.reset_hard(backup.commit, on_line=emit)
        head = await self._repo.head() if result.ok else None
        if head != backup.commit:
            message = (
                f"Could not reset working copy to {backup.short}; "
                f"manual recovery required: git reset --hard {backup.commit}"
            )
            report.warnings.append(message)
            emit(message)
            log.error("rollback_code_failed", commit=backup.commit, output=result.tail())
            return report
        report.code_restored = True
        emit("Code restored to the pre-update version")

        if not restore_artifacts:
            log.info("rollback_complete", commit=backup.commit, scope="code")
            return report

        report.dependencies_restored = await self._restore_dependencies(report, emit)
        if report.dependencies_restored:
            report.build_restored = await self._restore_build(report, emit)
        else:
            report.build_restored = False

        if report.degraded:
            warning = (
                "WARNING: rollback is incomplete; files on disk may not match the "
                "running service. Check dependencies and build output before restarting."
            )
            report.warnings.append(warning)
            emit(warning)
            log.error("rollback_degraded", commit=backup.commit, warnings=report.warnings)
        else:
            emit("Rollback complete: code, dependencies and build restored")
            log.info("rollback_complete", commit=backup.commit, scope="full")
        return report

    async def _restore_dependencies(self, report: RollbackReport, emit: Logger) -> bool:
        emit("Removing installed dependencies...")
        try:
            await self._installer.purge()
        except OSError as exc:
            report.warnings.append(f"Failed to remove dependencies: {exc}")
            emit(f"Failed to remove dependencies: {exc}")

        emit("Reinstalling dependencies for the restored version...")
        try:
            await self._installer.install(on_log=emit, on_line=emit)
        except UpdateError as exc:
            report.warnings.append(f"Dependency reinstall failed: {exc.message}")
            emit(f"Dependency reinstall failed: {exc.message}")
            return False
        return True

    async def _restore_build(self, report: RollbackReport, emit: Logger) -> bool:
        emit("Rebuilding the restored version...")
        try:
            await self._builder.build(on_log=emit, on_line=emit)
        except UpdateError as exc:
            report.warnings.append(f"Rebuild failed: {exc.message}")
            emit(f"Rebuild failed: {exc.message}")
            return False
        return True
