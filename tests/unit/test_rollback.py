"""Tests for plugin_updater.rollback."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

from fakes import COMMIT_A, COMMIT_B, FakeRunner

from plugin_updater.builder import AtomicBuilder
from plugin_updater.exceptions import BuildFailureError, InstallFailureError
from plugin_updater.installer import DependencyInstaller
from plugin_updater.models import BackupPoint
from plugin_updater.repository import GitRepository
from plugin_updater.rollback import RollbackManager


def _make_manager(tmp_path: Path, runner: FakeRunner):
    repo = GitRepository(runner, tmp_path)
    installer = DependencyInstaller(runner, tmp_path)
    builder = AtomicBuilder(runner, tmp_path)
    installer.install = AsyncMock(return_value="lockfile")  # type: ignore[method-assign]
    installer.purge = AsyncMock()  # type: ignore[method-assign]
    builder.build = AsyncMock(return_value=tmp_path / "dist")  # type: ignore[method-assign]
    return RollbackManager(repo, installer, builder), installer, builder


class TestRollback:
    """Tests for RollbackManager.rollback."""

    async def test_code_only_rollback(self, tmp_path: Path) -> None:
        runner = FakeRunner(cwd=tmp_path)
        runner.on("git", "rev-parse", output=f"{COMMIT_A}\n")
        manager, installer, builder = _make_manager(tmp_path, runner)

        report = await manager.rollback(BackupPoint(COMMIT_A), restore_artifacts=False)

        assert report.code_restored
        assert report.dependencies_restored is None
        assert report.build_restored is None
        assert not report.degraded
        assert ("git", "reset", "--hard", COMMIT_A) in runner.commands()
        installer.install.assert_not_awaited()
        builder.build.assert_not_awaited()

    async def test_full_rollback_reinstalls_and_rebuilds(self, tmp_path: Path) -> None:
        runner = FakeRunner(cwd=tmp_path)
        runner.on("git", "rev-parse", output=f"{COMMIT_A}\n")
        manager, installer, builder = _make_manager(tmp_path, runner)
        logs: list[str] = []

        report = await manager.rollback(BackupPoint(COMMIT_A), on_log=logs.append)

        assert report.code_restored
        assert report.dependencies_restored is True
        assert report.build_restored is True
        assert not report.degraded
        installer.purge.assert_awaited_once()
        installer.install.assert_awaited_once()
        builder.build.assert_awaited_once()
        assert any("Rollback complete" in line for line in logs)

    async def test_reset_failure_reports_manual_recovery(self, tmp_path: Path) -> None:
        runner = FakeRunner(cwd=tmp_path)
        runner.on("git", "reset", returncode=128, output="fatal: index.lock exists")
        manager, installer, _ = _make_manager(tmp_path, runner)
        logs: list[str] = []

        report = await manager.rollback(BackupPoint(COMMIT_A), on_log=logs.append)

        assert not report.code_restored
        assert report.degraded
        assert any(f"git reset --hard {COMMIT_A}" in line for line in logs)
        installer.install.assert_not_awaited()

    async def test_head_mismatch_after_reset_is_failure(self, tmp_path: Path) -> None:
        runner = FakeRunner(cwd=tmp_path)
        runner.on("git", "rev-parse", output=f"{COMMIT_B}\n")
        manager, _, _ = _make_manager(tmp_path, runner)

        report = await manager.rollback(BackupPoint(COMMIT_A))
        assert not report.code_restored

    async def test_reinstall_failure_skips_rebuild_and_warns(self, tmp_path: Path) -> None:
        runner = FakeRunner(cwd=tmp_path)
        runner.on("git", "rev-parse", output=f"{COMMIT_A}\n")
        manager, installer, builder = _make_manager(tmp_path, runner)
        installer.install.side_effect = InstallFailureError("npm install failed")
        logs: list[str] = []

        report = await manager.rollback(BackupPoint(COMMIT_A), on_log=logs.append)

        assert report.code_restored
        assert report.dependencies_restored is False
        assert report.build_restored is False
        assert report.degraded
        builder.build.assert_not_awaited()
        assert any(line.startswith("WARNING") for line in logs)

    async def test_rebuild_failure_is_degraded(self, tmp_path: Path) -> None:
        runner = FakeRunner(cwd=tmp_path)
        runner.on("git", "rev-parse", output=f"{COMMIT_A}\n")
        manager, _, builder = _make_manager(tmp_path, runner)
        builder.build.side_effect = BuildFailureError("Build failed")

        report = await manager.rollback(BackupPoint(COMMIT_A))

        assert report.dependencies_restored is True
        assert report.build_restored is False
        assert report.degraded
        assert any("Rebuild failed" in w for w in report.warnings)
