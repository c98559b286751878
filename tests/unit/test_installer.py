"""Tests for plugin_updater.installer dependency installation."""

from __future__ import annotations

from pathlib import Path

import pytest
from fakes import FakeRunner

from plugin_updater.exceptions import InstallFailureError
from plugin_updater.installer import DependencyInstaller


def _make_installer(tmp_path: Path, runner: FakeRunner, lockfile: bool = True, **kwargs):
    if lockfile:
        (tmp_path / "package-lock.json").write_text("{}")
    return DependencyInstaller(runner, tmp_path, **kwargs)


class TestInstall:
    """Tests for DependencyInstaller.install."""

    async def test_lockfile_install_preferred(self, tmp_path: Path) -> None:
        runner = FakeRunner(cwd=tmp_path)
        mode = await _make_installer(tmp_path, runner).install()

        assert mode == "lockfile"
        assert runner.commands() == [("npm", "ci", "--no-audit", "--no-fund", "--ignore-scripts")]

    async def test_falls_back_to_resolution(self, tmp_path: Path) -> None:
        runner = FakeRunner(cwd=tmp_path)
        runner.on("npm", "ci", returncode=1, output="npm ERR! lockfile out of sync")
        logs: list[str] = []

        mode = await _make_installer(tmp_path, runner).install(on_log=logs.append)

        assert mode == "resolve"
        assert [c[1] for c in runner.commands()] == ["ci", "install"]
        assert any("'lockfile' failed" in line for line in logs)

    async def test_no_lockfile_goes_straight_to_resolution(self, tmp_path: Path) -> None:
        runner = FakeRunner(cwd=tmp_path)
        mode = await _make_installer(tmp_path, runner, lockfile=False).install()
        assert mode == "resolve"
        assert [c[1] for c in runner.commands()] == ["install"]

    async def test_both_modes_failing_raises(self, tmp_path: Path) -> None:
        runner = FakeRunner(cwd=tmp_path)
        runner.on("npm", "ci", returncode=1, output="ci broke")
        runner.on("npm", "install", returncode=1, output="install broke")

        with pytest.raises(InstallFailureError) as exc_info:
            await _make_installer(tmp_path, runner).install()
        assert "install failed" in exc_info.value.message
        assert "ci broke" in exc_info.value.transcript
        assert "install broke" in exc_info.value.transcript

    async def test_scripts_allowed_when_configured(self, tmp_path: Path) -> None:
        runner = FakeRunner(cwd=tmp_path)
        logs: list[str] = []
        await _make_installer(tmp_path, runner, allow_scripts=True).install(on_log=logs.append)

        assert "--ignore-scripts" not in runner.calls[0].argv
        assert any("ENABLED" in line for line in logs)

    async def test_production_only_omits_dev(self, tmp_path: Path) -> None:
        runner = FakeRunner(cwd=tmp_path)
        await _make_installer(tmp_path, runner, production_only=True).install()
        assert "--omit=dev" in runner.calls[0].argv

    async def test_configured_tool_and_timeout_used(self, tmp_path: Path) -> None:
        runner = FakeRunner(cwd=tmp_path)
        await _make_installer(tmp_path, runner, tool="/opt/node/bin/npm", timeout=7).install()
        assert runner.calls[0].argv[0] == "/opt/node/bin/npm"
        assert runner.calls[0].timeout == 7
        assert runner.calls[0].cwd == tmp_path


class TestPurge:
    """Tests for removing the dependency tree."""

    async def test_purge_removes_tree(self, tmp_path: Path) -> None:
        installer = _make_installer(tmp_path, FakeRunner())
        (installer.dependency_dir / "left-pad").mkdir(parents=True)
        await installer.purge()
        assert not installer.dependency_dir.exists()

    async def test_purge_without_tree_is_noop(self, tmp_path: Path) -> None:
        await _make_installer(tmp_path, FakeRunner()).purge()
