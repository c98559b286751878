"""Git operations on the plugin working copy.

``GitRepository`` fetches without touching the live checkout and resolves
the fetched branch tip to a concrete hash. ``CheckoutCommitter`` is the
only code that moves the working copy forward, and it only accepts a
``VerifiedCommit``.
"""

from __future__ import annotations

import re
import sys
from pathlib import Path

from plugin_updater.constants import GIT_INSTALL_GUIDES
from plugin_updater.exceptions import SyncFailureError, ToolMissingError
from plugin_updater.logging import get_logger
from plugin_updater.models import BackupPoint, VerifiedCommit
from plugin_updater.process import CommandResult, CommandStatus, LineObserver, ProcessRunner

log = get_logger("plugin_updater.repository")

_COMMIT_RE = re.compile(r"^(?:[0-9a-f]{40}|[0-9a-f]{64})$")


def is_commit_hash(value: str) -> bool:
    """Full-length SHA-1 or SHA-256 object name."""
    return bool(_COMMIT_RE.match(value))


def git_install_guide(platform: str | None = None) -> str:
    return GIT_INSTALL_GUIDES.get(platform or sys.platform, "Install git manually and retry.")


class GitRepository:
    """Thin async wrapper around the git CLI for one working copy."""

    def __init__(
        self,
        runner: ProcessRunner,
        path: str | Path,
        *,
        remote: str = "origin",
        branch: str = "main",
        fetch_timeout: float = 300,
    ) -> None:
        self._runner = runner
        self._path = Path(path)
        self._remote = remote
        self._branch = branch
        self._fetch_timeout = fetch_timeout

    @property
    def path(self) -> Path:
        return self._path

    @property
    def tracking_ref(self) -> str:
        return f"refs/remotes/{self._remote}/{self._branch}"

    async def git(
        self,
        *args: str,
        timeout: float | None = None,
        on_line: LineObserver | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        return await self._runner.run(
            "git", args, cwd=self._path, timeout=timeout, on_line=on_line, env=env
        )

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    async def ensure_git_available(self) -> str:
        """Return git's version string or raise ``ToolMissingError``."""
        result = await self.git("--version", timeout=30)
        if not result.ok or "git version" not in result.output.lower():
            raise ToolMissingError(
                f"git is not installed or not usable. {git_install_guide()}",
                transcript=result.output,
            )
        return result.output.strip()

    # ------------------------------------------------------------------
    # Remote
    # ------------------------------------------------------------------

    async def remote_url(self) -> str | None:
        result = await self.git("remote", "get-url", self._remote, timeout=30)
        return result.output.strip() if result.ok else None

    async def ensure_remote(self, url: str) -> bool:
        """Point the tracked remote at *url*; return True when it changed."""
        current = await self.remote_url()
        if current == url:
            return False

        if current is None:
            result = await self.git("remote", "add", self._remote, url, timeout=30)
        else:
            result = await self.git("remote", "set-url", self._remote, url, timeout=30)
        if not result.ok:
            raise SyncFailureError(
                f"Failed to set remote {self._remote} to {url}", transcript=result.output
            )
        log.info("remote_updated", remote=self._remote, previous=current, url=url)
        return True

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    async def resolve(self, rev: str) -> str | None:
        """Resolve *rev* to a full commit hash, or None."""
        result = await self.git("rev-parse", "--verify", "--quiet", f"{rev}^{{commit}}", timeout=30)
        if not result.ok:
            return None
        value = result.output.strip()
        return value if is_commit_hash(value) else None

    async def head(self) -> str | None:
        return await self.resolve("HEAD")

    async def capture_backup_point(self) -> BackupPoint:
        """Record HEAD as the rollback target; no HEAD means no update."""
        commit = await self.head()
        if commit is None:
            raise SyncFailureError(
                "Cannot resolve the current commit; refusing to modify the working copy"
            )
        return BackupPoint(commit=commit)

    async def discard_local_changes(self, on_line: LineObserver | None = None) -> CommandResult:
        """Reset tracked files to HEAD, dropping uncommitted drift."""
        result = await self.git("reset", "--hard", "HEAD", on_line=on_line, timeout=120)
        if not result.ok:
            log.warning("discard_local_changes_failed", output=result.tail())
        return result

    async def fetch(self, on_line: LineObserver | None = None) -> None:
        """Fetch the tracked branch into its remote-tracking ref only."""
        refspec = f"+refs/heads/{self._branch}:{self.tracking_ref}"
        result = await self.git(
            "fetch",
            "--no-tags",
            "--progress",
            self._remote,
            refspec,
            timeout=self._fetch_timeout,
            on_line=on_line,
        )
        if result.status is CommandStatus.TIMED_OUT:
            raise SyncFailureError("git fetch timed out", transcript=result.output)
        if not result.ok:
            raise SyncFailureError(
                f"git fetch failed (exit {result.returncode})", transcript=result.output
            )

    async def resolve_fetched_tip(self) -> str:
        """Hash of the fetched branch tip, as of this fetch."""
        commit = await self.resolve(self.tracking_ref)
        if commit is None:
            raise SyncFailureError(f"Cannot resolve fetched branch {self.tracking_ref}")
        return commit

    async def reset_hard(self, commit: str, on_line: LineObserver | None = None) -> CommandResult:
        if not is_commit_hash(commit):
            raise ValueError(f"not a full commit hash: {commit!r}")
        return await self.git("reset", "--hard", commit, on_line=on_line, timeout=120)


class CheckoutCommitter:
    """Moves the working copy to a verified commit."""

    def __init__(self, repo: GitRepository) -> None:
        self._repo = repo

    async def adopt(
        self,
        verified: VerifiedCommit,
        on_line: LineObserver | None = None,
    ) -> str:
        """Reset to exactly the verified hash and confirm HEAD moved there."""
        result = await self._repo.reset_hard(verified.commit, on_line=on_line)
        if not result.ok:
            raise SyncFailureError(
                f"Failed to check out verified commit {verified.short}", transcript=result.output
            )
        head = await self._repo.head()
        if head != verified.commit:
            raise SyncFailureError(
                f"Working copy is at {head or 'unknown'} after checkout, expected {verified.commit}"
            )
        log.info("commit_adopted", commit=verified.commit, fingerprint=verified.trusted_fingerprint)
        return head
