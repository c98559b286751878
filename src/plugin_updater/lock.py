"""Update locking.

Two layers guard the working copy:

1. ``AttemptCoordinator`` - a process-wide flag, the fast path that rejects
   a second attempt from the same process without touching the disk.
2. ``UpdateLock`` - a ``{pid, timestamp}`` lock file shared by every
   process (cluster workers, CLI runs). It is created with a
   create-exclusive primitive, expires after a TTL, and is reclaimed early
   when its holder no longer exists.

``LockManager`` combines both and is what the orchestrator uses.
"""

from __future__ import annotations

import errno
import os
import threading
import time
import uuid
from collections.abc import Callable
from functools import lru_cache
from pathlib import Path

from plugin_updater.exceptions import LockBusyError
from plugin_updater.logging import get_logger
from plugin_updater.models import LockRecord

log = get_logger("plugin_updater.lock")

DEFAULT_TTL_SECONDS = 30 * 60

# Acquisition passes after removing a stale or corrupt lock file
_MAX_ACQUIRE_PASSES = 3


def _probe_pid(pid: int) -> None:
    os.kill(pid, 0)


# ------------------------------------------------------------------
# In-process coordinator
# ------------------------------------------------------------------


class AttemptCoordinator:
    """Process-wide "an update is running" flag.

    ``try_acquire`` and ``release`` are the only mutators.
    """

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def try_acquire(self) -> bool:
        with self._mutex:
            if self._running:
                return False
            self._running = True
            return True

    def release(self) -> None:
        with self._mutex:
            self._running = False


@lru_cache
def get_coordinator() -> AttemptCoordinator:
    """Get the process-wide coordinator."""
    return AttemptCoordinator()


# ------------------------------------------------------------------
# Cross-process lock file
# ------------------------------------------------------------------


class UpdateLock:
    """A lock file holding the owner's pid and acquisition time."""

    def __init__(
        self,
        path: str | Path,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        pid: int | None = None,
        clock: Callable[[], float] = time.time,
        liveness_probe: Callable[[int], None] = _probe_pid,
    ) -> None:
        self._path = Path(path)
        self._ttl = ttl_seconds
        self._pid = pid if pid is not None else os.getpid()
        self._clock = clock
        self._probe = liveness_probe

    @property
    def path(self) -> Path:
        return self._path

    @property
    def pid(self) -> int:
        return self._pid

    def read(self) -> LockRecord | None:
        """Return the current record, or None when absent or corrupt."""
        try:
            return LockRecord.parse(self._path.read_bytes())
        except FileNotFoundError:
            return None

    def acquire(self) -> LockRecord:
        """Create the lock file or raise ``LockBusyError``."""
        for _ in range(_MAX_ACQUIRE_PASSES):
            record = LockRecord(pid=self._pid, timestamp=self._clock())
            if self._create_exclusive(record):
                log.debug("lock_acquired", path=str(self._path), pid=self._pid)
                return record
            self._clear_if_stale()
        raise LockBusyError("Update lock is contended by another process, try again later")

    def release(self) -> bool:
        """Delete the lock file if, and only if, this owner holds it."""
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return False
        record = LockRecord.parse(raw)
        if record is None or record.pid != self._pid:
            log.warning(
                "lock_release_skipped",
                path=str(self._path),
                holder=record.pid if record else None,
                pid=self._pid,
            )
            return False
        try:
            self._path.unlink()
        except FileNotFoundError:
            return False
        log.debug("lock_released", path=str(self._path), pid=self._pid)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_exclusive(self, record: LockRecord) -> bool:
        """Publish *record* at the lock path only if nothing is there.

        The content is written to a private temp file first and hard-linked
        into place, so a competitor never observes an empty lock file.
        """
        tmp = self._path.with_name(f"{self._path.name}.{self._pid}.{uuid.uuid4().hex}.tmp")
        try:
            with open(tmp, "x", encoding="utf-8") as fh:
                fh.write(record.to_json())
                fh.flush()
                os.fsync(fh.fileno())
            try:
                os.link(tmp, self._path)
            except FileExistsError:
                return False
            except OSError as exc:
                if exc.errno not in (errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP):
                    raise
                # No hard links on this filesystem: fall back to O_EXCL
                return self._create_exclusive_direct(record)
            return True
        finally:
            tmp.unlink(missing_ok=True)

    def _create_exclusive_direct(self, record: LockRecord) -> bool:
        try:
            fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(record.to_json())
        return True

    def _clear_if_stale(self) -> None:
        """Remove the existing lock file when it is corrupt or stale.

        Raises ``LockBusyError`` when the holder is (or may be) alive.
        """
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return

        record = LockRecord.parse(raw)
        if record is None:
            log.warning("lock_corrupt_removed", path=str(self._path))
            self._remove_if_unchanged(raw)
            return

        age = self._clock() - record.timestamp
        if age >= self._ttl:
            log.warning("lock_expired_removed", path=str(self._path), pid=record.pid, age=int(age))
            self._remove_if_unchanged(raw)
            return

        try:
            self._probe(record.pid)
        except ProcessLookupError:
            log.warning("lock_holder_gone_removed", path=str(self._path), pid=record.pid)
            self._remove_if_unchanged(raw)
            return
        except PermissionError:
            # Exists but belongs to another user
            raise LockBusyError(
                f"Update in progress (PID {record.pid}, foreign owner), try again later"
            ) from None
        except OSError as exc:
            raise LockBusyError(
                f"Cannot determine state of lock holder (PID {record.pid}): {exc}"
            ) from exc

        raise LockBusyError(f"Update in progress (PID {record.pid}), try again later")

    def _remove_if_unchanged(self, expected: bytes) -> None:
        """Delete the lock file only if it still holds *expected*.

        The file is first renamed aside, so a competitor that replaced it
        between our read and this call gets its lock back.
        """
        aside = self._path.with_name(f"{self._path.name}.stale.{self._pid}.{uuid.uuid4().hex}")
        try:
            os.rename(self._path, aside)
        except FileNotFoundError:
            return
        if aside.read_bytes() == expected:
            aside.unlink(missing_ok=True)
            return
        try:
            os.link(aside, self._path)
        except FileExistsError:
            # A third party published a lock meanwhile; the displaced one stays on disk
            log.warning("lock_restore_conflict", path=str(self._path), displaced=str(aside))
        else:
            aside.unlink(missing_ok=True)
        raise LockBusyError("Update lock changed hands while being inspected, try again later")


# ------------------------------------------------------------------
# Combined manager
# ------------------------------------------------------------------


class LockManager:
    """In-process flag plus lock file, acquired and released together."""

    def __init__(
        self,
        lock: UpdateLock,
        coordinator: AttemptCoordinator | None = None,
    ) -> None:
        self._lock = lock
        self._coordinator = coordinator or get_coordinator()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    @property
    def busy(self) -> bool:
        return self._coordinator.running

    def acquire(self) -> LockRecord:
        if not self._coordinator.try_acquire():
            raise LockBusyError("An update is already running in this process")
        try:
            record = self._lock.acquire()
        except BaseException:
            self._coordinator.release()
            raise
        self._held = True
        return record

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            self._lock.release()
        finally:
            self._coordinator.release()
