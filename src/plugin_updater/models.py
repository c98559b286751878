"""Data models for update attempts.

All models are plain dataclasses with ``to_dict`` for serialisation,
following the same conventions as the rest of the package.
"""

from __future__ import annotations

import json
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class UpdateStep(Enum):
    """Pipeline state of an update attempt."""

    DETECTING = "detecting"
    PULLING = "pulling"
    BUILDING = "building"
    RESTARTING = "restarting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UpdateStep.COMPLETED, UpdateStep.FAILED)


# ------------------------------------------------------------------
# Lock
# ------------------------------------------------------------------


@dataclass(frozen=True)
class LockRecord:
    """Contents of the cross-process update lock file."""

    pid: int
    timestamp: float  # epoch seconds

    def to_json(self) -> str:
        return json.dumps({"pid": self.pid, "timestamp": self.timestamp})

    @classmethod
    def parse(cls, raw: str | bytes) -> LockRecord | None:
        """Parse lock file contents, returning None when corrupt."""
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        pid = data.get("pid")
        timestamp = data.get("timestamp")
        if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
            return None
        if isinstance(timestamp, bool) or not isinstance(timestamp, int | float):
            return None
        try:
            timestamp = float(timestamp)
        except OverflowError:
            return None
        if not math.isfinite(timestamp):
            return None
        return cls(pid=pid, timestamp=timestamp)


# ------------------------------------------------------------------
# Mirrors
# ------------------------------------------------------------------


@dataclass(frozen=True)
class MirrorCandidate:
    """A remote host the plugin source can be fetched from."""

    name: str
    url: str
    probe_url: str
    region: str = "global"


@dataclass(frozen=True)
class MirrorSelection:
    """The mirror chosen for this attempt."""

    candidate: MirrorCandidate
    latency_ms: float | None  # None when no probe succeeded
    region: str

    @property
    def reachable(self) -> bool:
        return self.latency_ms is not None


# ------------------------------------------------------------------
# Repository
# ------------------------------------------------------------------


@dataclass(frozen=True)
class BackupPoint:
    """Commit the working copy was at before the first mutation."""

    commit: str
    captured_at: str = field(default_factory=_now_iso)

    @property
    def short(self) -> str:
        return self.commit[:8]


@dataclass(frozen=True)
class VerifiedCommit:
    """A fetched commit whose signature passed the allowlist check.

    ``commit`` is the hash resolved at fetch time; it is the only value
    the checkout step will ever reset to.
    """

    commit: str
    signing_fingerprint: str
    primary_fingerprint: str | None = None

    @property
    def trusted_fingerprint(self) -> str:
        return self.primary_fingerprint or self.signing_fingerprint

    @property
    def short(self) -> str:
        return self.commit[:8]


# ------------------------------------------------------------------
# Attempt / result
# ------------------------------------------------------------------


@dataclass
class UpdateResult:
    """Outcome returned from ``perform_update``."""

    success: bool
    step: UpdateStep
    message: str
    logs: list[str] = field(default_factory=list)
    path: str = ""
    error: str | None = None
    error_code: str | None = None
    transcript: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "step": self.step.value,
            "message": self.message,
            "logs": list(self.logs),
            "path": self.path,
            "error": self.error,
            "error_code": self.error_code,
            "transcript": self.transcript[-4000:],
        }


@dataclass
class UpdateAttempt:
    """Mutable record of one running update attempt."""

    path: str
    max_log_lines: int = 1000
    step: UpdateStep = UpdateStep.DETECTING
    message: str = ""
    success: bool = False
    error: str | None = None
    error_code: str | None = None
    transcript: str = ""
    started_at: str = field(default_factory=_now_iso)
    finished_at: str | None = None
    backup: BackupPoint | None = None
    target: VerifiedCommit | None = None
    dependencies_touched: bool = False
    restart_scheduled: bool = False
    _logs: deque[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._logs = deque(maxlen=self.max_log_lines)

    @property
    def logs(self) -> list[str]:
        return list(self._logs)

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    def record(self, step: UpdateStep, message: str) -> str:
        """Append a log line for *step* and return the formatted line."""
        self.step = step
        self.message = message
        line = f"[{step.value}] {message}"
        self._logs.append(line)
        return line

    def finish(
        self,
        success: bool,
        message: str,
        error: str | None = None,
        error_code: str | None = None,
        transcript: str = "",
    ) -> None:
        self.success = success
        self.step = UpdateStep.COMPLETED if success else UpdateStep.FAILED
        self.message = message
        self.error = error
        self.error_code = error_code
        self.transcript = transcript
        self.finished_at = _now_iso()

    def to_result(self) -> UpdateResult:
        return UpdateResult(
            success=self.success,
            step=self.step,
            message=self.message,
            logs=self.logs,
            path=self.path,
            error=self.error,
            error_code=self.error_code,
            transcript=self.transcript,
        )

    def to_dict(self) -> dict[str, Any]:
        """Snapshot suitable for a pollable progress record."""
        return {
            "status": "success" if self.success else ("failed" if self.finished else "running"),
            "step": self.step.value,
            "message": self.message,
            "logs": self.logs,
            "path": self.path,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
        }


@dataclass(frozen=True)
class PluginInfo:
    """Read-only diagnostic returned by ``get_plugin_info``."""

    path: str
    is_valid: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "is_valid": self.is_valid, "message": self.message}
