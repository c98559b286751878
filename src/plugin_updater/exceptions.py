"""Error taxonomy for the update pipeline.

Each component raises one of these; ``UpdateOrchestrator`` is the single
place that turns them into a failed ``UpdateResult``.
"""

from __future__ import annotations

from enum import Enum


class UpdateError(Exception):
    """Base class for every expected update failure."""

    code = "update_error"

    def __init__(self, message: str, *, transcript: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.transcript = transcript


class PathInvalidError(UpdateError):
    code = "path_invalid"


class LockBusyError(UpdateError):
    code = "lock_busy"


class NetworkUnavailableError(UpdateError):
    code = "network_unavailable"


class ToolMissingError(UpdateError):
    code = "tool_missing"


class SyncFailureError(UpdateError):
    code = "sync_failure"


class SignatureRejection(Enum):
    UNSIGNED = "unsigned"
    BAD_SIGNATURE = "bad_signature"
    UNTRUSTED_FINGERPRINT = "untrusted_fingerprint"
    VERIFIER_UNAVAILABLE = "verifier_unavailable"
    MALFORMED = "malformed"


class SignatureRejectedError(UpdateError):
    code = "signature_rejected"

    def __init__(
        self,
        message: str,
        *,
        reason: SignatureRejection,
        transcript: str = "",
    ) -> None:
        super().__init__(message, transcript=transcript)
        self.reason = reason


class InstallFailureError(UpdateError):
    code = "install_failure"


class BuildFailureError(UpdateError):
    code = "build_failure"


class RestartSchedulingError(UpdateError):
    code = "restart_scheduling_failure"


class UnexpectedUpdateError(UpdateError):
    """Wraps a programming or environment error raised mid-pipeline."""

    code = "unexpected"
