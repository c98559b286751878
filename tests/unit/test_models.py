"""Tests for plugin_updater.models and the error taxonomy."""

from __future__ import annotations

from fakes import COMMIT_A, TRUSTED_FPR

from plugin_updater.exceptions import (
    LockBusyError,
    SignatureRejectedError,
    SignatureRejection,
    UpdateError,
)
from plugin_updater.models import (
    BackupPoint,
    MirrorCandidate,
    MirrorSelection,
    UpdateAttempt,
    UpdateResult,
    UpdateStep,
    VerifiedCommit,
)


class TestUpdateStep:
    """Tests for pipeline steps."""

    def test_terminal_steps(self) -> None:
        assert UpdateStep.COMPLETED.is_terminal
        assert UpdateStep.FAILED.is_terminal
        assert not UpdateStep.PULLING.is_terminal


class TestUpdateAttempt:
    """Tests for the mutable attempt record."""

    def test_record_formats_and_tracks_step(self) -> None:
        attempt = UpdateAttempt(path="/srv/plugin")
        line = attempt.record(UpdateStep.PULLING, "Fetching latest code...")

        assert line == "[pulling] Fetching latest code..."
        assert attempt.step is UpdateStep.PULLING
        assert attempt.logs == [line]
        assert attempt.to_dict()["status"] == "running"

    def test_log_buffer_is_bounded(self) -> None:
        attempt = UpdateAttempt(path="/srv/plugin", max_log_lines=3)
        for i in range(10):
            attempt.record(UpdateStep.BUILDING, f"line {i}")
        assert attempt.logs == [f"[building] line {i}" for i in (7, 8, 9)]

    def test_failed_result(self) -> None:
        attempt = UpdateAttempt(path="/srv/plugin")
        attempt.record(UpdateStep.FAILED, "boom")
        attempt.finish(False, "boom", error="boom", error_code="sync_failure", transcript="x" * 5000)

        result = attempt.to_result()
        assert result.success is False
        assert result.step is UpdateStep.FAILED
        assert result.error_code == "sync_failure"

        data = result.to_dict()
        assert data["step"] == "failed"
        assert len(data["transcript"]) == 4000
        assert attempt.to_dict()["status"] == "failed"
        assert attempt.to_dict()["finished_at"] is not None

    def test_successful_result(self) -> None:
        attempt = UpdateAttempt(path="/srv/plugin")
        attempt.finish(True, "done")
        assert attempt.to_result() == UpdateResult(
            success=True, step=UpdateStep.COMPLETED, message="done", path="/srv/plugin"
        )


class TestValueTypes:
    """Tests for small frozen value types."""

    def test_backup_point_short(self) -> None:
        assert BackupPoint(COMMIT_A).short == "aaaaaaaa"

    def test_verified_commit_prefers_primary(self) -> None:
        sub = "0" * 40
        assert VerifiedCommit(COMMIT_A, sub, TRUSTED_FPR).trusted_fingerprint == TRUSTED_FPR
        assert VerifiedCommit(COMMIT_A, TRUSTED_FPR).trusted_fingerprint == TRUSTED_FPR

    def test_mirror_selection_reachability(self) -> None:
        candidate = MirrorCandidate("GitHub", "https://g/p.git", "https://g/p")
        assert MirrorSelection(candidate, 12.5, "global").reachable
        assert not MirrorSelection(candidate, None, "unknown").reachable


class TestErrors:
    """Tests for the error taxonomy."""

    def test_codes_and_transcript(self) -> None:
        exc = LockBusyError("busy", transcript="log")
        assert isinstance(exc, UpdateError)
        assert exc.code == "lock_busy"
        assert exc.message == "busy"
        assert exc.transcript == "log"
        assert str(exc) == "busy"

    def test_signature_rejection_carries_reason(self) -> None:
        exc = SignatureRejectedError("nope", reason=SignatureRejection.UNSIGNED)
        assert exc.code == "signature_rejected"
        assert exc.reason is SignatureRejection.UNSIGNED
