"""OpenPGP commit signature verification against a fixed allowlist.

Verification always targets an explicit commit hash (never ``HEAD``), runs
against a throwaway ``GNUPGHOME`` seeded only with the publisher key that
ships in the checkout, and reads gpg's machine-readable ``[GNUPG:]``
status lines as relayed by ``git verify-commit --raw``. Human-readable
output, including user ids, is never searched for fingerprints.
"""

from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

from plugin_updater.constants import PUBLISHER_KEY_PATH, TRUSTED_FINGERPRINTS
from plugin_updater.exceptions import SignatureRejectedError, SignatureRejection
from plugin_updater.logging import get_logger
from plugin_updater.models import VerifiedCommit
from plugin_updater.process import CommandStatus, ProcessRunner
from plugin_updater.repository import is_commit_hash

log = get_logger("plugin_updater.signature")

Logger = Callable[[str], None]

STATUS_PREFIX = "[GNUPG:] "

_FINGERPRINT_RE = re.compile(r"^(?:[0-9A-F]{40}|[0-9A-F]{64})$")

# Status keywords that make a signature unacceptable regardless of key
_REJECT_KEYWORDS = {"BADSIG", "EXPSIG", "EXPKEYSIG", "REVKEYSIG"}

# Primary key fingerprint is the 10th VALIDSIG argument
_VALIDSIG_PRIMARY_INDEX = 9


def normalize_fingerprint(value: str) -> str | None:
    """Upper-case *value* without spaces; None unless it is full length."""
    candidate = value.replace(" ", "").upper()
    return candidate if _FINGERPRINT_RE.match(candidate) else None


@dataclass
class SignatureStatus:
    """Facts extracted from ``[GNUPG:]`` status lines."""

    keywords: set[str] = field(default_factory=set)
    good_keyid: str | None = None
    signing_fingerprints: list[str] = field(default_factory=list)
    primary_fingerprints: list[str] = field(default_factory=list)

    @property
    def has_status(self) -> bool:
        return bool(self.keywords)

    @property
    def good(self) -> bool:
        return "GOODSIG" in self.keywords

    @property
    def rejected_keywords(self) -> set[str]:
        return self.keywords & _REJECT_KEYWORDS

    @property
    def missing_key(self) -> bool:
        return "ERRSIG" in self.keywords or "NO_PUBKEY" in self.keywords


def parse_status(output: str) -> SignatureStatus:
    """Collect status keywords and VALIDSIG fingerprints from *output*."""
    status = SignatureStatus()
    for line in output.splitlines():
        if not line.startswith(STATUS_PREFIX):
            continue
        parts = line[len(STATUS_PREFIX) :].split()
        if not parts:
            continue
        keyword, args = parts[0], parts[1:]
        status.keywords.add(keyword)

        if keyword == "GOODSIG" and args:
            status.good_keyid = args[0].upper()
        elif keyword == "VALIDSIG" and args:
            status.signing_fingerprints.append(args[0])
            if len(args) > _VALIDSIG_PRIMARY_INDEX:
                status.primary_fingerprints.append(args[_VALIDSIG_PRIMARY_INDEX])
    return status


def resolve_fingerprints(status: SignatureStatus) -> tuple[str, str | None]:
    """Return ``(signing, primary)`` fingerprints from VALIDSIG lines.

    Raises ``SignatureRejectedError`` when they are missing, short,
    ambiguous or inconsistent with the GOODSIG key id.
    """
    signing = {normalize_fingerprint(f) for f in status.signing_fingerprints}
    primary = {normalize_fingerprint(f) for f in status.primary_fingerprints}

    if not signing:
        raise SignatureRejectedError(
            "Signature status has no VALIDSIG line; cannot determine the signing key",
            reason=SignatureRejection.MALFORMED,
        )
    if None in signing or None in primary:
        raise SignatureRejectedError(
            "Signature status carries a short or malformed fingerprint",
            reason=SignatureRejection.MALFORMED,
        )
    if len(signing) > 1 or len(primary) > 1:
        raise SignatureRejectedError(
            "Commit carries signatures from more than one key",
            reason=SignatureRejection.MALFORMED,
        )

    signing_fpr = signing.pop()
    primary_fpr = primary.pop() if primary else None
    assert signing_fpr is not None

    if status.good_keyid and not signing_fpr.endswith(status.good_keyid):
        raise SignatureRejectedError(
            f"GOODSIG key id {status.good_keyid} does not match signing key {signing_fpr}",
            reason=SignatureRejection.MALFORMED,
        )
    return signing_fpr, primary_fpr


class SignatureVerifier:
    """Verify a commit's signature and check its key against the allowlist."""

    def __init__(
        self,
        runner: ProcessRunner,
        repo_path: str | Path,
        *,
        trusted_fingerprints: Iterable[str] = TRUSTED_FINGERPRINTS,
        key_path: str | Path | None = None,
        timeout: float = 60,
    ) -> None:
        trusted = set()
        for fpr in trusted_fingerprints:
            normalized = normalize_fingerprint(fpr)
            if normalized is None:
                raise ValueError(f"trusted fingerprint must be full length: {fpr!r}")
            trusted.add(normalized)
        if not trusted:
            raise ValueError("at least one trusted fingerprint is required")

        self._runner = runner
        self._repo_path = Path(repo_path)
        self._trusted = frozenset(trusted)
        self._key_path = Path(key_path) if key_path else self._repo_path / PUBLISHER_KEY_PATH
        self._timeout = timeout

    @property
    def trusted_fingerprints(self) -> frozenset[str]:
        return self._trusted

    def is_trusted(self, fingerprint: str) -> bool:
        normalized = normalize_fingerprint(fingerprint)
        return normalized is not None and normalized in self._trusted

    async def verify(self, commit: str, on_log: Logger | None = None) -> VerifiedCommit:
        """Verify *commit* or raise ``SignatureRejectedError``."""
        emit = on_log or (lambda _msg: None)

        if not is_commit_hash(commit):
            raise SignatureRejectedError(
                f"Refusing to verify non-hash revision {commit!r}",
                reason=SignatureRejection.MALFORMED,
            )

        gpg = self._runner.resolve("gpg")
        version = await self._runner.run(gpg, ["--version"], cwd=self._repo_path, timeout=30)
        if not version.ok:
            raise SignatureRejectedError(
                "OpenPGP verifier (gpg) is not available",
                reason=SignatureRejection.VERIFIER_UNAVAILABLE,
                transcript=version.output,
            )

        with tempfile.TemporaryDirectory(prefix="plugin-updater-gnupg-") as home:
            os.chmod(home, 0o700)
            env = {"GNUPGHOME": home}
            try:
                await self._import_publisher_key(gpg, env, emit)
                result = await self._runner.run(
                    "git",
                    [
                        "-c",
                        f"gpg.program={gpg}",
                        "-c",
                        "gpg.format=openpgp",
                        "verify-commit",
                        "--raw",
                        commit,
                    ],
                    cwd=self._repo_path,
                    timeout=self._timeout,
                    env=env,
                )
            finally:
                await self._stop_agent(home)

        verified = self._evaluate(commit, result.status, result.returncode, result.output)
        if verified.primary_fingerprint:
            emit(
                f"Signed by subkey {verified.signing_fingerprint} "
                f"of primary key {verified.primary_fingerprint}"
            )
        emit(f"Signature verified, trusted publisher key {verified.trusted_fingerprint}")
        log.info(
            "signature_verified",
            commit=commit,
            fingerprint=verified.trusted_fingerprint,
            signing_fingerprint=verified.signing_fingerprint,
        )
        return verified

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _import_publisher_key(self, gpg: str, env: dict[str, str], emit: Logger) -> None:
        if not self._key_path.is_file():
            # An empty keyring makes every signature fail below
            emit(f"Publisher key not found at {self._key_path}; verification cannot succeed")
            log.warning("publisher_key_missing", path=str(self._key_path))
            return

        emit("Importing publisher public key into an isolated keyring...")
        result = await self._runner.run(
            gpg,
            ["--batch", "--no-tty", "--quiet", "--import", str(self._key_path)],
            cwd=self._repo_path,
            timeout=30,
            env=env,
        )
        if result.ok:
            emit("Publisher key imported")
        else:
            emit(f"Publisher key import failed: {result.tail(200)}")
            log.warning("publisher_key_import_failed", output=result.tail())

    async def _stop_agent(self, home: str) -> None:
        result = await self._runner.run(
            "gpgconf",
            ["--homedir", home, "--kill", "all"],
            cwd=self._repo_path,
            timeout=10,
        )
        if not result.ok:
            log.debug("gpg_agent_stop_failed", output=result.tail(200))

    def _evaluate(
        self,
        commit: str,
        status_code: CommandStatus,
        returncode: int,
        output: str,
    ) -> VerifiedCommit:
        if status_code in (CommandStatus.NOT_FOUND, CommandStatus.TIMED_OUT):
            raise SignatureRejectedError(
                "Signature verification could not run",
                reason=SignatureRejection.VERIFIER_UNAVAILABLE,
                transcript=output,
            )

        status = parse_status(output)
        lowered = output.lower()

        if not status.has_status:
            if "cannot run" in lowered or "gpg failed" in lowered:
                raise SignatureRejectedError(
                    "git could not run the OpenPGP verifier",
                    reason=SignatureRejection.VERIFIER_UNAVAILABLE,
                    transcript=output,
                )
            raise SignatureRejectedError(
                "Commit is not signed; upstream must sign its commits",
                reason=SignatureRejection.UNSIGNED,
                transcript=output,
            )

        if status.rejected_keywords:
            keywords = ", ".join(sorted(status.rejected_keywords))
            raise SignatureRejectedError(
                f"Signature is invalid, expired or revoked ({keywords})",
                reason=SignatureRejection.BAD_SIGNATURE,
                transcript=output,
            )

        if status.missing_key and not status.good:
            raise SignatureRejectedError(
                "Commit is signed by a key that is not in the trusted keyring",
                reason=SignatureRejection.UNTRUSTED_FINGERPRINT,
                transcript=output,
            )

        if returncode != 0 or not status.good:
            raise SignatureRejectedError(
                f"Signature verification failed (exit {returncode})",
                reason=SignatureRejection.BAD_SIGNATURE,
                transcript=output,
            )

        try:
            signing, primary = resolve_fingerprints(status)
        except SignatureRejectedError as exc:
            exc.transcript = output
            raise

        trusted = primary or signing
        if trusted not in self._trusted:
            raise SignatureRejectedError(
                f"Signing key {trusted} is not in the trusted fingerprint list",
                reason=SignatureRejection.UNTRUSTED_FINGERPRINT,
                transcript=output,
            )

        return VerifiedCommit(
            commit=commit,
            signing_fingerprint=signing,
            primary_fingerprint=primary if primary != signing else None,
        )
