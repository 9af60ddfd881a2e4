"""
Commit Signer - detached, ASCII-armored OpenPGP signatures for commits
created through the Git Data API.

The signing key is imported once per process into GNUPG_HOME (or a private
temporary keyring) and gpg is driven through subprocess. Signing is
blocking; async callers go through asyncio.to_thread.
"""
from __future__ import annotations

import subprocess
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone

from reviewbot.core.config import settings
from reviewbot.core.exceptions import PermanentExecutionError, TransientExecutionError
from reviewbot.core.logging import get_logger

logger = get_logger(__name__)

_GPG_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class CommitIdentity:
    name: str
    email: str
    timestamp: int  # unix seconds, UTC

    @property
    def raw(self) -> str:
        return f"{self.name} <{self.email}> {self.timestamp} +0000"

    def as_api(self) -> dict[str, str]:
        date = datetime.fromtimestamp(self.timestamp, tz=timezone.utc)
        return {
            "name": self.name,
            "email": self.email,
            "date": date.strftime("%Y-%m-%dT%H:%M:%SZ"),
        }


def bot_identity(timestamp: int) -> CommitIdentity:
    return CommitIdentity(settings.COMMIT_AUTHOR_NAME, settings.COMMIT_AUTHOR_EMAIL, timestamp)


def build_commit_object(
    *,
    tree: str,
    parents: list[str],
    author: CommitIdentity,
    committer: CommitIdentity,
    message: str,
) -> str:
    """The exact bytes git hashes (minus the gpgsig header) and GitHub verifies"""
    lines = [f"tree {tree}"]
    lines.extend(f"parent {parent}" for parent in parents)
    lines.append(f"author {author.raw}")
    lines.append(f"committer {committer.raw}")
    return "\n".join(lines) + "\n\n" + message


class CommitSigner:
    def __init__(self, armored_key: str, *, gpg_binary: str | None = None, gnupg_home: str | None = None):
        self._armored_key = armored_key
        self._gpg = gpg_binary or settings.GPG_BINARY
        self._home = gnupg_home if gnupg_home is not None else settings.GNUPG_HOME
        self._fingerprint: str | None = None
        self._lock = threading.Lock()

    def _run(self, args: list[str], stdin: bytes) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self._gpg, "--homedir", self._home, "--batch", "--yes", *args],
                input=stdin,
                capture_output=True,
                timeout=_GPG_TIMEOUT_SECONDS,
                check=False,
            )
        except FileNotFoundError:
            raise PermanentExecutionError(
                f"gpg binary not found: {self._gpg}", details={"gpg_binary": self._gpg},
            )
        except subprocess.TimeoutExpired:
            raise TransientExecutionError(
                "gpg timed out", details={"timeout_seconds": _GPG_TIMEOUT_SECONDS},
            )

    def _ensure_imported(self) -> str:
        with self._lock:
            if self._fingerprint:
                return self._fingerprint
            if not self._home:
                self._home = tempfile.mkdtemp(prefix="reviewbot-gnupg-")

            result = self._run(["--status-fd", "1", "--import"], self._armored_key.encode("utf-8"))
            fingerprints = [
                line.split()[3]
                for line in result.stdout.decode("utf-8", "replace").splitlines()
                if line.startswith("[GNUPG:] IMPORT_OK") and len(line.split()) > 3
            ]
            if result.returncode != 0 or not fingerprints:
                raise PermanentExecutionError(
                    "Signing key import failed",
                    details={"returncode": result.returncode},
                )
            self._fingerprint = fingerprints[-1]
            logger.info("Signing key imported", extra_data={"fingerprint": self._fingerprint})
            return self._fingerprint

    def sign(self, payload: str) -> str:
        """Detached armored signature over payload"""
        fingerprint = self._ensure_imported()
        result = self._run(
            ["--local-user", fingerprint, "--armor", "--detach-sign"],
            payload.encode("utf-8"),
        )
        if result.returncode != 0 or not result.stdout:
            raise PermanentExecutionError(
                "gpg failed to sign commit",
                details={
                    "returncode": result.returncode,
                    "stderr": result.stderr.decode("utf-8", "replace")[:500],
                },
            )
        return result.stdout.decode("ascii")
