# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""CA import into the browser (NSS) certificate trust store.

The import lets browser-style clients verify certificates minted by the
interception proxy.  It is a convenience only: every failure, including
importing a label that already exists, is logged and swallowed.
"""

from __future__ import annotations

import logging
import os
import pwd
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

from sandbox_init.errors import BestEffortFailure
from sandbox_init.logging import PASS


logger = logging.getLogger(__name__)

_CERTUTIL = "certutil"
_TIMEOUT_SECONDS = 30

# certutil stderr fragments meaning the certificate is already present
_DUPLICATE_MARKERS = (
    "already exists",
    "SEC_ERROR_REUSED_ISSUER_AND_SERIAL",
    "SEC_ERROR_ADDING_CERT",
)


def _current_user() -> str:
    return pwd.getpwuid(os.geteuid()).pw_name


class TrustStore:
    """NSS shared database at *db_dir*, optionally owned by *user*.

    Args:
        db_dir: Database directory (``sql:`` prefix is added).
        user: Owner of the database; commands run via ``sudo -u`` when it
            differs from the current user.
        which: Executable lookup, injectable for tests.
        runner: ``subprocess.run`` compatible callable.
    """

    def __init__(
        self,
        db_dir: Path,
        *,
        user: str | None = None,
        which: Callable[[str], str | None] = shutil.which,
        runner: Callable[
            ..., subprocess.CompletedProcess[str]
        ] = subprocess.run,
    ) -> None:
        self._db_dir = db_dir
        self._user = user
        self._which = which
        self._runner = runner

    @property
    def available(self) -> bool:
        return self._which(_CERTUTIL) is not None

    def import_certificate(self, cert_path: Path, label: str) -> bool:
        """Import *cert_path* under *label*, creating the store if needed.

        Never raises.

        Returns:
            True if the certificate is in the store afterwards (including
            the duplicate case), False if the import was skipped or failed.
        """
        if not self.available:
            logger.info("certutil not found, skipping trust store import")
            return False
        if not cert_path.exists():
            logger.warning("CA certificate %s not found, skipping", cert_path)
            return False

        try:
            self._ensure_database()
            self._add_certificate(cert_path, label)
        except BestEffortFailure as e:
            logger.warning("Trust store import failed: %s", e)
            return False

        logger.info(
            "CA added to trust store %s as %r", self._db_dir, label, extra=PASS
        )
        return True

    def _ensure_database(self) -> None:
        if (self._db_dir / "cert9.db").exists():
            return
        logger.info("Creating NSS database at %s", self._db_dir)
        self._run(["mkdir", "-p", str(self._db_dir)])
        self._run(
            [_CERTUTIL, "-N", "-d", f"sql:{self._db_dir}", "--empty-password"]
        )

    def _add_certificate(self, cert_path: Path, label: str) -> None:
        try:
            self._run(
                [
                    _CERTUTIL,
                    "-A",
                    "-n",
                    label,
                    "-t",
                    "C,,",
                    "-i",
                    str(cert_path),
                    "-d",
                    f"sql:{self._db_dir}",
                ]
            )
        except BestEffortFailure as e:
            if any(marker in str(e) for marker in _DUPLICATE_MARKERS):
                logger.info("Certificate %r already in trust store", label)
                return
            raise

    def _command(self, cmd: list[str]) -> list[str]:
        """Prefix *cmd* with ``sudo -u`` when acting for another user."""
        if self._user and self._user != _current_user():
            return ["sudo", "-u", self._user, *cmd]
        return cmd

    def _run(self, cmd: list[str]) -> None:
        """Run a command, converting every failure to BestEffortFailure."""
        full = self._command(cmd)
        try:
            self._runner(
                full,
                check=True,
                capture_output=True,
                text=True,
                timeout=_TIMEOUT_SECONDS,
            )
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise BestEffortFailure(
                f"{' '.join(cmd[:2])} exited {e.returncode}: {stderr}"
            ) from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise BestEffortFailure(f"{cmd[0]} failed: {e}") from e
