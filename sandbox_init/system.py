# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Best-effort writes to system-wide files.

All privileged file writes go through a ``SystemWriter``.  When the
process cannot (or must not) touch system files, ``NullSystemWriter`` is
used instead so the pipeline logic stays identical.  Every failure
surfaces as ``BestEffortFailure``; callers log it and move on.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Protocol

from sandbox_init.config import OrchestratorConfig
from sandbox_init.errors import BestEffortFailure


logger = logging.getLogger(__name__)


class SystemWriter(Protocol):
    """Capability for writing system-wide configuration files."""

    def read_text(self, path: Path) -> str:
        """Return the file contents, or "" if it does not exist."""
        ...

    def write_file(
        self,
        path: Path,
        content: str,
        *,
        mode: int = 0o644,
        owner: str | None = None,
    ) -> None:
        """Replace *path* with *content*."""
        ...

    def append_line(self, path: Path, line: str) -> bool:
        """Append *line* unless already present; return True if appended."""
        ...


class FileSystemWriter:
    """Writes files directly; requires the needed privileges."""

    def read_text(self, path: Path) -> str:
        try:
            return path.read_text()
        except FileNotFoundError:
            return ""
        except OSError as e:
            raise BestEffortFailure(f"Cannot read {path}: {e}") from e

    def write_file(
        self,
        path: Path,
        content: str,
        *,
        mode: int = 0o644,
        owner: str | None = None,
    ) -> None:
        """Atomically replace *path*, applying *mode* before the rename.

        Raises:
            BestEffortFailure: If any step fails.
        """
        tmp_path: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=path.parent, prefix=f".{path.name}-"
            )
            with open(fd, "w") as f:
                f.write(content)
            os.chmod(tmp_path, mode)
            if owner:
                shutil.chown(tmp_path, user=owner)
            os.replace(tmp_path, path)
            tmp_path = None
        except (OSError, LookupError) as e:
            raise BestEffortFailure(f"Cannot write {path}: {e}") from e
        finally:
            if tmp_path is not None:
                Path(tmp_path).unlink(missing_ok=True)
        logger.debug("Wrote %s (mode %o)", path, mode)

    def append_line(self, path: Path, line: str) -> bool:
        """Append *line* to *path* once.

        Raises:
            BestEffortFailure: If the file cannot be read or written.
        """
        existing = self.read_text(path)
        if line in existing.splitlines():
            logger.debug("%s already contains %r", path, line)
            return False
        try:
            with open(path, "a") as f:
                if existing and not existing.endswith("\n"):
                    f.write("\n")
                f.write(line + "\n")
        except OSError as e:
            raise BestEffortFailure(f"Cannot append to {path}: {e}") from e
        logger.debug("Appended to %s: %r", path, line)
        return True


class NullSystemWriter:
    """No-op writer for environments without the required privilege."""

    def read_text(self, path: Path) -> str:
        return ""

    def write_file(
        self,
        path: Path,
        content: str,
        *,
        mode: int = 0o644,
        owner: str | None = None,
    ) -> None:
        logger.debug("System writes disabled, not writing %s", path)

    def append_line(self, path: Path, line: str) -> bool:
        logger.debug("System writes disabled, not appending to %s", path)
        return False


def select_writer(config: OrchestratorConfig) -> SystemWriter:
    """Pick the writer for this process.

    System files are only written when enabled and running as root.
    """
    if not config.system_writes:
        logger.debug("System-wide file writes disabled by configuration")
        return NullSystemWriter()
    if os.geteuid() != 0:
        logger.debug("Not running as root, skipping system-wide file writes")
        return NullSystemWriter()
    return FileSystemWriter()
