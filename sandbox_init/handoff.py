# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Final handoff: become the foreground command.

``execvpe`` replaces the process image, so the command keeps our pid
(normally 1 in a container) and receives termination signals directly.
Nothing runs after a successful exec; ``handoff`` only returns when the
exec itself failed.
"""

from __future__ import annotations

import errno
import logging
import os
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

from sandbox_init.types import ProcessContext


logger = logging.getLogger(__name__)

#: Shell conventions for commands that cannot be run.
EXIT_NOT_FOUND = 127
EXIT_NOT_EXECUTABLE = 126


def _flush_output() -> None:
    """Flush log handlers and stdio before the image is replaced."""
    for handler in logging.getLogger().handlers:
        handler.flush()
    sys.stdout.flush()
    sys.stderr.flush()


def handoff(
    argv: Sequence[str],
    context: ProcessContext,
    workspace: Path,
    *,
    chdir: Callable[[Path], None] = os.chdir,
    execvpe: Callable[[str, list[str], dict[str, str]], object] = os.execvpe,
) -> int:
    """Change to *workspace* and exec *argv* with the context environment.

    Args:
        argv: Command and arguments, passed through verbatim.
        context: Environment built by the pipeline.
        workspace: Working directory for the command.
        chdir: Directory change function, injectable for tests.
        execvpe: Exec function, injectable for tests.

    Returns:
        Exit status, only when the exec failed.

    Raises:
        ValueError: If *argv* is empty.
    """
    if not argv:
        raise ValueError("handoff requires a command")

    try:
        chdir(workspace)
    except OSError as e:
        logger.warning(
            "Cannot change to %s (%s), staying in the current directory",
            workspace,
            e.strerror or e,
        )

    args = list(argv)
    logger.info("Starting exec of passed command: %s", " ".join(args))
    _flush_output()
    try:
        execvpe(args[0], args, context.env)
    except OSError as e:
        logger.error("Failed to exec %s: %s", args[0], e.strerror or e)
        if e.errno == errno.ENOENT:
            return EXIT_NOT_FOUND
        return EXIT_NOT_EXECUTABLE
    # Only reachable with a non-replacing execvpe (tests)
    return 0
