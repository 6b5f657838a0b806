# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Diagnostic log tails for services that failed to become ready."""

from __future__ import annotations

import logging
from collections import deque
from pathlib import Path


#: Number of log lines dumped on a readiness timeout.
TAIL_LINES = 200


def tail_lines(path: Path, count: int = TAIL_LINES) -> list[str]:
    """Return the last *count* lines of *path*, or [] if unreadable."""
    try:
        with open(path, errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=count)]
    except OSError:
        return []


def dump_tail(
    logger: logging.Logger,
    path: Path,
    label: str,
    count: int = TAIL_LINES,
) -> None:
    """Write the tail of a service log to *logger* at error level."""
    lines = tail_lines(path, count)
    if not lines:
        logger.error("%s log %s is empty or unreadable", label, path)
        return
    logger.error(
        "Last %d lines of %s log (%s):\n%s",
        len(lines),
        label,
        path,
        "\n".join(lines),
    )
