# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Bounded fixed-interval readiness polling.

The worst-case wait of ``poll`` is ``max_attempts * interval`` plus the
latency of the probes themselves.  The interval never grows; readiness
budgets stay deterministic.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass


logger = logging.getLogger(__name__)

#: Interval used by every readiness poll in the pipeline.
DEFAULT_INTERVAL = 1.0


@dataclass(frozen=True)
class PollResult:
    """Outcome of a readiness poll.

    Attributes:
        succeeded: Whether the probe returned True within the budget.
        attempts: Number of probe calls made.
        elapsed: Wall-clock seconds spent polling.
    """

    succeeded: bool
    attempts: int
    elapsed: float

    @property
    def timed_out(self) -> bool:
        return not self.succeeded


def poll(
    probe: Callable[[], bool],
    max_attempts: int,
    interval: float = DEFAULT_INTERVAL,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> PollResult:
    """Call *probe* until it returns True or *max_attempts* is exhausted.

    Sleeps *interval* seconds between failed attempts, but not after the
    last one.  A probe that raises counts as a failed attempt; timing
    out is a normal result, never an exception.

    Args:
        probe: Zero-argument readiness check.
        max_attempts: Maximum number of probe calls (at least 1).
        interval: Fixed pause between attempts, in seconds.
        sleep: Sleep function, injectable for tests.

    Returns:
        PollResult describing the outcome.

    Raises:
        ValueError: If *max_attempts* is less than 1 or *interval* is
            negative.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
    if interval < 0:
        raise ValueError(f"interval must be >= 0, got {interval}")

    start = time.monotonic()
    for attempt in range(1, max_attempts + 1):
        try:
            ready = bool(probe())
        except Exception:
            logger.debug("Probe raised on attempt %d", attempt, exc_info=True)
            ready = False
        if ready:
            return PollResult(
                succeeded=True,
                attempts=attempt,
                elapsed=time.monotonic() - start,
            )
        if attempt < max_attempts:
            sleep(interval)

    return PollResult(
        succeeded=False,
        attempts=max_attempts,
        elapsed=time.monotonic() - start,
    )
