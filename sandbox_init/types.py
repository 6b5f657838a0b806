# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Type definitions shared by the pipeline stages.

Provides StageOutcome, StageResult and ProcessContext.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum


class StageOutcome(Enum):
    """Classifies a stage result to decide whether the pipeline proceeds.

    Only FATAL_ERROR stops the pipeline; every other outcome continues
    towards the handoff.
    """

    SUCCESS = "success"
    SKIPPED_UNAVAILABLE = "skipped_unavailable"
    DEGRADED = "degraded"
    FATAL_ERROR = "fatal_error"


@dataclass(frozen=True)
class StageResult:
    """Result of a single pipeline stage.

    Attributes:
        stage: Stage name used in log output.
        outcome: Classification of the result.
        detail: Human-readable summary.
        error: The exception behind a non-success outcome, if any.
    """

    stage: str
    outcome: StageOutcome
    detail: str = ""
    error: Exception | None = None

    @property
    def fatal(self) -> bool:
        return self.outcome is StageOutcome.FATAL_ERROR


@dataclass
class ProcessContext:
    """Environment being assembled for spawned children and the handoff.

    Stages export into this object instead of ``os.environ``.  It is
    passed as ``env=`` to every spawned child and materialized by the
    final ``execvpe`` call.

    Attributes:
        env: Variables the final command will receive.
        exported: Names exported by pipeline stages, in export order.
    """

    env: dict[str, str] = field(default_factory=dict)
    exported: list[str] = field(default_factory=list)

    @classmethod
    def from_environ(
        cls, environ: Mapping[str, str] | None = None
    ) -> ProcessContext:
        """Snapshot *environ* (default ``os.environ``) into a new context."""
        source = os.environ if environ is None else environ
        return cls(env=dict(source))

    def export(self, name: str, value: str) -> None:
        """Set *name* for all children spawned from now on."""
        self.env[name] = value
        if name not in self.exported:
            self.exported.append(name)

    def update(self, values: Mapping[str, str]) -> None:
        for name, value in values.items():
            self.export(name, value)

    def get(self, name: str, default: str | None = None) -> str | None:
        return self.env.get(name, default)
