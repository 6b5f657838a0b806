# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Exception hierarchy for sandbox-init.

Only ``ConfigError`` and, in strict mode, ``PollTimeout`` (plus guest
login exhaustion) are allowed to stop the pipeline before handoff.
The others are converted into degraded stage results by the stage that
raised them.
"""


class SandboxInitError(Exception):
    """Base exception for all sandbox-init errors."""


class ConfigError(SandboxInitError):
    """A mandatory setting is missing or a setting is malformed."""


class DependencyUnavailable(SandboxInitError):
    """An optional binary or port is not configured; the stage is skipped."""


class PollTimeout(SandboxInitError):
    """A dependent service did not become ready within its budget."""


class RpcError(SandboxInitError):
    """Malformed or unsuccessful response from the proxy control plane."""


class BestEffortFailure(SandboxInitError):
    """A convenience side effect failed (trust import, profile writes)."""
