# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Container init that prepares a shared sandbox and execs the workload.

sandbox-init starts a local interception proxy, logs in as a guest,
provisions a temporary project, propagates proxy and CA trust settings,
optionally starts a container-local runtime daemon, and finally replaces
itself with the requested foreground command.
"""

from sandbox_init.config import (
    OrchestratorConfig,
    ProxyOwnership,
    resolve_config,
)
from sandbox_init.errors import (
    BestEffortFailure,
    ConfigError,
    DependencyUnavailable,
    PollTimeout,
    RpcError,
    SandboxInitError,
)
from sandbox_init.pipeline import Orchestrator
from sandbox_init.poller import PollResult, poll
from sandbox_init.types import ProcessContext, StageOutcome, StageResult


__all__ = [
    # config
    "OrchestratorConfig",
    "ProxyOwnership",
    "resolve_config",
    # pipeline
    "Orchestrator",
    # poller
    "PollResult",
    "poll",
    # types
    "ProcessContext",
    "StageOutcome",
    "StageResult",
    # errors
    "BestEffortFailure",
    "ConfigError",
    "DependencyUnavailable",
    "PollTimeout",
    "RpcError",
    "SandboxInitError",
]
