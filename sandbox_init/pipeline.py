# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Startup pipeline: proxy, propagation, runtime daemon, handoff.

Stages run strictly in sequence.  Each returns a StageResult; only a
FATAL_ERROR result stops the pipeline, in which case the carried error
is raised and the handoff never happens.  Every other outcome keeps the
guarantee that the foreground command runs.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sandbox_init.config import OrchestratorConfig, export_config
from sandbox_init.daemon import RuntimeDaemonSupervisor
from sandbox_init.errors import SandboxInitError
from sandbox_init.handoff import handoff
from sandbox_init.logging import PASS
from sandbox_init.propagate import Propagator
from sandbox_init.proxy.session import ProxySessionManager
from sandbox_init.system import select_writer
from sandbox_init.trust import TrustStore
from sandbox_init.types import ProcessContext, StageOutcome, StageResult


logger = logging.getLogger(__name__)


class Orchestrator:
    """Runs the startup stages and hands off to the foreground command.

    Collaborators default to the real implementations built from
    *config*; tests pass their own.

    Args:
        config: Resolved orchestrator configuration.
        context: Environment assembled for children and the handoff.
        proxy: Proxy session manager.
        propagator: Trust & environment propagation stage.
        runtime: Runtime daemon supervisor.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        context: ProcessContext,
        *,
        proxy: ProxySessionManager | None = None,
        propagator: Propagator | None = None,
        runtime: RuntimeDaemonSupervisor | None = None,
    ) -> None:
        self.config = config
        self.context = context
        self.proxy = proxy or ProxySessionManager(config, context)
        self.propagator = propagator or Propagator(
            config,
            context,
            select_writer(config),
            TrustStore(config.trust_db, user=config.trust_user),
        )
        self.runtime = runtime or RuntimeDaemonSupervisor(config, context)
        self.results: list[StageResult] = []

    def prepare(self) -> list[StageResult]:
        """Run every stage before the handoff.

        Returns:
            Results of all stages, in order.

        Raises:
            SandboxInitError: When a stage reports FATAL_ERROR.
        """
        export_config(self.config, self.context)

        self._record(self.proxy.start())
        self._record(self.propagator.run(self.proxy.session))
        self._record(self.runtime.start())

        session = self.proxy.session
        if session.alive and session.process is not None:
            logger.info(
                "Container init complete (proxy %s, pid %d)",
                session.state.value,
                session.process.pid,
                extra=PASS,
            )
        else:
            logger.info("Container init complete", extra=PASS)
        return self.results

    def run(self, argv: Sequence[str]) -> int:
        """Prepare the environment, then exec *argv*.

        Returns:
            Exit status, only if the exec failed.

        Raises:
            SandboxInitError: When a stage reports FATAL_ERROR.
        """
        self.prepare()
        return handoff(argv, self.context, self.config.workspace)

    def _record(self, result: StageResult) -> None:
        self.results.append(result)
        logger.debug(
            "Stage %s finished: %s (%s)",
            result.stage,
            result.outcome.value,
            result.detail,
        )
        if result.outcome is StageOutcome.FATAL_ERROR:
            if isinstance(result.error, SandboxInitError):
                raise result.error
            raise SandboxInitError(
                f"Stage {result.stage} failed: {result.detail}"
            )
