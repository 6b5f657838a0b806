# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Container-local runtime daemon (dockerd) startup.

Readiness is checked with the client's ``info`` command against the
daemon socket (exit status, not an HTTP probe).  A daemon that never
becomes ready is not fatal: whatever needs it in the container is simply
unavailable.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from collections.abc import Callable

from sandbox_init._logtail import dump_tail
from sandbox_init.config import OrchestratorConfig
from sandbox_init.errors import DependencyUnavailable, PollTimeout
from sandbox_init.logging import PASS
from sandbox_init.poller import poll
from sandbox_init.types import ProcessContext, StageOutcome, StageResult


logger = logging.getLogger(__name__)

STAGE = "runtime"

_RUNTIME_DIR_MODE = 0o700
_PROBE_TIMEOUT = 10


class RuntimeDaemonSupervisor:
    """Starts the runtime daemon and waits for it.

    Args:
        config: Resolved orchestrator configuration.
        context: Environment passed to the daemon and the probe.
        which: Executable lookup, injectable for tests.
        popen: Process spawner, injectable for tests.
        runner: ``subprocess.run`` compatible callable for the probe.
        sleep: Sleep function used between probes.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        context: ProcessContext,
        *,
        which: Callable[[str], str | None] = shutil.which,
        popen: Callable[..., subprocess.Popen[bytes]] = subprocess.Popen,
        runner: Callable[
            ..., subprocess.CompletedProcess[bytes]
        ] = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._context = context
        self._which = which
        self._popen = popen
        self._runner = runner
        self._sleep = sleep
        self.process: subprocess.Popen[bytes] | None = None

    @property
    def host(self) -> str:
        return f"unix://{self._config.runtime_socket}"

    def start(self) -> StageResult:
        """Run the runtime daemon stage; never returns FATAL_ERROR."""
        try:
            launcher, client = self._locate()
        except DependencyUnavailable as e:
            logger.info("Skipping runtime daemon: %s", e)
            return StageResult(
                STAGE, StageOutcome.SKIPPED_UNAVAILABLE, str(e), e
            )

        if self._probe(client):
            logger.info("Runtime daemon already running at %s", self.host)
            self._context.export("DOCKER_HOST", self.host)
            return StageResult(STAGE, StageOutcome.SUCCESS, "already running")

        try:
            self._prepare_runtime_dir()
            self._spawn(launcher)
        except OSError as e:
            logger.warning("Failed to start runtime daemon: %s", e)
            return StageResult(STAGE, StageOutcome.DEGRADED, str(e), e)

        attempts = self._config.runtime_ready_attempts
        logger.info(
            "Waiting up to %ds for runtime daemon",
            int(attempts * self._config.poll_interval),
        )
        result = poll(
            lambda: self._probe(client),
            attempts,
            self._config.poll_interval,
            sleep=self._sleep,
        )
        if result.timed_out:
            error = PollTimeout(
                f"Runtime daemon not ready after {result.attempts} attempts"
            )
            logger.warning("%s; continuing without it", error)
            dump_tail(logger, self._config.runtime_log, "Runtime daemon")
            return StageResult(STAGE, StageOutcome.DEGRADED, str(error), error)

        self._context.export("DOCKER_HOST", self.host)
        logger.info(
            "Runtime daemon is ready after %d attempt(s)",
            result.attempts,
            extra=PASS,
        )
        return StageResult(STAGE, StageOutcome.SUCCESS, "runtime daemon ready")

    def _locate(self) -> tuple[str, str]:
        """Return (launcher, client) paths.

        Raises:
            DependencyUnavailable: If disabled or either is not on PATH.
        """
        if not self._config.runtime_enabled:
            raise DependencyUnavailable(
                "runtime daemon disabled by configuration"
            )
        launcher = self._which(self._config.runtime_launcher)
        if launcher is None:
            raise DependencyUnavailable(
                f"{self._config.runtime_launcher} not found in PATH"
            )
        client = self._which(self._config.runtime_client)
        if client is None:
            raise DependencyUnavailable(
                f"{self._config.runtime_client} not found in PATH"
            )
        return launcher, client

    def _prepare_runtime_dir(self) -> None:
        runtime_dir = self._config.runtime_dir
        runtime_dir.mkdir(parents=True, exist_ok=True, mode=_RUNTIME_DIR_MODE)
        # mkdir's mode is subject to umask and ignored for existing dirs
        os.chmod(runtime_dir, _RUNTIME_DIR_MODE)

    def _spawn(self, launcher: str) -> None:
        log_path = self._config.runtime_log
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        cmd = [
            launcher,
            "--host",
            self.host,
            "--exec-root",
            str(self._config.runtime_dir),
        ]
        logger.info("Starting runtime daemon (logs -> %s)", log_path)
        with open(fd, "wb") as log_file:
            self.process = self._popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                env=self._context.env,
                start_new_session=True,
            )

    def _probe(self, client: str) -> bool:
        """Return True when ``<client> -H <host> info`` exits 0."""
        try:
            result = self._runner(
                [client, "-H", self.host, "info"],
                capture_output=True,
                timeout=_PROBE_TIMEOUT,
                env=self._context.env,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("Runtime probe failed: %s", e)
            return False
        return result.returncode == 0
