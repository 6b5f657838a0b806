# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Interception proxy lifecycle: spawn, readiness, login, project setup.

The session advances through a fixed sequence of states::

    NOT_STARTED -> SPAWNED -> API_READY -> AUTHENTICATED
                -> PROJECT_CREATED -> PROJECT_SELECTED

``SKIPPED`` is terminal when the proxy is disabled or its binary is not
installed.  ``ABORTED`` is terminal when the process cannot be spawned or
its API never becomes ready; the child is then terminated and no proxy
settings are exported.

Failure policy per transition:

- readiness timeout: fatal in strict mode, otherwise proxy disabled
- guest login exhaustion: fatal in strict mode (the proxy is stopped
  and the session ABORTED), otherwise the proxy stays up
  unauthenticated
- project creation or selection failure: logged, never fatal
"""

from __future__ import annotations

import atexit
import logging
import os
import secrets
import shutil
import signal
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import FrameType

from sandbox_init._logtail import dump_tail
from sandbox_init.config import OrchestratorConfig, ProxyOwnership
from sandbox_init.errors import (
    DependencyUnavailable,
    PollTimeout,
    RpcError,
    SandboxInitError,
)
from sandbox_init.logging import PASS, SecretFilter
from sandbox_init.poller import poll
from sandbox_init.proxy.client import ProxyClient
from sandbox_init.types import ProcessContext, StageOutcome, StageResult


logger = logging.getLogger(__name__)

STAGE = "proxy"

# Seconds to wait for the proxy to exit after SIGTERM.
_TERMINATE_TIMEOUT = 10


class ProxyState(Enum):
    """Lifecycle state of the proxy session."""

    NOT_STARTED = "not_started"
    SKIPPED = "skipped"
    SPAWNED = "spawned"
    API_READY = "api_ready"
    AUTHENTICATED = "authenticated"
    PROJECT_CREATED = "project_created"
    PROJECT_SELECTED = "project_selected"
    ABORTED = "aborted"


_READY_STATES = frozenset(
    {
        ProxyState.API_READY,
        ProxyState.AUTHENTICATED,
        ProxyState.PROJECT_CREATED,
        ProxyState.PROJECT_SELECTED,
    }
)


@dataclass
class ProxySession:
    """Mutable record of the running proxy.

    Attributes:
        log_path: File receiving the proxy's output.
        process: Child process handle once spawned.
        state: Current lifecycle state.
        access_token: Bearer token, set only after a successful login.
        project_id: Project id, set only after a successful creation.
    """

    log_path: Path
    process: subprocess.Popen[bytes] | None = None
    state: ProxyState = ProxyState.NOT_STARTED
    access_token: str | None = field(default=None, repr=False)
    project_id: str | None = None

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    @property
    def ready(self) -> bool:
        """Whether the proxy API answered and traffic can be routed to it."""
        return self.state in _READY_STATES

    @property
    def authenticated(self) -> bool:
        return self.access_token is not None

    @property
    def project_selected(self) -> bool:
        return self.state is ProxyState.PROJECT_SELECTED


ClientFactory = Callable[[str], ProxyClient]


class ProxySessionManager:
    """Drives the proxy session through its state machine.

    Args:
        config: Resolved orchestrator configuration.
        context: Environment handed to the spawned proxy.
        which: Executable lookup, injectable for tests.
        popen: Process spawner, injectable for tests.
        client_factory: Builds a ProxyClient for a GraphQL URL.
        sleep: Sleep function used by polling and the stability pause.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        context: ProcessContext,
        *,
        which: Callable[[str], str | None] = shutil.which,
        popen: Callable[..., subprocess.Popen[bytes]] = subprocess.Popen,
        client_factory: ClientFactory = ProxyClient,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._context = context
        self._which = which
        self._popen = popen
        self._client_factory = client_factory
        self._sleep = sleep
        self._cleanup_installed = False
        self.session = ProxySession(log_path=config.proxy_log)

    # ------------------------------------------------------------------
    # Pipeline entry point
    # ------------------------------------------------------------------

    def start(self) -> StageResult:
        """Run the proxy stage to completion.

        Returns:
            StageResult; FATAL_ERROR only in strict mode.
        """
        try:
            binary = self._locate_binary()
        except DependencyUnavailable as e:
            self.session.state = ProxyState.SKIPPED
            logger.info("Skipping proxy: %s", e)
            return StageResult(
                STAGE, StageOutcome.SKIPPED_UNAVAILABLE, str(e), e
            )

        try:
            self._spawn(binary)
        except OSError as e:
            return self._abort(
                SandboxInitError(f"Failed to start {binary}: {e}")
            )

        if self._config.proxy_ownership is ProxyOwnership.SUPERVISED:
            self.install_cleanup()

        with self._client_factory(self._config.graphql_url) as client:
            try:
                self._wait_ready(client)
            except PollTimeout as e:
                dump_tail(logger, self.session.log_path, "Proxy")
                return self._abort(e)

            # Short pause for stability before the first mutation
            if self._config.stability_pause > 0:
                self._sleep(self._config.stability_pause)

            try:
                self._authenticate(client)
            except PollTimeout as e:
                if self._config.strict:
                    return self._abort(e)
                logger.warning("%s; continuing unauthenticated", e)
                return StageResult(STAGE, StageOutcome.DEGRADED, str(e), e)

            try:
                self._create_project(client)
            except RpcError as e:
                logger.warning("Failed to create project: %s", e)
                return StageResult(STAGE, StageOutcome.DEGRADED, str(e), e)

            if not self._select_project(client):
                return StageResult(
                    STAGE,
                    StageOutcome.DEGRADED,
                    "project selection not confirmed",
                )

        return StageResult(STAGE, StageOutcome.SUCCESS, "proxy ready")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _locate_binary(self) -> str:
        """Return the proxy executable path.

        Raises:
            DependencyUnavailable: If the stage is disabled, the port is
                unset or the binary is not on PATH.
        """
        if not self._config.proxy_enabled:
            raise DependencyUnavailable("proxy disabled by configuration")
        if self._config.proxy_port is None:
            raise DependencyUnavailable("proxy port not configured")
        binary = self._which(self._config.proxy_binary)
        if binary is None:
            raise DependencyUnavailable(
                f"{self._config.proxy_binary} not found in PATH"
            )
        return binary

    def _spawn(self, binary: str) -> None:
        """NOT_STARTED -> SPAWNED."""
        config = self._config
        log_path = self.session.log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.unlink(missing_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)

        cmd = [
            binary,
            "--listen",
            f"{config.proxy_host}:{config.proxy_port}",
            "--allow-guests",
            "--no-logging",
            "--no-open",
            "--import-ca-cert",
            str(config.ca_p12),
            "--import-ca-cert-pass",
            "",
        ]
        logger.info(
            "Starting proxy on %s:%s (logs -> %s)",
            config.proxy_host,
            config.proxy_port,
            log_path,
        )
        with open(fd, "wb") as log_file:
            self.session.process = self._popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                env=self._context.env,
                start_new_session=True,
            )
        self.session.state = ProxyState.SPAWNED
        logger.debug("Proxy spawned with pid %d", self.session.process.pid)

    def _wait_ready(self, client: ProxyClient) -> None:
        """SPAWNED -> API_READY.

        Raises:
            PollTimeout: If the API does not answer within the budget.
        """
        attempts = self._config.proxy_ready_attempts
        logger.info(
            "Waiting up to %ds for proxy API at %s",
            int(attempts * self._config.poll_interval),
            self._config.graphql_url,
        )
        result = poll(
            client.is_ready,
            attempts,
            self._config.poll_interval,
            sleep=self._sleep,
        )
        if result.timed_out:
            raise PollTimeout(
                f"Proxy API not ready after {result.attempts} attempts"
            )
        self.session.state = ProxyState.API_READY
        logger.info(
            "Proxy API is ready after %d attempt(s)",
            result.attempts,
            extra=PASS,
        )

    def _authenticate(self, client: ProxyClient) -> None:
        """API_READY -> AUTHENTICATED.

        Raises:
            PollTimeout: If every guest login attempt failed.
        """
        tokens: list[str] = []

        def attempt() -> bool:
            try:
                token = client.login_as_guest()
            except RpcError as e:
                logger.warning("Guest login failed: %s", e)
                return False
            if token is None:
                logger.warning("Guest login returned an empty token")
                return False
            tokens.append(token)
            return True

        logger.info("Fetching API token")
        result = poll(
            attempt,
            self._config.login_attempts,
            self._config.poll_interval,
            sleep=self._sleep,
        )
        if result.timed_out:
            raise PollTimeout(
                f"Guest login failed after {result.attempts} attempts"
            )

        token = tokens[-1]
        SecretFilter.register_secret(token)
        self.session.access_token = token
        self.session.state = ProxyState.AUTHENTICATED
        logger.info("API token obtained", extra=PASS)

    def _create_project(self, client: ProxyClient) -> None:
        """AUTHENTICATED -> PROJECT_CREATED (single attempt).

        Raises:
            RpcError: If creation fails.
        """
        assert self.session.access_token is not None
        name = f"{self._config.project_prefix}-{secrets.token_hex(4)}"
        logger.info("Creating temporary project %s", name)
        project_id = client.create_project(
            self.session.access_token, name, temporary=True
        )
        self.session.project_id = project_id
        self.session.state = ProxyState.PROJECT_CREATED
        logger.info("Project created with id %s", project_id, extra=PASS)

    def _select_project(self, client: ProxyClient) -> bool:
        """PROJECT_CREATED -> PROJECT_SELECTED.

        Selection only counts when the returned current project id
        equals the requested id.

        Returns:
            True if the selection was confirmed.
        """
        assert self.session.access_token is not None
        assert self.session.project_id is not None
        requested = self.session.project_id
        logger.info("Selecting project %s", requested)
        try:
            selected = client.select_project(
                self.session.access_token, requested
            )
        except RpcError as e:
            logger.warning("Failed to select project: %s", e)
            return False
        if selected != requested:
            logger.warning(
                "Project selection not confirmed: requested %s, current %s",
                requested,
                selected,
            )
            return False
        self.session.state = ProxyState.PROJECT_SELECTED
        logger.info("Project %s selected", requested, extra=PASS)
        return True

    def _abort(self, error: SandboxInitError) -> StageResult:
        """Move to ABORTED and stop the child."""
        self.session.state = ProxyState.ABORTED
        self.shutdown()
        if self._config.strict:
            logger.error("%s", error)
            return StageResult(
                STAGE, StageOutcome.FATAL_ERROR, str(error), error
            )
        logger.warning("%s; continuing without proxy", error)
        return StageResult(STAGE, StageOutcome.DEGRADED, str(error), error)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        """Terminate the proxy child if it is still running (idempotent)."""
        process = self.session.process
        if process is None or process.poll() is not None:
            return
        logger.info("Stopping proxy (pid %d)", process.pid)
        process.terminate()
        try:
            process.wait(timeout=_TERMINATE_TIMEOUT)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def install_cleanup(self) -> None:
        """Stop the proxy on interpreter exit, SIGINT and SIGTERM.

        Only reached on paths that do not exec; a successful handoff
        replaces the process image and these hooks with it.
        """
        if self._cleanup_installed:
            return
        atexit.register(self.shutdown)
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)
        self._cleanup_installed = True

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        logger.info("Received signal %d, shutting down", signum)
        self.shutdown()
        raise SystemExit(128 + signum)
