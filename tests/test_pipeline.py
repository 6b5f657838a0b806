# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for sandbox_init/pipeline.py."""

import logging
from collections.abc import Callable
from unittest.mock import MagicMock, patch

import pytest

from sandbox_init.config import OrchestratorConfig
from sandbox_init.daemon import RuntimeDaemonSupervisor
from sandbox_init.errors import PollTimeout, SandboxInitError
from sandbox_init.handoff import handoff
from sandbox_init.pipeline import Orchestrator
from sandbox_init.propagate import Propagator
from sandbox_init.proxy.session import ProxySessionManager, ProxyState
from sandbox_init.system import NullSystemWriter
from sandbox_init.trust import TrustStore
from sandbox_init.types import (
    ProcessContext,
    StageOutcome,
    StageResult,
)
from tests.conftest import FakeControlPlane, make_mock_process


MakeConfig = Callable[..., OrchestratorConfig]


def _found(name: str) -> str | None:
    return f"/usr/bin/{name}"


def _missing(name: str) -> str | None:
    return None


def _build(
    config: OrchestratorConfig,
    context: ProcessContext,
    plane: FakeControlPlane,
    *,
    which: Callable[[str], str | None] = _found,
) -> Orchestrator:
    trust = MagicMock(spec=TrustStore)
    trust.import_certificate.return_value = True
    return Orchestrator(
        config,
        context,
        proxy=ProxySessionManager(
            config,
            context,
            which=which,
            popen=MagicMock(return_value=make_mock_process(pid=4242)),
            client_factory=plane.client_factory,
            sleep=lambda _: None,
        ),
        propagator=Propagator(config, context, NullSystemWriter(), trust),
        runtime=RuntimeDaemonSupervisor(
            config,
            context,
            which=which,
            popen=MagicMock(),
            runner=MagicMock(),
            sleep=lambda _: None,
        ),
    )


class TestPrepare:
    """Tests for Orchestrator.prepare() with real stages."""

    def test_proxy_environment_reaches_command(
        self, make_config: MakeConfig, control_plane: FakeControlPlane
    ) -> None:
        """Proxy settings end up in the exec'd environment."""
        config = make_config(runtime_enabled=False)
        context = ProcessContext(env={"PATH": "/usr/bin", "HOME": "/root"})
        orchestrator = _build(config, context, control_plane)

        results = orchestrator.prepare()
        execvpe = MagicMock()
        handoff(
            ["env"],
            context,
            config.workspace,
            chdir=MagicMock(),
            execvpe=execvpe,
        )

        assert [r.outcome for r in results] == [
            StageOutcome.SUCCESS,
            StageOutcome.SUCCESS,
            StageOutcome.SKIPPED_UNAVAILABLE,
        ]
        env = execvpe.call_args.args[2]
        assert env["CAIDO_API_TOKEN"] == "tok-123"
        assert env["http_proxy"] == "http://127.0.0.1:9123"
        assert env["HTTPS_PROXY"] == "http://127.0.0.1:9123"
        assert env["CAIDO_PORT"] == "9123"
        assert env["HOME"] == "/root"
        assert env["SSL_CERT_FILE"] == str(config.ca_bundle)

    def test_without_proxy_binary(
        self,
        make_config: MakeConfig,
        control_plane: FakeControlPlane,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A missing proxy binary skips all dependent stages."""
        config = make_config()
        context = ProcessContext(env={"PATH": "/usr/bin"})
        orchestrator = _build(config, context, control_plane, which=_missing)

        with caplog.at_level(logging.INFO):
            results = orchestrator.prepare()

        assert [r.outcome for r in results] == [
            StageOutcome.SKIPPED_UNAVAILABLE,
        ] * 3
        assert "http_proxy" not in context.env
        assert "CAIDO_API_TOKEN" not in context.env
        assert control_plane.requests == []
        proxy_lines = [
            r.getMessage()
            for r in caplog.records
            if "proxy" in r.getMessage().lower()
        ]
        assert proxy_lines == ["Skipping proxy: caido-cli not found in PATH"]

    def test_login_exhaustion_still_hands_off(
        self, make_config: MakeConfig
    ) -> None:
        """Failed login keeps routing traffic through the proxy."""
        plane = FakeControlPlane(tokens=(None,))
        config = make_config(runtime_enabled=False)
        context = ProcessContext()
        orchestrator = _build(config, context, plane)

        results = orchestrator.prepare()

        assert results[0].outcome is StageOutcome.DEGRADED
        assert orchestrator.proxy.session.state is ProxyState.API_READY
        # Proxy is reachable, so traffic is still routed through it
        assert context.get("http_proxy") == "http://127.0.0.1:9123"
        assert "CAIDO_API_TOKEN" not in context.env

    def test_readiness_timeout_exports_nothing(
        self, make_config: MakeConfig
    ) -> None:
        """An unready proxy exports no proxy settings."""
        plane = FakeControlPlane(health_failures=1000)
        config = make_config(runtime_enabled=False, proxy_ready_attempts=2)
        context = ProcessContext()
        orchestrator = _build(config, context, plane)

        results = orchestrator.prepare()

        assert results[0].outcome is StageOutcome.DEGRADED
        assert results[1].outcome is StageOutcome.SKIPPED_UNAVAILABLE
        assert "http_proxy" not in context.env
        process = orchestrator.proxy.session.process
        process.terminate.assert_called_once()

    def test_strict_readiness_timeout_is_fatal(
        self, make_config: MakeConfig
    ) -> None:
        """Strict mode stops the pipeline at the proxy stage."""
        plane = FakeControlPlane(health_failures=1000)
        config = make_config(strict=True, proxy_ready_attempts=2)
        orchestrator = _build(config, ProcessContext(), plane)
        orchestrator.runtime = MagicMock()

        with pytest.raises(PollTimeout):
            orchestrator.prepare()

        orchestrator.runtime.start.assert_not_called()
        assert orchestrator.results[-1].fatal

    def test_fatal_without_error_object(
        self, make_config: MakeConfig, control_plane: FakeControlPlane
    ) -> None:
        """A fatal result without an error still raises."""
        config = make_config()
        orchestrator = _build(config, ProcessContext(), control_plane)
        orchestrator.proxy = MagicMock()
        orchestrator.proxy.start.return_value = StageResult(
            "proxy", StageOutcome.FATAL_ERROR, "broken"
        )
        with pytest.raises(SandboxInitError, match="proxy failed: broken"):
            orchestrator.prepare()


class TestRun:
    """Tests for Orchestrator.run()."""

    def test_run_hands_off(
        self, make_config: MakeConfig, control_plane: FakeControlPlane
    ) -> None:
        """run() ends with the handoff."""
        config = make_config(runtime_enabled=False)
        context = ProcessContext()
        orchestrator = _build(config, context, control_plane)

        with patch(
            "sandbox_init.pipeline.handoff", return_value=0
        ) as mock_handoff:
            status = orchestrator.run(["bash", "-l"])

        assert status == 0
        mock_handoff.assert_called_once_with(
            ["bash", "-l"], context, config.workspace
        )

    def test_fatal_prevents_handoff(self, make_config: MakeConfig) -> None:
        """No handoff after a fatal stage."""
        plane = FakeControlPlane(tokens=(None,))
        config = make_config(strict=True)
        orchestrator = _build(config, ProcessContext(), plane)

        with patch("sandbox_init.pipeline.handoff") as mock_handoff:
            with pytest.raises(PollTimeout):
                orchestrator.run(["true"])
        mock_handoff.assert_not_called()

    def test_default_collaborators(self, make_config: MakeConfig) -> None:
        config = make_config()
        orchestrator = Orchestrator(config, ProcessContext())
        assert isinstance(orchestrator.proxy, ProxySessionManager)
        assert isinstance(orchestrator.propagator, Propagator)
        assert isinstance(orchestrator.runtime, RuntimeDaemonSupervisor)
