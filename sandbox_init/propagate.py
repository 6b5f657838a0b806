# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Propagation of proxy and TLS settings to the rest of the container.

Once the proxy API is ready, three sinks receive its settings:

1. the ProcessContext (inherited by the final command),
2. system-wide files via a ``SystemWriter``: a shell profile fragment,
   ``/etc/environment``, the downloader config and ``source`` lines in
   shell rc files,
3. the browser trust store (CA import).

Only the first is required.  Failures in the other two degrade the
stage but never stop the pipeline.
"""

from __future__ import annotations

import logging
import shlex
from collections.abc import Callable
from typing import Any

from sandbox_init.config import OrchestratorConfig
from sandbox_init.errors import BestEffortFailure
from sandbox_init.logging import PASS
from sandbox_init.proxy.session import ProxySession
from sandbox_init.system import SystemWriter
from sandbox_init.trust import TrustStore
from sandbox_init.types import ProcessContext, StageOutcome, StageResult


logger = logging.getLogger(__name__)

STAGE = "propagate"

PROXY_VARIABLES = (
    "http_proxy",
    "https_proxy",
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "ALL_PROXY",
)
CA_VARIABLES = ("REQUESTS_CA_BUNDLE", "SSL_CERT_FILE")
TOKEN_VARIABLE = "CAIDO_API_TOKEN"

# Files holding the token are readable by their owner only
_SECRET_MODE = 0o600
_PUBLIC_MODE = 0o644


def proxy_environment(
    config: OrchestratorConfig, session: ProxySession
) -> dict[str, str]:
    """Variables pointing clients at the proxy and its CA bundle."""
    env = dict.fromkeys(PROXY_VARIABLES, config.proxy_url)
    env.update(dict.fromkeys(CA_VARIABLES, str(config.ca_bundle)))
    if session.access_token is not None:
        env[TOKEN_VARIABLE] = session.access_token
    return env


def render_profile(env: dict[str, str]) -> str:
    """Shell fragment exporting *env*."""
    lines = [
        f"export {name}={shlex.quote(value)}" for name, value in env.items()
    ]
    return "\n".join(lines) + "\n"


def render_environment(existing: str, env: dict[str, str]) -> str:
    """Merge *env* into ``/etc/environment`` content.

    Lines for unrelated variables are kept; lines for variables in *env*
    are replaced.
    """
    kept = [
        line
        for line in existing.splitlines()
        if line.partition("=")[0].strip() not in env
    ]
    kept.extend(f"{name}={value}" for name, value in env.items())
    return "\n".join(kept) + "\n"


def render_wgetrc(proxy_url: str) -> str:
    return (
        "use_proxy=yes\n"
        f"http_proxy={proxy_url}\n"
        f"https_proxy={proxy_url}\n"
    )


class Propagator:
    """Trust & environment propagation stage.

    Args:
        config: Resolved orchestrator configuration.
        context: Environment for the final command.
        writer: Sink for system-wide files.
        trust_store: Browser trust store.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        context: ProcessContext,
        writer: SystemWriter,
        trust_store: TrustStore,
    ) -> None:
        self._config = config
        self._context = context
        self._writer = writer
        self._trust_store = trust_store

    def run(self, session: ProxySession) -> StageResult:
        """Propagate settings for a ready proxy session.

        Returns:
            SUCCESS, DEGRADED when a best-effort sink failed, or
            SKIPPED_UNAVAILABLE when the proxy is not ready.
        """
        if not session.ready:
            logger.debug("Proxy not ready, skipping proxy environment")
            return StageResult(
                STAGE, StageOutcome.SKIPPED_UNAVAILABLE, "proxy not ready"
            )

        env = proxy_environment(self._config, session)
        self._context.update(env)
        logger.info(
            "Exported %s into process environment",
            ", ".join(env),
            extra=PASS,
        )

        failures: list[str] = []
        try:
            self._write_system_files(env)
        except BestEffortFailure as e:
            logger.warning("System-wide proxy settings incomplete: %s", e)
            failures.append(str(e))

        if not self._trust_store.import_certificate(
            self._config.ca_cert, self._config.trust_label
        ):
            failures.append("trust store import skipped or failed")

        if failures:
            detail = "; ".join(failures)
            return StageResult(STAGE, StageOutcome.DEGRADED, detail)
        return StageResult(STAGE, StageOutcome.SUCCESS, "settings propagated")

    def _write_system_files(self, env: dict[str, str]) -> None:
        """Write profile, environment and downloader files.

        Every file is attempted; the first failure is raised at the end.

        Raises:
            BestEffortFailure: If any write failed.
        """
        config = self._config
        logger.info("Configuring system-wide proxy settings")
        secret = TOKEN_VARIABLE in env
        mode = _SECRET_MODE if secret else _PUBLIC_MODE
        errors: list[BestEffortFailure] = []

        def attempt(
            fn: Callable[..., object], *args: Any, **kwargs: Any
        ) -> None:
            try:
                fn(*args, **kwargs)
            except BestEffortFailure as e:
                logger.warning("%s", e)
                errors.append(e)

        attempt(
            self._writer.write_file,
            config.profile_path,
            render_profile(env),
            mode=mode,
            owner=config.trust_user if secret else None,
        )

        environment_vars = {
            name: value
            for name, value in env.items()
            if name not in CA_VARIABLES
        }
        try:
            existing = self._writer.read_text(config.environment_path)
        except BestEffortFailure as e:
            logger.warning("%s", e)
            errors.append(e)
        else:
            attempt(
                self._writer.write_file,
                config.environment_path,
                render_environment(existing, environment_vars),
                mode=mode,
            )

        attempt(
            self._writer.write_file,
            config.wgetrc_path,
            render_wgetrc(config.proxy_url),
            mode=_PUBLIC_MODE,
        )

        source_line = f"source {config.profile_path}"
        for rc_file in config.rc_files:
            attempt(self._writer.append_line, rc_file, source_line)

        if errors:
            raise errors[0]
