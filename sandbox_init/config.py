# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Orchestrator configuration resolved from the process environment.

Settings are read from, lowest precedence first:

1. built-in defaults,
2. an optional YAML file at ``$SANDBOX_INIT_CONFIG`` or
   ``<site config dir>/sandbox-init/config.yaml`` (typically
   ``/etc/xdg/sandbox-init/config.yaml``),
3. environment variables.

``!env`` tags in the YAML file resolve values from environment variables.
A missing YAML file is not an error: a container normally configures
everything through ``docker run -e``.

Strict mode (``SANDBOX_INIT_STRICT=1``) turns the proxy into a mandatory
dependency: ``CAIDO_PORT`` must be set explicitly and the proxy binary
must be on ``PATH``.  Without strict mode both are defaulted or
soft-disabled.

Example ``config.yaml``::

    strict: false
    workspace: /workspace
    proxy:
      port: !env CAIDO_PORT
      ownership: supervised
    tls:
      trust_user: pentester
    runtime:
      enabled: false
"""

from __future__ import annotations

import logging
import math
import os
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from platformdirs import site_config_path

from sandbox_init.errors import ConfigError
from sandbox_init.types import ProcessContext


logger = logging.getLogger(__name__)

#: Application name for site config path resolution.
_APP_NAME = "sandbox-init"

_BOOL_TRUTHY = frozenset({"true", "1", "yes", "on"})
_BOOL_FALSY = frozenset({"false", "0", "no", "off"})

DEFAULT_PROXY_PORT = 9000
DEFAULT_CA_BUNDLE = Path("/etc/ssl/certs/ca-certificates.crt")
DEFAULT_TRUST_LABEL = "Testing Root CA"


def get_config_dir() -> Path:
    """Return the site configuration directory for sandbox-init."""
    return site_config_path(_APP_NAME)


def get_config_path(environ: Mapping[str, str] | None = None) -> Path:
    """Return the YAML config file path.

    ``$SANDBOX_INIT_CONFIG`` wins over the site config directory.
    """
    source = os.environ if environ is None else environ
    explicit = source.get("SANDBOX_INIT_CONFIG")
    if explicit:
        return Path(explicit).expanduser()
    return get_config_dir() / "config.yaml"


class ProxyOwnership(Enum):
    """What happens to the proxy child when sandbox-init exits early.

    DAEMONIZED leaves it running for the lifetime of the container.
    SUPERVISED terminates it on every exit path that does not reach the
    handoff.
    """

    DAEMONIZED = "daemonized"
    SUPERVISED = "supervised"


@dataclass(frozen=True)
class OrchestratorConfig:
    """Immutable snapshot of resolved settings.

    Attributes:
        strict: Missing proxy settings and proxy failures are fatal.
        workspace: Directory the final command starts in.
        poll_interval: Fixed interval between readiness attempts.
        proxy_enabled: Whether the proxy stage runs at all.
        proxy_binary: Proxy executable name or path.
        proxy_host: Listen address of the proxy.
        proxy_port: Listen port, or None when unset (stage is skipped).
        proxy_log: File receiving proxy stdout/stderr.
        proxy_ownership: Cleanup policy for the proxy child.
        proxy_ready_attempts: Readiness budget for the proxy API.
        login_attempts: Guest login attempts.
        stability_pause: Pause after the proxy API becomes ready.
        project_prefix: Name prefix for the temporary project.
        ca_p12: PKCS#12 CA material imported into the proxy.
        ca_cert: PEM CA certificate imported into the trust store.
        ca_bundle: Bundle exported as REQUESTS_CA_BUNDLE/SSL_CERT_FILE.
        trust_user: User owning the trust store, or None for the
            current user.
        trust_db: NSS database directory.
        trust_label: Nickname of the imported certificate.
        runtime_enabled: Whether the runtime daemon stage runs.
        runtime_launcher: Daemon executable.
        runtime_client: Client used for the readiness probe.
        runtime_socket: Daemon socket path.
        runtime_dir: Daemon runtime directory (created owner-only).
        runtime_log: File receiving daemon output.
        runtime_ready_attempts: Readiness budget for the daemon.
        system_writes: Whether system-wide files are written.
        profile_path: Shell profile fragment exporting proxy variables.
        environment_path: System environment file.
        wgetrc_path: Downloader configuration file.
        rc_files: Shell rc files that get a ``source`` line appended.
    """

    strict: bool = False
    workspace: Path = Path("/workspace")
    poll_interval: float = 1.0

    proxy_enabled: bool = True
    proxy_binary: str = "caido-cli"
    proxy_host: str = "127.0.0.1"
    proxy_port: int | None = DEFAULT_PROXY_PORT
    proxy_log: Path = Path("/tmp/caido.log")
    proxy_ownership: ProxyOwnership = ProxyOwnership.DAEMONIZED
    proxy_ready_attempts: int = 60
    login_attempts: int = 5
    stability_pause: float = 1.0
    project_prefix: str = "sandbox"

    ca_p12: Path = Path("/app/certs/ca.p12")
    ca_cert: Path = Path("/app/certs/ca.crt")
    ca_bundle: Path = DEFAULT_CA_BUNDLE
    trust_user: str | None = None
    trust_db: Path = Path("~/.pki/nssdb")
    trust_label: str = DEFAULT_TRUST_LABEL

    runtime_enabled: bool = True
    runtime_launcher: str = "dockerd"
    runtime_client: str = "docker"
    runtime_socket: Path = Path("/var/run/docker.sock")
    runtime_dir: Path = Path("/run/sandbox-init/docker")
    runtime_log: Path = Path("/tmp/dockerd.log")
    runtime_ready_attempts: int = 60

    system_writes: bool = True
    profile_path: Path = Path("/etc/profile.d/proxy.sh")
    environment_path: Path = Path("/etc/environment")
    wgetrc_path: Path = Path("/etc/wgetrc")
    rc_files: tuple[Path, ...] = ()

    @property
    def proxy_url(self) -> str:
        """Base URL of the local proxy (also its control-plane origin)."""
        return f"http://{self.proxy_host}:{self.proxy_port}"

    @property
    def graphql_url(self) -> str:
        return f"{self.proxy_url}/graphql"


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)  # type: ignore[arg-type]
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


def load_yaml_settings(config_path: Path) -> dict[str, Any]:
    """Load the raw YAML mapping, or an empty dict when the file is absent.

    Raises:
        ConfigError: If the file is not valid YAML or not a mapping.
    """
    if not config_path.exists():
        logger.debug("No config file at %s", config_path)
        return {}

    try:
        with open(config_path) as f:
            raw = yaml.load(f, Loader=_make_loader())
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must be a YAML mapping: {config_path}")
    logger.debug("Loaded config file %s", config_path)
    return raw


# ---------------------------------------------------------------------------
# Value resolution
# ---------------------------------------------------------------------------


def _coerce_bool(value: object) -> bool:
    """Coerce a value to bool, handling string representations."""
    if isinstance(value, bool):
        return value
    s = str(value).lower().strip()
    if s in _BOOL_TRUTHY:
        return True
    if s in _BOOL_FALSY:
        return False
    raise ConfigError(f"Cannot convert {value!r} to bool")


def _coerce(value: object, coerce: Callable[[Any], Any], name: str) -> Any:
    if coerce is bool:
        return _coerce_bool(value)
    if coerce is Path:
        return Path(str(value)).expanduser()
    try:
        return coerce(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e


class _Settings:
    """Layered lookup: environment variable, then YAML, then default."""

    def __init__(
        self, environ: Mapping[str, str], raw: Mapping[str, Any]
    ) -> None:
        self._environ = environ
        self._raw = raw

    def _yaml_value(self, key: str) -> object:
        node: object = self._raw
        for part in key.split("."):
            if not isinstance(node, Mapping):
                return None
            node = node.get(part)
        if isinstance(node, _EnvVar):
            return self._environ.get(node.var_name) or None
        return node

    def is_set(self, env: str | None, key: str) -> bool:
        if env and self._environ.get(env):
            return True
        return self._yaml_value(key) is not None

    def get(
        self,
        env: str | None,
        key: str,
        coerce: Callable[[Any], Any],
        default: Any,
    ) -> Any:
        """Resolve one setting.

        Args:
            env: Environment variable name (None for YAML-only settings).
            key: Dotted YAML key, e.g. ``"proxy.port"``.
            coerce: Target type (``str``, ``int``, ``float``, ``bool``,
                ``Path``).
            default: Value used when neither source sets the setting.
        """
        value: object = None
        if env:
            value = self._environ.get(env) or None
        if value is None:
            value = self._yaml_value(key)
        if value is None:
            return default
        return _coerce(value, coerce, env or key)


def _positive(value: int, name: str) -> int:
    if value < 1:
        raise ConfigError(f"{name} must be >= 1, got {value}")
    return value


def _non_negative(value: float, name: str) -> float:
    if not math.isfinite(value) or value < 0:
        raise ConfigError(f"{name} must be a finite number >= 0, got {value}")
    return value


def resolve_config(
    environ: Mapping[str, str] | None = None,
    *,
    config_path: Path | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> OrchestratorConfig:
    """Build an OrchestratorConfig from the environment and config file.

    Args:
        environ: Environment mapping (default ``os.environ``).
        config_path: YAML config file; defaults to ``get_config_path()``.
        which: Executable lookup, injectable for tests.

    Returns:
        Resolved configuration.

    Raises:
        ConfigError: If a setting is malformed, or in strict mode when
            the proxy port is unset or the proxy binary is missing.
    """
    environ = os.environ if environ is None else environ
    if config_path is None:
        config_path = get_config_path(environ)
    s = _Settings(environ, load_yaml_settings(config_path))

    strict = s.get("SANDBOX_INIT_STRICT", "strict", bool, False)
    proxy_enabled = s.get("SANDBOX_INIT_PROXY", "proxy.enabled", bool, True)
    proxy_binary = s.get("CAIDO_BIN", "proxy.binary", str, "caido-cli")

    port_set = s.is_set("CAIDO_PORT", "proxy.port")
    if strict and proxy_enabled and not port_set:
        raise ConfigError("CAIDO_PORT must be set explicitly in strict mode")
    proxy_port = s.get("CAIDO_PORT", "proxy.port", int, DEFAULT_PROXY_PORT)
    if not 0 < proxy_port < 65536:
        raise ConfigError(f"CAIDO_PORT out of range: {proxy_port}")

    if strict and proxy_enabled and which(proxy_binary) is None:
        raise ConfigError(
            f"{proxy_binary} not found in PATH (required in strict mode)"
        )

    ownership_raw = s.get(
        "SANDBOX_INIT_PROXY_OWNERSHIP",
        "proxy.ownership",
        str,
        ProxyOwnership.DAEMONIZED.value,
    )
    try:
        ownership = ProxyOwnership(ownership_raw.strip().lower())
    except ValueError as e:
        choices = ", ".join(o.value for o in ProxyOwnership)
        raise ConfigError(
            f"Unknown proxy ownership {ownership_raw!r} (expected {choices})"
        ) from e

    trust_user = s.get("SANDBOX_INIT_TRUST_USER", "tls.trust_user", str, None)
    home = Path(os.path.expanduser(f"~{trust_user}" if trust_user else "~"))
    trust_db = s.get(
        "SANDBOX_INIT_TRUST_DB", "tls.trust_db", Path, home / ".pki" / "nssdb"
    )
    rc_default = (home / ".bashrc", home / ".zshrc") if trust_user else ()
    rc_raw = s.get(None, "system.rc_files", lambda v: v, None)
    if rc_raw is None:
        rc_files = rc_default
    elif isinstance(rc_raw, list):
        rc_files = tuple(Path(str(p)).expanduser() for p in rc_raw)
    else:
        raise ConfigError("system.rc_files must be a list of paths")

    config = OrchestratorConfig(
        strict=strict,
        workspace=s.get(
            "SANDBOX_INIT_WORKSPACE", "workspace", Path, Path("/workspace")
        ),
        poll_interval=_non_negative(
            s.get(None, "poll_interval", float, 1.0), "poll_interval"
        ),
        proxy_enabled=proxy_enabled,
        proxy_binary=proxy_binary,
        proxy_host=s.get(None, "proxy.host", str, "127.0.0.1"),
        proxy_port=proxy_port,
        proxy_log=s.get(
            "CAIDO_LOG", "proxy.log", Path, Path("/tmp/caido.log")
        ),
        proxy_ownership=ownership,
        proxy_ready_attempts=_positive(
            s.get(None, "proxy.ready_attempts", int, 60),
            "proxy.ready_attempts",
        ),
        login_attempts=_positive(
            s.get(None, "proxy.login_attempts", int, 5),
            "proxy.login_attempts",
        ),
        stability_pause=_non_negative(
            s.get(None, "proxy.stability_pause", float, 1.0),
            "proxy.stability_pause",
        ),
        project_prefix=s.get(None, "proxy.project_prefix", str, "sandbox"),
        ca_p12=s.get(
            "CAIDO_CA_P12", "tls.ca_p12", Path, Path("/app/certs/ca.p12")
        ),
        ca_cert=s.get(
            "CAIDO_CA_CERT", "tls.ca_cert", Path, Path("/app/certs/ca.crt")
        ),
        ca_bundle=s.get(
            "SANDBOX_INIT_CA_BUNDLE", "tls.ca_bundle", Path, DEFAULT_CA_BUNDLE
        ),
        trust_user=trust_user,
        trust_db=trust_db,
        trust_label=s.get(None, "tls.trust_label", str, DEFAULT_TRUST_LABEL),
        runtime_enabled=s.get(
            "SANDBOX_INIT_RUNTIME", "runtime.enabled", bool, True
        ),
        runtime_launcher=s.get(
            "SANDBOX_INIT_RUNTIME_LAUNCHER", "runtime.launcher", str, "dockerd"
        ),
        runtime_client=s.get(None, "runtime.client", str, "docker"),
        runtime_socket=s.get(
            "SANDBOX_INIT_RUNTIME_SOCKET",
            "runtime.socket",
            Path,
            Path("/var/run/docker.sock"),
        ),
        runtime_dir=s.get(
            "SANDBOX_INIT_RUNTIME_DIR",
            "runtime.dir",
            Path,
            Path("/run/sandbox-init/docker"),
        ),
        runtime_log=s.get(
            "SANDBOX_INIT_RUNTIME_LOG",
            "runtime.log",
            Path,
            Path("/tmp/dockerd.log"),
        ),
        runtime_ready_attempts=_positive(
            s.get(None, "runtime.ready_attempts", int, 60),
            "runtime.ready_attempts",
        ),
        system_writes=s.get(
            "SANDBOX_INIT_SYSTEM_WRITES", "system.writes", bool, True
        ),
        profile_path=s.get(
            None, "system.profile", Path, Path("/etc/profile.d/proxy.sh")
        ),
        environment_path=s.get(
            None, "system.environment", Path, Path("/etc/environment")
        ),
        wgetrc_path=s.get(None, "system.wgetrc", Path, Path("/etc/wgetrc")),
        rc_files=rc_files,
    )

    logger.debug(
        "Config resolved: strict=%s proxy=%s port=%s runtime=%s",
        config.strict,
        config.proxy_enabled,
        config.proxy_port,
        config.runtime_enabled,
    )
    return config


def export_config(config: OrchestratorConfig, context: ProcessContext) -> None:
    """Export resolved values that spawned children should inherit."""
    if config.proxy_enabled and config.proxy_port is not None:
        context.export("CAIDO_PORT", str(config.proxy_port))
