# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Container entry point.

Usage::

    sandbox-init [--] COMMAND [ARGS...]

Prepares the sandbox (proxy, trust settings, runtime daemon) and then
execs COMMAND, which replaces this process.  sandbox-init takes no flags
of its own besides ``--help``; configuration comes from the environment
and an optional config file (see ``sandbox_init.config``).

Exit status is the command's own.  Before the handoff, configuration
errors and fatal strict-mode failures exit 1, and a missing command
exits 2.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

from sandbox_init.config import get_config_dir, resolve_config
from sandbox_init.dotenv_loader import load_dotenv_once
from sandbox_init.errors import ConfigError, SandboxInitError
from sandbox_init.logging import configure_logging, parse_level
from sandbox_init.pipeline import Orchestrator
from sandbox_init.types import ProcessContext


logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sandbox-init",
        description=(
            "Prepare the shared sandbox environment and exec COMMAND."
        ),
        epilog=(
            "Configured through CAIDO_* and SANDBOX_INIT_* environment "
            "variables."
        ),
    )
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Foreground command and its arguments",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the startup pipeline and exec the foreground command.

    Args:
        argv: Arguments after the program name (default ``sys.argv[1:]``).

    Returns:
        Exit status; only returned when the handoff did not happen.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    command: list[str] = args.command
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        parser.print_usage(sys.stderr)
        print("sandbox-init: error: no command given", file=sys.stderr)
        return 2

    # .env may set SANDBOX_INIT_LOG_LEVEL
    load_dotenv_once(get_config_dir())
    configure_logging(
        level=parse_level(os.environ.get("SANDBOX_INIT_LOG_LEVEL")),
        add_secret_filter=True,
    )

    try:
        config = resolve_config()
    except ConfigError as e:
        logger.critical("Configuration error: %s", e)
        return 1

    orchestrator = Orchestrator(config, ProcessContext.from_environ())
    try:
        return orchestrator.run(command)
    except SandboxInitError as e:
        logger.critical("Startup failed: %s", e)
        return 1
