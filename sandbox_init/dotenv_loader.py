# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Idempotent .env loading for the container entry point.

The loader reads environment variables from two locations (in order):

1. ``<site config dir>/sandbox-init/.env`` (typically
   ``/etc/xdg/sandbox-init/.env``) -- image-level defaults
2. ``.env`` in the current working directory -- per-container overrides

Variables already present in the process environment are never
overwritten (``python-dotenv`` respects existing env vars by default), so
values passed with ``docker run -e`` always win.
"""

import logging
from pathlib import Path

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

_dotenv_loaded = False


def load_dotenv_once(config_dir: Path) -> None:
    """Load .env files once, if not already loaded.

    This function is idempotent -- calling it multiple times has no
    effect after the first load.

    Args:
        config_dir: Site configuration directory holding the image-level
            ``.env`` file.
    """
    global _dotenv_loaded
    if _dotenv_loaded:
        return

    site_env = config_dir / ".env"
    if site_env.exists():
        load_dotenv(site_env)
        logger.debug("Loaded .env from %s", site_env)

    cwd_env = Path.cwd() / ".env"
    if cwd_env.exists():
        load_dotenv(cwd_env)
        logger.debug("Loaded .env from %s", cwd_env)

    _dotenv_loaded = True


def reset_dotenv_state() -> None:
    """Reset the dotenv loaded state. For testing only."""
    global _dotenv_loaded
    _dotenv_loaded = False
