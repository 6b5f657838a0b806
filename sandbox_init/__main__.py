# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Allow ``python -m sandbox_init COMMAND [ARGS...]``."""

import sys

from sandbox_init.cli import main


sys.exit(main())
