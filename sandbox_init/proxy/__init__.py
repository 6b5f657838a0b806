# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Interception proxy control: GraphQL client and session lifecycle."""

from sandbox_init.proxy.client import ProxyClient
from sandbox_init.proxy.session import (
    ProxySession,
    ProxySessionManager,
    ProxyState,
)


__all__ = [
    "ProxyClient",
    "ProxySession",
    "ProxySessionManager",
    "ProxyState",
]
