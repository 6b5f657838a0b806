# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Fixtures for proxy session tests."""

from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest

from sandbox_init.config import OrchestratorConfig
from sandbox_init.proxy.session import ProxySessionManager
from sandbox_init.types import ProcessContext
from tests.conftest import FakeControlPlane, make_mock_process


def found(name: str) -> str | None:
    return f"/usr/bin/{name}"


@pytest.fixture
def popen() -> MagicMock:
    """Popen replacement returning a running mock process."""
    return MagicMock(return_value=make_mock_process())


@pytest.fixture
def make_manager(
    make_config: Callable[..., OrchestratorConfig],
    control_plane: FakeControlPlane,
    popen: MagicMock,
) -> Callable[..., ProxySessionManager]:
    """Build a ProxySessionManager wired to the fake control plane."""

    def _make(
        *,
        context: ProcessContext | None = None,
        which: Callable[[str], str | None] = found,
        **overrides: Any,
    ) -> ProxySessionManager:
        return ProxySessionManager(
            make_config(**overrides),
            context or ProcessContext(env={"PATH": "/usr/bin"}),
            which=which,
            popen=popen,
            client_factory=control_plane.client_factory,
            sleep=lambda _: None,
        )

    return _make
