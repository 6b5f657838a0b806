# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across multiple test packages."""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from sandbox_init.config import OrchestratorConfig
from sandbox_init.logging import SecretFilter
from sandbox_init.proxy.client import ProxyClient


class FakeControlPlane:
    """In-memory stand-in for the proxy's GraphQL endpoint.

    Args:
        tokens: Successive guest login tokens; the last one repeats.
            ``None`` is returned as JSON null.
        project_id: Id returned by createProject (None for null).
        selected_id: Id returned by selectProject; defaults to the
            requested id.
        health_failures: Number of health probes that fail with a
            connection error before the endpoint answers.
    """

    def __init__(
        self,
        *,
        tokens: tuple[str | None, ...] = ("tok-123",),
        project_id: str | None = "proj-1",
        selected_id: str | None = "<requested>",
        health_failures: int = 0,
    ) -> None:
        self.tokens = list(tokens)
        self.project_id = project_id
        self.selected_id = selected_id
        self.health_failures = health_failures
        self.requests: list[httpx.Request] = []
        self.login_calls = 0
        self.create_calls = 0
        self.select_calls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            if self.health_failures > 0:
                self.health_failures -= 1
                raise httpx.ConnectError(
                    "Connection refused", request=request
                )
            return httpx.Response(200, text="GraphQL")

        body = json.loads(request.content)
        query = body["query"]
        if "loginAsGuest" in query:
            self.login_calls += 1
            if len(self.tokens) > 1:
                token = self.tokens.pop(0)
            else:
                token = self.tokens[0]
            login = {"token": {"accessToken": token}}
            return httpx.Response(200, json={"data": {"loginAsGuest": login}})
        if "createProject" in query:
            self.create_calls += 1
            project = (
                None if self.project_id is None else {"id": self.project_id}
            )
            return httpx.Response(
                200, json={"data": {"createProject": {"project": project}}}
            )
        if "selectProject" in query:
            self.select_calls += 1
            requested = body["variables"]["id"]
            selected = (
                requested
                if self.selected_id == "<requested>"
                else self.selected_id
            )
            return httpx.Response(
                200,
                json={
                    "data": {
                        "selectProject": {
                            "currentProject": {"project": {"id": selected}}
                        }
                    }
                },
            )
        return httpx.Response(400, json={"errors": [{"message": "unknown"}]})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client_factory(self, url: str) -> ProxyClient:
        return ProxyClient(url, transport=self.transport())

    def authorization_headers(self) -> list[str | None]:
        return [r.headers.get("Authorization") for r in self.requests]


def make_mock_process(pid: int = 4242, running: bool = True) -> MagicMock:
    """Create a mock Popen object for a spawned background child."""
    process = MagicMock()
    process.pid = pid
    process.poll.return_value = None if running else 1
    process.wait.return_value = 0
    return process


@pytest.fixture(autouse=True)
def _clear_secrets() -> Iterator[None]:
    """Registered secrets are class-level state; reset around each test."""
    SecretFilter.clear_secrets()
    yield
    SecretFilter.clear_secrets()


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., OrchestratorConfig]:
    """Build an OrchestratorConfig rooted in *tmp_path* with no waiting."""

    def _make(**overrides: Any) -> OrchestratorConfig:
        base = OrchestratorConfig(
            workspace=tmp_path / "workspace",
            poll_interval=0,
            stability_pause=0,
            proxy_port=9123,
            proxy_log=tmp_path / "caido.log",
            ca_p12=tmp_path / "ca.p12",
            ca_cert=tmp_path / "ca.crt",
            ca_bundle=tmp_path / "ca-bundle.crt",
            trust_db=tmp_path / "nssdb",
            runtime_socket=tmp_path / "docker.sock",
            runtime_dir=tmp_path / "runtime",
            runtime_log=tmp_path / "dockerd.log",
            system_writes=False,
            profile_path=tmp_path / "etc" / "profile.d" / "proxy.sh",
            environment_path=tmp_path / "etc" / "environment",
            wgetrc_path=tmp_path / "etc" / "wgetrc",
        )
        return dataclasses.replace(base, **overrides)

    return _make


@pytest.fixture
def control_plane() -> FakeControlPlane:
    return FakeControlPlane()
