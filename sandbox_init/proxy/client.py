# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Client for the interception proxy's GraphQL control plane.

Every call is a POST of ``{"query": ..., "variables": ...}`` to the
``/graphql`` endpoint.  Authenticated calls carry a bearer token.  The
health probe is a plain GET on the same path: any HTTP response below
500 means the service is accepting requests.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from sandbox_init.errors import RpcError


logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 5

LOGIN_AS_GUEST = (
    "mutation LoginAsGuest { loginAsGuest { token { accessToken } } }"
)
CREATE_PROJECT = (
    "mutation CreateProject($name: String!, $temporary: Boolean!) "
    "{ createProject(input: {name: $name, temporary: $temporary}) "
    "{ project { id } } }"
)
SELECT_PROJECT = (
    "mutation SelectProject($id: ID!) "
    "{ selectProject(id: $id) { currentProject { project { id } } } }"
)


def _dig(data: Any, *path: str) -> Any:
    """Walk nested dicts, returning None when any level is missing."""
    node = data
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _non_null_string(value: Any) -> str | None:
    """Return *value* when it is a usable string, else None.

    Empty strings and the literal ``"null"`` are treated as absent.
    """
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or value == "null":
        return None
    return value


class ProxyClient:
    """Thin GraphQL client bound to one proxy instance.

    The client owns its ``httpx.Client``; use it as a context manager or
    call ``close()``.

    Args:
        graphql_url: Full URL of the ``/graphql`` endpoint.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (used by tests).
    """

    def __init__(
        self,
        graphql_url: str,
        *,
        timeout: float = _TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = graphql_url
        # Talk to the local proxy directly, never through inherited
        # proxy variables.
        self._client = httpx.Client(
            timeout=timeout, transport=transport, trust_env=False
        )

    def __enter__(self) -> ProxyClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def is_ready(self) -> bool:
        """Probe the endpoint; never raises.

        Returns:
            True when the service answered with a non-error response.
        """
        try:
            response = self._client.get(self._url)
        except httpx.HTTPError as e:
            logger.debug("Health probe failed: %s", e)
            return False
        return response.status_code < 500

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def login_as_guest(self) -> str | None:
        """Request a guest access token.

        Returns:
            The access token, or None when the response carries an empty
            or null token.

        Raises:
            RpcError: On transport failure or a malformed response.
        """
        data = self._execute(LOGIN_AS_GUEST)
        return _non_null_string(
            _dig(data, "loginAsGuest", "token", "accessToken")
        )

    def create_project(
        self, token: str, name: str, *, temporary: bool = True
    ) -> str:
        """Create a project and return its id.

        Raises:
            RpcError: If the call fails or no project id is returned.
        """
        data = self._execute(
            CREATE_PROJECT,
            {"name": name, "temporary": temporary},
            token=token,
        )
        project_id = _non_null_string(
            _dig(data, "createProject", "project", "id")
        )
        if project_id is None:
            raise RpcError("createProject returned no project id")
        return project_id

    def select_project(self, token: str, project_id: str) -> str | None:
        """Select *project_id* and return the currently selected project id.

        The caller compares the returned id to the requested one; a
        successful response may still select nothing.

        Raises:
            RpcError: On transport failure or a malformed response.
        """
        data = self._execute(SELECT_PROJECT, {"id": project_id}, token=token)
        return _non_null_string(
            _dig(data, "selectProject", "currentProject", "project", "id")
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _execute(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        *,
        token: str | None = None,
    ) -> dict[str, Any]:
        """POST a GraphQL document and return its ``data`` member.

        Raises:
            RpcError: On transport errors, non-2xx status, non-JSON
                bodies, GraphQL ``errors`` or a missing ``data`` object.
        """
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        body: dict[str, Any] = {"query": query}
        if variables:
            body["variables"] = variables

        try:
            response = self._client.post(self._url, headers=headers, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RpcError(
                f"Control plane returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise RpcError(f"Control plane request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise RpcError("Control plane returned a non-JSON body") from e

        if not isinstance(payload, dict):
            raise RpcError("Control plane returned a non-object body")
        errors = payload.get("errors")
        if errors:
            messages = "; ".join(
                str(err.get("message", err))
                if isinstance(err, dict)
                else str(err)
                for err in errors
            )
            raise RpcError(f"GraphQL errors: {messages}")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise RpcError("Control plane response has no data")
        return data
