"""Service clients built from a resolved alias and an access token.

Two client kinds are supported, selected by
:class:`~faktsflow.models.ServiceKind`:

* :class:`HttpService` -- an authenticated :class:`httpx.AsyncClient` rooted
  at the alias.
* :class:`GraphQLService` -- the same, plus :meth:`GraphQLService.execute`
  for posting GraphQL documents to the alias's ``graphql`` route.

Builders do no I/O; the resolver has already probed the alias.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import httpx

from faktsflow.exceptions import ServiceRequestError
from faktsflow.models import Alias, TokenResponse


class HttpService:
    """Authenticated HTTP client bound to one resolved alias.

    Args:
        alias: The resolved alias.
        token: Access token sent as ``Authorization`` header.
        timeout: Default request timeout in seconds.
        verify: Verify the service's TLS certificate.
        transport: Optional transport override (tests).
    """

    def __init__(
        self,
        alias: Alias,
        token: TokenResponse,
        *,
        timeout: float = 30.0,
        verify: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.alias = alias
        self.base_url = alias.base_url
        self.client = httpx.AsyncClient(
            base_url=alias.base_url,
            headers={
                "Authorization": f"Bearer {token.access_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
            verify=verify,
            transport=transport,
        )

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request relative to the alias base URL."""
        return await self.client.request(method, path, **kwargs)

    async def aclose(self) -> None:
        await self.client.aclose()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.base_url!r})"


class GraphQLService(HttpService):
    """HTTP service that speaks GraphQL over ``POST {alias}graphql``."""

    endpoint = "graphql"

    async def execute(
        self,
        query: str,
        variables: Optional[dict[str, Any]] = None,
        operation_name: Optional[str] = None,
    ) -> dict[str, Any]:
        """Execute a GraphQL document and return its ``data``.

        Raises:
            ServiceRequestError: On non-2xx status, a non-JSON body or a
                response carrying ``errors``.
        """
        payload: dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables
        if operation_name:
            payload["operationName"] = operation_name

        try:
            response = await self.client.post(self.endpoint, json=payload)
        except httpx.HTTPError as exc:
            raise ServiceRequestError(f"GraphQL request to {self.base_url} failed: {exc}") from exc

        if not response.is_success:
            raise ServiceRequestError(
                f"GraphQL request to {self.base_url} failed with status {response.status_code}"
            )
        try:
            body = response.json()
        except json.JSONDecodeError as exc:
            raise ServiceRequestError(f"GraphQL response is not JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise ServiceRequestError("GraphQL response is not a JSON object")

        errors = body.get("errors")
        if errors:
            if not isinstance(errors, list):
                errors = [errors]
            messages = "; ".join(
                str(err.get("message", err)) if isinstance(err, dict) else str(err)
                for err in errors
            )
            raise ServiceRequestError(f"GraphQL errors: {messages}")
        return body.get("data") or {}


def http_service_builder(
    *, alias: Alias, token: TokenResponse, timeout: float = 30.0, verify: bool = True, **_: Any
) -> HttpService:
    """Builder for :attr:`~faktsflow.models.ServiceKind.HTTP` services."""
    return HttpService(alias, token, timeout=timeout, verify=verify)


def graphql_service_builder(
    *, alias: Alias, token: TokenResponse, timeout: float = 30.0, verify: bool = True, **_: Any
) -> GraphQLService:
    """Builder for :attr:`~faktsflow.models.ServiceKind.GRAPHQL` services."""
    return GraphQLService(alias, token, timeout=timeout, verify=verify)
