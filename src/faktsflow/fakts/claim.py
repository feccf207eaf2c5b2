"""Claim -- exchange an issued token for the full fakts configuration."""

from __future__ import annotations

from typing import Optional

import httpx
from pydantic import ValidationError

from faktsflow.cancel import CancelToken
from faktsflow.exceptions import ClaimFailed
from faktsflow.models import ActiveFakts, EndpointDescriptor, FaktsRoutes
from faktsflow.transport import TRANSPORT_ERRORS, decode_json_object, send


async def claim(
    endpoint: EndpointDescriptor,
    token: str,
    *,
    http: httpx.AsyncClient,
    cancel: Optional[CancelToken] = None,
    timeout: float = 10.0,
    routes: Optional[FaktsRoutes] = None,
) -> ActiveFakts:
    """Claim the configuration bundle issued for an approved device code.

    Args:
        endpoint: The discovered endpoint.
        token: Token returned by the challenge poll.
        http: Shared HTTP client.
        cancel: Token that aborts the request when fired.
        timeout: Deadline for the request in seconds.
        routes: Route names; ``routes.claim`` is used.

    Returns:
        The validated :class:`~faktsflow.models.ActiveFakts`.

    Raises:
        ClaimFailed: If the token is rejected, the request fails, or the
            returned configuration does not match the schema.
        Cancelled: If *cancel* fired.
    """
    routes = routes or FaktsRoutes()
    url = f"{endpoint.base_url}{routes.claim}"
    try:
        response = await send(
            http,
            "POST",
            url,
            json={"token": token, "secure": False},
            cancel=cancel,
            timeout=timeout,
        )
    except TRANSPORT_ERRORS as exc:
        raise ClaimFailed(f"Claim request failed: {exc}") from exc

    data = decode_json_object(response, ClaimFailed, "Claim request")

    if data.get("status") != "granted":
        message = data.get("message") or data.get("status") or "no status"
        raise ClaimFailed(f"Endpoint refused the claim: {message}")

    config = data.get("config")
    if not isinstance(config, dict):
        raise ClaimFailed("Claim response missing 'config'")
    try:
        return ActiveFakts.model_validate(config)
    except ValidationError as exc:
        raise ClaimFailed(f"Claimed configuration is invalid: {exc}") from exc
