"""Device authorization initiator -- request a device code for a manifest.

The connecting application sends its :class:`~faktsflow.models.Manifest`
(identity, scopes and derived requirements) to the endpoint's start route and
receives a short-lived, single-use device code that identifies this
handshake in every later step.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from faktsflow.cancel import CancelToken
from faktsflow.exceptions import AuthorizationStartFailed
from faktsflow.models import EndpointDescriptor, FaktsRoutes, Manifest
from faktsflow.transport import TRANSPORT_ERRORS, decode_json_object, send

GRANTED_STATUSES = frozenset({"granted", "success"})


def build_start_payload(
    manifest: Manifest, expiration_time: Optional[int] = None
) -> dict[str, Any]:
    """Return the JSON body sent to the start route."""
    payload: dict[str, Any] = {
        "manifest": manifest.model_dump(mode="json", exclude_none=True),
        "redirect_uris": [],
        "requested_client_kind": "development",
    }
    if expiration_time is not None:
        payload["expiration_time_seconds"] = expiration_time
    return payload


async def start(
    endpoint: EndpointDescriptor,
    manifest: Manifest,
    *,
    http: httpx.AsyncClient,
    expiration_time: Optional[int] = None,
    cancel: Optional[CancelToken] = None,
    timeout: float = 10.0,
    routes: Optional[FaktsRoutes] = None,
) -> str:
    """Request a device code from *endpoint*.

    Args:
        endpoint: The discovered endpoint.
        manifest: Manifest of the connecting application.
        http: Shared HTTP client.
        expiration_time: Requested code lifetime in seconds. The endpoint's
            default applies when omitted.
        cancel: Token that aborts the request when fired.
        timeout: Deadline for the request in seconds.
        routes: Route names; ``routes.start`` is used.

    Returns:
        The device code.

    Raises:
        AuthorizationStartFailed: On transport errors, non-success status or
            a response without a code.
        Cancelled: If *cancel* fired.
    """
    routes = routes or FaktsRoutes()
    url = f"{endpoint.base_url}{routes.start}"
    try:
        response = await send(
            http,
            "POST",
            url,
            json=build_start_payload(manifest, expiration_time),
            cancel=cancel,
            timeout=timeout,
        )
    except TRANSPORT_ERRORS as exc:
        raise AuthorizationStartFailed(f"Device authorization request failed: {exc}") from exc

    data = decode_json_object(response, AuthorizationStartFailed, "Device authorization request")

    status = data.get("status")
    if status not in GRANTED_STATUSES:
        message = data.get("message") or data.get("error") or status or "no status"
        raise AuthorizationStartFailed(f"Endpoint refused device authorization: {message}")

    code = data.get("code")
    if not isinstance(code, str) or not code:
        raise AuthorizationStartFailed("Device authorization response missing 'code'")
    return code
