"""Shared HTTP plumbing for every network-bound stage.

All stages talk to the network through a caller-owned
:class:`httpx.AsyncClient` so that connection pooling, TLS settings and test
transports are configured once. :func:`send` bounds a single request by a
deadline and a :class:`~faktsflow.cancel.CancelToken`;
:func:`decode_json_object` turns a response body into a dict or raises the
stage-specific error class handed in by the caller.

Transport failures are left as :mod:`httpx` exceptions (or the builtin
:class:`TimeoutError`) so that each stage can map them onto its own error
kind, always chaining the original exception.

See Also:
    :mod:`faktsflow.cancel` for the deadline and cancellation race.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import httpx

from faktsflow.cancel import CancelToken, ensure_token
from faktsflow.exceptions import FaktsflowError
from faktsflow.models import ConnectionSettings

TRANSPORT_ERRORS = (httpx.HTTPError, TimeoutError)
"""Exceptions :func:`send` can raise for a request that never got an answer."""


def create_http_client(
    settings: Optional[ConnectionSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create the :class:`httpx.AsyncClient` shared by one orchestrator.

    Args:
        settings: Connection settings; ``verify_ssl`` and
            ``request_timeout`` are applied to the client.
        transport: Optional transport override (e.g.
            :class:`httpx.MockTransport` in tests).

    Returns:
        A new client. The caller owns it and must ``aclose()`` it.
    """
    settings = settings or ConnectionSettings()
    return httpx.AsyncClient(
        timeout=settings.request_timeout,
        verify=settings.verify_ssl,
        follow_redirects=True,
        transport=transport,
        headers={"Accept": "application/json"},
    )


async def send(
    http: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    cancel: Optional[CancelToken] = None,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> httpx.Response:
    """Issue one request bounded by *timeout* seconds and *cancel*.

    Args:
        http: The shared client.
        method: HTTP method.
        url: Absolute URL.
        cancel: Token that aborts the request when fired.
        timeout: Deadline for the whole request, including body download.
        **kwargs: Forwarded to :meth:`httpx.AsyncClient.request` (``json``,
            ``data``, ``headers``).

    Returns:
        The :class:`httpx.Response`, whatever its status code.

    Raises:
        Cancelled: If *cancel* fired first.
        TimeoutError: If the deadline passed first.
        httpx.HTTPError: On transport-level failures.
    """
    token = ensure_token(cancel)
    if timeout is not None:
        kwargs.setdefault("timeout", timeout)
    return await token.guard(http.request(method, url, **kwargs), timeout=timeout)


def decode_json_object(
    response: httpx.Response,
    error: type[FaktsflowError],
    what: str,
) -> dict[str, Any]:
    """Decode *response* as a JSON object or raise *error*.

    Args:
        response: The response to decode.
        error: Exception class raised on non-2xx status or bad JSON.
        what: Short description of the request for error messages.

    Returns:
        The decoded JSON object.
    """
    if not response.is_success:
        raise error(
            f"{what} failed with status {response.status_code}: {_excerpt(response)}"
        )
    try:
        data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise error(f"{what} returned a non-JSON body: {exc}") from exc
    if not isinstance(data, dict):
        raise error(f"{what} returned {type(data).__name__}, expected a JSON object")
    return data


def _excerpt(response: httpx.Response) -> str:
    try:
        detail = response.json()
        if isinstance(detail, dict):
            return str(
                detail.get("message") or detail.get("error") or detail.get("detail") or detail
            )
        return str(detail)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.text[:200] if response.text else ""
