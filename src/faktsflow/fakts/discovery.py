"""Endpoint discovery -- resolve a user-entered URL into an endpoint descriptor.

Users type URLs like ``go.arkitekt.live`` or ``https://lab.example.org/f``.
:func:`normalize_url` turns them into candidate absolute URLs, and
:func:`discover` queries each candidate's well-known route until one returns
a valid :class:`~faktsflow.models.EndpointDescriptor`.

The whole discovery, across all candidates, is bounded by one ``timeout`` so
the caller sees a single, predictable deadline.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional, Sequence
from urllib.parse import urlsplit

import httpx
from pydantic import ValidationError

from faktsflow.cancel import CancelToken, ensure_token
from faktsflow.exceptions import (
    DiscoveryInvalidResponse,
    DiscoveryUnreachable,
    InvalidUsageError,
)
from faktsflow.models import EndpointDescriptor, FaktsRoutes
from faktsflow.transport import TRANSPORT_ERRORS, decode_json_object, send

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOLS: tuple[str, ...] = ("https", "http")


def normalize_url(url: str, auto_protocols: Sequence[str] = DEFAULT_PROTOCOLS) -> list[str]:
    """Return the candidate base URLs for a user-supplied string.

    Whitespace is stripped and a trailing slash appended. A string without a
    scheme expands to one candidate per entry of *auto_protocols*, in order.

    Args:
        url: Raw user input.
        auto_protocols: Schemes to try when *url* has none.

    Returns:
        A non-empty list of absolute URLs ending with ``/``.

    Raises:
        InvalidUsageError: If *url* is empty, uses a non-http(s) scheme, or
            has no host.
    """
    raw = url.strip()
    if not raw:
        raise InvalidUsageError("Endpoint URL must not be empty")

    if "://" in raw:
        candidates = [raw]
    else:
        if not auto_protocols:
            raise InvalidUsageError(f"URL '{raw}' has no scheme and no protocols to try")
        candidates = [f"{scheme}://{raw}" for scheme in auto_protocols]

    normalized: list[str] = []
    for candidate in candidates:
        parts = urlsplit(candidate)
        if parts.scheme not in ("http", "https"):
            raise InvalidUsageError(f"Unsupported URL scheme '{parts.scheme}' in '{raw}'")
        if not parts.netloc:
            raise InvalidUsageError(f"URL '{raw}' has no host")
        base = f"{parts.scheme}://{parts.netloc}{parts.path}"
        normalized.append(base if base.endswith("/") else f"{base}/")
    return normalized


async def discover(
    url: str,
    *,
    timeout: float = 2.0,
    cancel: Optional[CancelToken] = None,
    http: Optional[httpx.AsyncClient] = None,
    routes: Optional[FaktsRoutes] = None,
    auto_protocols: Sequence[str] = DEFAULT_PROTOCOLS,
) -> EndpointDescriptor:
    """Discover the fakts endpoint behind *url*.

    Args:
        url: User-supplied URL, not necessarily normalised.
        timeout: Deadline in seconds for the whole discovery.
        cancel: Token that aborts discovery when fired.
        http: Shared client. A temporary client is created and closed when
            omitted.
        routes: Route names; ``routes.well_known`` is queried.
        auto_protocols: Schemes tried when *url* has none.

    Returns:
        The validated endpoint descriptor.

    Raises:
        InvalidUsageError: If *url* cannot be normalised.
        DiscoveryUnreachable: On timeout or when no candidate answered.
        DiscoveryInvalidResponse: When a candidate answered with something
            that is not an endpoint descriptor.
        Cancelled: If *cancel* fired.
    """
    candidates = normalize_url(url, auto_protocols)
    routes = routes or FaktsRoutes()
    token = ensure_token(cancel)

    if http is None:
        async with httpx.AsyncClient(follow_redirects=True) as owned:
            return await _discover_bounded(candidates, owned, routes, token, timeout)
    return await _discover_bounded(candidates, http, routes, token, timeout)


async def _discover_bounded(
    candidates: list[str],
    http: httpx.AsyncClient,
    routes: FaktsRoutes,
    token: CancelToken,
    timeout: float,
) -> EndpointDescriptor:
    try:
        deadline = time.monotonic() + timeout
        return await token.guard(
            _try_candidates(candidates, http, routes, deadline), timeout=timeout
        )
    except TimeoutError as exc:
        raise DiscoveryUnreachable(
            f"No fakts endpoint answered at {candidates[0]} within {timeout}s"
        ) from exc


async def _try_candidates(
    candidates: list[str], http: httpx.AsyncClient, routes: FaktsRoutes, deadline: float
) -> EndpointDescriptor:
    last_error: Optional[BaseException] = None
    for base in candidates:
        query_url = f"{base}{routes.well_known}"
        logger.debug("Querying fakts endpoint at %s", query_url)
        try:
            # The client's own timeout must not end a candidate before the deadline.
            remaining = max(deadline - time.monotonic(), 0.001)
            response = await send(http, "GET", query_url, timeout=remaining)
        except TRANSPORT_ERRORS as exc:
            logger.debug("Discovery candidate %s unreachable: %s", base, exc)
            last_error = exc
            continue
        return _parse_descriptor(response, base)

    raise DiscoveryUnreachable(
        f"Could not reach a fakts endpoint at {candidates[0]}: {last_error}"
    ) from last_error


def _parse_descriptor(response: httpx.Response, base: str) -> EndpointDescriptor:
    data: dict[str, Any] = decode_json_object(
        response, DiscoveryInvalidResponse, f"Discovery at {base}"
    )
    data.setdefault("base_url", base)
    try:
        return EndpointDescriptor.model_validate(data)
    except ValidationError as exc:
        raise DiscoveryInvalidResponse(
            f"Discovery at {base} returned an invalid descriptor: {exc}"
        ) from exc
