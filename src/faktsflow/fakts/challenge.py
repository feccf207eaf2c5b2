"""Challenge polling -- wait for the user to approve a device code.

Polls the endpoint's challenge route until it reports an issued token, an
explicit denial, or the attempt budget runs out. This is the only step of a
connection that retries automatically, and the budget is a plain attempt
count (``max_retries`` polls, each bounded by ``challenge_timeout``) rather
than open-ended backoff.

Challenge states understood:

* ``granted`` -- the user approved; the response carries ``token``.
* ``pending`` / ``waiting`` -- keep polling.
* ``denied`` / ``rejected`` -- the user refused.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from faktsflow.cancel import CancelToken, ensure_token
from faktsflow.exceptions import (
    AuthorizationError,
    ConsentRejected,
    ConsentTimeout,
)
from faktsflow.models import EndpointDescriptor, FaktsRoutes
from faktsflow.transport import TRANSPORT_ERRORS, decode_json_object, send

logger = logging.getLogger(__name__)

PENDING_STATUSES = frozenset({"pending", "waiting"})
REJECTED_STATUSES = frozenset({"denied", "rejected"})


async def challenge(
    endpoint: EndpointDescriptor,
    code: str,
    *,
    http: httpx.AsyncClient,
    challenge_timeout: float = 5.0,
    max_retries: int = 60,
    poll_interval: float = 1.0,
    cancel: Optional[CancelToken] = None,
    routes: Optional[FaktsRoutes] = None,
) -> str:
    """Poll until *code* is approved and return the issued token.

    An attempt that times out, fails at the transport level or hits a 5xx
    consumes one unit of the budget and polling continues.

    Args:
        endpoint: The discovered endpoint.
        code: Device code being approved.
        http: Shared HTTP client.
        challenge_timeout: Deadline for each poll, in seconds.
        max_retries: Maximum number of polls.
        poll_interval: Pause between polls, in seconds.
        cancel: Token that aborts polling when fired.
        routes: Route names; ``routes.challenge`` is used.

    Returns:
        The raw token string issued for the approved code.

    Raises:
        ConsentRejected: If the user denied the code.
        ConsentTimeout: If every attempt was used up without a decision.
        AuthorizationError: If the endpoint answered with an unknown status
            or a malformed body.
        Cancelled: If *cancel* fired.
    """
    routes = routes or FaktsRoutes()
    token = ensure_token(cancel)
    url = f"{endpoint.base_url}{routes.challenge}"

    for attempt in range(1, max_retries + 1):
        if attempt > 1:
            await token.sleep(poll_interval)

        try:
            response = await send(
                http,
                "POST",
                url,
                json={"code": code},
                cancel=token,
                timeout=challenge_timeout,
            )
        except TRANSPORT_ERRORS as exc:
            logger.warning("Challenge poll %d/%d failed: %s", attempt, max_retries, exc)
            continue
        if response.status_code >= 500:
            logger.warning(
                "Challenge poll %d/%d got server error %d",
                attempt,
                max_retries,
                response.status_code,
            )
            continue

        data = decode_json_object(response, AuthorizationError, "Challenge poll")
        status = data.get("status")

        if status == "granted":
            issued = data.get("token")
            if not isinstance(issued, str) or not issued:
                raise AuthorizationError("Challenge granted without a 'token'")
            logger.debug("Device code approved after %d poll(s)", attempt)
            return issued
        if status in PENDING_STATUSES:
            logger.debug("Challenge poll %d/%d: %s", attempt, max_retries, status)
            continue
        if status in REJECTED_STATUSES:
            reason = data.get("message") or "Authorization denied by user"
            raise ConsentRejected(str(reason))

        raise AuthorizationError(f"Unexpected challenge status: {status!r}")

    raise ConsentTimeout(
        f"No decision for the device code after {max_retries} challenge poll(s)"
    )
