"""OAuth2 Client Credentials token exchange.

Exchanges the ``client_id`` and ``client_secret`` issued inside the claimed
fakts for an access token at ``auth.token_url`` using the non-interactive
Client Credentials grant (:rfc:`6749` section 4.4).

Tokens are not refreshed automatically; a new connect obtains a new token.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from faktsflow.cancel import CancelToken
from faktsflow.exceptions import TokenExchangeFailed
from faktsflow.models import FaktsAuth, TokenResponse
from faktsflow.transport import TRANSPORT_ERRORS, decode_json_object, send

logger = logging.getLogger(__name__)


def build_token_request(auth: FaktsAuth) -> dict[str, str]:
    """Return the form fields posted to the token endpoint."""
    data: dict[str, str] = {
        "grant_type": "client_credentials",
        "client_id": auth.client_id,
        "client_secret": auth.client_secret,
    }
    if auth.scopes:
        data["scope"] = " ".join(auth.scopes)
    return data


async def login(
    auth: FaktsAuth,
    *,
    http: httpx.AsyncClient,
    cancel: Optional[CancelToken] = None,
    timeout: float = 10.0,
) -> TokenResponse:
    """Fetch an access token for the claimed client credentials.

    Args:
        auth: The ``auth`` section of the claimed fakts.
        http: Shared HTTP client.
        cancel: Token that aborts the request when fired.
        timeout: Deadline for the request in seconds.

    Returns:
        The parsed :class:`~faktsflow.models.TokenResponse`.

    Raises:
        TokenExchangeFailed: If the request fails, the endpoint answers
            with a non-2xx status, or ``access_token`` is missing.
        Cancelled: If *cancel* fired.
    """
    try:
        response = await send(
            http,
            "POST",
            auth.token_url,
            data=build_token_request(auth),
            cancel=cancel,
            timeout=timeout,
        )
    except TRANSPORT_ERRORS as exc:
        raise TokenExchangeFailed(f"Token request failed: {exc}") from exc

    token_data = decode_json_object(response, TokenExchangeFailed, "Token request")
    if "access_token" not in token_data:
        raise TokenExchangeFailed("Token response missing 'access_token' field")

    try:
        token = TokenResponse.model_validate(token_data)
    except ValidationError as exc:
        raise TokenExchangeFailed(f"Token response is invalid: {exc}") from exc

    logger.debug("Obtained %s token for client %s", token.token_type, auth.client_id)
    return token
