"""Alias resolver -- pick the first reachable address of a service instance.

An instance in the claimed fakts lists several candidate aliases (for
example an internal docker hostname, a LAN address and a public URL). They
are probed one at a time in declared order, so the first alias listed wins
whenever it is reachable.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from faktsflow.cancel import CancelToken, ensure_token
from faktsflow.exceptions import NoReachableAlias
from faktsflow.models import Alias, Instance
from faktsflow.transport import TRANSPORT_ERRORS, send

logger = logging.getLogger(__name__)


async def probe_alias(
    alias: Alias,
    *,
    http: httpx.AsyncClient,
    timeout: float = 1.0,
    cancel: Optional[CancelToken] = None,
) -> bool:
    """Return whether *alias* answers its challenge URL with a 2xx status.

    Raises:
        Cancelled: If *cancel* fired. Timeouts and transport errors count
            as unreachable.
    """
    try:
        response = await send(
            http, "GET", alias.challenge_url, cancel=cancel, timeout=timeout
        )
    except TRANSPORT_ERRORS as exc:
        logger.debug("Alias %s unreachable: %s", alias.challenge_url, exc)
        return False
    if not response.is_success:
        logger.debug(
            "Alias %s answered with status %d", alias.challenge_url, response.status_code
        )
        return False
    return True


async def resolve_working_alias(
    instance: Instance,
    *,
    http: httpx.AsyncClient,
    timeout: float = 1.0,
    cancel: Optional[CancelToken] = None,
) -> Alias:
    """Return the first alias of *instance* that passes its challenge.

    Args:
        instance: The service instance from the claimed fakts.
        http: Shared HTTP client.
        timeout: Deadline for each probe, in seconds.
        cancel: Token that aborts probing when fired.

    Returns:
        The first reachable :class:`~faktsflow.models.Alias`.

    Raises:
        NoReachableAlias: If the instance has no aliases or none responded.
        Cancelled: If *cancel* fired.
    """
    token = ensure_token(cancel)
    for alias in instance.aliases:
        token.raise_if_cancelled()
        if await probe_alias(alias, http=http, timeout=timeout, cancel=token):
            logger.debug("Resolved %s to %s", instance.service, alias.base_url)
            return alias

    if not instance.aliases:
        raise NoReachableAlias(f"Service '{instance.service}' advertises no aliases")
    raise NoReachableAlias(
        f"None of the {len(instance.aliases)} alias(es) of '{instance.service}' "
        f"responded within {timeout}s"
    )
