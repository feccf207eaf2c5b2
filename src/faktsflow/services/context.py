"""Service resolution fan-out and the connected context it produces.

:func:`build_context` resolves and builds every declared service
concurrently. A failing service never cancels its siblings; the whole
batch is awaited and then aggregated in declared order:

* successful services become clients in the context,
* failed *optional* services are recorded as
  :class:`~faktsflow.models.UnresolvedService`,
* any failed *required* service aborts the batch with
  :class:`~faktsflow.exceptions.RequiredServiceResolutionFailed` naming the
  first failing key, after the clients that were built have been closed.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

import httpx

from faktsflow.alias import resolve_working_alias
from faktsflow.cancel import CancelToken, ensure_token
from faktsflow.exceptions import (
    RequiredServiceResolutionFailed,
    ServiceNotAvailable,
    ServiceResolutionError,
)
from faktsflow.models import (
    ActiveFakts,
    Alias,
    AvailableService,
    Manifest,
    TokenResponse,
    UnresolvedService,
)
from faktsflow.services.definitions import ServiceDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectedContext:
    """Everything a connected session holds. Replaced wholesale, never mutated.

    Attributes:
        fakts: The claimed configuration.
        token: The access token obtained for it.
        clients: Read-only mapping from service key to built client.
        available_services: Resolved services in declared order.
        unresolved_services: Optional services that failed, in declared order.
    """

    fakts: ActiveFakts
    token: TokenResponse
    clients: Mapping[str, Any] = field(default_factory=dict)
    available_services: tuple[AvailableService, ...] = ()
    unresolved_services: tuple[UnresolvedService, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "clients", MappingProxyType(dict(self.clients)))
        object.__setattr__(self, "available_services", tuple(self.available_services))
        object.__setattr__(self, "unresolved_services", tuple(self.unresolved_services))

    def service(self, key: str) -> Any:
        """Return the client for *key*.

        Raises:
            ServiceNotAvailable: If *key* was not resolved.
        """
        try:
            return self.clients[key]
        except KeyError:
            raise ServiceNotAvailable(f"Service '{key}' is not available") from None

    async def aclose(self) -> None:
        """Close every client that exposes ``aclose`` or ``close``."""
        await close_clients(self.clients.values())


async def close_client(client: Any) -> None:
    """Close *client* if it knows how. Errors are logged, not raised."""
    closer = getattr(client, "aclose", None) or getattr(client, "close", None)
    if closer is None:
        return
    try:
        result = closer()
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.warning("Closing service client %r failed", client, exc_info=True)


async def close_clients(clients: Any) -> None:
    for client in list(clients):
        await close_client(client)


async def _build_one(
    definition: ServiceDefinition,
    fakts: ActiveFakts,
    manifest: Manifest,
    token: TokenResponse,
    http: httpx.AsyncClient,
    cancel: CancelToken,
    alias_timeout: float,
) -> tuple[Alias, Any]:
    instance = fakts.instances.get(definition.key)
    if instance is None:
        raise ServiceResolutionError(
            f"Claimed configuration has no instance for '{definition.key}'"
        )

    alias = await resolve_working_alias(
        instance, http=http, timeout=alias_timeout, cancel=cancel
    )
    client = definition.builder(
        manifest=manifest,
        alias=alias,
        token=token,
        fakts=fakts,
        instance=instance,
    )
    if inspect.isawaitable(client):
        client = await client
    return alias, client


async def build_context(
    fakts: ActiveFakts,
    manifest: Manifest,
    service_map: Mapping[str, ServiceDefinition],
    token: TokenResponse,
    *,
    http: httpx.AsyncClient,
    cancel: Optional[CancelToken] = None,
    alias_timeout: float = 1.0,
) -> ConnectedContext:
    """Resolve and build every declared service.

    Args:
        fakts: The validated claimed configuration.
        manifest: Manifest of the connecting application, passed to builders.
        service_map: Declared services keyed by service key, in order.
        token: Access token passed to builders.
        http: Shared HTTP client used for alias probes.
        cancel: Token that aborts the fan-out when fired.
        alias_timeout: Deadline for each alias probe, in seconds.

    Returns:
        The :class:`ConnectedContext`.

    Raises:
        RequiredServiceResolutionFailed: If a non-optional service failed.
        Cancelled: If *cancel* fired.
    """
    cancel = ensure_token(cancel)
    cancel.raise_if_cancelled()
    definitions = list(service_map.values())

    results = await asyncio.gather(
        *(
            _build_one(definition, fakts, manifest, token, http, cancel, alias_timeout)
            for definition in definitions
        ),
        return_exceptions=True,
    )

    built = [result[1] for result in results if isinstance(result, tuple)]

    if cancel.cancelled:
        await close_clients(built)
        cancel.raise_if_cancelled()
    for result in results:
        if isinstance(result, BaseException) and not isinstance(result, Exception):
            await close_clients(built)
            raise result

    clients: dict[str, Any] = {}
    available: list[AvailableService] = []
    unresolved: list[UnresolvedService] = []
    failures: dict[str, BaseException] = {}
    first_required: Optional[str] = None

    for definition, result in zip(definitions, results):
        if isinstance(result, BaseException):
            failures[definition.key] = result
            if definition.optional:
                instance = fakts.instances.get(definition.key)
                unresolved.append(
                    UnresolvedService(
                        key=definition.key,
                        service=definition.service,
                        aliases=list(instance.aliases) if instance is not None else None,
                    )
                )
                logger.warning(
                    "Optional service '%s' unavailable: %s",
                    definition.key,
                    result,
                    exc_info=result,
                )
            elif first_required is None:
                first_required = definition.key
            continue

        alias, client = result
        clients[definition.key] = client
        available.append(
            AvailableService(key=definition.key, service=definition.service, resolved=alias)
        )

    if first_required is not None:
        await close_clients(clients.values())
        raise RequiredServiceResolutionFailed(
            first_required,
            failures[first_required],
            failures=failures,
            unresolved=unresolved,
        ) from failures[first_required]

    return ConnectedContext(
        fakts=fakts,
        token=token,
        clients=clients,
        available_services=tuple(available),
        unresolved_services=tuple(unresolved),
    )
