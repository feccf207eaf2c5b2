"""Declared service dependencies and the manifest requirements derived from them.

The application declares its services once, as a list of
:class:`ServiceDefinition`. Everything else is derived from that single
declaration: the ``requirements`` sent to the endpoint at start time, the
fan-out performed after login, and the keys of the connected clients.
Because :func:`derive_requirements` is the only way requirements are
produced, the manifest can never drift from the declared set.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

from faktsflow.exceptions import ConfigError, InvalidUsageError
from faktsflow.models import (
    ConnectionSettings,
    Manifest,
    Requirement,
    ServiceConfig,
    ServiceKind,
)
from faktsflow.services.builders import graphql_service_builder, http_service_builder

ServiceBuilder = Callable[..., Any]
"""Sync or async callable invoked with ``manifest``, ``alias``, ``token``,
``fakts`` and ``instance`` keyword arguments; returns the service client."""

BUILDERS_BY_KIND: dict[ServiceKind, ServiceBuilder] = {
    ServiceKind.HTTP: http_service_builder,
    ServiceKind.GRAPHQL: graphql_service_builder,
}


@dataclass(frozen=True)
class ServiceDefinition:
    """One service the application depends on.

    Attributes:
        key: Local name of the service; also the key of its instance in the
            claimed fakts and of its client in the connected context.
        service: Service type identifier, e.g. ``live.arkitekt.mikro``.
        builder: Creates the client once an alias is resolved.
        optional: Whether the session may proceed without this service.
        description: Shown to the user on the consent page.
    """

    key: str
    service: str
    builder: ServiceBuilder
    optional: bool = False
    description: Optional[str] = None

    def requirement(self) -> Requirement:
        return Requirement(
            key=self.key,
            service=self.service,
            optional=self.optional,
            description=self.description,
        )


def service_map(definitions: Iterable[ServiceDefinition]) -> dict[str, ServiceDefinition]:
    """Index *definitions* by key, keeping declaration order.

    Raises:
        InvalidUsageError: If two definitions share a key.
    """
    result: dict[str, ServiceDefinition] = {}
    for definition in definitions:
        if definition.key in result:
            raise InvalidUsageError(f"Service key '{definition.key}' is declared twice")
        result[definition.key] = definition
    return result


def derive_requirements(services: Mapping[str, ServiceDefinition]) -> list[Requirement]:
    """Project the declared services onto manifest requirements, one per key."""
    return [definition.requirement() for definition in services.values()]


def build_manifest(manifest: Manifest, services: Mapping[str, ServiceDefinition]) -> Manifest:
    """Return *manifest* with requirements derived from *services*.

    Any requirements already present on *manifest* are replaced.
    """
    return manifest.with_requirements(derive_requirements(services))


def definitions_from_config(
    configs: Iterable[ServiceConfig], settings: Optional[ConnectionSettings] = None
) -> list[ServiceDefinition]:
    """Turn :class:`~faktsflow.models.ServiceConfig` entries into definitions.

    The built clients inherit ``verify_ssl`` and ``request_timeout`` from
    *settings*.

    Raises:
        ConfigError: If a config names a service kind without a builder.
    """
    settings = settings or ConnectionSettings()
    definitions: list[ServiceDefinition] = []
    for config in configs:
        builder = BUILDERS_BY_KIND.get(config.kind)
        if builder is None:
            raise ConfigError(f"No builder for service kind '{config.kind}'")
        builder = functools.partial(
            builder, verify=settings.verify_ssl, timeout=settings.request_timeout
        )
        definitions.append(
            ServiceDefinition(
                key=config.key,
                service=config.service,
                builder=builder,
                optional=config.optional,
                description=config.description,
            )
        )
    return definitions
