"""Declared services, their client builders and the resolution fan-out."""

from faktsflow.services.builders import (
    GraphQLService,
    HttpService,
    graphql_service_builder,
    http_service_builder,
)
from faktsflow.services.context import ConnectedContext, build_context
from faktsflow.services.definitions import (
    ServiceDefinition,
    build_manifest,
    definitions_from_config,
    derive_requirements,
    service_map,
)

__all__ = [
    "ConnectedContext",
    "GraphQLService",
    "HttpService",
    "ServiceDefinition",
    "build_context",
    "build_manifest",
    "definitions_from_config",
    "derive_requirements",
    "graphql_service_builder",
    "http_service_builder",
    "service_map",
]
